from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional, Protocol, Set

from starlette.responses import Response

from happyjourney.config import Settings
from happyjourney.logging import get_logger
from happyjourney.service.tokens import ACCESS_TOKEN_TTL_SECONDS
from happyjourney.storage.models import SESSION_TTL, Session, utcnow

logger = get_logger(__name__)

AUTH_TOKEN_COOKIE = "auth_token"
SESSION_ID_COOKIE = "session_id"


class SessionStore(Protocol):
    def create_session(
        self,
        user_id: str,
        ttl=SESSION_TTL,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session: ...

    def get_active_session(self, session_id: str, now: datetime) -> Optional[Session]: ...

    def touch_session(self, session_id: str, seen_at: datetime) -> bool: ...

    def delete_session(self, session_id: str) -> bool: ...


@dataclass(frozen=True)
class CookieProfile:
    name: str
    max_age: int
    http_only: bool = True
    same_site: str = "lax"
    secure: bool = False
    path: str = "/"

    def apply(self, response: Response, value: str) -> None:
        response.set_cookie(
            self.name,
            value,
            max_age=self.max_age,
            path=self.path,
            secure=self.secure,
            httponly=self.http_only,
            samesite=self.same_site,
        )

    def expire(self, response: Response) -> None:
        replace(self, max_age=0).apply(response, "")


def cookie_profiles(settings: Settings) -> tuple[CookieProfile, CookieProfile]:
    """Return the (auth_token, session_id) cookie profiles for ``settings``."""
    secure = settings.is_production
    token_profile = CookieProfile(
        name=AUTH_TOKEN_COOKIE,
        max_age=ACCESS_TOKEN_TTL_SECONDS,
        secure=secure,
    )
    session_profile = CookieProfile(
        name=SESSION_ID_COOKIE,
        max_age=int(SESSION_TTL.total_seconds()),
        secure=secure,
    )
    return token_profile, session_profile


class SessionManager:
    """Owns persistent session records and the cookies that carry them."""

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.token_cookie, self.session_cookie = cookie_profiles(settings)
        self._pending_touches: Set[asyncio.Task] = set()

    def create_session(
        self,
        user_id: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        sess = self.store.create_session(
            user_id, SESSION_TTL, user_agent=user_agent, ip_address=ip_address
        )
        logger.info("session_created", user_id=user_id, expires_at=sess.expires_at.isoformat())
        return sess.id

    def destroy_session(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        removed = self.store.delete_session(session_id)
        logger.info("session_destroyed", removed=removed)
        return removed

    def touch(self, session_id: str) -> None:
        try:
            self.store.touch_session(session_id, self._clock())
        except Exception as exc:
            logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    def touch_later(self, session_id: str) -> Optional[asyncio.Task]:
        """Schedule ``touch`` without blocking the caller.

        Returns the scheduled task, or ``None`` when no event loop is running
        and the touch was performed inline.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.touch(session_id)
            return None
        task = loop.create_task(asyncio.to_thread(self.touch, session_id))
        self._pending_touches.add(task)
        task.add_done_callback(self._pending_touches.discard)
        return task

    def set_auth_cookies(self, response: Response, token: str, session_id: str) -> None:
        self.token_cookie.apply(response, token)
        self.session_cookie.apply(response, session_id)

    def clear_auth_cookies(self, response: Response) -> None:
        self.token_cookie.expire(response)
        self.session_cookie.expire(response)
