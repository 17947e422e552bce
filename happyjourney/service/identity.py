from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Mapping, Optional, Protocol, Sequence

from happyjourney.logging import get_logger
from happyjourney.service.errors import SigningKeyError
from happyjourney.service.sessions import (
    AUTH_TOKEN_COOKIE,
    SESSION_ID_COOKIE,
    SessionManager,
)
from happyjourney.service.tokens import TokenSigner
from happyjourney.storage.models import utcnow

logger = get_logger(__name__)

SOURCE_BEARER = "bearer"
SOURCE_COOKIE = "cookie"
SOURCE_SESSION = "session"


@dataclass(frozen=True)
class Credentials:
    """Candidate credentials presented by one request."""

    bearer: Optional[str] = None
    cookie_token: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not (self.bearer or self.cookie_token or self.session_id)


@dataclass
class ResolvedIdentity:
    user_id: str
    roles: List[str] = field(default_factory=list)
    source: str = SOURCE_BEARER
    session_id: Optional[str] = None


def _bearer_from_header(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def extract_credentials(
    headers: Mapping[str, str], cookies: Mapping[str, str]
) -> Credentials:
    return Credentials(
        bearer=_bearer_from_header(headers.get("authorization")),
        cookie_token=cookies.get(AUTH_TOKEN_COOKIE) or None,
        session_id=cookies.get(SESSION_ID_COOKIE) or None,
    )


class IdentityStrategy(Protocol):
    def resolve(self, credentials: Credentials) -> Optional[ResolvedIdentity]: ...


class BearerTokenStrategy:
    def __init__(self, signer: TokenSigner) -> None:
        self.signer = signer

    def resolve(self, credentials: Credentials) -> Optional[ResolvedIdentity]:
        if not credentials.bearer:
            return None
        claim = self.signer.verify(credentials.bearer)
        if not claim:
            return None
        return ResolvedIdentity(claim.subject_id, list(claim.roles), SOURCE_BEARER)


class CookieTokenStrategy:
    def __init__(self, signer: TokenSigner) -> None:
        self.signer = signer

    def resolve(self, credentials: Credentials) -> Optional[ResolvedIdentity]:
        if not credentials.cookie_token:
            return None
        claim = self.signer.verify(credentials.cookie_token)
        if not claim:
            return None
        return ResolvedIdentity(claim.subject_id, list(claim.roles), SOURCE_COOKIE)


class PersistentSessionStrategy:
    """Falls back to a server-side session named by the ``session_id`` cookie."""

    def __init__(
        self, sessions: SessionManager, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.sessions = sessions
        self._clock = clock

    def resolve(self, credentials: Credentials) -> Optional[ResolvedIdentity]:
        session_id = credentials.session_id
        if not session_id:
            return None
        try:
            sess = self.sessions.store.get_active_session(session_id, self._clock())
        except Exception as exc:
            logger.error("identity_session_lookup_failed", error=str(exc))
            return None
        if not sess:
            return None
        self.sessions.touch_later(sess.id)
        return ResolvedIdentity(sess.user_id, [], SOURCE_SESSION, session_id=sess.id)


class IdentityResolver:
    """Runs credential strategies in order; the first hit wins.

    Bad or missing credentials resolve to ``None``. An unusable signing
    secret also resolves to ``None`` for every request, including those that
    only carry a session cookie.
    """

    def __init__(
        self,
        signer: TokenSigner,
        sessions: SessionManager,
        *,
        strategies: Optional[Sequence[IdentityStrategy]] = None,
    ) -> None:
        self.signer = signer
        self.bearer_strategy = BearerTokenStrategy(signer)
        self.strategies: List[IdentityStrategy] = list(
            strategies
            if strategies is not None
            else (
                self.bearer_strategy,
                CookieTokenStrategy(signer),
                PersistentSessionStrategy(sessions),
            )
        )

    def _run(
        self, credentials: Credentials, strategies: Sequence[IdentityStrategy]
    ) -> Optional[ResolvedIdentity]:
        if credentials.empty:
            return None
        if not self.signer.configured:
            logger.error("identity_signing_key_unavailable")
            return None
        try:
            for strategy in strategies:
                identity = strategy.resolve(credentials)
                if identity:
                    return identity
        except SigningKeyError:
            logger.error("identity_signing_key_unavailable")
            return None
        return None

    def resolve(self, credentials: Credentials) -> Optional[ResolvedIdentity]:
        """Cookie-aware resolution: bearer, then auth cookie, then session."""
        return self._run(credentials, self.strategies)

    def resolve_bearer(self, credentials: Credentials) -> Optional[ResolvedIdentity]:
        """Strict resolution from the Authorization header only."""
        return self._run(credentials, [self.bearer_strategy])
