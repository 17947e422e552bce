from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, Tuple

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from happyjourney.config import Settings
from happyjourney.logging import get_logger, redact_email
from happyjourney.service.email import EmailService
from happyjourney.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from happyjourney.service.sessions import SessionManager, SessionStore
from happyjourney.service.tokens import (
    ACCESS_TOKEN_TTL_SECONDS,
    PENDING_TOKEN_TTL_SECONDS,
    PURPOSE_ACCESS,
    PURPOSE_EMAIL_VERIFICATION,
    PURPOSE_PASSWORD_RESET,
    RESET_TOKEN_TTL_SECONDS,
    IdentityClaim,
    TokenSigner,
)
from happyjourney.storage.errors import ConstraintViolation
from happyjourney.storage.models import OneTimeCode, User, utcnow

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
OTP_RE = re.compile(r"^\d{6}$")
MIN_PASSWORD_LENGTH = 8
OTP_PURPOSES = (PURPOSE_EMAIL_VERIFICATION, PURPOSE_PASSWORD_RESET)
PROFILE_FIELDS = ("name", "phone", "bio", "profile_image")


class AuthStore(SessionStore, Protocol):
    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        phone: Optional[str] = None,
        roles: Optional[List[str]] = None,
        registration_status: str = "pending",
        email_verified: bool = False,
        profile_image: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_otp(
        self, email: str, code: str, purpose: str, expires_at: datetime
    ) -> OneTimeCode: ...

    def invalidate_otps(self, email: str) -> int: ...

    def find_valid_otp(
        self, email: str, code: str, purpose: str, now: datetime
    ) -> Optional[OneTimeCode]: ...

    def mark_otp_used(self, otp_id: str) -> None: ...


@dataclass
class AuthResult:
    """Outcome of a completed sign-in: the user, a bearer token and a session."""

    user: User
    token: str
    session_id: str


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


class AuthService:
    """Registration, one-time codes, password and Google sign-in."""

    def __init__(
        self,
        store: AuthStore,
        signer: TokenSigner,
        sessions: SessionManager,
        email: EmailService,
        settings: Settings,
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.sessions = sessions
        self.email = email
        self.settings = settings
        self._http_transport = http_transport
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    @staticmethod
    def _normalize_email(email: str) -> str:
        normalized = (email or "").strip().lower()
        if not EMAIL_RE.match(normalized):
            raise ValidationError("Invalid email format")
        return normalized

    @staticmethod
    def _check_password(password: str) -> None:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )

    # tokens
    def mint_access_token(self, user: User) -> str:
        claim = IdentityClaim(subject_id=user.id, email=user.email, roles=list(user.roles))
        return self.signer.issue(claim, ACCESS_TOKEN_TTL_SECONDS, PURPOSE_ACCESS)

    def _start_session(
        self, user: User, user_agent: Optional[str], ip_address: Optional[str]
    ) -> AuthResult:
        # Mint first so a broken signing key does not leave an orphan session
        token = self.mint_access_token(user)
        session_id = self.sessions.create_session(
            user.id, user_agent=user_agent, ip_address=ip_address
        )
        return AuthResult(user=user, token=token, session_id=session_id)

    # one-time codes
    async def _issue_otp(self, email: str, purpose: str) -> OneTimeCode:
        code = generate_otp()
        expires_at = self._clock() + timedelta(minutes=self.settings.otp_ttl_minutes)
        record = self.store.create_otp(email, code, purpose, expires_at)
        sent = await asyncio.to_thread(self.email.send_otp, email, code, purpose)
        if not sent:
            raise ServerError("Failed to send OTP")
        self.logger.info("otp_issued", to=redact_email(email), purpose=purpose)
        return record

    async def register(
        self,
        *,
        email: str,
        password: str,
        name: str,
        phone: Optional[str] = None,
    ) -> Tuple[User, str]:
        """Create a pending account and mail an email verification code.

        Returns the user and a short-lived token that only proves the
        registration step; it does not authenticate requests.
        """
        normalized = self._normalize_email(email)
        self._check_password(password)
        if not (name or "").strip():
            raise ValidationError("Email, password, and name are required")
        if self.store.get_user_by_email(normalized):
            raise ConflictError("User with this email already exists")

        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        try:
            user = self.store.create_user(normalized, name=name.strip(), phone=phone or None)
        except ConstraintViolation as exc:
            raise ConflictError("User with this email already exists") from exc
        self.store.save_password(user.id, pwd_hash, algo)
        # Mail the code only after the insert succeeds
        await self._issue_otp(normalized, PURPOSE_EMAIL_VERIFICATION)

        pending = self.signer.issue(
            IdentityClaim(subject_id=user.id, email=user.email),
            PENDING_TOKEN_TTL_SECONDS,
            PURPOSE_EMAIL_VERIFICATION,
        )
        self.logger.info("user_registered", user_id=user.id)
        return user, pending

    async def send_otp(self, *, email: str, purpose: str = PURPOSE_EMAIL_VERIFICATION) -> int:
        normalized = self._normalize_email(email)
        if purpose not in OTP_PURPOSES:
            raise ValidationError("Invalid OTP type")
        if purpose == PURPOSE_PASSWORD_RESET and not self.store.get_user_by_email(normalized):
            raise NotFoundError("User with this email does not exist")
        self.store.invalidate_otps(normalized)
        await self._issue_otp(normalized, purpose)
        return self.settings.otp_ttl_minutes * 60

    async def verify_otp(
        self,
        *,
        email: str,
        code: str,
        purpose: str = PURPOSE_EMAIL_VERIFICATION,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult | str:
        """Consume a code.

        Email verification returns a full :class:`AuthResult`; password reset
        returns a reset token.
        """
        if purpose not in OTP_PURPOSES:
            raise ValidationError("Invalid OTP type")
        if not OTP_RE.match(code or ""):
            raise ValidationError("Invalid OTP format")
        normalized = (email or "").strip().lower()
        record = self.store.find_valid_otp(normalized, code, purpose, self._clock())
        if not record:
            raise ValidationError("Invalid or expired OTP")
        self.store.mark_otp_used(record.id)

        user = self.store.get_user_by_email(normalized)
        if not user:
            raise NotFoundError("User not found")

        if purpose == PURPOSE_PASSWORD_RESET:
            self.logger.info("otp_verified", user_id=user.id, purpose=purpose)
            return self.signer.issue(
                IdentityClaim(subject_id=user.id, email=user.email),
                RESET_TOKEN_TTL_SECONDS,
                PURPOSE_PASSWORD_RESET,
            )

        user = self.store.update_user(user.id, email_verified=True) or user
        self.logger.info("email_verified", user_id=user.id)
        return self._start_session(user, user_agent, ip_address)

    async def reset_password(self, *, reset_token: str, new_password: str) -> User:
        self._check_password(new_password)
        claim = self.signer.verify(reset_token, purpose=PURPOSE_PASSWORD_RESET)
        if not claim:
            raise AuthenticationError("Invalid or expired reset token")
        user = self.store.get_user(claim.subject_id)
        if not user or user.email != (claim.email or "").lower():
            raise AuthenticationError("Invalid or expired reset token")
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, new_password)
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    async def login(
        self,
        *,
        email: str,
        password: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        user = self.store.get_user_by_email((email or "").strip().lower())
        if not user:
            raise AuthenticationError("Invalid credentials")
        valid = await asyncio.to_thread(self.verify_password, user.id, password)
        if not valid:
            raise AuthenticationError("Invalid credentials")
        result = self._start_session(user, user_agent, ip_address)
        self.logger.info("user_logged_in", user_id=user.id)
        return result

    async def _fetch_google_tokeninfo(self, id_token: str) -> Optional[dict[str, Any]]:
        try:
            async with httpx.AsyncClient(
                timeout=10.0, follow_redirects=False, transport=self._http_transport
            ) as client:
                response = await client.get(
                    self.settings.google_tokeninfo_url, params={"id_token": id_token}
                )
        except httpx.HTTPError as exc:
            self.logger.error("google_tokeninfo_unreachable", error=str(exc))
            raise ServerError("Google verification unavailable") from exc
        if response.status_code != 200:
            self.logger.warning("google_token_rejected", status_code=response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            self.logger.error("google_tokeninfo_parse_error")
            return None
        return payload if isinstance(payload, dict) else None

    async def google_login(
        self,
        *,
        id_token: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        payload = await self._fetch_google_tokeninfo(id_token)
        if payload is None:
            raise AuthenticationError("Invalid Google token")
        client_id = self.settings.google_client_id
        if client_id and payload.get("aud") != client_id:
            raise AuthenticationError("Token audience mismatch")
        email = (payload.get("email") or "").strip().lower()
        if not email:
            raise ValidationError("Email not available from Google")

        user = self.store.get_user_by_email(email)
        if not user:
            name = payload.get("name") or ""
            try:
                user = self.store.create_user(
                    email,
                    name=name,
                    email_verified=True,
                    profile_image=payload.get("picture") or None,
                )
            except ConstraintViolation:
                user = self.store.get_user_by_email(email)
                if not user:
                    raise
            else:
                # Unusable random password so the account still has a credential row
                self.save_password(user.id, secrets.token_urlsafe(32))
                sent = await asyncio.to_thread(self.email.send_welcome, email, name or email)
                if not sent:
                    self.logger.warning("welcome_email_failed", user_id=user.id)
                self.logger.info("google_user_created", user_id=user.id)

        result = self._start_session(user, user_agent, ip_address)
        self.logger.info("google_login", user_id=user.id)
        return result

    def logout(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        try:
            self.sessions.destroy_session(session_id)
        except Exception as exc:
            self.logger.error("logout_session_delete_failed", error=str(exc))

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_profile(self, user_id: str, changes: dict[str, Any]) -> User:
        updates = {k: v for k, v in changes.items() if k in PROFILE_FIELDS}
        # A blank name is ignored rather than clearing the profile name
        if not updates.get("name"):
            updates.pop("name", None)
        user = self.store.update_user(user_id, **updates)
        if not user:
            raise NotFoundError("User not found")
        self.logger.info("user_updated", user_id=user_id, fields=sorted(updates))
        return user
