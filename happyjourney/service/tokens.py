from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from happyjourney.config import MIN_SECRET_LENGTH
from happyjourney.logging import get_logger
from happyjourney.service.errors import SigningKeyError

logger = get_logger(__name__)

ACCESS_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60
PENDING_TOKEN_TTL_SECONDS = 60 * 60
RESET_TOKEN_TTL_SECONDS = 15 * 60

PURPOSE_ACCESS = "access"
PURPOSE_EMAIL_VERIFICATION = "email_verification"
PURPOSE_PASSWORD_RESET = "password_reset"


@dataclass
class IdentityClaim:
    """Identity carried inside a signed token."""

    subject_id: str
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    purpose: str = PURPOSE_ACCESS
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """Mints and verifies HS256 compact tokens.

    The signer refuses to work with a missing or short secret: both
    ``issue`` and ``verify`` raise :class:`SigningKeyError` so callers can
    decide whether that is a 500 (minting) or an anonymous request
    (resolution).
    """

    def __init__(
        self, secret: Optional[str], clock: Callable[[], float] = time.time
    ) -> None:
        self._secret = secret
        self._clock = clock

    @property
    def configured(self) -> bool:
        secret = self._secret
        return bool(secret and secret.strip()) and len(secret) >= MIN_SECRET_LENGTH

    def _key(self) -> bytes:
        if not self._secret or not self._secret.strip():
            raise SigningKeyError("token signing secret is not configured")
        if len(self._secret) < MIN_SECRET_LENGTH:
            raise SigningKeyError(
                "token signing secret is too short",
                detail={"min_length": MIN_SECRET_LENGTH},
            )
        return self._secret.encode()

    def _sign(self, key: bytes, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        claim: IdentityClaim,
        ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS,
        purpose: Optional[str] = None,
    ) -> str:
        key = self._key()
        now = int(self._clock())
        payload: dict[str, Any] = {
            "sub": claim.subject_id,
            "email": claim.email,
            "roles": list(claim.roles),
            "purpose": purpose or claim.purpose,
            "iat": now,
            "exp": now + int(ttl_seconds),
        }
        if payload["purpose"] == PURPOSE_EMAIL_VERIFICATION:
            payload["step"] = PURPOSE_EMAIL_VERIFICATION
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(key, signing_input)}"

    def verify(
        self, token: str, *, purpose: str = PURPOSE_ACCESS
    ) -> Optional[IdentityClaim]:
        """Return the embedded claim, or ``None`` for any invalid token.

        Only tokens minted for ``purpose`` are accepted, so a password reset
        token never authenticates a request.
        """
        key = self._key()
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(key, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None

        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock():
            return None
        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            return None
        if payload.get("purpose", PURPOSE_ACCESS) != purpose:
            return None
        roles = payload.get("roles") or []
        return IdentityClaim(
            subject_id=subject,
            email=payload.get("email"),
            roles=[str(r) for r in roles] if isinstance(roles, list) else [],
            purpose=purpose,
            issued_at=payload.get("iat"),
            expires_at=int(exp_ts),
        )
