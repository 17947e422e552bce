from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

# 256 bits of entropy, rendered as 64 hex chars
SESSION_ID_BYTES = 32
SESSION_TTL = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes from older rows as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: str = ""
    phone: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: ["participant"])
    registration_status: str = "pending"
    email_verified: bool = False
    bio: Optional[str] = None
    profile_image: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, **kwargs) -> "User":
        return cls(id=uuid.uuid4().hex, email=email.lower(), **kwargs)

    def public_dict(self) -> dict:
        """Profile fields safe to return to clients."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "roles": list(self.roles),
            "registrationStatus": self.registration_status,
            "emailVerified": self.email_verified,
            "bio": self.bio,
            "profileImage": self.profile_image,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class Session:
    """Long-lived server-side login record looked up by opaque id."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    last_seen: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl: timedelta = SESSION_TTL,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=secrets.token_hex(SESSION_ID_BYTES),
            user_id=user_id,
            created_at=created,
            expires_at=created + ttl,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_active(self, now: datetime) -> bool:
        return as_utc(self.expires_at) > now


@dataclass
class OneTimeCode:
    id: str
    email: str
    code: str
    purpose: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Vote:
    id: str
    user_id: str
    resource_type: str
    resource_id: str
    created_at: datetime = field(default_factory=utcnow)
