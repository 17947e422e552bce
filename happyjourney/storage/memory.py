from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from happyjourney.logging import get_logger
from happyjourney.storage.errors import ConstraintViolation
from happyjourney.storage.models import (
    SESSION_TTL,
    OneTimeCode,
    Session,
    User,
    Vote,
    as_utc,
)


class MemoryStore:
    """In-process record store for tests and single-node development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.otps: Dict[str, OneTimeCode] = {}
        self.votes: Dict[str, Vote] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # users
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
    ) -> User:
        normalized = email.lower()
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("User with this email already exists", {"email": normalized})
            user = User.new(
                normalized,
                name=name,
                phone=phone,
                roles=list(roles or ["participant"]),
                registration_status=registration_status,
                email_verified=email_verified,
                profile_image=profile_image,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return user
        return None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **fields)
            self.users[user_id] = updated
            return updated

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl: timedelta = SESSION_TTL,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                ttl=ttl,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            if sess.id in self.sessions:
                raise ConstraintViolation("session id collision", {"session_id": sess.id})
            self.sessions[sess.id] = sess
            return sess

    def get_active_session(self, session_id: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active(now):
                return None
            return sess

    def touch_session(self, session_id: str, seen_at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.last_seen = seen_at
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def count_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            return sum(1 for sess in self.sessions.values() if not sess.is_active(now))

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if not sess.is_active(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # one-time codes
    def create_otp(
        self, email: str, code: str, purpose: str, expires_at: datetime
    ) -> OneTimeCode:
        record = OneTimeCode(
            id=uuid.uuid4().hex,
            email=email.lower(),
            code=code,
            purpose=purpose,
            expires_at=expires_at,
        )
        with self._data_lock:
            self.otps[record.id] = record
        return record

    def invalidate_otps(self, email: str) -> int:
        normalized = email.lower()
        count = 0
        with self._data_lock:
            for record in self.otps.values():
                if record.email == normalized and not record.used:
                    record.used = True
                    count += 1
        return count

    def find_valid_otp(
        self, email: str, code: str, purpose: str, now: datetime
    ) -> Optional[OneTimeCode]:
        normalized = email.lower()
        with self._data_lock:
            for record in self.otps.values():
                if (
                    record.email == normalized
                    and record.code == code
                    and record.purpose == purpose
                    and not record.used
                    and as_utc(record.expires_at) > now
                ):
                    return record
        return None

    def mark_otp_used(self, otp_id: str) -> None:
        with self._data_lock:
            record = self.otps.get(otp_id)
            if record:
                record.used = True

    # votes
    def get_vote(self, user_id: str, resource_type: str, resource_id: str) -> Optional[Vote]:
        with self._data_lock:
            for vote in self.votes.values():
                if (
                    vote.user_id == user_id
                    and vote.resource_type == resource_type
                    and vote.resource_id == resource_id
                ):
                    return vote
        return None

    def create_vote(self, user_id: str, resource_type: str, resource_id: str) -> Vote:
        with self._data_lock:
            if self.get_vote(user_id, resource_type, resource_id):
                raise ConstraintViolation(
                    "vote already recorded",
                    {"resource_type": resource_type, "resource_id": resource_id},
                )
            vote = Vote(
                id=uuid.uuid4().hex,
                user_id=user_id,
                resource_type=resource_type,
                resource_id=resource_id,
            )
            self.votes[vote.id] = vote
            return vote

    def delete_vote(
        self, user_id: str, resource_type: str, resource_id: str
    ) -> Optional[Vote]:
        with self._data_lock:
            vote = self.get_vote(user_id, resource_type, resource_id)
            if vote:
                self.votes.pop(vote.id, None)
            return vote

    def count_votes(self, resource_type: str, resource_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for vote in self.votes.values()
                if vote.resource_type == resource_type and vote.resource_id == resource_id
            )
