from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from happyjourney.logging import get_logger
from happyjourney.storage.errors import ConstraintViolation, StoreUnavailable
from happyjourney.storage.models import (
    SESSION_TTL,
    OneTimeCode,
    Session,
    User,
    Vote,
    utcnow,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        phone TEXT,
        roles TEXT[] NOT NULL DEFAULT ARRAY['participant'],
        registration_status TEXT NOT NULL DEFAULT 'pending',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        bio TEXT,
        profile_image TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        user_agent TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_seen TIMESTAMPTZ,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS one_time_code (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        code TEXT NOT NULL,
        purpose TEXT NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS one_time_code_email_idx ON one_time_code (email, code)",
    """
    CREATE TABLE IF NOT EXISTS vote (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        resource_type TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, resource_type, resource_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS vote_resource_idx ON vote (resource_type, resource_id)",
]

_USER_FIELDS = {
    "name",
    "phone",
    "roles",
    "registration_status",
    "email_verified",
    "bio",
    "profile_image",
}


class PostgresStore:
    """Postgres-backed record store for users, sessions, codes and votes."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("duplicate record", {"constraint": exc.diag.constraint_name}) from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row.get("name") or "",
            phone=row.get("phone"),
            roles=list(row.get("roles") or ["participant"]),
            registration_status=row.get("registration_status", "pending"),
            email_verified=bool(row.get("email_verified")),
            bio=row.get("bio"),
            profile_image=row.get("profile_image"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            last_seen=row.get("last_seen"),
        )

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
        user = User.new(
            email,
            name=name,
            phone=phone,
            roles=list(roles or ["participant"]),
            registration_status=registration_status,
            email_verified=email_verified,
            profile_image=profile_image,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, phone, roles, registration_status, email_verified, profile_image, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.phone,
                        user.roles,
                        user.registration_status,
                        user.email_verified,
                        user.profile_image,
                        user.created_at,
                    ),
                )
        except ConstraintViolation as exc:
            raise ConstraintViolation(
                "User with this email already exists", {"email": user.email}
            ) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        updates = {k: v for k, v in fields.items() if k in _USER_FIELDS}
        if not updates:
            return self.get_user(user_id)
        assignments = ", ".join(f"{column} = %s" for column in updates)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                (*updates.values(), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl: timedelta = SESSION_TTL,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session:
        sess = Session.new(user_id, ttl=ttl, user_agent=user_agent, ip_address=ip_address)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_session (id, user_id, user_agent, ip_address, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    sess.id,
                    sess.user_id,
                    sess.user_agent,
                    sess.ip_address,
                    sess.created_at,
                    sess.expires_at,
                ),
            )
        return sess

    def get_active_session(self, session_id: str, now: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s AND expires_at > %s",
                (session_id, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, session_id: str, seen_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET last_seen = %s WHERE id = %s",
                (seen_at, session_id),
            )
            return cur.rowcount > 0

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def count_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS expired FROM auth_session WHERE expires_at <= %s", (now,)
            ).fetchone()
            return int(row["expired"]) if row else 0

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return cur.rowcount

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO one_time_code (id, email, code, purpose, used, expires_at, created_at)
                VALUES (%s, %s, %s, %s, FALSE, %s, %s)
                """,
                (
                    record.id,
                    record.email,
                    record.code,
                    record.purpose,
                    record.expires_at,
                    record.created_at,
                ),
            )
        return record

    def invalidate_otps(self, email: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE one_time_code SET used = TRUE WHERE email = %s AND used = FALSE",
                (email.lower(),),
            )
            return cur.rowcount

    def find_valid_otp(
        self, email: str, code: str, purpose: str, now: datetime
    ) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM one_time_code
                WHERE email = %s AND code = %s AND purpose = %s AND used = FALSE AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (email.lower(), code, purpose, now),
            ).fetchone()
        if not row:
            return None
        return OneTimeCode(
            id=row["id"],
            email=row["email"],
            code=row["code"],
            purpose=row["purpose"],
            expires_at=row["expires_at"],
            used=row["used"],
            created_at=row["created_at"],
        )

    def mark_otp_used(self, otp_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE one_time_code SET used = TRUE WHERE id = %s", (otp_id,))

    # votes
    @staticmethod
    def _row_to_vote(row: dict[str, Any]) -> Vote:
        return Vote(
            id=row["id"],
            user_id=row["user_id"],
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            created_at=row["created_at"],
        )

    def get_vote(self, user_id: str, resource_type: str, resource_id: str) -> Optional[Vote]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM vote WHERE user_id = %s AND resource_type = %s AND resource_id = %s",
                (user_id, resource_type, resource_id),
            ).fetchone()
        return self._row_to_vote(row) if row else None

    def create_vote(self, user_id: str, resource_type: str, resource_id: str) -> Vote:
        vote = Vote(
            id=uuid.uuid4().hex,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO vote (id, user_id, resource_type, resource_id, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (vote.id, vote.user_id, vote.resource_type, vote.resource_id, vote.created_at),
            )
        return vote

    def delete_vote(
        self, user_id: str, resource_type: str, resource_id: str
    ) -> Optional[Vote]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM vote
                WHERE user_id = %s AND resource_type = %s AND resource_id = %s
                RETURNING *
                """,
                (user_id, resource_type, resource_id),
            ).fetchone()
        return self._row_to_vote(row) if row else None

    def count_votes(self, resource_type: str, resource_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM vote WHERE resource_type = %s AND resource_id = %s",
                (resource_type, resource_id),
            ).fetchone()
        return int(row["total"]) if row else 0
