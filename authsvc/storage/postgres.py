from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authsvc.logging import get_logger
from authsvc.storage.errors import ConstraintViolation, StoreUnavailable
from authsvc.storage.models import (
    Credential,
    OAuthOnly,
    OneTimeEffect,
    OneTimeToken,
    OneTimeTokenPurpose,
    PasswordCredential,
    RefreshToken,
    User,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        password_hash TEXT,
        auth_provider TEXT NOT NULL DEFAULT 'local',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        google_id TEXT UNIQUE,
        picture_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS one_time_token (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS one_time_token_user_idx ON one_time_token (user_id, purpose)",
)


def _row_to_user(row: Dict[str, Any]) -> User:
    credential: Credential
    if row.get("password_hash"):
        credential = PasswordCredential(row["password_hash"])
    else:
        credential = OAuthOnly(provider=row.get("auth_provider") or "google")
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        credential=credential,
        email_verified=bool(row.get("email_verified")),
        failed_login_attempts=row.get("failed_login_attempts") or 0,
        locked_until=row.get("locked_until"),
        google_id=row.get("google_id"),
        picture_url=row.get("picture_url"),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
        updated_at=row.get("updated_at"),
    )


def _row_to_refresh(row: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        token_hash=row["token_hash"],
        user_id=str(row["user_id"]),
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        revoked=bool(row["revoked"]),
        revoked_at=row.get("revoked_at"),
    )


def _row_to_one_time(row: Dict[str, Any]) -> OneTimeToken:
    return OneTimeToken(
        token_hash=row["token_hash"],
        user_id=str(row["user_id"]),
        purpose=OneTimeTokenPurpose(row["purpose"]),
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        used=bool(row["used"]),
        used_at=row.get("used_at"),
    )


class PostgresStore:
    """psycopg-backed store.

    Each ``with self._connect()`` block is one transaction: it commits on exit
    and rolls back if the body raises. Conditional transitions are single
    ``UPDATE ... WHERE <flag> = FALSE RETURNING`` statements so concurrent
    callers serialize on the row lock and only one sees a returned row.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self.ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__)
            raise StoreUnavailable("database unavailable") from exc

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # users -----------------------------------------------------------------

    def _fetch_user(self, where: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {where}", (value,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("lower(email) = lower(%s)", email)

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", user_id)

    def find_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._fetch_user("google_id = %s", google_id)

    def create_user(
        self,
        email: str,
        name: str,
        credential: Credential,
        *,
        email_verified: bool = False,
        google_id: Optional[str] = None,
        picture_url: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        if isinstance(credential, PasswordCredential):
            password_hash, provider = credential.password_hash, "local"
        else:
            password_hash, provider = None, credential.provider
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user
                        (id, email, name, password_hash, auth_provider, email_verified, google_id, picture_url)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.lower(),
                        name,
                        password_hash,
                        provider,
                        email_verified,
                        google_id,
                        picture_url,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_user(row)

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s",
                (*params, user_id),
            )
            if cursor.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    def update_login_attempts(
        self, user_id: str, attempts: int, locked_until: Optional[datetime]
    ) -> None:
        self._update_user(
            user_id,
            "failed_login_attempts = %s, locked_until = %s",
            (attempts, locked_until),
        )

    def record_login_failure(
        self,
        user_id: str,
        transition: Callable[[int, Optional[datetime]], Tuple[int, Optional[datetime]]],
    ) -> Tuple[int, Optional[datetime]]:
        # Row lock holds concurrent failures for the same user until commit
        with self._connect() as conn:
            row = conn.execute(
                "SELECT failed_login_attempts, locked_until FROM app_user WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if row is None:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            attempts, locked_until = transition(row["failed_login_attempts"], row.get("locked_until"))
            conn.execute(
                "UPDATE app_user SET failed_login_attempts = %s, locked_until = %s, updated_at = now() WHERE id = %s",
                (attempts, locked_until, user_id),
            )
        return attempts, locked_until

    def update_password(self, user_id: str, password_hash: str) -> None:
        self._update_user(user_id, "password_hash = %s", (password_hash,))

    def mark_email_verified(self, user_id: str) -> None:
        self._update_user(user_id, "email_verified = TRUE", ())

    def link_google_account(
        self, user_id: str, google_id: str, picture_url: Optional[str] = None
    ) -> None:
        try:
            self._update_user(
                user_id,
                "google_id = %s, picture_url = COALESCE(%s, picture_url), email_verified = TRUE",
                (google_id, picture_url),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("google account already linked", {"field": "google_id"})

    # refresh tokens --------------------------------------------------------

    @staticmethod
    def _insert_refresh(conn: psycopg.Connection, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (token_hash, user_id, issued_at, expires_at, revoked)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (token.token_hash, token.user_id, token.issued_at, token.expires_at, token.revoked),
        )

    def create_refresh_token(self, token: RefreshToken) -> None:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})

    def find_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _row_to_refresh(row) if row else None

    @staticmethod
    def _revoke_returning(conn: psycopg.Connection, token_hash: str, now: datetime) -> bool:
        row = conn.execute(
            """
            UPDATE refresh_token SET revoked = TRUE, revoked_at = %s
            WHERE token_hash = %s AND revoked = FALSE
            RETURNING token_hash
            """,
            (now, token_hash),
        ).fetchone()
        return row is not None

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            return self._revoke_returning(conn, token_hash, now)

    def rotate_refresh_token(
        self, old_hash: str, replacement: RefreshToken, now: datetime
    ) -> bool:
        try:
            with self._connect() as conn:
                if not self._revoke_returning(conn, old_hash, now):
                    return False
                self._insert_refresh(conn, replacement)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return True

    def revoke_all_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND revoked = FALSE
                """,
                (now, user_id),
            )
            return cursor.rowcount

    # one-time tokens -------------------------------------------------------

    def create_one_time_token(self, token: OneTimeToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO one_time_token (token_hash, user_id, purpose, issued_at, expires_at, used)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token_hash,
                        token.user_id,
                        token.purpose.value,
                        token.issued_at,
                        token.expires_at,
                        token.used,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": token.user_id})

    def find_one_time_token(self, token_hash: str) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _row_to_one_time(row) if row else None

    def invalidate_one_time_tokens(
        self, user_id: str, purpose: OneTimeTokenPurpose, now: datetime
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE one_time_token SET used = TRUE, used_at = %s
                WHERE user_id = %s AND purpose = %s AND used = FALSE
                """,
                (now, user_id, purpose.value),
            )
            return cursor.rowcount

    def mark_one_time_token_used(self, token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_token SET used = TRUE, used_at = %s
                WHERE token_hash = %s AND used = FALSE
                RETURNING token_hash
                """,
                (now, token_hash),
            ).fetchone()
        return row is not None

    def consume_one_time_token(
        self,
        token_hash: str,
        purpose: OneTimeTokenPurpose,
        now: datetime,
        effect: OneTimeEffect,
    ) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_token SET used = TRUE, used_at = %s
                WHERE token_hash = %s AND purpose = %s AND used = FALSE AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, purpose.value, now),
            ).fetchone()
            if not row:
                return None
            # Runs inside the same transaction; an exception rolls back used=true
            user_id = str(row["user_id"])
            if effect.password_hash is not None:
                conn.execute(
                    "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                    (effect.password_hash, user_id),
                )
            if effect.mark_email_verified:
                conn.execute(
                    "UPDATE app_user SET email_verified = TRUE, updated_at = now() WHERE id = %s",
                    (user_id,),
                )
            if effect.reset_login_attempts:
                conn.execute(
                    """
                    UPDATE app_user SET failed_login_attempts = 0, locked_until = NULL, updated_at = now()
                    WHERE id = %s
                    """,
                    (user_id,),
                )
        return _row_to_one_time(row)

    # maintenance -----------------------------------------------------------

    def purge_expired(self, now: datetime) -> int:
        with self._connect() as conn:
            refresh = conn.execute(
                "DELETE FROM refresh_token WHERE revoked = TRUE OR expires_at <= %s", (now,)
            ).rowcount
            one_time = conn.execute(
                "DELETE FROM one_time_token WHERE used = TRUE OR expires_at <= %s", (now,)
            ).rowcount
        purged = refresh + one_time
        if purged:
            self.logger.info("expired_tokens_purged", count=purged)
        return purged
