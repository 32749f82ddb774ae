from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from kokoru.logging import get_logger
from kokoru.storage.errors import ConstraintViolation, StoreUnavailable
from kokoru.storage.models import (
    MUTABLE_IDENTITY_FIELDS,
    AuthProvider,
    Identity,
    utcnow,
)

_IDENTITY_COLUMNS = (
    "id",
    "email",
    "first_name",
    "last_name",
    "password_hash",
    "auth_provider",
    "google_id",
    "profile_image_url",
    "is_email_verified",
    "email_verification_token",
    "email_verification_expires",
    "password_reset_token",
    "password_reset_expires",
    "password_changed_at",
    "refresh_token",
    "login_attempts",
    "locked_until",
    "last_login_at",
    "has_logged_in",
    "has_completed_onboarding",
    "onboarding_step",
    "created_at",
    "updated_at",
)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS identity (
    id UUID PRIMARY KEY,
    email VARCHAR(255) NOT NULL,
    first_name VARCHAR(100) NOT NULL DEFAULT '',
    last_name VARCHAR(100) NOT NULL DEFAULT '',
    password_hash TEXT,
    auth_provider VARCHAR(20) NOT NULL DEFAULT 'local',
    google_id VARCHAR(100) UNIQUE,
    profile_image_url TEXT,
    is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    email_verification_token CHAR(64),
    email_verification_expires TIMESTAMPTZ,
    password_reset_token CHAR(64),
    password_reset_expires TIMESTAMPTZ,
    password_changed_at TIMESTAMPTZ,
    refresh_token TEXT,
    login_attempts INTEGER NOT NULL DEFAULT 0,
    locked_until TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    has_logged_in BOOLEAN NOT NULL DEFAULT FALSE,
    has_completed_onboarding BOOLEAN NOT NULL DEFAULT FALSE,
    onboarding_step INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT identity_password_matches_provider CHECK (
        (auth_provider = 'local' AND password_hash IS NOT NULL)
        OR (auth_provider = 'google' AND password_hash IS NULL)
    )
);
CREATE UNIQUE INDEX IF NOT EXISTS identity_email_lower_idx ON identity (lower(email));
CREATE INDEX IF NOT EXISTS identity_verification_token_idx ON identity (email_verification_token);
CREATE INDEX IF NOT EXISTS identity_reset_token_idx ON identity (password_reset_token);
CREATE INDEX IF NOT EXISTS identity_refresh_token_idx ON identity (refresh_token);
"""


class PostgresStore:
    """Postgres-backed identity store.

    Every connection carries a ``statement_timeout`` so a stuck query fails
    instead of hanging the request.
    """

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_ms: int = 3000,
        min_size: int = 1,
        max_size: int = 10,
        bulk_update_limit: int = 100,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.bulk_update_limit = bulk_update_limit
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
            open=True,
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def ensure_schema(self) -> None:
        """Create the ``identity`` table and its indexes if they are missing."""

        with self._connect() as conn:
            conn.execute(_SCHEMA_SQL)

    @staticmethod
    def _identity_from_row(row: Dict[str, Any]) -> Identity:
        values = {column: row.get(column) for column in _IDENTITY_COLUMNS}
        values["id"] = str(values["id"])
        values["auth_provider"] = AuthProvider(values["auth_provider"] or "local")
        values["first_name"] = values["first_name"] or ""
        values["last_name"] = values["last_name"] or ""
        values["login_attempts"] = int(values["login_attempts"] or 0)
        values["onboarding_step"] = int(values["onboarding_step"] or 0)
        if isinstance(values["email_verification_token"], str):
            values["email_verification_token"] = values["email_verification_token"].strip()
        if isinstance(values["password_reset_token"], str):
            values["password_reset_token"] = values["password_reset_token"].strip()
        return Identity(**values)

    def _fetch_one(self, query: Any, params: Sequence[Any]) -> Optional[Identity]:
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.QueryCanceled as exc:
            raise StoreUnavailable("identity query timed out") from exc
        except errors.OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return self._identity_from_row(row) if row else None

    def create_identity(self, identity: Identity) -> Identity:
        columns = list(_IDENTITY_COLUMNS)
        values = []
        for column in columns:
            value = getattr(identity, column)
            if column == "auth_provider":
                value = AuthProvider(value).value
            elif column == "email":
                value = value.lower()
            values.append(value)
        query = sql.SQL("INSERT INTO identity ({}) VALUES ({}) RETURNING *").format(
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, values).fetchone()
        except errors.UniqueViolation as exc:
            field = "google_id" if "google_id" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        except errors.OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return self._identity_from_row(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        return self._fetch_one("SELECT * FROM identity WHERE id = %s", (identity_id,))

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return self._fetch_one(
            "SELECT * FROM identity WHERE lower(email) = lower(%s)", (email.strip(),)
        )

    def get_identity_by_google_id(self, google_id: str) -> Optional[Identity]:
        return self._fetch_one("SELECT * FROM identity WHERE google_id = %s", (google_id,))

    def get_identity_by_verification_token(
        self, token_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[Identity]:
        return self._fetch_one(
            """
            SELECT * FROM identity
            WHERE email_verification_token = %s AND email_verification_expires > %s
            """,
            (token_hash, now or utcnow()),
        )

    def get_identity_by_reset_token(
        self, token_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[Identity]:
        return self._fetch_one(
            """
            SELECT * FROM identity
            WHERE password_reset_token = %s AND password_reset_expires > %s
            """,
            (token_hash, now or utcnow()),
        )

    def get_identity_by_refresh_token(self, refresh_token: str) -> Optional[Identity]:
        return self._fetch_one(
            "SELECT * FROM identity WHERE refresh_token = %s", (refresh_token,)
        )

    @staticmethod
    def _assignments(fields: Dict[str, Any]) -> tuple[sql.Composed, list[Any]]:
        unknown = set(fields) - MUTABLE_IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"unknown identity fields: {sorted(unknown)}")
        params: list[Any] = []
        parts = []
        for column, value in fields.items():
            if column == "auth_provider" and value is not None:
                value = AuthProvider(value).value
            elif column == "email" and value:
                value = value.lower()
            parts.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
            params.append(value)
        parts.append(sql.SQL("updated_at = now()"))
        return sql.SQL(", ").join(parts), params

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]:
        assignments, params = self._assignments(fields)
        query = sql.SQL("UPDATE identity SET {} WHERE id = %s RETURNING *").format(assignments)
        try:
            return self._fetch_one(query, [*params, identity_id])
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def delete_identity(self, identity_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM identity WHERE id = %s", (identity_id,))
            return cur.rowcount > 0

    def increment_login_attempts(self, identity_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity SET login_attempts = login_attempts + 1, updated_at = now()
                WHERE id = %s RETURNING login_attempts
                """,
                (identity_id,),
            ).fetchone()
        return int(row["login_attempts"]) if row else 0

    def reset_login_attempts(self, identity_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE identity SET login_attempts = 0, locked_until = NULL, updated_at = now()
                WHERE id = %s
                """,
                (identity_id,),
            )
            return cur.rowcount > 0

    def lock_identity(self, identity_id: str, until: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE identity SET locked_until = %s, updated_at = now() WHERE id = %s",
                (until, identity_id),
            )
            return cur.rowcount > 0

    def bulk_update_identities(self, identity_ids: Sequence[str], **fields) -> int:
        if len(identity_ids) > self.bulk_update_limit:
            raise ValueError(f"bulk update limited to {self.bulk_update_limit} identities")
        if not identity_ids:
            return 0
        assignments, params = self._assignments(fields)
        query = sql.SQL("UPDATE identity SET {} WHERE id = ANY(%s)").format(assignments)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    cur = conn.execute(query, [*params, list(identity_ids)])
                    return cur.rowcount
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def get_identity_stats(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    count(*) AS total,
                    count(*) FILTER (WHERE is_email_verified) AS verified,
                    count(*) FILTER (WHERE NOT is_email_verified) AS unverified,
                    count(*) FILTER (WHERE auth_provider = 'google') AS google_users,
                    count(*) FILTER (WHERE locked_until > %s) AS locked_users
                FROM identity
                """,
                (now or utcnow(),),
            ).fetchone()
        return {key: int(row[key] or 0) for key in ("total", "verified", "unverified", "google_users", "locked_users")}
