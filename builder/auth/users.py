from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

import psycopg

from builder.auth.errors import TransportError
from builder.auth.models import OAuthProfile, User

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    def create_or_login_with_oauth(self, profile: OAuthProfile) -> User: ...

    def create_or_login_with_password_grant(self, email: str) -> User: ...

    def create_or_login_with_dev_secret(self, email: str) -> User: ...

    def get_user_by_id(self, user_id: str) -> Optional[User]: ...


class ProjectAccess(Protocol):
    def is_user_authorized_for_project(self, user_id: str, project_id: str) -> bool: ...


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    email TEXT NOT NULL UNIQUE,
    username TEXT,
    image TEXT,
    provider TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_login_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL REFERENCES users (id),
    is_deleted BOOLEAN NOT NULL DEFAULT FALSE
);

CREATE TABLE IF NOT EXISTS project_members (
    project_id TEXT NOT NULL REFERENCES projects (id),
    user_id TEXT NOT NULL REFERENCES users (id),
    PRIMARY KEY (project_id, user_id)
);
"""

_UPSERT_USER_SQL = """
INSERT INTO users (email, username, image, provider, last_login_at)
VALUES (%s, %s, %s, %s, NOW())
ON CONFLICT (email) DO UPDATE
SET last_login_at = NOW(),
    image = COALESCE(NULLIF(EXCLUDED.image, ''), users.image),
    username = COALESCE(users.username, EXCLUDED.username)
RETURNING id, email, username, image, provider
"""


def ensure_schema(conn: psycopg.Connection) -> None:
    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)
    conn.commit()


def _user_from_row(row) -> User:
    user_id, email, username, image, provider = row
    return User(id=str(user_id), email=email, username=username, image=image or None, provider=provider)


class PostgresUserDirectory:
    """
    UserDirectory + ProjectAccess backed by Postgres.

    `connect` returns a fresh psycopg connection; every call opens and closes
    its own, so instances are safe to share across concurrent requests.
    """

    def __init__(self, connect: Callable[[], psycopg.Connection]):
        self._connect = connect

    def _open(self) -> psycopg.Connection:
        try:
            return self._connect()
        except psycopg.OperationalError as e:
            logger.warning("User directory unavailable: %s", str(e))
            raise TransportError("user directory unavailable") from e

    def _upsert(self, *, email: str, username: Optional[str], image: Optional[str], provider: str) -> User:
        email = email.strip().lower()
        conn = self._open()
        try:
            with conn.cursor() as cur:
                cur.execute(_UPSERT_USER_SQL, (email, username, image or "", provider))
                row = cur.fetchone()
            conn.commit()
        except psycopg.OperationalError as e:
            raise TransportError("user directory unavailable") from e
        finally:
            conn.close()
        if not row:
            raise ValueError("Failed to create user")
        return _user_from_row(row)

    def create_or_login_with_oauth(self, profile: OAuthProfile) -> User:
        if not profile.email:
            raise ValueError("OAuth profile has no email")
        return self._upsert(
            email=profile.email,
            username=profile.username or profile.display_name,
            image=profile.image,
            provider=profile.provider,
        )

    def create_or_login_with_password_grant(self, email: str) -> User:
        return self._upsert(email=email, username=email, image=None, provider="commerce")

    def create_or_login_with_dev_secret(self, email: str) -> User:
        return self._upsert(email=email, username="admin", image=None, provider="dev")

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        conn = self._open()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, email, username, image, provider
                    FROM users
                    WHERE id = %s
                    """,
                    (user_id,),
                )
                row = cur.fetchone()
        except psycopg.OperationalError as e:
            raise TransportError("user directory unavailable") from e
        finally:
            conn.close()
        return _user_from_row(row) if row else None

    def is_user_authorized_for_project(self, user_id: str, project_id: str) -> bool:
        conn = self._open()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT 1
                    FROM projects p
                    LEFT JOIN project_members m ON m.project_id = p.id AND m.user_id = %s
                    WHERE p.id = %s
                      AND p.is_deleted = FALSE
                      AND (p.owner_id = %s OR m.user_id IS NOT NULL)
                    LIMIT 1
                    """,
                    (user_id, project_id, user_id),
                )
                row = cur.fetchone()
        except psycopg.OperationalError as e:
            raise TransportError("project access lookup failed") from e
        finally:
            conn.close()
        return row is not None
