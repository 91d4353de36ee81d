"""
Pytest config.

Local imports like `import builder` rely on the repo root being on sys.path.
In some environments (e.g. when invoking a global `pytest` entrypoint), that
doesn't happen reliably during collection, so we pin it here.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from builder.auth.models import OAuthProfile, User  # noqa: E402

SECRET = "test-secret-key-for-testing-purposes-only"
WS_CLIENT_ID = "ws-client"
WS_CLIENT_SECRET = "ws-client-secret-for-tests"
PROJECT_ID = "0f5e2c6a-1111-4c4c-9d9d-abcdefabcdef"


class FakeDirectory:
    """In-memory UserDirectory + ProjectAccess."""

    def __init__(self) -> None:
        self.by_id: Dict[str, User] = {}
        self.grants: Set[Tuple[str, str]] = set()
        self.calls: List[Tuple[str, str]] = []

    def _login(self, email: str, provider: str) -> User:
        for u in self.by_id.values():
            if u.email == email:
                return u
        user = User(id=f"user-{len(self.by_id) + 1}", email=email, username=email, provider=provider)
        self.by_id[user.id] = user
        return user

    def create_or_login_with_oauth(self, profile: OAuthProfile) -> User:
        self.calls.append(("oauth", profile.email or ""))
        return self._login(profile.email or "", profile.provider)

    def create_or_login_with_password_grant(self, email: str) -> User:
        self.calls.append(("commerce", email))
        return self._login(email, "commerce")

    def create_or_login_with_dev_secret(self, email: str) -> User:
        self.calls.append(("dev", email))
        return self._login(email, "dev")

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self.by_id.get(user_id)

    def grant(self, user_id: str, project_id: str) -> None:
        self.grants.add((user_id, project_id))

    def is_user_authorized_for_project(self, user_id: str, project_id: str) -> bool:
        self.calls.append(("access", f"{user_id}:{project_id}"))
        return (user_id, project_id) in self.grants


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def auth_env(monkeypatch: pytest.MonkeyPatch):
    """Baseline environment for the auth server; individual tests add providers."""
    from builder.api import server
    from builder.auth.config import load_auth_config

    for name in (
        "GH_CLIENT_ID",
        "GH_CLIENT_SECRET",
        "GOOGLE_CLIENT_ID",
        "GOOGLE_CLIENT_SECRET",
        "COMMERCE_API_URL",
        "DEV_LOGIN",
        "AUTH_COOKIE_SECURE",
        "AUTH_COOKIE_VERSION",
        "DEPLOYMENT_URL",
        "DATABASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AUTH_SECRET", SECRET)
    monkeypatch.setenv("AUTH_WS_CLIENT_ID", WS_CLIENT_ID)
    monkeypatch.setenv("AUTH_WS_CLIENT_SECRET", WS_CLIENT_SECRET)
    load_auth_config.cache_clear()
    server.get_auth_runtime.cache_clear()
    yield monkeypatch
    load_auth_config.cache_clear()
    server.get_auth_runtime.cache_clear()
