from __future__ import annotations

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

SESSION_TTL_DEFAULT = 30 * 24 * 3600  # 30 days
PKCE_TTL_DEFAULT = 10 * 60
HTTP_TIMEOUT_DEFAULT = 10.0


@dataclass(frozen=True)
class AuthConfig:
    # Signing secret for every cookie, authorization code and access token.
    auth_secret: Optional[str]

    # Session configuration
    session_ttl_seconds: int
    pkce_ttl_seconds: int
    cookie_secure: bool
    # Bumped together with AUTH_SECRET so old cookies are ignored by name.
    cookie_version: str
    http_timeout_seconds: float

    # Deployment (drives OAuth callback URLs)
    deployment_environment: str  # production|staging|development|local
    deployment_url: Optional[str]
    deployment_domain: str
    branch_name: str
    port: int

    # OAuth providers (optional)
    github_client_id: Optional[str]
    github_client_secret: Optional[str]
    google_client_id: Optional[str]
    google_client_secret: Optional[str]

    # Workstation PKCE client (builder <-> main app)
    ws_client_id: Optional[str]
    ws_client_secret: Optional[str]

    # Commerce API password grant
    commerce_api_url: Optional[str]

    # Non-production escape hatch
    dev_login_enabled: bool
    dev_login_default_email: str

    database_url: Optional[str]

    @property
    def github_enabled(self) -> bool:
        return bool(self.github_client_id and self.github_client_secret)

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def ws_enabled(self) -> bool:
        return bool(self.ws_client_id and self.ws_client_secret)

    @property
    def commerce_enabled(self) -> bool:
        return bool(self.commerce_api_url)

    @property
    def callback_origin(self) -> str:
        """Origin that OAuth providers redirect back to (registered with GitHub/Google)."""
        env = self.deployment_environment
        if env == "production" and self.deployment_url:
            return self.deployment_url.rstrip("/")
        if env in ("staging", "development"):
            return f"https://{branch_alias(self.branch_name)}.{env}.{self.deployment_domain}"
        return f"https://{self.deployment_domain}:{self.port}"


def branch_alias(ref: str) -> str:
    """Turn a git ref into a DNS label (`Feature_X.staging` -> `feature-x`)."""
    raw = ref[: -len(".staging")] if ref.endswith(".staging") else ref
    alias = re.sub(r"[^a-zA-Z0-9_-]", "", raw).lower().replace("_", "-")
    return re.sub(r"-+", "-", alias)


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int, floor: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(float(raw)) if raw else default
    except ValueError:
        value = default
    return max(value, floor)


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    Each OAuth provider is enabled only when both its client id and secret are set.
    The dev login strategy is registered only when DEV_LOGIN is truthy.
    """
    deployment_url = _env_str("DEPLOYMENT_URL")
    cookie_secure_env = (os.getenv("AUTH_COOKIE_SECURE", "") or "").strip().lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies when deployed over https; otherwise allow local dev.
        cookie_secure = True if (deployment_url or "").startswith("https://") else False

    try:
        timeout = float((os.getenv("AUTH_HTTP_TIMEOUT_SECONDS", "") or "").strip() or HTTP_TIMEOUT_DEFAULT)
    except ValueError:
        timeout = HTTP_TIMEOUT_DEFAULT
    if timeout <= 0:
        timeout = HTTP_TIMEOUT_DEFAULT

    return AuthConfig(
        auth_secret=_env_str("AUTH_SECRET"),
        session_ttl_seconds=_env_int("AUTH_SESSION_TTL_SECONDS", SESSION_TTL_DEFAULT, 60),
        pkce_ttl_seconds=_env_int("AUTH_PKCE_TTL_SECONDS", PKCE_TTL_DEFAULT, 30),
        cookie_secure=cookie_secure,
        cookie_version=re.sub(r"[^A-Za-z0-9]", "", _env_str("AUTH_COOKIE_VERSION") or "") or "1",
        http_timeout_seconds=timeout,
        deployment_environment=(_env_str("DEPLOYMENT_ENVIRONMENT") or "local").lower(),
        deployment_url=deployment_url,
        deployment_domain=_env_str("DEPLOYMENT_DOMAIN") or "localhost",
        branch_name=_env_str("BRANCH_NAME") or "main",
        port=_env_int("PORT", 5173, 1),
        github_client_id=_env_str("GH_CLIENT_ID"),
        github_client_secret=_env_str("GH_CLIENT_SECRET"),
        google_client_id=_env_str("GOOGLE_CLIENT_ID"),
        google_client_secret=_env_str("GOOGLE_CLIENT_SECRET"),
        ws_client_id=_env_str("AUTH_WS_CLIENT_ID"),
        ws_client_secret=_env_str("AUTH_WS_CLIENT_SECRET"),
        commerce_api_url=(_env_str("COMMERCE_API_URL") or "").rstrip("/") or None,
        dev_login_enabled=_env_bool("DEV_LOGIN"),
        dev_login_default_email=_env_str("DEV_LOGIN_DEFAULT_EMAIL") or "hello@localhost",
        database_url=_env_str("DATABASE_URL"),
    )
