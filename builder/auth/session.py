from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from builder.auth.config import AuthConfig
from builder.auth.errors import ConfigurationError
from builder.auth.models import CookieKwargs, ExternalToken

logger = logging.getLogger(__name__)

EXTERNAL_TOKEN_MAX_AGE = 7 * 24 * 3600  # 7 days
EXTERNAL_TOKEN_KEY = "epToken"


class CookieSessionStore:
    """
    One signed, time-boxed cookie holding a small JSON object.

    Each store has its own salt, so a value minted by one store never
    decodes in another even though they share the secret.
    """

    def __init__(self, name: str, *, secret: str, salt: str, max_age: int, secure: bool, version: str = "1"):
        if not secret:
            raise ConfigurationError("AUTH_SECRET is required for session cookies")
        self.max_age = max_age
        self.secure = secure
        # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
        base = f"{name}_v{version}"
        self.cookie_name = f"__Host-{base}" if secure else base
        self._serializer = URLSafeTimedSerializer(secret_key=secret, salt=salt)

    def read(self, cookies: Mapping[str, str]) -> Optional[Dict[str, Any]]:
        value = cookies.get(self.cookie_name)
        if not value:
            return None
        try:
            raw = self._serializer.loads(value, max_age=self.max_age)
            data = json.loads(raw)
        except (BadSignature, BadTimeSignature, ValueError):
            logger.debug("Discarding unreadable cookie %s", self.cookie_name)
            return None
        return data if isinstance(data, dict) else None

    def dumps(self, data: Mapping[str, Any]) -> str:
        raw = json.dumps(dict(data), separators=(",", ":"), sort_keys=True)
        return self._serializer.dumps(raw)

    def commit(self, data: Mapping[str, Any]) -> CookieKwargs:
        return self._cookie_kwargs(self.dumps(data), self.max_age)

    def destroy(self) -> CookieKwargs:
        return self._cookie_kwargs("", 0)

    def _cookie_kwargs(self, value: str, max_age: int) -> CookieKwargs:
        return {
            "key": self.cookie_name,
            "value": value,
            "max_age": max_age,
            "httponly": True,
            "secure": self.secure,
            "samesite": "lax",
            "path": "/",
        }


@dataclass(frozen=True)
class SessionStores:
    primary: CookieSessionStore
    builder: CookieSessionStore
    external_token: CookieSessionStore


def build_session_stores(cfg: AuthConfig) -> SessionStores:
    secret = cfg.auth_secret or ""
    return SessionStores(
        primary=CookieSessionStore(
            "_session",
            secret=secret,
            salt="builder-session-v1",
            max_age=cfg.session_ttl_seconds,
            secure=cfg.cookie_secure,
            version=cfg.cookie_version,
        ),
        builder=CookieSessionStore(
            "_builder_session",
            secret=secret,
            salt="builder-project-session-v1",
            max_age=cfg.session_ttl_seconds,
            secure=cfg.cookie_secure,
            version=cfg.cookie_version,
        ),
        external_token=CookieSessionStore(
            "_ep_token",
            secret=secret,
            salt="builder-external-token-v1",
            max_age=EXTERNAL_TOKEN_MAX_AGE,
            secure=cfg.cookie_secure,
            version=cfg.cookie_version,
        ),
    )


def store_external_token(store: CookieSessionStore, token: ExternalToken) -> CookieKwargs:
    return store.commit({EXTERNAL_TOKEN_KEY: token.to_dict()})


def get_external_token(store: CookieSessionStore, cookies: Mapping[str, str]) -> Optional[ExternalToken]:
    data = store.read(cookies)
    if data is None:
        return None
    return ExternalToken.from_dict(data.get(EXTERNAL_TOKEN_KEY))


def get_external_token_for_user(
    store: CookieSessionStore, cookies: Mapping[str, str], user_id: str
) -> Optional[str]:
    """Return the commerce access token only if it was issued to `user_id`."""
    token = get_external_token(store, cookies)
    if token is None or token.user_id != user_id:
        return None
    return token.access_token


def clear_external_token(store: CookieSessionStore) -> CookieKwargs:
    return store.destroy()
