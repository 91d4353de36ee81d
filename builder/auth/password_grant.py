from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from builder.auth.errors import AuthorizationError, TransportError
from builder.auth.models import AuthRequest, ExternalToken, SessionData, StrategySuccess, now_ms
from builder.auth.session import CookieSessionStore, store_external_token
from builder.auth.strategy import Strategy, StrategyKind
from builder.auth.users import UserDirectory

logger = logging.getLogger(__name__)


def _redact(data: Dict[str, Any]) -> Dict[str, Any]:
    # Keep upstream diagnostics (error, error_description, ...) but never a credential.
    return {k: v for k, v in data.items() if k in ("token_type", "identifier") or "token" not in k}


class PasswordGrantStrategy(Strategy):
    """
    Email/password login exchanged for a commerce API bearer token.

    The upstream token is kept in its own cookie; the primary session only
    ever holds the local user id.
    """

    kind = StrategyKind.PASSWORD_GRANT

    def __init__(
        self,
        *,
        api_url: str,
        users: UserDirectory,
        external_store: CookieSessionStore,
        timeout: float,
    ):
        self.token_endpoint = f"{api_url.rstrip('/')}/oauth/access_token"
        self.users = users
        self.external_store = external_store
        self.timeout = timeout

    def request_token(self, email: str, password: str) -> Dict[str, Any]:
        try:
            r = requests.post(
                self.token_endpoint,
                data={"grant_type": "password", "username": email, "password": password},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("commerce: password grant transport error: %s", type(e).__name__)
            raise TransportError("commerce API unreachable") from e

        if not 200 <= r.status_code < 300:
            raise AuthorizationError(f"Authentication failed (status={r.status_code})", status=r.status_code)

        try:
            data = r.json()
        except ValueError:
            raise AuthorizationError("Invalid token response", status=r.status_code) from None
        if not isinstance(data, dict):
            raise AuthorizationError("Invalid token response", status=r.status_code, payload=data)
        if not data.get("token_type"):
            raise AuthorizationError("Token response has no token_type", payload=_redact(data))
        if not data.get("access_token"):
            raise AuthorizationError("No access token received", payload=_redact(data))
        return data

    def verify(self, request: AuthRequest) -> StrategySuccess:
        email = (request.form.get("email") or "").strip()
        password = request.form.get("password") or ""
        if not email:
            raise AuthorizationError("Email is required")
        if not password:
            raise AuthorizationError("Password is required")

        data = self.request_token(email, password)

        try:
            user = self.users.create_or_login_with_password_grant(email)
        except Exception as e:
            logger.error("commerce: create_or_login_with_password_grant failed: %s", str(e))
            raise

        try:
            expires_in: Optional[int] = int(data.get("expires_in"))
        except (TypeError, ValueError, OverflowError):
            expires_in = None
        token = ExternalToken(
            access_token=str(data["access_token"]),
            token_type=str(data["token_type"]),
            expires_in=expires_in,
            user_id=user.id,
        )
        # No rollback: if this fails the user row above already exists.
        external_cookie = store_external_token(self.external_store, token)

        return StrategySuccess(
            session=SessionData(user_id=user.id, created_at=now_ms()),
            cookies=[external_cookie],
        )
