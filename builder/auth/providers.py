"""GitHub and Google login (end-user registry)."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from builder.auth.errors import AuthorizationError, TransportError
from builder.auth.models import AuthRequest, OAuthProfile, SessionData, now_ms
from builder.auth.oauth2 import OAuth2Options, OAuth2Strategy
from builder.auth.users import UserDirectory

logger = logging.getLogger(__name__)


def auth_callback_path(provider: str) -> str:
    return f"/auth/{provider}/callback"


class ProviderStrategy(OAuth2Strategy):
    """OAuth provider with static endpoints and a profile API."""

    authorization_endpoint = ""
    token_endpoint = ""
    scopes: tuple = ()

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        callback_origin: str,
        users: UserDirectory,
        secret: str,
        pkce_ttl_seconds: int,
        cookie_secure: bool,
        timeout: float,
    ):
        super().__init__(
            OAuth2Options(
                client_id=client_id,
                client_secret=client_secret,
                authorization_endpoint=self.authorization_endpoint,
                token_endpoint=self.token_endpoint,
                redirect_uri=f"{callback_origin.rstrip('/')}{auth_callback_path(self.name)}",
                scopes=tuple(self.scopes),
                authenticate_with="request_body",
            ),
            secret=secret,
            pkce_ttl_seconds=pkce_ttl_seconds,
            cookie_secure=cookie_secure,
            timeout=timeout,
        )
        self.users = users

    def fetch_profile(self, access_token: str) -> OAuthProfile:
        raise NotImplementedError

    def _get_json(self, url: str, access_token: str) -> Any:
        try:
            r = requests.get(
                url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("%s: profile API transport error: %s", self.name, type(e).__name__)
            raise TransportError("profile API unreachable") from e
        if r.status_code >= 400:
            raise AuthorizationError(f"Profile request failed (status={r.status_code})", status=r.status_code)
        try:
            return r.json()
        except ValueError:
            raise AuthorizationError("Invalid profile response", status=r.status_code) from None

    def on_tokens(self, tokens: Dict[str, Any], request: AuthRequest) -> SessionData:
        profile = self.fetch_profile(str(tokens.get("access_token") or ""))
        if not profile.email:
            raise AuthorizationError("Missing email in provider profile")
        try:
            user = self.users.create_or_login_with_oauth(profile)
        except Exception as e:
            logger.error("%s: create_or_login_with_oauth failed: %s", self.name, str(e))
            raise
        return SessionData(user_id=user.id, created_at=now_ms())


class GitHubStrategy(ProviderStrategy):
    name = "github"
    authorization_endpoint = "https://github.com/login/oauth/authorize"
    token_endpoint = "https://github.com/login/oauth/access_token"
    scopes = ("user:email",)
    api_url = "https://api.github.com"

    def fetch_profile(self, access_token: str) -> OAuthProfile:
        data = self._get_json(f"{self.api_url}/user", access_token)
        if not isinstance(data, dict) or data.get("id") is None:
            raise AuthorizationError("Invalid GitHub profile")

        email: Optional[str] = str(data.get("email") or "").strip().lower() or None
        if email is None:
            # Private primary email: only visible through /user/emails.
            emails = self._get_json(f"{self.api_url}/user/emails", access_token)
            if isinstance(emails, list):
                for e in emails:
                    if isinstance(e, dict) and e.get("primary") and e.get("verified"):
                        email = str(e.get("email") or "").strip().lower() or None
                        break

        return OAuthProfile(
            provider=self.name,
            id=str(data.get("id")),
            email=email,
            username=str(data.get("login") or "") or None,
            display_name=str(data.get("name") or "") or None,
            image=str(data.get("avatar_url") or "") or None,
        )


class GoogleStrategy(ProviderStrategy):
    name = "google"
    authorization_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"
    scopes = ("openid", "email", "profile")
    userinfo_endpoint = "https://openidconnect.googleapis.com/v1/userinfo"

    def authorization_params(self, request: AuthRequest) -> Dict[str, str]:
        return {"prompt": "select_account"}

    def fetch_profile(self, access_token: str) -> OAuthProfile:
        data = self._get_json(self.userinfo_endpoint, access_token)
        if not isinstance(data, dict) or not data.get("sub"):
            raise AuthorizationError("Invalid Google profile")

        # Some providers may not include email_verified claim; treat as optional
        email_verified = data.get("email_verified")
        if email_verified is not None and email_verified is not True:
            raise AuthorizationError("Email not verified")

        return OAuthProfile(
            provider=self.name,
            id=str(data.get("sub")),
            email=str(data.get("email") or "").strip().lower() or None,
            username=None,
            display_name=str(data.get("name") or "") or None,
            image=str(data.get("picture") or "") or None,
        )
