from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from builder.auth.errors import AuthorizationError, ConfigurationError
from builder.auth.models import AuthRequest, SessionData
from builder.auth.oauth2 import OAuth2Options, OAuth2Strategy
from builder.auth.origins import parse_builder_url, resolve_origin_pair
from builder.auth.strategy import StrategyKind
from builder.auth.token import validate_project_token
from builder.auth.users import ProjectAccess

logger = logging.getLogger(__name__)

# Placeholders only; every request recomputes them from its own URL.
_UNRESOLVED = "https://unresolved.invalid"


class WorkstationStrategy(OAuth2Strategy):
    """
    Builder (per-project host) login against the main app acting as
    authorization server.

    Endpoints, callback and scope are derived from the request URL, so one
    deployment can serve every project and environment. The client
    authenticates with HTTP Basic so the token call never depends on cookies.
    """

    name = "ws"
    kind = StrategyKind.WORKSTATION_PKCE

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        access: ProjectAccess,
        secret: str,
        pkce_ttl_seconds: int,
        cookie_secure: bool,
        timeout: float,
    ):
        super().__init__(
            OAuth2Options(
                client_id=client_id,
                client_secret=client_secret,
                authorization_endpoint=f"{_UNRESOLVED}/oauth/ws/authorize",
                token_endpoint=f"{_UNRESOLVED}/oauth/ws/token",
                redirect_uri=f"{_UNRESOLVED}/auth/ws/callback",
                authenticate_with="http_basic_auth",
            ),
            secret=secret,
            pkce_ttl_seconds=pkce_ttl_seconds,
            cookie_secure=cookie_secure,
            timeout=timeout,
        )
        self.access = access
        self.token_secret = client_secret

    def resolve_options(self, request: AuthRequest) -> OAuth2Options:
        origins = resolve_origin_pair(request.url)
        project_id = parse_builder_url(request.url).project_id
        if not project_id:
            raise ConfigurationError("Workstation login requires a project-addressed URL")
        auth_origin = origins.authorization_server_origin
        return self.with_options(
            authorization_endpoint=f"{auth_origin}/oauth/ws/authorize",
            token_endpoint=f"{auth_origin}/oauth/ws/token",
            redirect_uri=f"{origins.request_origin}/auth/ws/callback",
            scopes=(f"project:{project_id}",),
        )

    def bound_project_id(self, request: AuthRequest) -> Optional[str]:
        return parse_builder_url(request.url).project_id

    def on_tokens(self, tokens: Dict[str, Any], request: AuthRequest) -> SessionData:
        access_token = str(tokens.get("access_token") or "")
        if not access_token:
            raise AuthorizationError("No access token received")
        return validate_project_token(
            access_token,
            request_url=request.url,
            secret=self.token_secret,
            access=self.access,
        )
