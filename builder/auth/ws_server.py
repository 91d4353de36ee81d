"""
Authorization-server side of the workstation flow.

Runs on the main app origin. An authorization code is a short-lived signed
blob carrying the PKCE challenge, so the token endpoint can verify the
verifier without server-side storage.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlsplit

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from builder.auth.errors import AuthorizationError
from builder.auth.origins import parse_builder_url
from builder.auth.token import DEFAULT_TTL_SECONDS, create_access_token
from builder.auth.users import ProjectAccess
from builder.auth.util import pkce_challenge

logger = logging.getLogger(__name__)

CODE_TTL_SECONDS = 60
CODE_SALT = "builder-ws-code-v1"
CALLBACK_PATH = "/auth/ws/callback"
SCOPE_PREFIX = "project:"


class OAuthServerError(AuthorizationError):
    """AuthorizationError tagged with an RFC 6749 error code."""

    def __init__(self, error: str, reason: str):
        super().__init__(reason)
        self.error = error

    def to_payload(self) -> Dict[str, str]:
        # error_description stays generic; the reason is for logs.
        return {"error": self.error}


def _code_serializer(secret: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key=secret, salt=CODE_SALT)


def project_from_scope(scope: str) -> Optional[str]:
    for item in (scope or "").split():
        if item.startswith(SCOPE_PREFIX) and len(item) > len(SCOPE_PREFIX):
            return item[len(SCOPE_PREFIX) :]
    return None


def issue_authorization_code(
    secret: str,
    *,
    expected_client_id: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    code_challenge: str,
    code_challenge_method: str,
    user_id: str,
    access: ProjectAccess,
    server_origin: str,
    require_https: bool = False,
) -> str:
    if not client_id or not hmac.compare_digest(client_id, expected_client_id):
        raise OAuthServerError("invalid_client", "unknown client_id")
    if code_challenge_method != "S256" or not code_challenge:
        raise OAuthServerError("invalid_request", "PKCE S256 code_challenge is required")

    project_id = project_from_scope(scope)
    if not project_id:
        raise OAuthServerError("invalid_scope", "scope must name exactly one project")

    # The callback must live on that project's builder origin under this server.
    parts = urlsplit(redirect_uri or "")
    try:
        builder = parse_builder_url(redirect_uri or "")
    except ValueError:
        raise OAuthServerError("invalid_request", "redirect_uri must be absolute") from None
    if parts.path != CALLBACK_PATH or builder.project_id != project_id:
        raise OAuthServerError("invalid_request", "redirect_uri does not belong to the requested project")
    if builder.source_origin != server_origin:
        raise OAuthServerError("invalid_request", "redirect_uri is not served by this authorization server")
    if require_https and parts.scheme != "https":
        raise OAuthServerError("invalid_request", "redirect_uri must use https")

    if not access.is_user_authorized_for_project(user_id, project_id):
        raise OAuthServerError("access_denied", "user does not have access to this project")

    payload = json.dumps(
        {
            "userId": user_id,
            "projectId": project_id,
            "codeChallenge": code_challenge,
            "redirectUri": redirect_uri,
        },
        separators=(",", ":"),
        sort_keys=True,
    )
    logger.info("Issued workstation code: user=%s project=%s", user_id, project_id)
    return _code_serializer(secret).dumps(payload)


def parse_basic_auth(header: Optional[str]) -> Optional[tuple]:
    raw = (header or "").strip()
    if not raw.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(raw[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, client_secret = decoded.split(":", 1)
    return unquote(client_id), unquote(client_secret)


def exchange_authorization_code(
    secret: str,
    *,
    client_id: str,
    client_secret: str,
    authorization_header: Optional[str],
    code: str,
    code_verifier: str,
    redirect_uri: str,
    token_ttl: int = DEFAULT_TTL_SECONDS,
) -> Dict[str, Any]:
    creds = parse_basic_auth(authorization_header)
    if creds is None:
        raise OAuthServerError("invalid_client", "HTTP Basic client authentication is required")
    if not (hmac.compare_digest(creds[0], client_id) and hmac.compare_digest(creds[1], client_secret)):
        raise OAuthServerError("invalid_client", "client authentication failed")

    if not code or not code_verifier or not code_verifier.isascii():
        raise OAuthServerError("invalid_request", "code and code_verifier are required")
    try:
        data = json.loads(_code_serializer(secret).loads(code, max_age=CODE_TTL_SECONDS))
    except (BadSignature, BadTimeSignature, ValueError):
        raise OAuthServerError("invalid_grant", "invalid or expired authorization code") from None
    if not isinstance(data, dict):
        raise OAuthServerError("invalid_grant", "invalid or expired authorization code")

    if data.get("redirectUri") != redirect_uri:
        raise OAuthServerError("invalid_grant", "redirect_uri mismatch")
    if not hmac.compare_digest(pkce_challenge(code_verifier), str(data.get("codeChallenge") or "")):
        raise OAuthServerError("invalid_grant", "code_verifier does not match code_challenge")

    token = create_access_token(
        client_secret,
        user_id=str(data["userId"]),
        project_id=str(data["projectId"]),
        ttl=token_ttl,
    )
    return {"access_token": token, "token_type": "Bearer", "expires_in": token_ttl}
