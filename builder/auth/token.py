from __future__ import annotations

import logging
import time
from typing import Optional

import jwt  # PyJWT

from builder.auth.errors import AuthorizationError
from builder.auth.models import AccessTokenClaims, SessionData, now_ms
from builder.auth.origins import parse_builder_url
from builder.auth.users import ProjectAccess

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_TTL_SECONDS = 3600


def create_access_token(
    secret: str,
    *,
    user_id: str,
    project_id: str,
    ttl: int = DEFAULT_TTL_SECONDS,
    now: Optional[int] = None,
) -> str:
    issued_at = int(time.time()) if now is None else int(now)
    claims = {
        "sub": user_id,
        "projectId": project_id,
        "iat": issued_at,
        "exp": issued_at + int(ttl),
    }
    return jwt.encode(claims, secret, algorithm=ALGORITHM)


def read_access_token(token: str, secret: str) -> Optional[AccessTokenClaims]:
    """
    Verify signature and expiry. Returns None for anything that does not check out.
    """
    if not token or not secret:
        return None
    try:
        claims = jwt.decode(
            token,
            key=secret,
            algorithms=[ALGORITHM],
            options={"require": ["sub", "iat", "exp"]},
        )
    except jwt.PyJWTError as e:
        logger.debug("Rejected access token: %s", type(e).__name__)
        return None

    user_id = str(claims.get("sub") or "")
    project_id = str(claims.get("projectId") or "")
    if not user_id or not project_id:
        return None
    issued_at = int(claims["iat"])
    return AccessTokenClaims(
        user_id=user_id,
        project_id=project_id,
        issued_at=issued_at,
        ttl=int(claims["exp"]) - issued_at,
    )


def validate_project_token(
    token: str,
    *,
    request_url: str,
    secret: str,
    access: ProjectAccess,
) -> SessionData:
    """
    Bind a workstation access token to the project addressed by `request_url`.

    Checks run in order: integrity/expiry, project match, then the
    authorization lookup. No claim is trusted before the signature is.
    """
    claims = read_access_token(token, secret)
    if claims is None:
        raise AuthorizationError("invalid or expired access token")

    project_id = parse_builder_url(request_url).project_id
    if claims.project_id != project_id:
        raise AuthorizationError("token projectId and request projectId do not match")

    if not access.is_user_authorized_for_project(claims.user_id, claims.project_id):
        raise AuthorizationError("user does not have access to this project")

    logger.info("Workstation user authenticated: user=%s project=%s", claims.user_id, claims.project_id)
    return SessionData(user_id=claims.user_id, created_at=now_ms())
