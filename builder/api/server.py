"""
Builder auth HTTP server.

Serves both the main app origin (end-user login, workstation authorization
server) and per-project builder origins (`p-<projectId>.<domain>`, workstation
login). Every request passes the cross-origin cookie guard first.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List
from urllib.parse import urlencode

import psycopg
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from builder.auth.authenticator import Authenticators, build_authenticators, find_authenticated_user
from builder.auth.config import AuthConfig, load_auth_config
from builder.auth.errors import AuthorizationError, ConfigurationError, GuardRejection
from builder.auth.guard import prevent_cross_origin_cookie
from builder.auth.models import AuthRequest, CookieKwargs, Redirect
from builder.auth.origins import get_request_origin, is_builder_url
from builder.auth.session import clear_external_token
from builder.auth.users import PostgresUserDirectory
from builder.auth.util import sanitize_next_path

logger = logging.getLogger(__name__)

# Unauthenticated liveness probe; carries no session and changes nothing.
_GUARD_EXEMPT_PATHS = frozenset({"/healthz"})
_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")
GENERIC_AUTH_FAILURE = "Authentication failed"


@dataclass(frozen=True)
class AuthRuntime:
    cfg: AuthConfig
    users: PostgresUserDirectory
    authenticators: Authenticators


def _get_db_connection() -> psycopg.Connection:
    dsn = load_auth_config().database_url
    if not dsn:
        raise psycopg.OperationalError("DATABASE_URL is not configured")
    return psycopg.connect(dsn, connect_timeout=10)


def _user_directory(cfg: AuthConfig) -> PostgresUserDirectory:
    if not cfg.database_url:
        logger.warning("DATABASE_URL is not configured; logins will fail until it is set")
    return PostgresUserDirectory(_get_db_connection)


@lru_cache(maxsize=1)
def get_auth_runtime() -> AuthRuntime:
    """
    Build config, session stores and both strategy registries once per process.
    """
    from builder.auth.session import build_session_stores

    cfg = load_auth_config()
    users = _user_directory(cfg)
    authenticators = build_authenticators(cfg, users=users, access=users, stores=build_session_stores(cfg))
    return AuthRuntime(cfg=cfg, users=users, authenticators=authenticators)


async def _auth_request(request: Request) -> AuthRequest:
    form: Dict[str, str] = {}
    content_type = (request.headers.get("content-type") or "").lower()
    if request.method == "POST" and content_type.startswith(_FORM_CONTENT_TYPES):
        raw = await request.form()
        form = {k: v for k, v in raw.items() if isinstance(v, str)}
    return AuthRequest(
        method=request.method,
        url=str(request.url),
        headers={k.lower(): v for k, v in request.headers.items()},
        cookies=dict(request.cookies),
        query=dict(request.query_params),
        form=form,
    )


def _apply_cookies(resp: Response, cookies: List[CookieKwargs]) -> Response:
    for kwargs in cookies:
        resp.set_cookie(**kwargs)
    return resp


def _redirect(location: str, cookies: List[CookieKwargs] | None = None) -> RedirectResponse:
    resp = RedirectResponse(url=location, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    _apply_cookies(resp, cookies or [])
    return resp


app = FastAPI(title="Builder auth")


@app.middleware("http")
async def cross_origin_guard(request: Request, call_next):
    """Strip cookies from cross-origin requests before any handler reads a session."""
    start_time = time.time()
    if request.url.path not in _GUARD_EXEMPT_PATHS:
        try:
            prevent_cross_origin_cookie(request.scope)
        except GuardRejection as e:
            return JSONResponse(status_code=403, content=e.to_payload())
    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise
    process_time = time.time() - start_time
    logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
    return response


@app.exception_handler(ConfigurationError)
async def _configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("Auth configuration error on %s %s: %s", request.method, request.url.path, str(exc))
    return JSONResponse(status_code=500, content={"detail": "Authentication is misconfigured"})


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/auth/mode")
async def auth_mode(request: Request) -> Dict[str, Any]:
    """
    Expose enabled login strategies so the UI can render the right options.
    This endpoint is intentionally public; it returns no secrets.
    """
    rt = get_auth_runtime()
    auth_req = await _auth_request(request)
    authenticator = rt.authenticators.for_request(auth_req)
    names = authenticator.names()
    return {
        "ok": True,
        "registry": authenticator.name,
        "providers": [n for n in names if n != "dev"],
        "devLogin": "dev" in names,
    }


@app.get("/auth/me")
async def auth_me(request: Request) -> Dict[str, Any]:
    rt = get_auth_runtime()
    auth_req = await _auth_request(request)
    # Directory and provider lookups block; keep them off the event loop.
    user = await asyncio.to_thread(find_authenticated_user, rt.authenticators, rt.users, auth_req)
    if user is None:
        # IMPORTANT: no `WWW-Authenticate`; browsers would pop a basic-auth modal.
        raise HTTPException(status_code=401, detail="Unauthorized")
    return {
        "ok": True,
        "user": {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "image": user.image,
            "provider": user.provider,
        },
    }


@app.post("/auth/logout")
async def auth_logout(request: Request) -> JSONResponse:
    rt = get_auth_runtime()
    auth_req = await _auth_request(request)
    authenticator = rt.authenticators.for_request(auth_req)
    resp = JSONResponse(content={"ok": True})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**authenticator.logout())
    resp.set_cookie(**clear_external_token(rt.authenticators.stores.external_token))
    return resp


async def _authenticate(provider: str, request: Request) -> Response:
    rt = get_auth_runtime()
    auth_req = await _auth_request(request)
    authenticator = rt.authenticators.for_request(auth_req)

    if not authenticator.has(provider):
        raise HTTPException(status_code=404, detail="Unknown auth provider")

    try:
        outcome = await asyncio.to_thread(authenticator.authenticate, provider, auth_req)
    except AuthorizationError as e:
        logger.info("Login via %s failed: %s (status=%s)", provider, e.reason, e.status)
        if request.method == "POST":
            return JSONResponse(status_code=401, content={"detail": GENERIC_AUTH_FAILURE})
        return _redirect("/login?" + urlencode({"error": "auth_failed"}))
    except ConfigurationError as e:
        logger.error("Login via %s misconfigured: %s", provider, str(e))
        raise HTTPException(status_code=500, detail="Authentication is misconfigured") from None

    if isinstance(outcome, Redirect):
        return _redirect(outcome.location, outcome.cookies)

    if request.method == "POST":
        resp = JSONResponse(content={"ok": True, "user": {"id": outcome.session.user_id}})
        resp.headers["Cache-Control"] = "no-store"
        return _apply_cookies(resp, outcome.cookies)
    return _redirect("/", outcome.cookies)


@app.get("/auth/{provider}")
async def auth_login(provider: str, request: Request) -> Response:
    """Start a redirect-based login (github, google, ws)."""
    return await _authenticate(provider, request)


@app.get("/auth/{provider}/callback")
async def auth_callback(provider: str, request: Request) -> Response:
    return await _authenticate(provider, request)


@app.post("/auth/{provider}")
async def auth_login_form(provider: str, request: Request) -> Response:
    """Credential form login (commerce, dev)."""
    return await _authenticate(provider, request)


# ---- Workstation authorization server (main app origin only) ----


def _oauth_error(status_code: int, error: str) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content={"error": error})
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.get("/oauth/ws/authorize")
async def ws_authorize(
    request: Request,
    client_id: str = Query(""),
    redirect_uri: str = Query(""),
    response_type: str = Query(""),
    state: str = Query(""),
    scope: str = Query(""),
    code_challenge: str = Query(""),
    code_challenge_method: str = Query(""),
) -> Response:
    from builder.auth.ws_server import OAuthServerError, issue_authorization_code

    rt = get_auth_runtime()
    cfg = rt.cfg
    auth_req = await _auth_request(request)
    if is_builder_url(auth_req.url) or not cfg.ws_enabled:
        raise HTTPException(status_code=404, detail="Not found")
    if response_type != "code" or not state:
        return _oauth_error(400, "invalid_request")

    session = rt.authenticators.user.is_authenticated(auth_req)
    if session is None:
        return_to = sanitize_next_path(f"{request.url.path}?{request.url.query}")
        return _redirect("/login?" + urlencode({"returnTo": return_to}))

    try:
        code = await asyncio.to_thread(
            issue_authorization_code,
            cfg.auth_secret or "",
            expected_client_id=cfg.ws_client_id or "",
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            user_id=session.user_id,
            access=rt.users,
            server_origin=get_request_origin(auth_req.url),
            require_https=cfg.cookie_secure,
        )
    except OAuthServerError as e:
        logger.info("Workstation authorize refused: %s (%s)", e.error, e.reason)
        if e.error == "access_denied":
            return _redirect(f"{redirect_uri}?{urlencode({'error': e.error, 'state': state})}")
        return _oauth_error(400, e.error)
    except AuthorizationError as e:
        logger.warning("Workstation authorize failed: %s", e.reason)
        return _oauth_error(503, "temporarily_unavailable")

    return _redirect(f"{redirect_uri}?{urlencode({'code': code, 'state': state})}")


@app.post("/oauth/ws/token")
async def ws_token(request: Request) -> Response:
    from builder.auth.ws_server import OAuthServerError, exchange_authorization_code

    rt = get_auth_runtime()
    cfg = rt.cfg
    auth_req = await _auth_request(request)
    if is_builder_url(auth_req.url) or not cfg.ws_enabled:
        raise HTTPException(status_code=404, detail="Not found")
    if auth_req.form.get("grant_type") != "authorization_code":
        return _oauth_error(400, "unsupported_grant_type")

    try:
        tokens = await asyncio.to_thread(
            exchange_authorization_code,
            cfg.auth_secret or "",
            client_id=cfg.ws_client_id or "",
            client_secret=cfg.ws_client_secret or "",
            authorization_header=auth_req.headers.get("authorization"),
            code=auth_req.form.get("code") or "",
            code_verifier=auth_req.form.get("code_verifier") or "",
            redirect_uri=auth_req.form.get("redirect_uri") or "",
        )
    except OAuthServerError as e:
        logger.info("Workstation token refused: %s (%s)", e.error, e.reason)
        return _oauth_error(401 if e.error == "invalid_client" else 400, e.error)

    resp = JSONResponse(content=tokens)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    # Fail fast on a broken configuration instead of on the first login.
    get_auth_runtime()

    logger.info("Starting builder auth server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
