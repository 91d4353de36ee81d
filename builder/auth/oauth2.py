"""
OAuth2 Authorization Code flow with PKCE.

One attempt moves through:

    INITIATED -> REDIRECTED                                   (first request)
    CALLBACK_RECEIVED -> TOKEN_EXCHANGED -> VERIFIED          (callback request)

and lands in FAILED from any step. The state/verifier pair is not kept in
process memory: it travels in a signed, time-boxed cookie scoped to the
browser that started the attempt, so any server process can finish it.
"""

from __future__ import annotations

import enum
import hmac
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from builder.auth.errors import AuthError, AuthorizationError, ConfigurationError, TransportError
from builder.auth.models import AuthRequest, CookieKwargs, PkceExchange, Redirect, SessionData, StrategySuccess
from builder.auth.strategy import Strategy, StrategyKind
from builder.auth.util import pkce_challenge, random_token

logger = logging.getLogger(__name__)

BINDING_COOKIE_PATH = "/auth"


class PkceState(enum.Enum):
    INITIATED = "initiated"
    REDIRECTED = "redirected"
    CALLBACK_RECEIVED = "callback_received"
    TOKEN_EXCHANGED = "token_exchanged"
    VERIFIED = "verified"
    FAILED = "failed"


@dataclass(frozen=True)
class OAuth2Options:
    client_id: str
    client_secret: str
    authorization_endpoint: str
    token_endpoint: str
    redirect_uri: str
    scopes: Tuple[str, ...] = ()
    # http_basic_auth | request_body
    authenticate_with: str = "request_body"


def create_pkce_exchange(project_id: Optional[str] = None) -> PkceExchange:
    verifier = random_token(32)  # 43 chars (base64url) -> valid PKCE verifier
    return PkceExchange(
        state=random_token(32),
        code_verifier=verifier,
        code_challenge=pkce_challenge(verifier),
        project_id=project_id,
    )


class PkceFlow:
    """Progress of a single authorization attempt."""

    def __init__(self, strategy_name: str):
        self.strategy_name = strategy_name
        self.state = PkceState.INITIATED
        self.history: List[PkceState] = [PkceState.INITIATED]

    def advance(self, state: PkceState) -> None:
        logger.debug("%s: %s -> %s", self.strategy_name, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, reason: str) -> None:
        logger.debug("%s: %s -> failed (%s)", self.strategy_name, self.state.value, reason)
        self.state = PkceState.FAILED
        self.history.append(PkceState.FAILED)


class PkceBinding:
    """Signed cookie carrying {state, codeVerifier, projectId} between redirect and callback."""

    def __init__(self, cookie_name: str, *, secret: str, ttl_seconds: int, secure: bool):
        if not secret:
            raise ConfigurationError("AUTH_SECRET is required for OAuth state binding")
        self.cookie_name = cookie_name
        self.ttl_seconds = ttl_seconds
        self.secure = secure
        self._serializer = URLSafeTimedSerializer(secret_key=secret, salt=f"builder-oauth-{cookie_name}-v1")

    def bind(self, exchange: PkceExchange) -> CookieKwargs:
        raw = json.dumps(
            {"state": exchange.state, "codeVerifier": exchange.code_verifier, "projectId": exchange.project_id},
            separators=(",", ":"),
            sort_keys=True,
        )
        return self._cookie_kwargs(self._serializer.dumps(raw), self.ttl_seconds)

    def recover(self, cookies: Dict[str, str]) -> PkceExchange:
        value = cookies.get(self.cookie_name)
        if not value:
            raise AuthorizationError("missing authorization state")
        try:
            data = json.loads(self._serializer.loads(value, max_age=self.ttl_seconds))
        except (BadSignature, BadTimeSignature, ValueError):
            raise AuthorizationError("invalid or expired authorization state") from None
        if not isinstance(data, dict):
            raise AuthorizationError("invalid or expired authorization state")
        state = str(data.get("state") or "")
        verifier = str(data.get("codeVerifier") or "")
        if not state or not verifier:
            raise AuthorizationError("invalid or expired authorization state")
        project_id = data.get("projectId")
        return PkceExchange(
            state=state,
            code_verifier=verifier,
            code_challenge=pkce_challenge(verifier),
            project_id=str(project_id) if project_id else None,
        )

    def clear(self) -> CookieKwargs:
        return self._cookie_kwargs("", 0)

    def _cookie_kwargs(self, value: str, max_age: int) -> CookieKwargs:
        return {
            "key": self.cookie_name,
            "value": value,
            "max_age": max_age,
            "httponly": True,
            "secure": self.secure,
            "samesite": "lax",
            "path": BINDING_COOKIE_PATH,
        }


class OAuth2Strategy(Strategy):
    """
    Generic Authorization Code + PKCE client.

    Subclasses implement `on_tokens` and may override `resolve_options` to
    compute endpoints per request.
    """

    name = "oauth2"
    kind = StrategyKind.OAUTH_PROVIDER

    def __init__(
        self,
        options: OAuth2Options,
        *,
        secret: str,
        pkce_ttl_seconds: int,
        cookie_secure: bool,
        timeout: float,
    ):
        self.options = options
        self.timeout = timeout
        self.binding = PkceBinding(
            f"_oauth_{self.name}",
            secret=secret,
            ttl_seconds=pkce_ttl_seconds,
            secure=cookie_secure,
        )

    # --- hooks ---

    def resolve_options(self, request: AuthRequest) -> OAuth2Options:
        return self.options

    def bound_project_id(self, request: AuthRequest) -> Optional[str]:
        return None

    def authorization_params(self, request: AuthRequest) -> Dict[str, str]:
        return {}

    def on_tokens(self, tokens: Dict[str, Any], request: AuthRequest) -> SessionData:
        raise NotImplementedError

    # --- flow ---

    def verify(self, request: AuthRequest) -> Redirect | StrategySuccess:
        return self.run(request, PkceFlow(self.name))

    def run(self, request: AuthRequest, flow: PkceFlow) -> Redirect | StrategySuccess:
        try:
            options = self.resolve_options(request)
            if "code" in request.query or "error" in request.query:
                return self._complete(request, options, flow)
            return self._redirect(request, options, flow)
        except AuthError as e:
            flow.fail(str(e))
            raise

    def _redirect(self, request: AuthRequest, options: OAuth2Options, flow: PkceFlow) -> Redirect:
        exchange = create_pkce_exchange(self.bound_project_id(request))
        params = {
            "response_type": "code",
            "client_id": options.client_id,
            "redirect_uri": options.redirect_uri,
            "state": exchange.state,
            "code_challenge": exchange.code_challenge,
            "code_challenge_method": "S256",
        }
        if options.scopes:
            params["scope"] = " ".join(options.scopes)
        params.update(self.authorization_params(request))

        sep = "&" if "?" in options.authorization_endpoint else "?"
        url = f"{options.authorization_endpoint}{sep}{urlencode(params)}"
        flow.advance(PkceState.REDIRECTED)
        return Redirect(location=url, cookies=[self.binding.bind(exchange)])

    def _complete(self, request: AuthRequest, options: OAuth2Options, flow: PkceFlow) -> StrategySuccess:
        flow.advance(PkceState.CALLBACK_RECEIVED)

        error = (request.query.get("error") or "").strip()
        if error:
            raise AuthorizationError(f"authorization server returned error: {error}")

        bound = self.binding.recover(dict(request.cookies))
        received_state = (request.query.get("state") or "").strip()
        if not received_state or not hmac.compare_digest(received_state, bound.state):
            raise AuthorizationError("state mismatch")
        if bound.project_id != self.bound_project_id(request):
            raise AuthorizationError("authorization state was issued for another project")

        code = (request.query.get("code") or "").strip()
        if not code:
            raise AuthorizationError("missing authorization code")

        tokens = self.exchange_code(options, code=code, code_verifier=bound.code_verifier)
        flow.advance(PkceState.TOKEN_EXCHANGED)

        session = self.on_tokens(tokens, request)
        flow.advance(PkceState.VERIFIED)
        return StrategySuccess(session=session, cookies=[self.binding.clear()])

    def exchange_code(self, options: OAuth2Options, *, code: str, code_verifier: str) -> Dict[str, Any]:
        """
        Exchange the authorization code (plus PKCE verifier) at the token endpoint.
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": options.redirect_uri,
            "code_verifier": code_verifier,
        }
        auth = None
        if options.authenticate_with == "http_basic_auth":
            auth = (options.client_id, options.client_secret)
        else:
            payload["client_id"] = options.client_id
            payload["client_secret"] = options.client_secret

        try:
            r = requests.post(
                options.token_endpoint,
                data=payload,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("%s: token endpoint transport error: %s", self.name, type(e).__name__)
            raise TransportError("token endpoint unreachable") from e

        if r.status_code >= 400:
            # Avoid leaking sensitive info; include minimal context.
            raise AuthorizationError(f"Token exchange failed (status={r.status_code})", status=r.status_code)
        try:
            data = r.json()
        except ValueError:
            raise AuthorizationError("Invalid token response", status=r.status_code) from None
        if not isinstance(data, dict):
            raise AuthorizationError("Invalid token response", status=r.status_code)
        if data.get("error"):
            raise AuthorizationError(f"Token exchange failed ({data.get('error')})", payload=data.get("error"))
        if not str(data.get("access_token") or ""):
            raise AuthorizationError("No access token received")
        return data

    def with_options(self, **changes: Any) -> OAuth2Options:
        return replace(self.options, **changes)
