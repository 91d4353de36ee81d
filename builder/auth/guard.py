"""
Cross-origin cookie guard.

Browsers send "simple" cross-origin requests before any CORS policy is
consulted, so no combination of Access-Control-* headers can stop them.
Instead, cookies are removed from every request that is not same-origin and
not a safe navigation; what is left must authenticate with a header or be
rejected. See https://kevincox.ca/2024/08/24/cors/.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Dict, List, Mapping, MutableMapping, Tuple

from builder.auth.errors import GuardRejection

logger = logging.getLogger(__name__)

AUTH_HEADERS = ("authorization", "x-auth-token")
_DOCUMENT_MODES = frozenset({"navigate", "nested-navigate", "cors", "no-cors"})


class GuardDecision(enum.Enum):
    ALLOW = "allow"
    STRIP_COOKIES = "strip_cookies"
    REJECT = "reject"


def evaluate(method: str, headers: Mapping[str, str]) -> GuardDecision:
    """
    Decide what to do with a request given its fetch metadata.

    `headers` must use lower-case names. First matching rule wins.
    """
    method = (method or "").upper()
    site = (headers.get("sec-fetch-site") or "").lower()
    mode = (headers.get("sec-fetch-mode") or "").lower()
    dest = (headers.get("sec-fetch-dest") or "").lower()

    if site == "same-origin":
        return GuardDecision.ALLOW

    # GET requests shouldn't mutate state so this is safe.
    if method == "GET" and mode == "navigate":
        return GuardDecision.ALLOW

    # Deep links / bookmarks into the app arriving as a document load.
    if method == "GET" and dest == "document" and mode in _DOCUMENT_MODES:
        return GuardDecision.ALLOW

    if any(h in headers for h in AUTH_HEADERS):
        # Not a simple request; a preflight guards it and cookies are gone anyway.
        return GuardDecision.STRIP_COOKIES

    return GuardDecision.REJECT


def _decode_headers(raw: List[Tuple[bytes, bytes]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in raw:
        out[k.decode("latin-1").lower()] = v.decode("latin-1")
    return out


def _scope_url(scope: Mapping[str, Any], headers: Mapping[str, str]) -> str:
    scheme = scope.get("scheme") or "http"
    host = headers.get("host")
    if not host:
        server = scope.get("server") or ("localhost", None)
        host = server[0] if server[1] in (None, 80, 443) else f"{server[0]}:{server[1]}"
    path = scope.get("path") or "/"
    qs = scope.get("query_string") or b""
    url = f"{scheme}://{host}{path}"
    if qs:
        url += "?" + qs.decode("latin-1")
    return url


def prevent_cross_origin_cookie(scope: MutableMapping[str, Any], *, reject: bool = True) -> GuardDecision:
    """
    Apply the guard to an ASGI HTTP scope in place.

    Cookie headers are removed unless the request is allowed unchanged.
    Raises GuardRejection on REJECT when `reject` is true; with `reject=False`
    the request continues cookie-less.
    """
    raw_headers = list(scope.get("headers") or [])
    headers = _decode_headers(raw_headers)
    method = str(scope.get("method") or "GET")
    decision = evaluate(method, headers)

    logger.debug(
        "cross-origin check: method=%s site=%s mode=%s dest=%s decision=%s",
        method,
        headers.get("sec-fetch-site"),
        headers.get("sec-fetch-mode"),
        headers.get("sec-fetch-dest"),
        decision.value,
    )

    if decision is GuardDecision.ALLOW:
        return decision

    scope["headers"] = [(k, v) for k, v in raw_headers if k.lower() != b"cookie"]

    if decision is GuardDecision.REJECT and reject:
        url = _scope_url(scope, headers)
        logger.warning(
            "Cross-origin request blocked: method=%s site=%s mode=%s dest=%s url=%s",
            method,
            headers.get("sec-fetch-site"),
            headers.get("sec-fetch-mode"),
            headers.get("sec-fetch-dest"),
            url,
        )
        raise GuardRejection(url)
    return decision
