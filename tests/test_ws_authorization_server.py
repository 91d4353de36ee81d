from __future__ import annotations

import base64
from unittest.mock import patch

import pytest

from builder.auth.oauth2 import create_pkce_exchange
from builder.auth.token import read_access_token
from builder.auth.ws_server import (
    OAuthServerError,
    exchange_authorization_code,
    issue_authorization_code,
    parse_basic_auth,
    project_from_scope,
)
from conftest import PROJECT_ID, SECRET, WS_CLIENT_ID, WS_CLIENT_SECRET

REDIRECT = f"https://p-{PROJECT_ID}.example.com/auth/ws/callback"


def _basic(client_id: str = WS_CLIENT_ID, client_secret: str = WS_CLIENT_SECRET) -> str:
    return "Basic " + base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()


def _issue(directory, exchange, **overrides) -> str:
    kwargs = dict(
        expected_client_id=WS_CLIENT_ID,
        client_id=WS_CLIENT_ID,
        redirect_uri=REDIRECT,
        scope=f"project:{PROJECT_ID}",
        code_challenge=exchange.code_challenge,
        code_challenge_method="S256",
        user_id="u1",
        access=directory,
        server_origin="https://example.com",
    )
    kwargs.update(overrides)
    return issue_authorization_code(SECRET, **kwargs)


def _exchange(code: str, verifier: str, **overrides):
    kwargs = dict(
        client_id=WS_CLIENT_ID,
        client_secret=WS_CLIENT_SECRET,
        authorization_header=_basic(),
        code=code,
        code_verifier=verifier,
        redirect_uri=REDIRECT,
    )
    kwargs.update(overrides)
    return exchange_authorization_code(SECRET, **kwargs)


@pytest.fixture
def granted(directory):
    directory.grant("u1", PROJECT_ID)
    return directory


def test_code_exchange_issues_project_scoped_token(granted) -> None:
    ex = create_pkce_exchange(PROJECT_ID)
    tokens = _exchange(_issue(granted, ex), ex.code_verifier)
    assert tokens["token_type"] == "Bearer"
    assert tokens["expires_in"] == 3600
    claims = read_access_token(tokens["access_token"], WS_CLIENT_SECRET)
    assert (claims.user_id, claims.project_id) == ("u1", PROJECT_ID)


def test_wrong_verifier_is_invalid_grant(granted) -> None:
    ex = create_pkce_exchange(PROJECT_ID)
    code = _issue(granted, ex)
    with pytest.raises(OAuthServerError) as ei:
        _exchange(code, create_pkce_exchange().code_verifier)
    assert ei.value.error == "invalid_grant"


def test_tampered_code_is_invalid_grant(granted) -> None:
    ex = create_pkce_exchange(PROJECT_ID)
    code = _issue(granted, ex)
    with pytest.raises(OAuthServerError) as ei:
        _exchange(("B" if code[0] == "A" else "A") + code[1:], ex.code_verifier)
    assert ei.value.error == "invalid_grant"


def test_expired_code_is_invalid_grant(granted) -> None:
    ex = create_pkce_exchange(PROJECT_ID)
    with patch("itsdangerous.timed.time.time", return_value=3_000_000):
        code = _issue(granted, ex)
    with patch("itsdangerous.timed.time.time", return_value=3_000_000 + 61):
        with pytest.raises(OAuthServerError) as ei:
            _exchange(code, ex.code_verifier)
    assert ei.value.error == "invalid_grant"


def test_redirect_uri_must_match_at_exchange(granted) -> None:
    ex = create_pkce_exchange(PROJECT_ID)
    code = _issue(granted, ex)
    with pytest.raises(OAuthServerError) as ei:
        _exchange(code, ex.code_verifier, redirect_uri=REDIRECT + "x")
    assert ei.value.error == "invalid_grant"


@pytest.mark.parametrize(
    "header",
    [None, "", "Bearer abc", "Basic !!!", _basic(client_secret="wrong"), _basic(client_id="other")],
)
def test_client_must_authenticate_with_basic(granted, header) -> None:
    ex = create_pkce_exchange(PROJECT_ID)
    code = _issue(granted, ex)
    with pytest.raises(OAuthServerError) as ei:
        _exchange(code, ex.code_verifier, authorization_header=header)
    assert ei.value.error == "invalid_client"


def test_authorize_requires_project_access(directory) -> None:
    with pytest.raises(OAuthServerError) as ei:
        _issue(directory, create_pkce_exchange(PROJECT_ID))
    assert ei.value.error == "access_denied"


@pytest.mark.parametrize(
    "overrides,error",
    [
        ({"client_id": "nope"}, "invalid_client"),
        ({"code_challenge_method": "plain"}, "invalid_request"),
        ({"code_challenge": ""}, "invalid_request"),
        ({"scope": "openid"}, "invalid_scope"),
        ({"redirect_uri": "https://evil.example.net/auth/ws/callback"}, "invalid_request"),
        ({"redirect_uri": "https://p-other.example.com/auth/ws/callback"}, "invalid_request"),
        ({"redirect_uri": f"https://p-{PROJECT_ID}.example.com/elsewhere"}, "invalid_request"),
        ({"redirect_uri": f"https://p-{PROJECT_ID}.evil.example/auth/ws/callback"}, "invalid_request"),
        ({"redirect_uri": f"https://p-{PROJECT_ID}-dot-main.example.com/auth/ws/callback"}, "invalid_request"),
        ({"redirect_uri": "/auth/ws/callback"}, "invalid_request"),
        (
            {
                "redirect_uri": f"http://p-{PROJECT_ID}.example.com/auth/ws/callback",
                "server_origin": "http://example.com",
                "require_https": True,
            },
            "invalid_request",
        ),
    ],
)
def test_authorize_request_validation(granted, overrides, error) -> None:
    with pytest.raises(OAuthServerError) as ei:
        _issue(granted, create_pkce_exchange(PROJECT_ID), **overrides)
    assert ei.value.error == error


def test_scope_and_basic_parsing() -> None:
    assert project_from_scope("openid project:abc") == "abc"
    assert project_from_scope("project:") is None
    assert parse_basic_auth(_basic("a%3Ab", "s:t")) == ("a:b", "s:t")
    assert parse_basic_auth("Basic " + base64.b64encode(b"nocolon").decode()) is None


def test_redirect_on_another_apex_never_reaches_access_check(granted) -> None:
    # A project builder host under a foreign apex is refused before any redirect is built.
    with pytest.raises(OAuthServerError) as ei:
        _issue(
            granted,
            create_pkce_exchange(PROJECT_ID),
            redirect_uri=f"https://p-{PROJECT_ID}.evil.example/auth/ws/callback",
        )
    assert ei.value.error == "invalid_request"


def test_branch_builder_redirect_matches_branch_server(granted) -> None:
    ex = create_pkce_exchange(PROJECT_ID)
    redirect = f"https://p-{PROJECT_ID}-dot-main.example.com/auth/ws/callback"
    code = _issue(granted, ex, redirect_uri=redirect, server_origin="https://main.example.com", require_https=True)
    tokens = _exchange(code, ex.code_verifier, redirect_uri=redirect)
    assert read_access_token(tokens["access_token"], WS_CLIENT_SECRET).project_id == PROJECT_ID
