from __future__ import annotations

import pytest

from builder.auth.authenticator import Authenticator, build_authenticators, find_authenticated_user
from builder.auth.config import load_auth_config
from builder.auth.errors import AuthorizationError, ConfigurationError
from builder.auth.models import AuthRequest, Authenticated, Redirect, SessionData, StrategySuccess
from builder.auth.session import CookieSessionStore, build_session_stores
from builder.auth.strategy import Strategy, StrategyKind
from conftest import SECRET

APP_URL = "https://app.example.com/auth/x"
BUILDER_URL = "https://p-proj1.app.example.com/auth/x"


class _Static(Strategy):
    kind = StrategyKind.DEV_SECRET

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = 0

    def verify(self, request):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


def _store() -> CookieSessionStore:
    return CookieSessionStore("_session", secret=SECRET, salt="t", max_age=3600, secure=False)


def _req(url: str = APP_URL, cookies=None) -> AuthRequest:
    return AuthRequest(method="POST", url=url, cookies=cookies or {})


def test_dispatches_by_name_and_commits_session() -> None:
    store = _store()
    a, b = _Static(StrategySuccess(SessionData("u1", 1))), _Static(StrategySuccess(SessionData("u2", 2)))
    auth = Authenticator("user", store).use(a, "a").use(b, "b").freeze()

    outcome = auth.authenticate("b", _req())
    assert isinstance(outcome, Authenticated)
    assert outcome.session.user_id == "u2"
    assert (a.calls, b.calls) == (0, 1)

    cookie = outcome.cookies[-1]
    assert cookie["key"] == store.cookie_name
    assert auth.is_authenticated(_req(cookies={cookie["key"]: cookie["value"]})) == SessionData("u2", 2)


def test_strategy_cookies_come_before_session_cookie() -> None:
    extra = {"key": "_ep", "value": "v", "max_age": 1}
    auth = Authenticator("user", _store()).use(_Static(StrategySuccess(SessionData("u1", 1), [extra])), "a")
    outcome = auth.authenticate("a", _req())
    assert outcome.cookies[0] == extra
    assert len(outcome.cookies) == 2


def test_redirect_is_passed_through_without_session() -> None:
    auth = Authenticator("user", _store()).use(_Static(Redirect("https://idp/authorize")), "a")
    outcome = auth.authenticate("a", _req())
    assert isinstance(outcome, Redirect)
    assert outcome.location == "https://idp/authorize"


def test_failure_propagates_and_is_not_retried() -> None:
    s = _Static(error=AuthorizationError("nope"))
    auth = Authenticator("user", _store()).use(s, "a")
    with pytest.raises(AuthorizationError, match="nope"):
        auth.authenticate("a", _req())
    assert s.calls == 1


def test_unknown_name_is_configuration_error() -> None:
    auth = Authenticator("user", _store()).freeze()
    with pytest.raises(ConfigurationError):
        auth.authenticate("github", _req())


def test_registry_is_write_once() -> None:
    auth = Authenticator("user", _store()).use(_Static(), "a")
    with pytest.raises(ConfigurationError):
        auth.use(_Static(), "a")
    auth.freeze()
    with pytest.raises(ConfigurationError):
        auth.use(_Static(), "b")


def test_logout_expires_store_cookie() -> None:
    store = _store()
    kwargs = Authenticator("user", store).logout()
    assert kwargs["key"] == store.cookie_name
    assert kwargs["max_age"] == 0


def _build(directory):
    cfg = load_auth_config()
    return build_authenticators(cfg, users=directory, access=directory, stores=build_session_stores(cfg))


def test_dev_strategy_absent_unless_enabled(auth_env, directory) -> None:
    auth_env.setenv("DEV_LOGIN", "false")
    load_auth_config.cache_clear()
    authenticators = _build(directory)
    assert not authenticators.user.has("dev")
    with pytest.raises(ConfigurationError):
        authenticators.user.authenticate("dev", AuthRequest(method="POST", url=APP_URL, form={"secret": SECRET}))

    auth_env.setenv("DEV_LOGIN", "true")
    load_auth_config.cache_clear()
    assert _build(directory).user.has("dev")


def test_registries_are_separate(auth_env, directory) -> None:
    auth_env.setenv("GH_CLIENT_ID", "gh")
    auth_env.setenv("GH_CLIENT_SECRET", "gh-secret")
    auth_env.setenv("COMMERCE_API_URL", "https://commerce.example.com/")
    load_auth_config.cache_clear()
    authenticators = _build(directory)

    assert sorted(authenticators.user.names()) == ["commerce", "github"]
    assert sorted(authenticators.builder.names()) == ["commerce", "ws"]
    assert authenticators.user.strategy("commerce") is not authenticators.builder.strategy("commerce")
    assert authenticators.user.store is not authenticators.builder.store
    with pytest.raises(ConfigurationError):
        authenticators.user.strategy("ws")
    with pytest.raises(ConfigurationError):
        authenticators.user.use(_Static(), "late")


def test_build_is_repeatable(auth_env, directory) -> None:
    first = _build(directory)
    second = _build(directory)
    assert first.user.names() == second.user.names()
    assert first.builder.names() == second.builder.names()


def test_find_authenticated_user_reads_store_for_host(auth_env, directory) -> None:
    authenticators = _build(directory)
    user = directory.create_or_login_with_dev_secret("a@x.com")
    builder_cookie = authenticators.builder.store.commit({"user": SessionData(user.id, 1).to_dict()})
    cookies = {builder_cookie["key"]: builder_cookie["value"]}

    assert find_authenticated_user(authenticators, directory, _req(BUILDER_URL, cookies)) == user
    # The builder session is not an end-user session.
    assert find_authenticated_user(authenticators, directory, _req(APP_URL, cookies)) is None


def test_find_authenticated_user_swallows_lookup_failure(auth_env, directory) -> None:
    authenticators = _build(directory)
    kwargs = authenticators.user.store.commit({"user": SessionData("u1", 1).to_dict()})

    def boom(user_id):
        raise RuntimeError("db down")

    directory.get_user_by_id = boom
    assert find_authenticated_user(authenticators, directory, _req(cookies={kwargs["key"]: kwargs["value"]})) is None
