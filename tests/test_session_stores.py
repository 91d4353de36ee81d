from __future__ import annotations

import hashlib
from unittest.mock import patch

import pytest

from builder.auth.config import load_auth_config
from builder.auth.errors import ConfigurationError
from builder.auth.models import ExternalToken
from builder.auth.session import (
    EXTERNAL_TOKEN_MAX_AGE,
    CookieSessionStore,
    build_session_stores,
    clear_external_token,
    get_external_token,
    get_external_token_for_user,
    store_external_token,
)

SECRET = "test-secret-key-for-testing-purposes-only"


def _store(
    name: str = "_session",
    *,
    secret: str = SECRET,
    salt: str = "s1",
    secure: bool = False,
    max_age: int = 60,
    version: str = "1",
):
    return CookieSessionStore(name, secret=secret, salt=salt, max_age=max_age, secure=secure, version=version)


def _cookies(kwargs: dict) -> dict:
    return {kwargs["key"]: kwargs["value"]}


def test_commit_and_read() -> None:
    store = _store()
    kwargs = store.commit({"user": {"userId": "u1", "createdAt": 1}})
    assert kwargs["httponly"] is True
    assert kwargs["samesite"] == "lax"
    assert kwargs["path"] == "/"
    assert kwargs["max_age"] == 60
    assert store.read(_cookies(kwargs)) == {"user": {"userId": "u1", "createdAt": 1}}


def test_cookie_name_is_versioned_by_setting() -> None:
    a = _store(secret="secret-a")
    b = _store(secret="secret-b", version="2")
    assert a.cookie_name == "_session_v1"
    assert b.cookie_name == "_session_v2"
    # Rotating the secret with a version bump: the old cookie is simply not found.
    assert b.read(_cookies(a.commit({"x": 1}))) is None


def test_cookie_name_does_not_fingerprint_the_secret(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_SECRET", SECRET)
    monkeypatch.setenv("AUTH_COOKIE_VERSION", "7")
    load_auth_config.cache_clear()
    stores = build_session_stores(load_auth_config())
    load_auth_config.cache_clear()

    digest = hashlib.sha256(SECRET.encode("utf-8")).hexdigest()
    for store in (stores.primary, stores.builder, stores.external_token):
        assert store.cookie_name.endswith("_v7")
        assert digest[:8] not in store.cookie_name


def test_secure_store_uses_host_prefix() -> None:
    store = _store(secure=True)
    assert store.cookie_name.startswith("__Host-_session_")
    assert store.commit({"x": 1})["secure"] is True


def test_tampered_cookie_is_ignored() -> None:
    store = _store()
    kwargs = store.commit({"x": 1})
    assert store.read({kwargs["key"]: kwargs["value"] + "x"}) is None
    assert store.read({kwargs["key"]: "garbage"}) is None
    assert store.read({}) is None


def test_expired_cookie_is_ignored() -> None:
    store = _store(max_age=60)
    with patch("itsdangerous.timed.time.time", return_value=1_000_000):
        kwargs = store.commit({"x": 1})
    with patch("itsdangerous.timed.time.time", return_value=1_000_000 + 61):
        assert store.read(_cookies(kwargs)) is None


def test_destroy_expires_cookie() -> None:
    kwargs = _store().destroy()
    assert kwargs["max_age"] == 0
    assert kwargs["value"] == ""


def test_missing_secret_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        _store(secret="")


def test_stores_are_isolated(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_SECRET", SECRET)
    load_auth_config.cache_clear()
    stores = build_session_stores(load_auth_config())
    names = {stores.primary.cookie_name, stores.builder.cookie_name, stores.external_token.cookie_name}
    assert len(names) == 3
    assert stores.external_token.max_age == EXTERNAL_TOKEN_MAX_AGE == 7 * 24 * 3600

    # Even under the same cookie name a value from one store does not decode in another.
    kwargs = stores.builder.commit({"user": {"userId": "u1", "createdAt": 1}})
    assert stores.primary.read({stores.primary.cookie_name: kwargs["value"]}) is None
    load_auth_config.cache_clear()


def test_external_token_lookup_requires_matching_user() -> None:
    store = _store("_ep_token", salt="ep")
    token = ExternalToken(access_token="t1", token_type="Bearer", expires_in=3600, user_id="u1")
    cookies = _cookies(store_external_token(store, token))

    assert get_external_token(store, cookies) == token
    assert get_external_token_for_user(store, cookies, "u1") == "t1"
    assert get_external_token_for_user(store, cookies, "u2") is None
    assert clear_external_token(store)["max_age"] == 0
