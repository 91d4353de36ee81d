from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from builder.auth.config import AuthConfig
from builder.auth.errors import AuthError, ConfigurationError
from builder.auth.models import AuthOutcome, Authenticated, AuthRequest, CookieKwargs, Redirect, SessionData, User
from builder.auth.origins import is_builder_url
from builder.auth.session import CookieSessionStore, SessionStores
from builder.auth.strategy import Strategy
from builder.auth.users import ProjectAccess, UserDirectory

logger = logging.getLogger(__name__)

SESSION_KEY = "user"


class Authenticator:
    """
    Named strategies sharing one session store.

    Strategies are registered at startup and the registry is frozen
    afterwards; lookups are read-only so concurrent requests need no locking.
    """

    def __init__(self, name: str, store: CookieSessionStore):
        self.name = name
        self.store = store
        self._strategies: Dict[str, Strategy] = {}
        self._frozen = False

    def use(self, strategy: Strategy, name: str) -> "Authenticator":
        if self._frozen:
            raise ConfigurationError(f"{self.name}: cannot register {name!r} after startup")
        if name in self._strategies:
            raise ConfigurationError(f"{self.name}: strategy {name!r} is already registered")
        self._strategies[name] = strategy
        return self

    def freeze(self) -> "Authenticator":
        self._frozen = True
        return self

    def names(self) -> List[str]:
        return list(self._strategies)

    def has(self, name: str) -> bool:
        return name in self._strategies

    def strategy(self, name: str) -> Strategy:
        try:
            return self._strategies[name]
        except KeyError:
            raise ConfigurationError(f"{self.name}: strategy {name!r} is not registered") from None

    def authenticate(self, name: str, request: AuthRequest) -> AuthOutcome:
        """
        Run strategy `name` against `request`.

        On success the session record is committed to this authenticator's
        store and returned together with every cookie the response must set.
        Errors propagate untouched; nothing is retried.
        """
        strategy = self.strategy(name)
        try:
            result = strategy.verify(request)
        except AuthError as e:
            logger.info("%s/%s: authentication failed: %s", self.name, name, str(e))
            raise

        if isinstance(result, Redirect):
            return result

        cookies: List[CookieKwargs] = list(result.cookies)
        cookies.append(self.store.commit({SESSION_KEY: result.session.to_dict(), "strategy": name}))
        logger.info("%s/%s: authenticated user=%s", self.name, name, result.session.user_id)
        return Authenticated(session=result.session, cookies=cookies)

    def is_authenticated(self, request: AuthRequest) -> Optional[SessionData]:
        data = self.store.read(request.cookies)
        if data is None:
            return None
        return SessionData.from_dict(data.get(SESSION_KEY))

    def logout(self) -> CookieKwargs:
        return self.store.destroy()


@dataclass(frozen=True)
class Authenticators:
    user: Authenticator
    builder: Authenticator
    stores: SessionStores

    def for_request(self, request: AuthRequest) -> Authenticator:
        return self.builder if is_builder_url(request.url) else self.user


def build_authenticators(
    cfg: AuthConfig,
    *,
    users: UserDirectory,
    access: ProjectAccess,
    stores: SessionStores,
) -> Authenticators:
    """
    Register every enabled strategy once and freeze both registries.

    The end-user and builder registries never share a strategy instance or a
    session store: a workstation token can't become an end-user session.
    """
    from builder.auth.dev import DevSecretStrategy
    from builder.auth.password_grant import PasswordGrantStrategy
    from builder.auth.providers import GitHubStrategy, GoogleStrategy
    from builder.auth.workstation import WorkstationStrategy

    user = Authenticator("user", stores.primary)
    builder = Authenticator("builder", stores.builder)
    secret = cfg.auth_secret or ""

    if cfg.github_enabled:
        user.use(
            GitHubStrategy(
                client_id=cfg.github_client_id or "",
                client_secret=cfg.github_client_secret or "",
                callback_origin=cfg.callback_origin,
                users=users,
                secret=secret,
                pkce_ttl_seconds=cfg.pkce_ttl_seconds,
                cookie_secure=cfg.cookie_secure,
                timeout=cfg.http_timeout_seconds,
            ),
            "github",
        )

    if cfg.google_enabled:
        user.use(
            GoogleStrategy(
                client_id=cfg.google_client_id or "",
                client_secret=cfg.google_client_secret or "",
                callback_origin=cfg.callback_origin,
                users=users,
                secret=secret,
                pkce_ttl_seconds=cfg.pkce_ttl_seconds,
                cookie_secure=cfg.cookie_secure,
                timeout=cfg.http_timeout_seconds,
            ),
            "google",
        )

    if cfg.commerce_enabled:
        for registry in (user, builder):
            registry.use(
                PasswordGrantStrategy(
                    api_url=cfg.commerce_api_url or "",
                    users=users,
                    external_store=stores.external_token,
                    timeout=cfg.http_timeout_seconds,
                ),
                "commerce",
            )

    if cfg.dev_login_enabled:
        user.use(
            DevSecretStrategy(secret=secret, users=users, default_email=cfg.dev_login_default_email),
            "dev",
        )

    if cfg.ws_enabled:
        builder.use(
            WorkstationStrategy(
                client_id=cfg.ws_client_id or "",
                client_secret=cfg.ws_client_secret or "",
                access=access,
                secret=secret,
                pkce_ttl_seconds=cfg.pkce_ttl_seconds,
                cookie_secure=cfg.cookie_secure,
                timeout=cfg.http_timeout_seconds,
            ),
            "ws",
        )

    user.freeze()
    builder.freeze()
    logger.info("Auth strategies: user=%s builder=%s", user.names(), builder.names())
    return Authenticators(user=user, builder=builder, stores=stores)


def find_authenticated_user(
    authenticators: Authenticators, users: UserDirectory, request: AuthRequest
) -> Optional[User]:
    session = authenticators.for_request(request).is_authenticated(request)
    if session is None:
        return None
    try:
        return users.get_user_by_id(session.user_id)
    except Exception as e:
        logger.warning("User lookup failed for session user=%s: %s", session.user_id, str(e))
        return None
