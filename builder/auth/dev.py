from __future__ import annotations

import hmac
import logging

from builder.auth.errors import AuthorizationError
from builder.auth.models import AuthRequest, SessionData, StrategySuccess, now_ms
from builder.auth.strategy import Strategy, StrategyKind
from builder.auth.users import UserDirectory

logger = logging.getLogger(__name__)


class DevSecretStrategy(Strategy):
    """
    Non-production login: `secret[:email]` in the `secret` form field.

    Only registered when DEV_LOGIN is on; otherwise the name does not exist.
    """

    kind = StrategyKind.DEV_SECRET

    def __init__(self, *, secret: str, users: UserDirectory, default_email: str):
        self.secret = secret
        self.users = users
        self.default_email = default_email

    def verify(self, request: AuthRequest) -> StrategySuccess:
        value = request.form.get("secret")
        if not value:
            raise AuthorizationError("secret is required")

        secret, _, email = value.partition(":")
        email = email.strip() or self.default_email

        if not self.secret or not hmac.compare_digest(secret.encode("utf-8"), self.secret.encode("utf-8")):
            raise AuthorizationError("secret is incorrect")

        user = self.users.create_or_login_with_dev_secret(email)
        logger.info("dev login for user=%s", user.id)
        return StrategySuccess(session=SessionData(user_id=user.id, created_at=now_ms()))
