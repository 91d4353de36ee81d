from __future__ import annotations

import enum

from builder.auth.models import AuthRequest, StrategyResult


class StrategyKind(enum.Enum):
    OAUTH_PROVIDER = "oauth_provider"
    PASSWORD_GRANT = "password_grant"
    WORKSTATION_PKCE = "workstation_pkce"
    DEV_SECRET = "dev_secret"


class Strategy:
    """
    A way of proving who the caller is.

    `verify` either asks the HTTP layer to redirect (first leg of an OAuth
    flow) or returns a StrategySuccess. Failures raise AuthorizationError.
    """

    kind: StrategyKind

    def verify(self, request: AuthRequest) -> StrategyResult:
        raise NotImplementedError
