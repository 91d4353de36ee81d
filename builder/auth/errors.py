from __future__ import annotations

from typing import Any, Dict, Optional


class AuthError(Exception):
    """Base class for all authentication failures."""


class ConfigurationError(AuthError):
    """
    Fatal misconfiguration.

    Raised for unknown or duplicate strategy names, registration after the
    registry is frozen, a missing signing secret, or an authorization server
    colocated with the relying party.
    """


class AuthorizationError(AuthError):
    """
    Expected, per-attempt authentication failure.

    `reason` is meant for logs only; HTTP handlers show a generic message.
    """

    def __init__(self, reason: str, *, status: Optional[int] = None, payload: Any = None):
        super().__init__(reason)
        self.reason = reason
        self.status = status
        self.payload = payload


class TransportError(AuthorizationError):
    """Network failure or timeout while talking to an upstream identity service."""


class GuardRejection(AuthError):
    """Cross-origin request carrying no credentials other than (stripped) cookies."""

    reason = "cross_origin_request"

    def __init__(self, url: str):
        super().__init__(f"Cross-origin request to {url}")
        self.url = url

    def to_payload(self) -> Dict[str, str]:
        return {"message": str(self), "reason": self.reason, "url": self.url}
