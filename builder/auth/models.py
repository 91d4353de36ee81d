from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SessionData:
    """Canonical session record written by every strategy on success."""

    user_id: str
    created_at: int  # epoch millis

    def to_dict(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["SessionData"]:
        if not isinstance(data, dict):
            return None
        user_id = str(data.get("userId") or "").strip()
        if not user_id:
            return None
        try:
            created_at = int(data.get("createdAt") or 0)
        except (TypeError, ValueError):
            return None
        return cls(user_id=user_id, created_at=created_at)


@dataclass(frozen=True)
class ExternalToken:
    """Commerce API bearer token kept in its own cookie, apart from the primary session."""

    access_token: str
    token_type: Optional[str]
    expires_in: Optional[int]
    user_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "tokenType": self.token_type,
            "expiresIn": self.expires_in,
            "userId": self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ExternalToken"]:
        if not isinstance(data, dict):
            return None
        access_token = str(data.get("accessToken") or "")
        user_id = str(data.get("userId") or "")
        if not access_token or not user_id:
            return None
        expires_in = data.get("expiresIn")
        token_type = data.get("tokenType")
        return cls(
            access_token=access_token,
            token_type=str(token_type) if token_type else None,
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
            user_id=user_id,
        )


@dataclass(frozen=True)
class AccessTokenClaims:
    """Decoded project-scoped workstation token."""

    user_id: str
    project_id: str
    issued_at: int  # epoch seconds
    ttl: int  # seconds


@dataclass(frozen=True)
class PkceExchange:
    state: str
    code_verifier: str
    code_challenge: str
    project_id: Optional[str] = None


@dataclass(frozen=True)
class OriginPair:
    request_origin: str
    authorization_server_origin: str


@dataclass(frozen=True)
class User:
    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    image: Optional[str] = None
    provider: Optional[str] = None


@dataclass(frozen=True)
class OAuthProfile:
    """Normalized identity returned by an OAuth provider."""

    provider: str  # github|google
    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    image: Optional[str] = None


@dataclass(frozen=True)
class AuthRequest:
    """
    Framework-neutral snapshot of the inbound request.

    Header names are lower-cased. Strategies only ever see this, never the
    Starlette request, so they can be exercised without an ASGI app.
    """

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    form: Mapping[str, str] = field(default_factory=dict)


CookieKwargs = Dict[str, Any]


@dataclass(frozen=True)
class Redirect:
    location: str
    cookies: List[CookieKwargs] = field(default_factory=list)


@dataclass(frozen=True)
class StrategySuccess:
    """A verified identity plus any cookies the strategy wants set (e.g. external token)."""

    session: SessionData
    cookies: List[CookieKwargs] = field(default_factory=list)


@dataclass(frozen=True)
class Authenticated:
    session: SessionData
    cookies: List[CookieKwargs] = field(default_factory=list)


StrategyResult = Union[Redirect, StrategySuccess]
AuthOutcome = Union[Redirect, Authenticated]
