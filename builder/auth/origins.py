"""
Origin resolution for project-addressed URLs.

Builder hosts carry the project in their first DNS label:

    https://p-<projectId>.example.com            -> auth server https://example.com
    https://p-<projectId>-dot-<branch>.example.com -> auth server https://<branch>.example.com

Every other host is the main app, which also acts as the workstation
authorization server.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from builder.auth.errors import ConfigurationError
from builder.auth.models import OriginPair

BUILDER_PREFIX = "p-"
BRANCH_SEPARATOR = "-dot-"


@dataclass(frozen=True)
class BuilderUrl:
    project_id: Optional[str]
    source_origin: str


def _origin(scheme: str, host: str, port: Optional[int]) -> str:
    if port is None:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def get_request_origin(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        raise ValueError(f"Not an absolute URL: {url!r}")
    return _origin(parts.scheme, parts.hostname, parts.port)


def parse_builder_url(url: str) -> BuilderUrl:
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        raise ValueError(f"Not an absolute URL: {url!r}")

    labels = parts.hostname.split(".")
    first = labels[0]
    if len(labels) < 2 or not first.startswith(BUILDER_PREFIX) or len(first) <= len(BUILDER_PREFIX):
        return BuilderUrl(project_id=None, source_origin=_origin(parts.scheme, parts.hostname, parts.port))

    rest = first[len(BUILDER_PREFIX) :]
    source_labels = labels[1:]
    if BRANCH_SEPARATOR in rest:
        project_id, branch = rest.split(BRANCH_SEPARATOR, 1)
        if branch:
            source_labels = [branch, *source_labels]
    else:
        project_id = rest
    if not project_id:
        return BuilderUrl(project_id=None, source_origin=_origin(parts.scheme, parts.hostname, parts.port))

    return BuilderUrl(
        project_id=project_id,
        source_origin=_origin(parts.scheme, ".".join(source_labels), parts.port),
    )


def is_builder_url(url: str) -> bool:
    return parse_builder_url(url).project_id is not None


def get_authorization_server_origin(url: str) -> str:
    return parse_builder_url(url).source_origin


def resolve_origin_pair(url: str) -> OriginPair:
    """
    Compute the relying-party and authorization-server origins for `url`.

    Raises ConfigurationError when both resolve to the same origin.
    """
    pair = OriginPair(
        request_origin=get_request_origin(url),
        authorization_server_origin=get_authorization_server_origin(url),
    )
    if pair.request_origin == pair.authorization_server_origin:
        raise ConfigurationError("Origin and authorization server origin cannot be the same")
    return pair
