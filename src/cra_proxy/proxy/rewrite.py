"""Mapping of (version, request path) pairs onto cache keys."""

from __future__ import annotations

import posixpath
from urllib.parse import quote


APP_SHELL_PATH = "/index.html"

# Reserved characters that may appear unescaped inside a single path segment.
_SEGMENT_SAFE = "$&+:=@"


def escape_version(version: str) -> str:
    """Escape a version token so it forms exactly one path segment."""
    return quote(version, safe=_SEGMENT_SAFE)


def path_ext(path: str) -> str:
    """Return the extension of the last path segment, including the dot."""
    name = path.rsplit("/", 1)[-1]
    index = name.rfind(".")
    return name[index:] if index >= 0 else ""


def clean_path(path: str) -> str:
    """Normalize to a rooted path without empty, ``.`` or ``..`` segments."""
    normalized = posixpath.normpath("/" + path)
    return "/" + normalized.lstrip("/")


def app_path(request_path: str) -> str:
    """Route extensionless requests to the application shell document."""
    if not path_ext(request_path):
        return APP_SHELL_PATH
    return request_path


def rewrite_path(version: str, request_path: str) -> str:
    """Build the cache key ``/{escaped version}/{app path}``.

    >>> rewrite_path("v1", "/settings/profile")
    '/v1/index.html'
    >>> rewrite_path("v2", "/static/../app.js")
    '/v2/app.js'
    """
    return clean_path(f"{escape_version(version)}/{app_path(request_path)}")
