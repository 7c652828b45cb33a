"""Error types raised by the proxy core."""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for failures the request pipeline turns into error responses."""

    status_code = 500


class ConfigurationError(ProxyError):
    """Startup configuration cannot be used; the process must not serve."""


class CacheStoreError(ProxyError):
    """Filesystem failure while reading or writing a cache entry."""

    def __init__(self, cache_key: str, message: str) -> None:
        super().__init__(f"{cache_key}: {message}")
        self.cache_key = cache_key


class MalformedEntryError(ProxyError):
    """A cache file exists but is not a complete serialized HTTP response."""


class CacheEntryVanishedError(ProxyError):
    """An entry written a moment ago was not found on the follow-up lookup."""

    def __init__(self, cache_key: str) -> None:
        super().__init__(f"{cache_key}: cache entry missing after write")
        self.cache_key = cache_key


class OriginUnavailableError(ProxyError):
    """The origin could not be reached or its response could not be read."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"GET {url}: {reason}")
        self.url = url
        self.reason = reason


class DevProxyError(ProxyError):
    """A development forwarding target could not be reached."""

    status_code = 502
