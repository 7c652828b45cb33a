"""Version selection: explicit override, sticky cookie, or the process default."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

import structlog

from .errors import ConfigurationError, OriginUnavailableError
from .origin import OriginClient


LOGGER = structlog.get_logger("cra_proxy.versions")

VERSION_QUERY_PARAM = "version"
VERSION_COOKIE_NAME = "version-override"

SOURCE_QUERY = "query"
SOURCE_COOKIE = "cookie"
SOURCE_DEFAULT = "default"


@dataclass(frozen=True)
class VersionDecision:
    """Resolved version plus what the response must carry because of it."""

    version: str
    source: str

    @property
    def set_cookie(self) -> bool:
        return self.source != SOURCE_DEFAULT

    @property
    def no_store(self) -> bool:
        return self.source != SOURCE_DEFAULT


def resolve_version(
    query_version: Optional[str],
    cookies: Mapping[str, str],
    default_version: Callable[[], str],
) -> VersionDecision:
    """Pick the version for a request.

    A non-empty ``version`` query parameter wins, then an existing
    ``version-override`` cookie (its value is used even when empty), then the
    current default. The returned token is raw; callers escape it before
    building paths.
    """

    if query_version:
        return VersionDecision(version=query_version, source=SOURCE_QUERY)
    if VERSION_COOKIE_NAME in cookies:
        return VersionDecision(version=cookies[VERSION_COOKIE_NAME], source=SOURCE_COOKIE)
    return VersionDecision(version=default_version(), source=SOURCE_DEFAULT)


class DefaultVersionCell:
    """Process-wide default version shared by request handlers and the poller."""

    def __init__(self, initial: str = "") -> None:
        self._lock = threading.Lock()
        self._value = initial

    def get(self) -> str:
        with self._lock:
            return self._value

    __call__ = get

    def replace(self, value: str) -> str:
        """Store ``value`` and return the previous one."""
        with self._lock:
            previous, self._value = self._value, value
            return previous

    def compare_and_swap(self, expected: str, value: str) -> bool:
        with self._lock:
            if self._value != expected:
                return False
            self._value = value
            return True


class DefaultVersionPoller:
    """Keeps a :class:`DefaultVersionCell` in sync with a file on the origin."""

    def __init__(
        self,
        cell: DefaultVersionCell,
        origin: OriginClient,
        *,
        path: str = "default-version.txt",
        interval: float = 60.0,
        retry_interval: float = 5.0,
    ) -> None:
        self._cell = cell
        self._origin = origin
        self._path = path
        self._interval = interval
        self._retry_interval = retry_interval
        self._task: Optional[asyncio.Task] = None

    async def fetch_version(self) -> str:
        return await self._origin.fetch_text(self._path)

    async def bootstrap(self) -> str:
        """Load the initial default; the proxy cannot serve without one."""

        try:
            version = await self.fetch_version()
        except OriginUnavailableError as exc:
            raise ConfigurationError(f"Fetching default version: {exc}") from exc
        self._cell.replace(version)
        LOGGER.info("default_version_loaded", version=version)
        return version

    async def poll_once(self) -> bool:
        """Refresh the cell once; return whether the fetch succeeded."""

        try:
            version = await self.fetch_version()
        except OriginUnavailableError as exc:
            LOGGER.warning("default_version_poll_failed", error=str(exc))
            return False
        previous = self._cell.replace(version)
        if previous != version:
            LOGGER.info("default_version_updated", previous=previous, version=version)
        return True

    async def run(self) -> None:
        while True:
            ok = await self.poll_once()
            await asyncio.sleep(self._interval if ok else self._retry_interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="default-version-poller")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
