"""HTTP client for the upstream origin hosting the versioned builds."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx
import structlog

from .errors import OriginUnavailableError
from .wire import serialize_response


LOGGER = structlog.get_logger("cra_proxy.origin")

DEFAULT_TIMEOUT_SECONDS = 10.0

# Escapes already present in a key come from the version segment.
_KEY_SAFE = "/%$&+:=@"
_LONE_PERCENT = re.compile(r"%(?![0-9A-Fa-f]{2})")


@dataclass(frozen=True)
class OriginResponse:
    url: str
    status_code: int
    reason: str
    headers: list[tuple[bytes, bytes]]
    body: bytes

    def serialize(self) -> bytes:
        return serialize_response(self.status_code, self.reason, self.headers, self.body)


class OriginClient:
    """Fetches paths below the origin base URL.

    Status codes are not interpreted: any response the origin manages to send
    is returned as is. Only failures to obtain a response raise
    :class:`OriginUnavailableError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def http(self) -> httpx.AsyncClient:
        return self._client

    def url_for(self, path: str) -> str:
        escaped = _LONE_PERCENT.sub("%25", quote(path.lstrip("/"), safe=_KEY_SAFE))
        return f"{self._base_url}/{escaped}"

    async def fetch(self, path: str) -> OriginResponse:
        url = self.url_for(path)
        start = time.perf_counter()
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            LOGGER.warning("origin_fetch_failed", url=url, error=type(exc).__name__)
            raise OriginUnavailableError(url, str(exc) or type(exc).__name__) from exc

        duration = time.perf_counter() - start
        LOGGER.info(
            "origin_fetch",
            url=url,
            status=response.status_code,
            bytes=len(response.content),
            duration_ms=round(duration * 1000, 2),
        )
        return OriginResponse(
            url=url,
            status_code=response.status_code,
            reason=response.reason_phrase,
            headers=list(response.headers.raw),
            body=response.content,
        )

    async def fetch_text(self, path: str) -> str:
        """Fetch a small text document, requiring a 200 response."""

        result = await self.fetch(path)
        if result.status_code != 200:
            raise OriginUnavailableError(result.url, f"HTTP {result.status_code} {result.reason}".strip())
        return result.body.decode("utf-8", errors="replace").strip()

    async def aclose(self) -> None:
        await self._client.aclose()
