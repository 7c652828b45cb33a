"""Development forwarding of selected path prefixes to another backend.

Requests whose path starts with a configured prefix bypass version resolution
and the cache entirely and are relayed to the rule's target, keeping path,
query string, method, headers and body.
"""

from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Optional, Sequence
from urllib.parse import quote

import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, TypeAdapter, ValidationError, field_validator
import structlog

from .errors import ConfigurationError, DevProxyError
from .pipeline import RequestContext


LOGGER = structlog.get_logger("cra_proxy.dev_paths")

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
_DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "host"}


class DevPathRule(BaseModel):
    prefix: str
    target: str

    @field_validator("target")
    @classmethod
    def _validate_target(cls, value: str) -> str:
        try:
            url = httpx.URL(value)
        except httpx.InvalidURL as exc:
            raise ValueError(f"invalid target url {value!r}") from exc
        if url.scheme not in {"http", "https"} or not url.host:
            raise ValueError(f"invalid target url {value!r}")
        return value


_RULES_ADAPTER = TypeAdapter(list[DevPathRule])


def load_dev_paths(path: Path) -> list[DevPathRule]:
    """Read ``[{"prefix": ..., "target": ...}, ...]`` from a JSON file."""

    try:
        payload = Path(path).read_bytes()
    except OSError as exc:
        raise ConfigurationError(f"Loading dev paths from {path}: {exc}") from exc
    try:
        return _RULES_ADAPTER.validate_json(payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Loading dev paths from {path}: {exc}") from exc


class DevPathStage:
    def __init__(self, rules: Sequence[DevPathRule], client: httpx.AsyncClient) -> None:
        self._rules = list(rules)
        self._client = client

    def match(self, path: str) -> Optional[DevPathRule]:
        for rule in self._rules:
            if path.startswith(rule.prefix):
                return rule
        return None

    async def __call__(self, ctx: RequestContext) -> Optional[Response]:
        rule = self.match(ctx.path)
        if rule is None:
            return None
        return await self._forward(ctx, rule)

    async def _forward(self, ctx: RequestContext, rule: DevPathRule) -> Response:
        request = ctx.request
        raw_path = request.scope.get("raw_path") or quote(request.scope["path"]).encode("ascii")
        raw_path = raw_path.split(b"?", 1)[0]
        query = request.scope.get("query_string") or b""
        url = httpx.URL(rule.target).copy_with(raw_path=raw_path + (b"?" + query if query else b""))
        headers = [
            (name, value)
            for name, value in request.headers.raw
            if name.decode("latin-1").lower() not in _DROPPED_REQUEST_HEADERS
        ]
        outgoing = self._client.build_request(
            request.method,
            url,
            headers=headers,
            content=await request.body(),
        )
        LOGGER.info("dev_proxy", prefix=rule.prefix, url=str(url), method=request.method)
        try:
            upstream = await self._client.send(outgoing, stream=True)
        except httpx.HTTPError as exc:
            raise DevProxyError(f"{request.method} {url}: {exc}") from exc

        async def body() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_raw():
                    yield chunk
            finally:
                await upstream.aclose()

        response = StreamingResponse(body(), status_code=upstream.status_code)
        for name, value in upstream.headers.raw:
            if name.decode("latin-1").lower() in HOP_BY_HOP_HEADERS:
                continue
            response.raw_headers.append((name.lower(), value))
        return response
