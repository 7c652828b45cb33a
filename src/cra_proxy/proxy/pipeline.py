"""Request pipeline: version resolution, path rewriting and fetch-through caching.

A request runs through an ordered list of stages. Each stage receives the
shared :class:`RequestContext` and either returns ``None`` to hand over to the
next stage or a response, which ends the chain. Stages may register response
hooks on the context; the pipeline applies them to whichever response ends the
chain, error responses included.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, Sequence

from fastapi import Request, Response
from fastapi.responses import StreamingResponse
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from .errors import CacheEntryVanishedError, CacheStoreError, OriginUnavailableError, ProxyError
from .origin import OriginClient
from .rewrite import rewrite_path
from .store import CachedEntry, CacheStore
from .versions import VERSION_COOKIE_NAME, VERSION_QUERY_PARAM, VersionDecision, resolve_version


LOGGER = structlog.get_logger("cra_proxy.pipeline")
TRACER = trace.get_tracer("cra_proxy.pipeline")

CACHE_HEADER = "X-Cache"
CACHE_HIT = "hit"
CACHE_MISS = "miss"

HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("cra_proxy_cache_hits_total", "Requests served from the local cache"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("cra_proxy_cache_misses_total", "Requests that missed the local cache"))
ORIGIN_FETCH_COUNTER = GLOBAL_REGISTRY.register(Counter("cra_proxy_origin_fetches_total", "Fetches issued to the origin"))
ORIGIN_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("cra_proxy_origin_errors_total", "Origin fetches that failed before a response arrived")
)
STORE_ERROR_COUNTER = GLOBAL_REGISTRY.register(Counter("cra_proxy_store_errors_total", "Cache store read or write failures"))
FAILED_REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("cra_proxy_failed_requests_total", "Requests answered with an error status")
)
INFLIGHT_FETCHES_GAUGE = GLOBAL_REGISTRY.register(Gauge("cra_proxy_inflight_fetches", "Origin fetches in progress"))


ResponseHook = Callable[[Response], None]


@dataclass
class RequestContext:
    request: Request
    path: str
    decision: Optional[VersionDecision] = None
    cache_key: Optional[str] = None
    cache_status: Optional[str] = None
    response_hooks: list[ResponseHook] = field(default_factory=list)


class Stage(Protocol):
    def __call__(self, ctx: RequestContext) -> Awaitable[Optional[Response]]:  # pragma: no cover - protocol
        ...


class KeyedLocks:
    """One asyncio lock per key, dropped once nobody holds or awaits it."""

    @dataclass
    class _Slot:
        lock: asyncio.Lock = field(default_factory=asyncio.Lock)
        users: int = 0

    def __init__(self) -> None:
        self._slots: dict[str, KeyedLocks._Slot] = {}

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, key: str) -> bool:
        return key in self._slots

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = KeyedLocks._Slot()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]


class VersionStage:
    """Resolve the version and schedule the cookie and cache-control headers."""

    def __init__(self, default_version: Callable[[], str], cookie_ttl_seconds: int = 3600) -> None:
        self._default_version = default_version
        self._cookie_ttl = timedelta(seconds=cookie_ttl_seconds)

    async def __call__(self, ctx: RequestContext) -> Optional[Response]:
        query_values = ctx.request.query_params.getlist(VERSION_QUERY_PARAM)
        decision = resolve_version(
            query_values[0] if query_values else None,
            ctx.request.cookies,
            self._default_version,
        )
        ctx.decision = decision
        if decision.set_cookie or decision.no_store:
            ctx.response_hooks.append(lambda response: self._decorate(response, decision))
        return None

    def _decorate(self, response: Response, decision: VersionDecision) -> None:
        if decision.set_cookie:
            response.set_cookie(
                VERSION_COOKIE_NAME,
                decision.version,
                expires=datetime.now(UTC) + self._cookie_ttl,
                path="/",
                httponly=False,
                samesite=None,
            )
        if decision.no_store:
            response.headers["Cache-Control"] = "no-store"


class RewriteStage:
    async def __call__(self, ctx: RequestContext) -> Optional[Response]:
        if ctx.decision is None:
            raise RuntimeError("RewriteStage requires a resolved version")
        ctx.cache_key = rewrite_path(ctx.decision.version, ctx.path)
        return None


class CacheStage:
    """Serve ``ctx.cache_key`` from the store, filling it from the origin on a miss.

    With ``fetch_locks`` set, concurrent misses for one key wait for a single
    origin fetch and are then served as hits. Without it every missing request
    fetches on its own and the last rename wins.
    """

    def __init__(self, store: CacheStore, origin: OriginClient, fetch_locks: Optional[KeyedLocks] = None) -> None:
        self._store = store
        self._origin = origin
        self._fetch_locks = fetch_locks

    async def __call__(self, ctx: RequestContext) -> Optional[Response]:
        cache_key = ctx.cache_key
        if cache_key is None:
            raise RuntimeError("CacheStage requires a cache key")

        entry = await self._lookup(cache_key)
        if entry is not None:
            return self._serve(ctx, entry, CACHE_HIT)

        MISS_COUNTER.inc()
        LOGGER.info("cache_miss", cache_key=cache_key)
        if self._fetch_locks is None:
            await self._fill(cache_key)
        else:
            async with self._fetch_locks.hold(cache_key):
                entry = await self._lookup(cache_key)
                if entry is None:
                    await self._fill(cache_key)
            if entry is not None:
                return self._serve(ctx, entry, CACHE_HIT)

        entry = await self._lookup(cache_key)
        if entry is None:
            raise CacheEntryVanishedError(cache_key)
        return self._serve(ctx, entry, CACHE_MISS)

    async def _lookup(self, cache_key: str) -> Optional[CachedEntry]:
        with TRACER.start_as_current_span("proxy.lookup", attributes={"cra_proxy.cache_key": cache_key}) as span:
            try:
                entry = await self._store.lookup(cache_key)
            except CacheStoreError:
                STORE_ERROR_COUNTER.inc()
                raise
            span.set_attribute("cra_proxy.hit", entry is not None)
            return entry

    async def _fill(self, cache_key: str) -> None:
        INFLIGHT_FETCHES_GAUGE.inc()
        try:
            with TRACER.start_as_current_span("proxy.fetch", attributes={"cra_proxy.cache_key": cache_key}) as span:
                ORIGIN_FETCH_COUNTER.inc()
                try:
                    fetched = await self._origin.fetch(cache_key)
                except OriginUnavailableError:
                    ORIGIN_ERROR_COUNTER.inc()
                    raise
                span.set_attribute("http.status_code", fetched.status_code)
            with TRACER.start_as_current_span("proxy.persist", attributes={"cra_proxy.cache_key": cache_key}) as span:
                try:
                    written = await self._store.put(cache_key, fetched.serialize())
                except CacheStoreError:
                    STORE_ERROR_COUNTER.inc()
                    raise
                span.set_attribute("cra_proxy.bytes_written", written)
        finally:
            INFLIGHT_FETCHES_GAUGE.dec()

    @staticmethod
    def _serve(ctx: RequestContext, entry: CachedEntry, cache_status: str) -> Response:
        if cache_status == CACHE_HIT:
            HIT_COUNTER.inc()
            LOGGER.debug("cache_hit", cache_key=entry.cache_key, status=entry.status_code)
        ctx.cache_status = cache_status
        response = StreamingResponse(entry.iter_body(), status_code=entry.status_code)
        for name, value in entry.response_headers():
            response.headers.append(name, value)
        response.headers[CACHE_HEADER] = cache_status
        return response


class RequestPipeline:
    def __init__(self, stages: Sequence[Stage]) -> None:
        if not stages:
            raise ValueError("RequestPipeline needs at least one stage")
        self._stages = list(stages)

    @property
    def stages(self) -> list[Stage]:
        return list(self._stages)

    async def handle(self, request: Request) -> Response:
        ctx = RequestContext(request=request, path=request.scope["path"])
        try:
            response = await self._run(ctx)
        except ProxyError as exc:
            FAILED_REQUEST_COUNTER.inc()
            LOGGER.error(
                "proxy_request_failed",
                path=ctx.path,
                cache_key=ctx.cache_key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            response = Response(status_code=exc.status_code)
        for hook in ctx.response_hooks:
            hook(response)
        request.state.cache_key = ctx.cache_key
        request.state.version = ctx.decision.version if ctx.decision else None
        return response

    async def _run(self, ctx: RequestContext) -> Response:
        for stage in self._stages:
            response = await stage(ctx)
            if response is not None:
                return response
        raise RuntimeError("no pipeline stage produced a response")
