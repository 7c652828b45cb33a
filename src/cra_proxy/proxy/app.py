"""Versioned single-page-application proxy with a local fetch-through cache."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse
import structlog

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import ProxySettings
from .dev_paths import DevPathStage, load_dev_paths
from .origin import OriginClient
from .pipeline import CACHE_HEADER, CacheStage, KeyedLocks, RequestPipeline, RewriteStage, Stage, VersionStage
from .store import DIRECTORY_MODE, CacheStore
from .versions import DefaultVersionCell, DefaultVersionPoller


LOGGER = structlog.get_logger("cra_proxy.app")

OPS_PREFIX = "/_proxy"
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("cra_proxy_requests_total", "Total proxy requests"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "cra_proxy_request_latency_seconds",
        buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Proxy request latency",
    )
)


class ProxyState:
    def __init__(
        self,
        settings: ProxySettings,
        *,
        origin_transport: Optional[httpx.AsyncBaseTransport] = None,
        dev_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.store = CacheStore(settings.cache_dir)
        self.origin = OriginClient(
            settings.source,
            timeout=settings.origin_timeout_seconds,
            transport=origin_transport,
        )
        self.default_version = DefaultVersionCell(settings.default_version or "")
        self.poller: Optional[DefaultVersionPoller] = None
        if settings.default_version is None:
            self.poller = DefaultVersionPoller(
                self.default_version,
                self.origin,
                path=settings.default_version_file,
                interval=settings.default_version_interval_seconds,
                retry_interval=settings.default_version_retry_seconds,
            )
        self.fetch_locks: Optional[KeyedLocks] = KeyedLocks() if settings.serialize_fetches else None
        self.dev_client: Optional[httpx.AsyncClient] = None
        self._dev_transport = dev_transport
        self.pipeline: Optional[RequestPipeline] = None

    async def start(self) -> None:
        self.store.root.mkdir(mode=DIRECTORY_MODE, parents=True, exist_ok=True)
        stages: list[Stage] = []
        if self.settings.dev_paths_file is not None:
            rules = load_dev_paths(self.settings.dev_paths_file)
            self.dev_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.dev_proxy_timeout_seconds),
                transport=self._dev_transport,
            )
            stages.append(DevPathStage(rules, self.dev_client))
            LOGGER.info("dev_paths_loaded", rules=[rule.model_dump() for rule in rules])

        if self.poller is not None:
            await self.poller.bootstrap()
            self.poller.start()
        else:
            LOGGER.info("default_version_fixed", version=self.default_version.get())

        stages.extend(
            [
                VersionStage(self.default_version, cookie_ttl_seconds=self.settings.cookie_ttl_seconds),
                RewriteStage(),
                CacheStage(self.store, self.origin, fetch_locks=self.fetch_locks),
            ]
        )
        self.pipeline = RequestPipeline(stages)
        LOGGER.info(
            "proxy_started",
            origin=self.origin.base_url,
            cache_dir=str(self.store.root),
            serialize_fetches=self.fetch_locks is not None,
        )

    async def stop(self) -> None:
        if self.poller is not None:
            await self.poller.stop()
        if self.dev_client is not None:
            await self.dev_client.aclose()
        await self.origin.aclose()

    def status(self) -> dict[str, object]:
        payload = self.store.status()
        payload.update(
            {
                "origin": self.origin.base_url,
                "default_version": self.default_version.get(),
                "default_version_polled": self.poller is not None,
                "inflight_fetches": len(self.fetch_locks) if self.fetch_locks is not None else None,
            }
        )
        return payload


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy  # type: ignore[attr-defined]


def create_app(
    settings: Optional[ProxySettings] = None,
    *,
    origin_transport: Optional[httpx.AsyncBaseTransport] = None,
    dev_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or ProxySettings()
    configure_logging("cra_proxy", settings.log_level)
    configure_tracing(
        service_name="cra_proxy",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    state = ProxyState(settings, origin_transport=origin_transport, dev_transport=dev_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await state.start()
            yield
        finally:
            await state.stop()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.proxy = state
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        original_path = request.scope["path"]
        REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=original_path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": original_path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
            "cache_key": getattr(request.state, "cache_key", None),
            "version": getattr(request.state, "version", None),
            "cache": response.headers.get(CACHE_HEADER),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.get(f"{OPS_PREFIX}/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: ProxyState = Depends(get_state)) -> dict:
        """Health check for readiness/liveness probes."""
        health = {"status": "healthy", "checks": {}}
        store_status = state.store.status()
        health["checks"]["cache_writable"] = store_status["writable"]
        health["checks"]["pipeline"] = "ready" if state.pipeline is not None else "starting"
        if not store_status["writable"] or state.pipeline is None:
            health["status"] = "unhealthy"
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get(f"{OPS_PREFIX}/status")
    async def status_probe(state: ProxyState = Depends(get_state)) -> dict:
        return state.status()

    @app.get(f"{OPS_PREFIX}/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: ProxyState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, state: ProxyState = Depends(get_state)) -> Response:
        if state.pipeline is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Proxy not started")
        return await state.pipeline.handle(request)

    return app
