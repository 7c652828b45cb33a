from __future__ import annotations

import json
import logging

import structlog
from fastapi import FastAPI
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from cra_proxy.common import observability


def test_configure_logging_emits_json(caplog, monkeypatch):
    monkeypatch.setattr(observability, "_logging_configured", False)
    configure_logging = observability.configure_logging

    configure_logging("cra_proxy.test", "INFO")
    logger = structlog.get_logger("cra_proxy.test.logger")

    with caplog.at_level(logging.INFO):
        logger.info("structured-event", cache_key="/v1/index.html")

    record = caplog.records[-1]
    payload = json.loads(record.message)
    assert payload["message"] == "structured-event"
    assert payload["cache_key"] == "/v1/index.html"
    assert payload["service"] == "cra_proxy.test"
    assert payload["level"] == "info"


def test_log_level_accepts_names_and_numbers():
    assert observability._log_level("debug") == logging.DEBUG
    assert observability._log_level(logging.WARNING) == logging.WARNING
    assert observability._log_level("not-a-level") == logging.INFO
    assert observability._log_level(None) == logging.INFO


def test_parse_otlp_headers():
    value = "authorization=Bearer token, custom=abc,,broken"
    headers = observability.parse_otlp_headers(value)
    assert headers == {"authorization": "Bearer token", "custom": "abc"}
    assert observability.parse_otlp_headers(None) == {}


def test_instrument_fastapi_app_marks_app(monkeypatch):
    monkeypatch.setattr(observability, "_tracer_configured", False)
    app = FastAPI()
    observability.configure_tracing("cra_proxy.obs", None, None, 1.0)
    observability.instrument_fastapi_app(app)
    assert getattr(app, "_is_instrumented_by_opentelemetry", False)


def test_tracer_provider_without_endpoint_keeps_no_spans():
    provider = observability.build_tracer_provider("cra_proxy.obs")
    try:
        assert provider._active_span_processor._span_processors == ()
        with provider.get_tracer("cra_proxy.test").start_as_current_span("request"):
            pass
    finally:
        provider.shutdown()


def test_tracer_provider_with_endpoint_batches_to_otlp():
    provider = observability.build_tracer_provider(
        "cra_proxy.obs", "http://collector.test:4318/v1/traces", "authorization=Bearer token", 2.0
    )
    try:
        processors = provider._active_span_processor._span_processors
        assert len(processors) == 1
        assert isinstance(processors[0], BatchSpanProcessor)
        assert provider.sampler.rate == 1.0
    finally:
        provider.shutdown()
