from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from cra_proxy.common.settings import ProxySettings
from cra_proxy.proxy.app import create_app
from cra_proxy.proxy.errors import ConfigurationError
from tests.utils.origin import ORIGIN_URL, FakeOrigin, app_client


OWNER = "José €".encode("utf-8")


class RecordingBackend:
    def __init__(self, fail: bool = False) -> None:
        self.requests: list[httpx.Request] = []
        self.bodies: list[bytes] = []
        self.fail = fail

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(await request.aread())
        if self.fail:
            raise httpx.ConnectError("backend down", request=request)
        return httpx.Response(
            201,
            headers=[
                (b"Content-Type", b"application/json"),
                (b"X-Backend", b"dev"),
                (b"X-Owner", OWNER),
            ],
            content=b'{"created": true}',
        )


def write_rules(tmp_path: Path, rules) -> Path:
    path = tmp_path / "dev-paths.json"
    path.write_text(json.dumps(rules), encoding="utf-8")
    return path


def dev_settings(tmp_path: Path, cache_dir: Path, rules) -> ProxySettings:
    return ProxySettings(
        source=ORIGIN_URL,
        cache_dir=cache_dir,
        default_version="v1",
        dev_paths_file=write_rules(tmp_path, rules),
    )


@pytest.mark.anyio
async def test_dev_prefix_is_forwarded_without_caching(tmp_path: Path, cache_dir: Path, origin: FakeOrigin):
    backend = RecordingBackend()
    settings = dev_settings(
        tmp_path,
        cache_dir,
        [
            {"prefix": "/api/", "target": "http://backend.test"},
            {"prefix": "/", "target": "http://catch-all.test"},
        ],
    )
    app = create_app(settings, origin_transport=origin.transport, dev_transport=httpx.MockTransport(backend.handler))

    async with app_client(app) as client:
        response = await client.post(
            "/api/items?version=v9&page=2",
            content=b"payload",
            headers=[(b"X-Request-Id", b"abc"), (b"X-Owner", OWNER)],
        )

    assert response.status_code == 201
    assert response.json() == {"created": True}
    assert response.headers["x-backend"] == "dev"
    assert (b"x-owner", OWNER) in response.headers.raw
    assert "x-cache" not in response.headers
    assert "set-cookie" not in response.headers

    forwarded = backend.requests[0]
    assert forwarded.method == "POST"
    assert forwarded.url.host == "backend.test"
    assert forwarded.url.path == "/api/items"
    assert forwarded.url.params["page"] == "2"
    assert forwarded.headers["x-request-id"] == "abc"
    assert (b"x-owner", OWNER) in forwarded.headers.raw
    assert backend.bodies == [b"payload"]

    assert origin.calls == []
    assert list(cache_dir.rglob("*")) == []


@pytest.mark.anyio
async def test_unmatched_paths_use_the_cache(tmp_path: Path, cache_dir: Path, origin: FakeOrigin):
    backend = RecordingBackend()
    settings = dev_settings(tmp_path, cache_dir, [{"prefix": "/api/", "target": "http://backend.test"}])
    origin.add("/v1/index.html", "<html>v1</html>")
    app = create_app(settings, origin_transport=origin.transport, dev_transport=httpx.MockTransport(backend.handler))

    async with app_client(app) as client:
        response = await client.get("/apiary")

    assert response.text == "<html>v1</html>"
    assert response.headers["x-cache"] == "miss"
    assert backend.requests == []


@pytest.mark.anyio
async def test_unreachable_dev_target_returns_502(tmp_path: Path, cache_dir: Path, origin: FakeOrigin):
    backend = RecordingBackend(fail=True)
    settings = dev_settings(tmp_path, cache_dir, [{"prefix": "/api/", "target": "http://backend.test"}])
    app = create_app(settings, origin_transport=origin.transport, dev_transport=httpx.MockTransport(backend.handler))

    async with app_client(app) as client:
        response = await client.get("/api/items")

    assert response.status_code == 502
    assert origin.calls == []


@pytest.mark.anyio
async def test_invalid_dev_paths_file_stops_startup(tmp_path: Path, cache_dir: Path, origin: FakeOrigin):
    settings = dev_settings(tmp_path, cache_dir, [{"prefix": "/api/", "target": "ftp://backend.test"}])
    app = create_app(settings, origin_transport=origin.transport)

    with pytest.raises(ConfigurationError):
        async with app_client(app):
            pass
