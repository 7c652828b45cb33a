from __future__ import annotations

import stat
from pathlib import Path

import pytest

from cra_proxy.proxy.errors import CacheStoreError, MalformedEntryError
from cra_proxy.proxy.store import FILE_MODE, CacheStore, sanitize_key
from cra_proxy.proxy.wire import serialize_response


async def read_body(entry) -> bytes:
    return b"".join([chunk async for chunk in entry.iter_body(chunk_size=4)])


@pytest.mark.asyncio
async def test_put_then_lookup_streams_the_body(tmp_path: Path):
    store = CacheStore(tmp_path)
    raw = serialize_response(200, "OK", [(b"Content-Type", b"text/css")], b"body { color: red }")

    written = await store.put("/v1/static/site.css", raw)
    entry = await store.lookup("/v1/static/site.css")

    assert written == len(raw)
    assert entry is not None
    assert entry.status_code == 200
    assert entry.response_headers() == [("Content-Type", "text/css"), ("Content-Length", "19")]
    assert await read_body(entry) == b"body { color: red }"


@pytest.mark.asyncio
async def test_lookup_miss_returns_none(tmp_path: Path):
    store = CacheStore(tmp_path)
    assert await store.lookup("/v1/index.html") is None


@pytest.mark.asyncio
async def test_put_is_atomic_and_sets_file_mode(tmp_path: Path):
    store = CacheStore(tmp_path)
    await store.put("/v1/index.html", serialize_response(200, "OK", [], b"first"))
    await store.put("/v1/index.html", serialize_response(200, "OK", [], b"second"))

    target = tmp_path / "v1" / "index.html"
    assert [path.name for path in target.parent.iterdir()] == ["index.html"]
    assert stat.S_IMODE(target.stat().st_mode) == FILE_MODE
    entry = await store.lookup("/v1/index.html")
    assert await read_body(entry) == b"second"


@pytest.mark.asyncio
async def test_chunked_entries_are_decoded(tmp_path: Path):
    store = CacheStore(tmp_path)
    entry_path = tmp_path / "v1" / "app.js"
    entry_path.parent.mkdir(parents=True)
    entry_path.write_bytes(
        b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked\r\nContent-Type: text/javascript\r\n\r\n"
        b"3\r\nabc\r\n3\r\ndef\r\n0\r\n\r\n"
    )

    entry = await store.lookup("/v1/app.js")

    assert entry.response_headers() == [("Content-Type", "text/javascript"), ("Content-Length", "6")]
    assert await read_body(entry) == b"abcdef"


@pytest.mark.asyncio
async def test_entries_without_length_read_to_end_of_file(tmp_path: Path):
    store = CacheStore(tmp_path)
    entry_path = tmp_path / "v1" / "index.html"
    entry_path.parent.mkdir(parents=True)
    entry_path.write_bytes(b"HTTP/1.1 200 OK\r\nConnection: close\r\n\r\n<html>until eof</html>")

    entry = await store.lookup("/v1/index.html")

    assert entry.response_headers() == []
    assert await read_body(entry) == b"<html>until eof</html>"


@pytest.mark.asyncio
async def test_body_beyond_content_length_is_not_served(tmp_path: Path):
    store = CacheStore(tmp_path)
    entry_path = tmp_path / "v1" / "index.html"
    entry_path.parent.mkdir(parents=True)
    entry_path.write_bytes(b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\n\r\nhello trailing bytes")

    entry = await store.lookup("/v1/index.html")

    assert await read_body(entry) == b"hello"


@pytest.mark.asyncio
async def test_truncated_entry_is_malformed(tmp_path: Path):
    store = CacheStore(tmp_path)
    entry_path = tmp_path / "v1" / "index.html"
    entry_path.parent.mkdir(parents=True)
    entry_path.write_bytes(b"HTTP/1.1 200 OK\r\nContent-Length: 50\r\n\r\nshort")

    with pytest.raises(MalformedEntryError):
        await store.lookup("/v1/index.html")
    assert entry_path.exists()


@pytest.mark.asyncio
async def test_directory_in_place_of_entry_is_a_store_error(tmp_path: Path):
    store = CacheStore(tmp_path)
    (tmp_path / "v1" / "index.html").mkdir(parents=True)

    with pytest.raises(CacheStoreError):
        await store.lookup("/v1/index.html")


@pytest.mark.asyncio
async def test_write_failure_is_a_store_error(tmp_path: Path):
    store = CacheStore(tmp_path)
    (tmp_path / "v1").write_bytes(b"not a directory")

    with pytest.raises(CacheStoreError) as exc_info:
        await store.put("/v1/index.html", b"HTTP/1.1 200 OK\r\n\r\n")
    assert exc_info.value.cache_key == "/v1/index.html"


def test_sanitize_key_stays_under_root(tmp_path: Path):
    assert sanitize_key(tmp_path, "/v1/index.html") == tmp_path.resolve() / "v1" / "index.html"
    with pytest.raises(CacheStoreError):
        sanitize_key(tmp_path, "/../outside.txt")
    with pytest.raises(CacheStoreError):
        sanitize_key(tmp_path, "/")


def test_status_reports_writable_root(tmp_path: Path):
    assert CacheStore(tmp_path).status()["writable"] is True
    assert CacheStore(tmp_path / "missing").status()["writable"] is False
