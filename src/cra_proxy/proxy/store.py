"""On-disk store of serialized origin responses, keyed by versioned path."""

from __future__ import annotations

import asyncio
import contextlib
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional

import structlog

from .errors import CacheStoreError, MalformedEntryError
from .wire import MAX_HEAD_BYTES, ResponseHead, decode_chunked, split_head


LOGGER = structlog.get_logger("cra_proxy.store")

CHUNK_SIZE = 64 * 1024
DIRECTORY_MODE = 0o770
FILE_MODE = 0o660


def sanitize_key(storage_dir: Path, cache_key: str) -> Path:
    root = storage_dir.resolve()
    candidate = root.joinpath(*[segment for segment in cache_key.split("/") if segment])
    resolved = candidate.resolve(strict=False)
    if resolved == root or not resolved.is_relative_to(root):
        raise CacheStoreError(cache_key, "key resolves outside the cache root")
    return resolved


@dataclass
class CachedEntry:
    """A stored response whose body is read lazily from the open cache file.

    ``body`` is set instead of ``handle`` when the stored body had to be
    decoded up front (chunked transfer coding).
    """

    cache_key: str
    head: ResponseHead
    handle: Optional[BinaryIO] = None
    body_length: Optional[int] = None
    body: Optional[bytes] = None
    _closed: bool = field(default=False, repr=False)

    @property
    def status_code(self) -> int:
        return self.head.status_code

    def response_headers(self) -> list[tuple[str, str]]:
        headers = []
        for name, value in self.head.headers:
            if name.lower() in {"transfer-encoding", "connection", "keep-alive"}:
                continue
            headers.append((name, value))
        if self.body is not None and not any(name.lower() == "content-length" for name, _ in headers):
            headers.append(("Content-Length", str(len(self.body))))
        return headers

    async def iter_body(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        try:
            if self.body is not None:
                if self.body:
                    yield self.body
                return
            if self.handle is None:
                return
            remaining = self.body_length
            while remaining is None or remaining > 0:
                size = chunk_size if remaining is None else min(chunk_size, remaining)
                chunk = await asyncio.to_thread(self.handle.read, size)
                if not chunk:
                    break
                if remaining is not None:
                    remaining -= len(chunk)
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.handle is not None:
            self.handle.close()


class CacheStore:
    """Maps cache keys to files under ``root`` holding complete HTTP responses.

    Entries are written once and never refreshed. Writes go to a temporary
    sibling first and are renamed into place, so a lookup either finds a
    complete entry or none at all.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, cache_key: str) -> Path:
        return sanitize_key(self._root, cache_key)

    async def lookup(self, cache_key: str) -> Optional[CachedEntry]:
        """Return the stored entry for ``cache_key`` or ``None`` on a miss."""

        path = self.path_for(cache_key)
        try:
            return await asyncio.to_thread(self._open_entry, cache_key, path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheStoreError(cache_key, f"read failed: {exc.strerror or exc}") from exc

    async def put(self, cache_key: str, raw_response: bytes) -> int:
        path = self.path_for(cache_key)
        try:
            await asyncio.to_thread(self._write_atomic, path, raw_response)
        except OSError as exc:
            raise CacheStoreError(cache_key, f"write failed: {exc.strerror or exc}") from exc
        LOGGER.info("cache_write", cache_key=cache_key, bytes=len(raw_response))
        return len(raw_response)

    def status(self) -> dict[str, object]:
        root = self._root
        return {
            "backend": "local",
            "storage_path": str(root),
            "writable": root.is_dir() and os.access(root, os.W_OK),
        }

    @staticmethod
    def _open_entry(cache_key: str, path: Path) -> CachedEntry:
        handle = path.open("rb")
        try:
            prefix = handle.read(MAX_HEAD_BYTES)
            head, body_offset = split_head(prefix)
            if head.is_chunked:
                handle.seek(body_offset)
                body = decode_chunked(handle.read())
                handle.close()
                return CachedEntry(cache_key=cache_key, head=head, body=body)

            body_length = head.content_length
            available = os.fstat(handle.fileno()).st_size - body_offset
            if body_length is not None and available < body_length:
                raise MalformedEntryError(
                    f"{cache_key}: body truncated ({available} of {body_length} bytes)"
                )
            handle.seek(body_offset)
            return CachedEntry(cache_key=cache_key, head=head, handle=handle, body_length=body_length)
        except BaseException:
            handle.close()
            raise

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        path.parent.mkdir(mode=DIRECTORY_MODE, parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(temp_name, FILE_MODE)
            os.replace(temp_name, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(temp_name)
            raise
