"""Serialization of origin responses into HTTP/1.1 message bytes and back.

A cache entry is a complete HTTP/1.1 response as it would appear on the wire::

    HTTP/1.1 200 OK\\r\\n
    Content-Type: text/html\\r\\n
    Content-Length: 15\\r\\n
    \\r\\n
    <html>v1</html>

Entries written here always carry an exact ``Content-Length``. The parser also
accepts chunked bodies and bodies delimited by end of file, so caches populated
by other HTTP writers stay readable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from http import HTTPStatus
from typing import Iterable, Optional

from .errors import MalformedEntryError


HEADER_TERMINATOR = b"\r\n\r\n"
MAX_HEAD_BYTES = 64 * 1024

_STATUS_LINE = re.compile(r"^HTTP/(\d)\.(\d) (\d{3})(?: (.*))?$")

# Framing is recomputed on write: the stored body is already decoded and complete.
_FRAMING_HEADERS = frozenset(
    {
        "connection",
        "content-encoding",
        "content-length",
        "keep-alive",
        "transfer-encoding",
    }
)


@dataclass(frozen=True)
class ResponseHead:
    status_code: int
    reason: str
    headers: list[tuple[str, str]]

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    @property
    def is_chunked(self) -> bool:
        encoding = self.header("transfer-encoding")
        return bool(encoding) and encoding.split(",")[-1].strip().lower() == "chunked"

    @property
    def content_length(self) -> Optional[int]:
        value = self.header("content-length")
        if value is None:
            return None
        value = value.strip()
        if not value.isdigit():
            raise MalformedEntryError(f"invalid Content-Length {value!r}")
        return int(value)


def serialize_response(
    status_code: int,
    reason: str,
    headers: Iterable[tuple[bytes, bytes]],
    body: bytes,
) -> bytes:
    """Render a full response with its body length fixed by ``Content-Length``.

    Header names and values are written as the origin sent them, so values in
    any charset survive the round trip.
    """

    if not reason:
        try:
            reason = HTTPStatus(status_code).phrase
        except ValueError:
            reason = ""
    lines = [f"HTTP/1.1 {status_code} {reason}".rstrip().encode("latin-1", errors="replace")]
    for name, value in headers:
        if name.decode("latin-1").lower() in _FRAMING_HEADERS:
            continue
        lines.append(name + b": " + value)
    lines.append(b"Content-Length: %d" % len(body))
    return b"\r\n".join(lines) + HEADER_TERMINATOR + body


def split_head(data: bytes) -> tuple[ResponseHead, int]:
    """Parse the status line and headers; return them with the body offset."""

    end = data.find(HEADER_TERMINATOR)
    if end < 0:
        raise MalformedEntryError("response head is not terminated")
    try:
        text = data[:end].decode("latin-1")
    except UnicodeDecodeError as exc:  # pragma: no cover - latin-1 decodes every byte
        raise MalformedEntryError("response head is not latin-1") from exc

    status_line, *header_lines = text.split("\r\n")
    match = _STATUS_LINE.match(status_line)
    if match is None:
        raise MalformedEntryError(f"invalid status line {status_line!r}")

    headers: list[tuple[str, str]] = []
    for line in header_lines:
        name, sep, value = line.partition(":")
        if not sep or not name or name != name.strip():
            raise MalformedEntryError(f"invalid header line {line!r}")
        headers.append((name, value.strip()))

    head = ResponseHead(status_code=int(match.group(3)), reason=match.group(4) or "", headers=headers)
    return head, end + len(HEADER_TERMINATOR)


def decode_chunked(data: bytes) -> bytes:
    """Decode a chunked transfer-coded body, ignoring any trailer section."""

    body = bytearray()
    position = 0
    while True:
        line_end = data.find(b"\r\n", position)
        if line_end < 0:
            raise MalformedEntryError("truncated chunk size line")
        size_field = data[position:line_end].split(b";", 1)[0].strip()
        try:
            size = int(size_field, 16)
        except ValueError as exc:
            raise MalformedEntryError(f"invalid chunk size {size_field!r}") from exc
        position = line_end + 2
        if size == 0:
            return bytes(body)
        chunk_end = position + size
        if data[chunk_end:chunk_end + 2] != b"\r\n":
            raise MalformedEntryError("truncated chunk")
        body.extend(data[position:chunk_end])
        position = chunk_end + 2
