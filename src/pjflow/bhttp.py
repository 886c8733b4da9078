"""
Binary HTTP messages (RFC 9292), known-length form.

Only what the OHTTP tunnel needs: one request or response per message,
no informational responses, empty trailers. Trailing zero padding is
accepted on decode.
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field

import httpx


FRAMING_REQUEST_KNOWN_LENGTH = 0
FRAMING_RESPONSE_KNOWN_LENGTH = 1


def encode_varint(value: int) -> bytes:
    if value < 0x40:
        return value.to_bytes(1, "big")
    if value < 0x4000:
        return (value | 0x4000).to_bytes(2, "big")
    if value < 0x40000000:
        return (value | 0x80000000).to_bytes(4, "big")
    if value < 0x4000000000000000:
        return (value | 0xC000000000000000).to_bytes(8, "big")
    raise ValueError(f"Value too large for varint: {value}")


def decode_varint(f: io.BytesIO) -> int:
    first = f.read(1)
    if not first:
        raise ValueError("Truncated varint")
    prefix = first[0] >> 6
    length = 1 << prefix
    rest = f.read(length - 1)
    if len(rest) != length - 1:
        raise ValueError("Truncated varint")
    value = first[0] & 0x3F
    for b in rest:
        value = (value << 8) | b
    return value


def _encode_bytes(data: bytes) -> bytes:
    return encode_varint(len(data)) + data


def _decode_bytes(f: io.BytesIO) -> bytes:
    n = decode_varint(f)
    data = f.read(n)
    if len(data) != n:
        raise ValueError("Truncated field")
    return data


def _encode_fields(headers: list[tuple[str, str]]) -> bytes:
    body = b"".join(
        _encode_bytes(name.lower().encode("ascii")) + _encode_bytes(value.encode("latin-1"))
        for name, value in headers
    )
    return _encode_bytes(body)


def _decode_fields(f: io.BytesIO) -> list[tuple[str, str]]:
    section = io.BytesIO(_decode_bytes(f))
    end = len(section.getbuffer())
    headers = []
    while section.tell() < end:
        name = _decode_bytes(section).decode("ascii")
        value = _decode_bytes(section).decode("latin-1")
        headers.append((name, value))
    return headers


def _check_padding(f: io.BytesIO) -> None:
    if any(f.read()):
        raise ValueError("Non-zero data after message")


@dataclass
class Request:
    method: str
    scheme: str
    authority: str
    path: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    content: bytes = b""

    @classmethod
    def from_url(cls, method: str, url: str, headers=None, content: bytes = b"") -> "Request":
        parsed = httpx.URL(url)
        path = parsed.raw_path.decode("ascii") or "/"
        authority = parsed.host if parsed.port is None else f"{parsed.host}:{parsed.port}"
        return cls(method, parsed.scheme, authority, path, list(headers or []), content)

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.authority}{self.path}"

    def encode(self) -> bytes:
        return (
            encode_varint(FRAMING_REQUEST_KNOWN_LENGTH)
            + _encode_bytes(self.method.encode("ascii"))
            + _encode_bytes(self.scheme.encode("ascii"))
            + _encode_bytes(self.authority.encode("ascii"))
            + _encode_bytes(self.path.encode("ascii"))
            + _encode_fields(self.headers)
            + _encode_bytes(self.content)
            + _encode_fields([])
        )

    @classmethod
    def decode(cls, data: bytes) -> "Request":
        f = io.BytesIO(data)
        if decode_varint(f) != FRAMING_REQUEST_KNOWN_LENGTH:
            raise ValueError("Not a known-length request")
        method = _decode_bytes(f).decode("ascii")
        scheme = _decode_bytes(f).decode("ascii")
        authority = _decode_bytes(f).decode("ascii")
        path = _decode_bytes(f).decode("ascii")
        headers = _decode_fields(f)
        content = _decode_bytes(f)
        # trailers are optional when the message is truncated
        if f.tell() < len(data):
            _decode_fields(f)
        _check_padding(f)
        return cls(method, scheme, authority, path, headers, content)


@dataclass
class Response:
    status: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    content: bytes = b""

    def encode(self) -> bytes:
        return (
            encode_varint(FRAMING_RESPONSE_KNOWN_LENGTH)
            + encode_varint(self.status)
            + _encode_fields(self.headers)
            + _encode_bytes(self.content)
            + _encode_fields([])
        )

    @classmethod
    def decode(cls, data: bytes) -> "Response":
        f = io.BytesIO(data)
        if decode_varint(f) != FRAMING_RESPONSE_KNOWN_LENGTH:
            raise ValueError("Not a known-length response")
        status = decode_varint(f)
        if 100 <= status < 200:
            raise ValueError("Informational responses are not supported")
        headers = _decode_fields(f)
        content = _decode_bytes(f)
        if f.tell() < len(data):
            _decode_fields(f)
        _check_padding(f)
        return cls(status, headers, content)
