"""Event framing for the wire: SSE for diagnostics, MessagePack for compact streams."""

import struct
from typing import AsyncIterable, AsyncIterator, Literal, Protocol

import msgspec
from msgspec import msgpack
from msgspec import json as msgjson

from agstream.errors import ConfigurationError, DecodeError
from agstream.events import Event

type Encoding = Literal["sse", "msgpack"]

SSE_CONTENT_TYPE = "text/event-stream"
MSGPACK_CONTENT_TYPE = "application/vnd.ag-ui.event+msgpack"

CONTENT_TYPES: dict[Encoding, str] = {
    "sse": SSE_CONTENT_TYPE,
    "msgpack": MSGPACK_CONTENT_TYPE,
}
ENCODINGS: dict[str, Encoding] = {v: k for k, v in CONTENT_TYPES.items()}

_LENGTH_PREFIX = struct.Struct(">I")

# msgspec resolves the union behind the `type` alias for tagged decoding
_EVENT_UNION = Event.__value__


def _media_type(value: str) -> str:
    return value.split(";", 1)[0].strip().lower()


def negotiate(accept: str | None) -> Encoding:
    """Pick the best supported encoding for an Accept header.

    Media ranges are ranked by their q parameter, ties keep header order.
    Falls back to SSE when nothing supported is listed.
    """
    if not accept:
        return "sse"

    ranked: list[tuple[float, int, str]] = []
    for index, item in enumerate(accept.split(",")):
        media_type, *params = (part.strip() for part in item.split(";"))
        quality = 1.0
        for param in params:
            key, _, value = param.partition("=")
            if key.strip().lower() == "q":
                try:
                    quality = float(value)
                except ValueError:
                    quality = 0.0
        if quality > 0:
            ranked.append((-quality, index, media_type.lower()))

    for _, _, media_type in sorted(ranked):
        if encoding := ENCODINGS.get(media_type):
            return encoding
    return "sse"


class EventEncoder:
    """Serializes events into transport frames for a negotiated encoding."""

    def __init__(self, accept: str | None = None):
        self._encoding = negotiate(accept)
        self._json = msgjson.Encoder()
        self._msgpack = msgpack.Encoder()

    @property
    def encoding(self) -> Encoding:
        return self._encoding

    def content_type(self) -> str:
        return CONTENT_TYPES[self._encoding]

    def encode(self, event: Event) -> bytes:
        match self._encoding:
            case "sse":
                return b"data: " + self._json.encode(event) + b"\n\n"
            case "msgpack":
                payload = self._msgpack.encode(event)
                return _LENGTH_PREFIX.pack(len(payload)) + payload


class FrameSplitter(Protocol):
    """Incrementally cuts a byte stream into complete frames."""

    def feed(self, chunk: bytes) -> list[bytes]: ...

    def close(self) -> list[bytes]: ...


class SSEFrameSplitter(FrameSplitter):
    """Splits on blank lines; accepts LF, CRLF and CR line endings."""

    def __init__(self) -> None:
        self._buffer = b""
        self._pending_cr = False

    def feed(self, chunk: bytes) -> list[bytes]:
        if self._pending_cr:
            chunk = b"\r" + chunk
        # a trailing CR may be the first half of a CRLF split across chunks
        self._pending_cr = chunk.endswith(b"\r")
        if self._pending_cr:
            chunk = chunk[:-1]
        self._buffer += self._normalize(chunk)
        frames: list[bytes] = []
        while b"\n\n" in self._buffer:
            block, self._buffer = self._buffer.split(b"\n\n", 1)
            if self._has_data(block):
                frames.append(block + b"\n\n")
        return frames

    def close(self) -> list[bytes]:
        block, self._buffer = self._buffer, b""
        if self._pending_cr:
            self._pending_cr = False
            block += b"\n"
        if block.strip() and self._has_data(block):
            return [block]
        return []

    @staticmethod
    def _normalize(data: bytes) -> bytes:
        return data.replace(b"\r\n", b"\n").replace(b"\r", b"\n")

    @staticmethod
    def _has_data(block: bytes) -> bool:
        # comment-only blocks are keep-alives
        return any(line.startswith(b"data:") for line in block.split(b"\n"))


class LengthPrefixedFrameSplitter(FrameSplitter):
    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buffer.extend(chunk)
        frames: list[bytes] = []
        header_size = _LENGTH_PREFIX.size
        while len(self._buffer) >= header_size:
            (length,) = _LENGTH_PREFIX.unpack_from(self._buffer)
            end = header_size + length
            if len(self._buffer) < end:
                break
            frames.append(bytes(self._buffer[:end]))
            del self._buffer[:end]
        return frames

    def close(self) -> list[bytes]:
        if self._buffer:
            size = len(self._buffer)
            self._buffer.clear()
            raise DecodeError(f"Stream ended inside a binary frame ({size} bytes pending)")
        return []


class EventDecoder:
    """Parses transport frames back into typed events."""

    def __init__(self, encoding: Encoding = "sse"):
        if encoding not in CONTENT_TYPES:
            raise ConfigurationError(f"Unsupported event encoding: {encoding!r}")
        self._encoding: Encoding = encoding
        self._json = msgjson.Decoder(_EVENT_UNION)
        self._msgpack = msgpack.Decoder(_EVENT_UNION)

    @classmethod
    def for_content_type(cls, content_type: str | None) -> "EventDecoder":
        """Select the decoder matching a response Content-Type header."""
        media_type = _media_type(content_type or "")
        encoding = ENCODINGS.get(media_type)
        if encoding is None:
            raise DecodeError(f"Unsupported response content type: {content_type!r}")
        return cls(encoding)

    @property
    def encoding(self) -> Encoding:
        return self._encoding

    def content_type(self) -> str:
        return CONTENT_TYPES[self._encoding]

    def splitter(self) -> FrameSplitter:
        match self._encoding:
            case "sse":
                return SSEFrameSplitter()
            case "msgpack":
                return LengthPrefixedFrameSplitter()

    def decode(self, frame: bytes) -> Event:
        match self._encoding:
            case "sse":
                payload = self._sse_payload(frame)
                decoder = self._json
            case "msgpack":
                payload = self._binary_payload(frame)
                decoder = self._msgpack
        try:
            return decoder.decode(payload)
        except (msgspec.DecodeError, msgspec.ValidationError) as exc:
            raise DecodeError(f"Invalid event frame: {exc}") from exc

    def _sse_payload(self, frame: bytes) -> bytes:
        data_lines: list[bytes] = []
        for line in frame.replace(b"\r\n", b"\n").split(b"\n"):
            if not line.startswith(b"data:"):
                # comments, event:, id: and retry: fields carry no payload
                continue
            value = line[5:]
            if value.startswith(b" "):
                value = value[1:]
            data_lines.append(value)
        if not data_lines:
            raise DecodeError("SSE frame has no data field")
        return b"\n".join(data_lines)

    def _binary_payload(self, frame: bytes) -> bytes:
        header_size = _LENGTH_PREFIX.size
        if len(frame) < header_size:
            raise DecodeError("Binary frame is shorter than its length prefix")
        (length,) = _LENGTH_PREFIX.unpack_from(frame)
        if len(frame) != header_size + length:
            raise DecodeError(
                f"Binary frame length mismatch: declared {length}, got {len(frame) - header_size}"
            )
        return frame[header_size:]


async def encode_stream(
    events: AsyncIterable[Event], encoder: EventEncoder
) -> AsyncIterator[bytes]:
    """Encode an event stream frame by frame for a streaming HTTP response."""
    async for event in events:
        yield encoder.encode(event)
