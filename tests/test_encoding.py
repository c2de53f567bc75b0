import struct
from typing import get_args

import msgspec
import pytest

from agstream.encoding import (
    MSGPACK_CONTENT_TYPE,
    SSE_CONTENT_TYPE,
    EventDecoder,
    EventEncoder,
    FrameSplitter,
    LengthPrefixedFrameSplitter,
    SSEFrameSplitter,
    encode_stream,
    negotiate,
)
from agstream.errors import ConfigurationError, DecodeError
from agstream.events import (
    CustomEvent,
    Event,
    MessagesSnapshotEvent,
    RawEvent,
    RunErrorEvent,
    RunFinishedEvent,
    RunStartedEvent,
    StateDeltaEvent,
    StateSnapshotEvent,
    StepFinishedEvent,
    StepStartedEvent,
    TextMessageContentEvent,
    TextMessageEndEvent,
    TextMessageStartEvent,
    ToolCallArgsEvent,
    ToolCallEndEvent,
    ToolCallResultEvent,
    ToolCallStartEvent,
)
from agstream.models import (
    AssistantMessage,
    FunctionCall,
    ToolCall,
    ToolMessage,
    UserMessage,
)

SAMPLE_EVENTS = [
    RunStartedEvent(thread_id="thread-1", run_id="run-1", parent_run_id="run-0"),
    StepStartedEvent(step_name="plan"),
    TextMessageStartEvent(message_id="m1"),
    TextMessageContentEvent(message_id="m1", delta="Hello\nworld ✓"),
    TextMessageEndEvent(message_id="m1"),
    ToolCallStartEvent(tool_call_id="t1", tool_call_name="search", parent_message_id="m1"),
    ToolCallArgsEvent(tool_call_id="t1", delta='{"q": "wea'),
    ToolCallEndEvent(tool_call_id="t1"),
    ToolCallResultEvent(message_id="r1", tool_call_id="t1", content="sunny"),
    StepFinishedEvent(step_name="plan"),
    StateSnapshotEvent(snapshot={"count": 1, "tags": ["a", "b"]}),
    StateDeltaEvent(delta=[{"op": "replace", "path": "/count", "value": 2}]),
    MessagesSnapshotEvent(
        messages=[
            UserMessage(id="u1", content="hi"),
            AssistantMessage(
                id="a1",
                tool_calls=[ToolCall(id="t1", function=FunctionCall(name="search", arguments="{}"))],
            ),
            ToolMessage(id="r1", content="sunny", tool_call_id="t1"),
        ]
    ),
    RawEvent(event={"kind": "ping"}, source="upstream", raw_event={"seq": 7}),
    CustomEvent(name="progress", value={"done": 3, "total": 10}, timestamp=1700000000000),
    RunFinishedEvent(thread_id="thread-1", run_id="run-1", result={"answer": 42}),
    RunErrorEvent(message="boom", code="PROVIDER_ERROR"),
]


def test_sample_events_cover_every_event_kind() -> None:
    kinds = {variant.__struct_config__.tag for variant in get_args(Event.__value__)}
    assert {event.type for event in SAMPLE_EVENTS} == kinds


def test_negotiate_defaults_to_sse() -> None:
    assert negotiate(None) == "sse"
    assert negotiate("") == "sse"
    assert negotiate("application/json") == "sse"


def test_negotiate_prefers_highest_quality() -> None:
    accept = f"{SSE_CONTENT_TYPE};q=0.5, {MSGPACK_CONTENT_TYPE}"
    assert negotiate(accept) == "msgpack"
    accept = f"{MSGPACK_CONTENT_TYPE};q=0.2, {SSE_CONTENT_TYPE};q=0.9"
    assert negotiate(accept) == "sse"


def test_negotiate_ignores_zero_quality() -> None:
    assert negotiate(f"{MSGPACK_CONTENT_TYPE};q=0") == "sse"


@pytest.mark.parametrize("accept", [SSE_CONTENT_TYPE, MSGPACK_CONTENT_TYPE])
@pytest.mark.parametrize("event", SAMPLE_EVENTS, ids=lambda e: e.type)
def test_encode_then_decode_preserves_event(accept: str, event) -> None:
    encoder = EventEncoder(accept)
    decoder = EventDecoder.for_content_type(encoder.content_type())

    assert decoder.decode(encoder.encode(event)) == event


def test_sse_frame_uses_camel_case_wire_fields() -> None:
    frame = EventEncoder().encode(
        ToolCallStartEvent(tool_call_id="t1", tool_call_name="search")
    )

    assert frame.startswith(b"data: ")
    assert frame.endswith(b"\n\n")
    payload = msgspec.json.decode(frame[len(b"data: ") : -2])
    assert payload == {
        "type": "TOOL_CALL_START",
        "toolCallId": "t1",
        "toolCallName": "search",
    }


def test_msgpack_frame_is_length_prefixed() -> None:
    frame = EventEncoder(MSGPACK_CONTENT_TYPE).encode(
        RunStartedEvent(thread_id="t", run_id="r")
    )
    (length,) = struct.unpack(">I", frame[:4])
    assert length == len(frame) - 4
    assert msgspec.msgpack.decode(frame[4:])["type"] == "RUN_STARTED"


def test_sse_splitter_handles_arbitrary_chunk_boundaries() -> None:
    encoder = EventEncoder()
    stream = b"".join(encoder.encode(event) for event in SAMPLE_EVENTS)
    splitter = SSEFrameSplitter()
    frames: list[bytes] = []
    for i in range(0, len(stream), 7):
        frames.extend(splitter.feed(stream[i : i + 7]))
    frames.extend(splitter.close())

    decoder = EventDecoder("sse")
    assert [decoder.decode(frame) for frame in frames] == SAMPLE_EVENTS


def test_sse_splitter_skips_keepalive_comments_and_accepts_crlf() -> None:
    splitter = SSEFrameSplitter()
    frames = splitter.feed(
        b": ping\r\n\r\n"
        b'event: message\r\ndata: {"type":"RUN_STARTED",\r\n'
        b'data: "threadId":"t","runId":"r"}\r\n\r\n'
    )

    assert len(frames) == 1
    event = EventDecoder("sse").decode(frames[0])
    assert event == RunStartedEvent(thread_id="t", run_id="r")


def test_sse_splitter_keeps_crlf_split_across_chunks() -> None:
    stream = (
        b": ping\r\n\r\n"
        b'data: {"type":"CUSTOM",\r\n'
        b'data: "name":"n"}\r\n\r\n'
        b'data: {"type":"RUN_ERROR","message":"x"}\r\n\r\n'
    )
    decoder = EventDecoder("sse")

    for offset in range(1, len(stream)):
        splitter = SSEFrameSplitter()
        frames = splitter.feed(stream[:offset]) + splitter.feed(stream[offset:])
        frames += splitter.close()

        assert [decoder.decode(frame) for frame in frames] == [
            CustomEvent(name="n"),
            RunErrorEvent(message="x"),
        ], f"split at {offset}"


def test_sse_splitter_flushes_unterminated_frame_on_close() -> None:
    splitter = SSEFrameSplitter()
    assert splitter.feed(b'data: {"type":"RUN_ERROR","message":"x"}') == []

    frames = splitter.close()
    assert EventDecoder("sse").decode(frames[0]) == RunErrorEvent(message="x")


def test_length_prefixed_splitter_reassembles_split_frames() -> None:
    encoder = EventEncoder(MSGPACK_CONTENT_TYPE)
    stream = b"".join(encoder.encode(event) for event in SAMPLE_EVENTS)
    splitter = LengthPrefixedFrameSplitter()
    frames: list[bytes] = []
    for i in range(0, len(stream), 3):
        frames.extend(splitter.feed(stream[i : i + 3]))

    assert splitter.close() == []
    decoder = EventDecoder("msgpack")
    assert [decoder.decode(frame) for frame in frames] == SAMPLE_EVENTS


def test_length_prefixed_splitter_rejects_truncated_stream() -> None:
    frame = EventEncoder(MSGPACK_CONTENT_TYPE).encode(RunErrorEvent(message="x"))
    splitter = LengthPrefixedFrameSplitter()
    assert splitter.feed(frame[:-2]) == []

    with pytest.raises(DecodeError):
        splitter.close()


@pytest.mark.parametrize(
    "frame",
    [
        b"data: {not json\n\n",
        b'data: {"type":"NOT_AN_EVENT"}\n\n',
        b'data: {"type":"TEXT_MESSAGE_CONTENT","messageId":"m1"}\n\n',
        b": comment only\n\n",
    ],
    ids=["malformed", "unknown-type", "missing-field", "no-data"],
)
def test_decode_rejects_invalid_sse_frames(frame: bytes) -> None:
    with pytest.raises(DecodeError):
        EventDecoder("sse").decode(frame)


def test_decode_rejects_binary_length_mismatch() -> None:
    frame = EventEncoder(MSGPACK_CONTENT_TYPE).encode(RunErrorEvent(message="x"))

    with pytest.raises(DecodeError):
        EventDecoder("msgpack").decode(frame + b"\x00")


def test_decoder_for_unknown_content_type() -> None:
    with pytest.raises(DecodeError):
        EventDecoder.for_content_type("application/json")

    decoder = EventDecoder.for_content_type("text/event-stream; charset=utf-8")
    assert decoder.encoding == "sse"


def test_decoder_rejects_unknown_encoding() -> None:
    with pytest.raises(ConfigurationError):
        EventDecoder("xml")  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_encode_stream_yields_one_frame_per_event() -> None:
    async def events():
        for event in SAMPLE_EVENTS[:3]:
            yield event

    encoder = EventEncoder()
    frames = [frame async for frame in encode_stream(events(), encoder)]

    assert frames == [encoder.encode(event) for event in SAMPLE_EVENTS[:3]]


@pytest.mark.parametrize(
    "encoding, splitter_type",
    [("sse", SSEFrameSplitter), ("msgpack", LengthPrefixedFrameSplitter)],
)
def test_decoder_splitter_implements_frame_splitter(encoding, splitter_type) -> None:
    splitter = EventDecoder(encoding).splitter()

    assert type(splitter) is splitter_type
    assert FrameSplitter in type(splitter).__mro__
    assert splitter.close() == []
