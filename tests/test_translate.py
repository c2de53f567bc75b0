from itertools import count

import pytest

from agstream.encoding import MSGPACK_CONTENT_TYPE, SSE_CONTENT_TYPE, EventDecoder
from agstream.errors import InvalidStateError, ProtocolViolationError
from agstream.events import (
    RunErrorEvent,
    RunFinishedEvent,
    RunStartedEvent,
    TextMessageContentEvent,
    TextMessageEndEvent,
    TextMessageStartEvent,
    ToolCallArgsEvent,
    ToolCallEndEvent,
    ToolCallStartEvent,
)
from agstream.local import LocalAgent
from agstream.models import AssistantMessage, RunInput, UserMessage
from agstream.state import fold_events
from agstream.translate import (
    PROVIDER_ERROR_CODE,
    ProviderDelta,
    RunEventTranslator,
    ToolCallChunk,
    encode_run,
    translate_stream,
)


def sequential_ids():
    counter = count(1)
    return lambda: f"msg-{next(counter)}"


def make_translator() -> RunEventTranslator:
    translator = RunEventTranslator(
        thread_id="thread-1", run_id="run-1", id_factory=sequential_ids()
    )
    translator.start()
    return translator


async def from_list(deltas: list[ProviderDelta]):
    for delta in deltas:
        yield delta


def test_start_emits_run_started_once() -> None:
    translator = RunEventTranslator(thread_id="thread-1", run_id="run-1", parent_run_id="p")

    assert translator.start() == [
        RunStartedEvent(thread_id="thread-1", run_id="run-1", parent_run_id="p")
    ]
    with pytest.raises(InvalidStateError):
        translator.start()


def test_feed_before_start_is_rejected() -> None:
    translator = RunEventTranslator(thread_id="thread-1", run_id="run-1")

    with pytest.raises(InvalidStateError):
        translator.feed(ProviderDelta(text_delta="x"))


def test_text_deltas_share_one_message() -> None:
    translator = make_translator()

    events = translator.feed(ProviderDelta(text_delta="Hel"))
    events += translator.feed(ProviderDelta(text_delta="lo"))
    events += translator.finish()

    assert events == [
        TextMessageStartEvent(message_id="msg-1"),
        TextMessageContentEvent(message_id="msg-1", delta="Hel"),
        TextMessageContentEvent(message_id="msg-1", delta="lo"),
        TextMessageEndEvent(message_id="msg-1"),
        RunFinishedEvent(thread_id="thread-1", run_id="run-1"),
    ]


def test_empty_text_delta_emits_nothing() -> None:
    translator = make_translator()
    assert translator.feed(ProviderDelta(text_delta="")) == []


def test_tool_call_closes_open_text_and_references_it() -> None:
    translator = make_translator()
    translator.feed(ProviderDelta(text_delta="Looking up"))

    events = translator.feed(
        ProviderDelta(tool_call_delta=ToolCallChunk(id="t1", name="lookup", arguments_delta='{"x":'))
    )
    events += translator.feed(ProviderDelta(tool_call_delta=ToolCallChunk(id="t1", arguments_delta="1}")))

    assert events == [
        TextMessageEndEvent(message_id="msg-1"),
        ToolCallStartEvent(tool_call_id="t1", tool_call_name="lookup", parent_message_id="msg-1"),
        ToolCallArgsEvent(tool_call_id="t1", delta='{"x":'),
        ToolCallArgsEvent(tool_call_id="t1", delta="1}"),
    ]


def test_new_tool_call_closes_previous_one() -> None:
    translator = make_translator()
    translator.feed(ProviderDelta(tool_call_delta=ToolCallChunk(id="t1", name="a")))

    events = translator.feed(ProviderDelta(tool_call_delta=ToolCallChunk(id="t2", name="b")))

    assert events == [
        ToolCallEndEvent(tool_call_id="t1"),
        ToolCallStartEvent(tool_call_id="t2", tool_call_name="b"),
    ]


def test_text_after_tool_call_starts_new_message() -> None:
    translator = make_translator()
    translator.feed(ProviderDelta(text_delta="first"))
    translator.feed(ProviderDelta(tool_call_delta=ToolCallChunk(id="t1", name="a")))

    events = translator.feed(ProviderDelta(text_delta="second"))

    assert events == [
        ToolCallEndEvent(tool_call_id="t1"),
        TextMessageStartEvent(message_id="msg-2"),
        TextMessageContentEvent(message_id="msg-2", delta="second"),
    ]


def test_tool_call_without_name_is_rejected() -> None:
    translator = make_translator()

    with pytest.raises(ProtocolViolationError):
        translator.feed(ProviderDelta(tool_call_delta=ToolCallChunk(id="t1")))


def test_provider_error_ends_the_run() -> None:
    translator = make_translator()
    translator.feed(ProviderDelta(text_delta="partial"))

    events = translator.feed(ProviderDelta(error="rate limited"))

    assert events == [RunErrorEvent(message="rate limited", code=PROVIDER_ERROR_CODE)]
    assert translator.finished
    with pytest.raises(InvalidStateError):
        translator.finish()


@pytest.mark.anyio
async def test_translate_stream_output_folds_cleanly() -> None:
    deltas = [
        ProviderDelta(text_delta="Let me check."),
        ProviderDelta(tool_call_delta=ToolCallChunk(id="t1", name="lookup", arguments_delta="{}")),
        ProviderDelta(text_delta="Done."),
    ]
    events = [
        event
        async for event in translate_stream(
            from_list(deltas),
            thread_id="thread-1",
            run_id="run-1",
            id_factory=sequential_ids(),
        )
    ]

    state = fold_events(RunInput(thread_id="thread-1", run_id="run-1"), events)
    first, second = state.messages
    assert first.content == "Let me check."
    assert [call.name for call in first.tool_calls] == ["lookup"]
    assert second == AssistantMessage(id="msg-2", content="Done.")
    assert state.terminated


@pytest.mark.anyio
async def test_translate_stream_converts_provider_exception() -> None:
    async def failing():
        yield ProviderDelta(text_delta="Hi")
        raise ConnectionError("provider went away")

    events = [
        event
        async for event in translate_stream(failing(), thread_id="thread-1", run_id="run-1")
    ]

    assert [event.type for event in events] == [
        "RUN_STARTED",
        "TEXT_MESSAGE_START",
        "TEXT_MESSAGE_CONTENT",
        "RUN_ERROR",
    ]
    assert events[-1].code == PROVIDER_ERROR_CODE
    assert "provider went away" in events[-1].message


@pytest.mark.anyio
@pytest.mark.parametrize("accept", [SSE_CONTENT_TYPE, MSGPACK_CONTENT_TYPE])
async def test_encode_run_frames_match_negotiated_encoding(accept: str) -> None:
    content_type, frames = encode_run(
        from_list([ProviderDelta(text_delta="ok")]),
        thread_id="thread-1",
        run_id="run-1",
        accept=accept,
    )

    decoder = EventDecoder.for_content_type(content_type)
    events = [decoder.decode(frame) async for frame in frames]

    assert content_type == accept
    assert events[0] == RunStartedEvent(thread_id="thread-1", run_id="run-1")
    assert events[-1] == RunFinishedEvent(thread_id="thread-1", run_id="run-1")


@pytest.mark.anyio
async def test_local_agent_runs_provider_source() -> None:
    seen_inputs = []

    async def source(run_input):
        seen_inputs.append(run_input)
        yield ProviderDelta(text_delta="Hello")
        yield ProviderDelta(text_delta=" world!")

    agent = LocalAgent(source, thread_id="thread-1", id_factory=sequential_ids())
    agent.add_message(UserMessage(id="u1", content="Hi"))

    result = await agent.collect(agent.prepare_input(run_id="run-1"))

    assert result.succeeded
    assert result.new_messages == [AssistantMessage(id="msg-1", content="Hello world!")]
    assert seen_inputs[0].messages == [UserMessage(id="u1", content="Hi")]
    assert agent.status == "finished"


@pytest.mark.anyio
async def test_local_agent_reports_provider_failure() -> None:
    async def source(run_input):
        yield ProviderDelta(error="quota exceeded")

    agent = LocalAgent(source)

    result = await agent.collect(agent.prepare_input())

    assert not result.succeeded
    assert result.terminal == RunErrorEvent(message="quota exceeded", code=PROVIDER_ERROR_CODE)
    assert agent.status == "errored"
