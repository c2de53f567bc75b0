"""Translate a model provider's delta stream into the AG-UI event sequence of a run."""

from typing import Any, AsyncGenerator, AsyncIterable, AsyncIterator, Callable
from uuid import uuid4

from msgspec import UNSET
from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

from agstream.encoding import EventEncoder, encode_stream
from agstream.errors import InvalidStateError, ProtocolViolationError
from agstream.events import (
    Event,
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
from agstream.interface import Record, Unset, is_set
from agstream.tracing import get_trace_ctx

type IdFactory = Callable[[], str]

PROVIDER_ERROR_CODE = "PROVIDER_ERROR"


def new_id() -> str:
    return str(uuid4())


class ToolCallChunk(Record):
    """Incremental tool call update emitted by a provider."""

    id: str
    """Identifier of the tool call being populated."""

    name: str | None = None
    """Tool name; required on the first chunk of a call."""

    arguments_delta: str = ""
    """Slice of JSON arguments appended to the call."""


class ProviderDelta(Record):
    """One streaming update from a model provider."""

    text_delta: Unset[str] = UNSET
    """Partial assistant text."""

    tool_call_delta: Unset[ToolCallChunk] = UNSET
    """Partial tool call."""

    error: Unset[str] = UNSET
    """Error reported by the provider mid-stream."""


class RunEventTranslator:
    """Stateful translator that keeps at most one text message or tool call open.

    Text arriving while a tool call streams closes the call, and a tool call
    arriving while text streams closes the message, so the produced sequence
    always satisfies the pairing rules consumers enforce.
    """

    def __init__(
        self,
        *,
        thread_id: str,
        run_id: str,
        parent_run_id: str | None = None,
        id_factory: IdFactory = new_id,
    ):
        self.thread_id = thread_id
        self.run_id = run_id
        self.parent_run_id = parent_run_id
        self._id_factory = id_factory
        self._message_id: str | None = None
        self._last_message_id: str | None = None
        self._tool_call_id: str | None = None
        self._started = False
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def start(self) -> list[Event]:
        if self._started:
            raise InvalidStateError(f"Run {self.run_id} already started")
        self._started = True
        return [
            RunStartedEvent(
                thread_id=self.thread_id,
                run_id=self.run_id,
                parent_run_id=self.parent_run_id,
            )
        ]

    def feed(self, delta: ProviderDelta) -> list[Event]:
        self._ensure_active()
        events: list[Event] = []
        if is_set(delta.text_delta) and delta.text_delta:
            events.extend(self._text(delta.text_delta))
        if is_set(delta.tool_call_delta):
            events.extend(self._tool_call(delta.tool_call_delta))
        if is_set(delta.error):
            events.extend(self.fail(delta.error, code=PROVIDER_ERROR_CODE))
        return events

    def finish(self, result: Any = None) -> list[Event]:
        self._ensure_active()
        events = self._close_text() + self._close_tool_call()
        events.append(
            RunFinishedEvent(thread_id=self.thread_id, run_id=self.run_id, result=result)
        )
        self._finished = True
        return events

    def fail(self, message: str, *, code: str | None = None) -> list[Event]:
        self._ensure_active()
        self._finished = True
        return [RunErrorEvent(message=message, code=code)]

    def _ensure_active(self) -> None:
        if not self._started:
            raise InvalidStateError(f"Run {self.run_id} has not started")
        if self._finished:
            raise InvalidStateError(f"Run {self.run_id} already ended")

    def _text(self, text: str) -> list[Event]:
        events = self._close_tool_call()
        if self._message_id is None:
            self._message_id = self._last_message_id = self._id_factory()
            events.append(TextMessageStartEvent(message_id=self._message_id))
        events.append(TextMessageContentEvent(message_id=self._message_id, delta=text))
        return events

    def _tool_call(self, chunk: ToolCallChunk) -> list[Event]:
        events: list[Event] = []
        if chunk.id != self._tool_call_id:
            events.extend(self._close_text())
            events.extend(self._close_tool_call())
            if not chunk.name:
                raise ProtocolViolationError(f"Tool call {chunk.id!r} started without a name")
            events.append(
                ToolCallStartEvent(
                    tool_call_id=chunk.id,
                    tool_call_name=chunk.name,
                    parent_message_id=self._last_message_id,
                )
            )
            self._tool_call_id = chunk.id
        if chunk.arguments_delta:
            events.append(ToolCallArgsEvent(tool_call_id=chunk.id, delta=chunk.arguments_delta))
        return events

    def _close_text(self) -> list[Event]:
        if self._message_id is None:
            return []
        message_id, self._message_id = self._message_id, None
        return [TextMessageEndEvent(message_id=message_id)]

    def _close_tool_call(self) -> list[Event]:
        if self._tool_call_id is None:
            return []
        tool_call_id, self._tool_call_id = self._tool_call_id, None
        return [ToolCallEndEvent(tool_call_id=tool_call_id)]


async def translate_stream(
    deltas: AsyncIterable[ProviderDelta],
    *,
    thread_id: str,
    run_id: str,
    parent_run_id: str | None = None,
    id_factory: IdFactory = new_id,
    tracer: trace.Tracer | None = None,
) -> AsyncGenerator[Event, None]:
    """Yield the full event sequence for a provider stream.

    Exceptions raised by the provider end the run with RUN_ERROR.
    """
    tracer = tracer or trace.get_tracer("agstream.translate")
    translator = RunEventTranslator(
        thread_id=thread_id,
        run_id=run_id,
        parent_run_id=parent_run_id,
        id_factory=id_factory,
    )
    span = tracer.start_span(
        "agent.translate",
        kind=SpanKind.INTERNAL,
        context=get_trace_ctx(),
        attributes={"agent.thread_id": thread_id, "agent.run_id": run_id},
    )
    try:
        for event in translator.start():
            yield event
        try:
            async for delta in deltas:
                for event in translator.feed(delta):
                    yield event
                if translator.finished:
                    return
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            message = f"{type(exc).__name__}: {exc}"
            for event in translator.fail(message, code=PROVIDER_ERROR_CODE):
                yield event
            return
        for event in translator.finish():
            yield event
    finally:
        span.end()


def encode_run(
    deltas: AsyncIterable[ProviderDelta],
    *,
    thread_id: str,
    run_id: str,
    accept: str | None = None,
) -> tuple[str, AsyncIterator[bytes]]:
    """Content type and frame stream for serving a run over HTTP."""
    encoder = EventEncoder(accept)
    events = translate_stream(deltas, thread_id=thread_id, run_id=run_id)
    return encoder.content_type(), encode_stream(events, encoder)
