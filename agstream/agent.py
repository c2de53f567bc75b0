import asyncio
import contextvars
import copy
from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, AsyncIterator, Literal, Self
from uuid import uuid4
from warnings import warn

from msgspec.structs import replace
from opentelemetry import trace
from opentelemetry.trace import Span, SpanKind, Status, StatusCode, set_span_in_context

from agstream.errors import (
    AgStreamError,
    ConfigurationError,
    DecodeError,
    HandlerError,
    InvalidStateError,
    ProtocolViolationError,
    TransportError,
)
from agstream.events import Event, RunErrorEvent, RunFinishedEvent, is_terminal
from agstream.interface import ILogger, Record
from agstream.models import Context, Message, RunInput, Tool
from agstream.state import RunState, apply_event, implicit_closes
from agstream.subscriber import SubscriberDispatcher, Subscription
from agstream.tracing import set_trace_ctx

type AgentStatus = Literal["idle", "running", "finished", "errored", "cancelled"]

CANCELLED_CODE = "CANCELLED"

_STREAM_END = object()
_CANCELLED = object()

# failures that end a run with a synthesized RUN_ERROR instead of raising
_RUN_FAILURES = (DecodeError, TransportError, ProtocolViolationError, HandlerError)


class RunResult(Record):
    """Outcome of a run driven to completion by `AbstractAgent.collect`."""

    events: list[Event]
    """Every event yielded by the run, in order."""

    new_messages: list[Message]
    """Messages committed by this run that were not part of its input."""

    state: Any
    """Agent state after the run."""

    terminal: RunFinishedEvent | RunErrorEvent
    """The event that ended the run."""

    @property
    def succeeded(self) -> bool:
        return self.terminal.type == "RUN_FINISHED"


class AbstractAgent(ABC):
    """Connection to an agent that streams AG-UI events for each run.

    Subclasses provide `stream_events`, the raw event source for one run.
    This class owns the run lifecycle: sequence checks, run state folding,
    subscriber dispatch, cancellation and conversion of failures into a
    terminal RUN_ERROR event.
    """

    def __init__(
        self,
        *,
        agent_id: str | None = None,
        thread_id: str | None = None,
        messages: list[Message] | None = None,
        state: Any = None,
        dispatcher: SubscriberDispatcher | None = None,
        cancel_grace_period: float = 5.0,
        logger: ILogger | None = None,
        tracer: trace.Tracer | None = None,
    ):
        if cancel_grace_period <= 0:
            raise ConfigurationError("cancel_grace_period must be positive")
        self.agent_id = agent_id or str(uuid4())
        self.thread_id = thread_id or str(uuid4())
        self.messages: list[Message] = list(messages or [])
        self.state: Any = state if state is not None else {}
        self._dispatcher = dispatcher or SubscriberDispatcher()
        self._cancel_grace_period = cancel_grace_period
        self._logger = logger
        self._tracer = tracer or trace.get_tracer("agstream.agent")
        self._status: AgentStatus = "idle"
        self._cancel_event: asyncio.Event | None = None
        self._started = False
        # transport tasks that outlived the grace period, never awaited twice
        self._abandoned: set[asyncio.Task[None]] = set()

    @abstractmethod
    def stream_events(self, run_input: RunInput) -> AsyncIterator[Event]:
        """Open the transport for one run and yield decoded events in arrival order.

        Implementations raise `TransportError` or `DecodeError` on failure;
        any other exception is treated as a transport failure.
        """
        raise NotImplementedError

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def cancel_grace_period(self) -> float:
        return self._cancel_grace_period

    @property
    def dispatcher(self) -> SubscriberDispatcher:
        return self._dispatcher

    def subscribe(self, subscriber: Any) -> Subscription:
        return self._dispatcher.subscribe(subscriber)

    def unsubscribe(self, subscription: Subscription) -> None:
        self._dispatcher.unsubscribe(subscription)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)

    def prepare_input(
        self,
        *,
        run_id: str | None = None,
        parent_run_id: str | None = None,
        tools: list[Tool] | None = None,
        context: list[Context] | None = None,
        forwarded_props: Any = None,
    ) -> RunInput:
        """Build a RunInput from this connection's thread, messages and state."""
        return RunInput(
            thread_id=self.thread_id,
            run_id=run_id or str(uuid4()),
            parent_run_id=parent_run_id,
            messages=list(self.messages),
            tools=list(tools or []),
            state=copy.deepcopy(self.state),
            context=list(context or []),
            forwarded_props=forwarded_props if forwarded_props is not None else {},
        )

    def clone(self) -> Self:
        """Copy static configuration and subscribers; run state is never shared."""
        clone = copy.copy(self)
        clone.messages = list(self.messages)
        clone.state = copy.deepcopy(self.state)
        clone._dispatcher = self._dispatcher.copy()
        clone._status = "idle"
        clone._cancel_event = None
        clone._started = False
        clone._abandoned = set()
        return clone

    def reset(self) -> None:
        if self._status == "running":
            raise InvalidStateError("Cannot reset a connection while a run is in progress")
        self._status = "idle"

    def run(self, run_input: RunInput) -> AsyncGenerator[Event, None]:
        """Start a run and return its lazy event stream.

        Raises `InvalidStateError` right away when a run is already being
        iterated. A stream that was returned but never iterated does not hold
        the connection: the next `run()` supersedes it and the superseded
        stream yields nothing. A connection in a terminal state is reset to
        idle first.

        Once iterated, the stream always ends with exactly one RUN_FINISHED or
        RUN_ERROR event. A run cancelled before its first pull yields no
        events at all, since nothing was sent to the agent.
        """
        if self._status == "running":
            if self._started or self._cancel_event is None:
                raise InvalidStateError(
                    f"Agent {self.agent_id} is already running; cancel it or use clone()"
                )
            self._cancel_event.set()
        self._status = "running"
        self._started = False
        self._cancel_event = cancel_event = asyncio.Event()
        return self._run(run_input, cancel_event)

    def cancel(self) -> None:
        """Abort the in-flight run; a no-op unless the connection is running."""
        if self._status != "running" or self._cancel_event is None:
            return
        self._cancel_event.set()
        if not self._started:
            # the stream was never iterated, nothing is left to unwind
            self._status = "cancelled"
        if self._logger is not None:
            self._logger.info(f"Cancellation requested for agent {self.agent_id}")

    async def collect(self, run_input: RunInput) -> RunResult:
        """Drive a run to completion and gather its events and results."""
        known_ids = {message.id for message in run_input.messages}
        events = [event async for event in self.run(run_input)]
        terminal = events[-1]
        assert isinstance(terminal, (RunFinishedEvent, RunErrorEvent))
        return RunResult(
            events=events,
            new_messages=[m for m in self.messages if m.id not in known_ids],
            state=self.state,
            terminal=terminal,
        )

    async def _pump(self, run_input: RunInput, queue: asyncio.Queue[Any]) -> None:
        events = self.stream_events(run_input)
        try:
            async for event in events:
                await queue.put(event)
        except AgStreamError as exc:
            await queue.put(exc)
        except Exception as exc:
            error = TransportError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
            await queue.put(error)
        else:
            await queue.put(_STREAM_END)
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _receive(self, queue: asyncio.Queue[Any], cancel_event: asyncio.Event) -> Any:
        """Wait for the next transport item unless cancellation is observed first."""
        if cancel_event.is_set():
            return _CANCELLED
        getter = asyncio.ensure_future(queue.get())
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            getter.cancel()
            waiter.cancel()
        if cancel_event.is_set():
            return _CANCELLED
        return getter.result()

    async def _stop_pump(self, pump: asyncio.Task[None]) -> None:
        if pump.done() or pump in self._abandoned:
            return
        pump.cancel()
        done, _ = await asyncio.wait({pump}, timeout=self._cancel_grace_period)
        if not done:
            self._abandoned.add(pump)
            pump.add_done_callback(self._abandoned.discard)
            self._report_failure(
                f"Transport for agent {self.agent_id} did not stop within "
                f"{self._cancel_grace_period:.2f}s"
            )

    async def _process(self, event: Event, run_state: RunState) -> RunState:
        before = run_state
        run_state = apply_event(run_state, event)
        result = await self._dispatcher.dispatch(event, run_state)
        return await self._dispatcher.notify_changes(before, result.state)

    def _report_failure(self, msg: str) -> None:
        if self._logger is not None:
            self._logger.exception(msg)
        else:
            warn(msg)

    async def _notify_quietly(self, hook: str, run_state: RunState, *args: Any) -> RunState:
        try:
            return await self._dispatcher.notify(hook, run_state, *args)
        except HandlerError as exc:
            self._report_failure(f"Subscriber hook failed after the run ended: {exc}")
            return run_state

    async def _complete(
        self,
        run_state: RunState,
        terminal: RunFinishedEvent | RunErrorEvent,
        status: AgentStatus,
        cancel_event: asyncio.Event,
        span: Span,
    ) -> None:
        if self._cancel_event is cancel_event:
            self._status = status
            self.messages = list(run_state.messages)
            self.state = run_state.state
        span.set_attribute("agent.run.status", status)
        if isinstance(terminal, RunErrorEvent):
            span.set_status(Status(StatusCode.ERROR, terminal.message))
        await self._notify_quietly("on_run_finalized", run_state)
        if self._logger is not None:
            run_id = run_state.input.run_id
            if status == "finished":
                self._logger.success(f"Run {run_id} finished")
            else:
                self._logger.info(f"Run {run_id} ended as {status}: {terminal.message}")

    async def _fail(
        self,
        run_state: RunState,
        error_event: RunErrorEvent,
        failure: AgStreamError | None,
    ) -> RunState:
        run_state = replace(run_state, terminated=True)
        try:
            result = await self._dispatcher.dispatch(error_event, run_state)
            run_state = result.state
            if failure is not None:
                run_state = await self._dispatcher.notify("on_run_failed", run_state, failure)
        except HandlerError as exc:
            self._report_failure(f"Subscriber failed while handling RUN_ERROR: {exc}")
        return run_state

    async def _run(
        self, run_input: RunInput, cancel_event: asyncio.Event
    ) -> AsyncGenerator[Event, None]:
        if cancel_event.is_set():
            # cancelled before the first pull
            return
        self._started = True
        span = self._tracer.start_span(
            "agent.run",
            kind=SpanKind.INTERNAL,
            attributes={
                "agent.id": self.agent_id,
                "agent.thread_id": run_input.thread_id,
                "agent.run_id": run_input.run_id,
                "agent.run.message_count": len(run_input.messages),
            },
        )
        if self._logger is not None:
            self._logger.info(f"Run {run_input.run_id} starting on thread {run_input.thread_id}")

        pump_ctx = contextvars.copy_context()
        pump_ctx.run(set_trace_ctx, set_span_in_context(span))
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1)
        pump = asyncio.create_task(self._pump(run_input, queue), context=pump_ctx)

        run_state = RunState.initial(run_input)
        event_count = 0
        failure: AgStreamError | None = None
        try:
            try:
                run_state = await self._dispatcher.notify("on_run_initialized", run_state)
                while True:
                    item = await self._receive(queue, cancel_event)
                    if item is _CANCELLED:
                        break
                    if item is _STREAM_END:
                        raise TransportError("Event stream ended without a terminal event")
                    if isinstance(item, AgStreamError):
                        raise item
                    for event in [*implicit_closes(run_state, item), item]:
                        run_state = await self._process(event, run_state)
                        event_count += 1
                        if is_terminal(event):
                            await self._stop_pump(pump)
                            status = "finished" if event.type == "RUN_FINISHED" else "errored"
                            span.set_attribute("agent.run.event_count", event_count)
                            await self._complete(run_state, event, status, cancel_event, span)
                            yield event
                            return
                        yield event
            except _RUN_FAILURES as exc:
                failure = exc

            await self._stop_pump(pump)
            if failure is None:
                error_event = RunErrorEvent(message="Run cancelled", code=CANCELLED_CODE)
                status = "cancelled"
            else:
                error_event = RunErrorEvent(message=str(failure), code=failure.code)
                status = "errored"
            run_state = await self._fail(run_state, error_event, failure)
            span.set_attribute("agent.run.event_count", event_count + 1)
            await self._complete(run_state, error_event, status, cancel_event, span)
            yield error_event
        finally:
            await self._stop_pump(pump)
            if self._cancel_event is cancel_event and self._status == "running":
                # consumer stopped iterating before a terminal event
                self._status = "cancelled"
                span.set_attribute("agent.run.status", "cancelled")
            span.end()
