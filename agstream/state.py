"""Per-run state folded from the event sequence.

Every transition is an explicit reducer step (old state + event -> new state),
so a fixed event sequence always folds to the same final state.
"""

import copy
from typing import Any

import jsonpatch
from msgspec import UNSET, field
from msgspec.structs import replace

from agstream.errors import ProtocolViolationError
from agstream.events import (
    Event,
    TextMessageEndEvent,
    ToolCallEndEvent,
)
from agstream.interface import Record, Unset, is_set
from agstream.models import (
    AssistantMessage,
    FunctionCall,
    Message,
    RunInput,
    ToolCall,
    ToolMessage,
)


class ToolCallBuffer(Record):
    """Tool call whose arguments are still streaming."""

    id: str
    name: str
    parent_message_id: str | None = None
    arguments: str = ""


class StateMutation(Record):
    """Change proposed by a subscriber handler."""

    messages: Unset[list[Message]] = UNSET
    """Replacement message history."""

    state: Unset[Any] = UNSET
    """Replacement agent state."""

    stop_propagation: bool = False
    """Skip the subscribers registered after this one for the current event."""


class RunState(Record):
    """Immutable snapshot of a run after a prefix of its events."""

    input: RunInput
    messages: tuple[Message, ...] = ()
    state: Any = None
    text_buffers: dict[str, str] = field(default_factory=dict)
    """Partial content of text messages that have not ended yet."""

    open_message_id: str | None = None
    open_tool_call: ToolCallBuffer | None = None
    tool_calls: dict[str, ToolCall] = field(default_factory=dict)
    """Finalized tool calls of this run, keyed by id."""

    open_steps: tuple[str, ...] = ()
    started: bool = False
    terminated: bool = False

    @classmethod
    def initial(cls, run_input: RunInput) -> "RunState":
        return cls(
            input=run_input,
            messages=tuple(run_input.messages),
            state=copy.deepcopy(run_input.state),
        )

    def text_of(self, message_id: str) -> str:
        """Content streamed so far for a message, open or finished."""
        if message_id in self.text_buffers:
            return self.text_buffers[message_id]
        for message in self.messages:
            if message.id == message_id and isinstance(message.content, str):
                return message.content
        return ""


def merge_mutation(state: RunState, mutation: StateMutation | None) -> RunState:
    if mutation is None:
        return state
    changes: dict[str, Any] = {}
    if is_set(mutation.messages):
        changes["messages"] = tuple(mutation.messages)
    if is_set(mutation.state):
        changes["state"] = mutation.state
    if not changes:
        return state
    return replace(state, **changes)


def implicit_closes(state: RunState, event: Event) -> list[Event]:
    """Events that must precede `event` to keep at most one stream open.

    A tool call starting while text is streaming closes the text message,
    and a text message starting while a tool call is streaming closes the call.
    """
    match event.type:
        case "TOOL_CALL_START" if state.open_message_id is not None:
            return [TextMessageEndEvent(message_id=state.open_message_id)]
        case "TEXT_MESSAGE_START" if state.open_tool_call is not None:
            return [ToolCallEndEvent(tool_call_id=state.open_tool_call.id)]
        case _:
            return []


def _upsert_message(
    messages: tuple[Message, ...], message: Message
) -> tuple[Message, ...]:
    for index, existing in enumerate(messages):
        if existing.id == message.id:
            return messages[:index] + (message,) + messages[index + 1 :]
    return messages + (message,)


def _attach_tool_call(
    messages: tuple[Message, ...], parent_id: str, tool_call: ToolCall
) -> tuple[Message, ...]:
    for existing in messages:
        if existing.id == parent_id and isinstance(existing, AssistantMessage):
            updated = replace(existing, tool_calls=[*existing.tool_calls, tool_call])
            return _upsert_message(messages, updated)
    return messages + (AssistantMessage(id=parent_id, tool_calls=[tool_call]),)


def apply_event(state: RunState, event: Event) -> RunState:
    """Fold one event into the run state, enforcing sequence invariants."""
    if state.terminated:
        raise ProtocolViolationError(f"{event.type} received after the run ended")
    if not state.started and event.type != "RUN_STARTED":
        raise ProtocolViolationError(f"{event.type} received before RUN_STARTED")

    match event.type:
        case "RUN_STARTED":
            if state.started:
                raise ProtocolViolationError("RUN_STARTED received twice")
            return replace(state, started=True)

        case "RUN_FINISHED":
            if state.open_message_id is not None:
                raise ProtocolViolationError(
                    f"RUN_FINISHED while text message {state.open_message_id!r} is open"
                )
            if state.open_tool_call is not None:
                raise ProtocolViolationError(
                    f"RUN_FINISHED while tool call {state.open_tool_call.id!r} is open"
                )
            return replace(state, terminated=True)

        case "RUN_ERROR":
            return replace(state, terminated=True)

        case "STEP_STARTED":
            if event.step_name in state.open_steps:
                raise ProtocolViolationError(f"Step {event.step_name!r} already started")
            return replace(state, open_steps=state.open_steps + (event.step_name,))

        case "STEP_FINISHED":
            if event.step_name not in state.open_steps:
                raise ProtocolViolationError(f"Step {event.step_name!r} was never started")
            steps = tuple(s for s in state.open_steps if s != event.step_name)
            return replace(state, open_steps=steps)

        case "TEXT_MESSAGE_START":
            if state.open_message_id is not None:
                raise ProtocolViolationError(
                    f"TEXT_MESSAGE_START for {event.message_id!r} while "
                    f"{state.open_message_id!r} is open"
                )
            if state.open_tool_call is not None:
                raise ProtocolViolationError(
                    f"TEXT_MESSAGE_START while tool call {state.open_tool_call.id!r} is open"
                )
            buffers = {**state.text_buffers, event.message_id: ""}
            return replace(state, open_message_id=event.message_id, text_buffers=buffers)

        case "TEXT_MESSAGE_CONTENT":
            _require_open_message(state, event.message_id, event.type)
            current = state.text_buffers[event.message_id]
            buffers = {**state.text_buffers, event.message_id: current + event.delta}
            return replace(state, text_buffers=buffers)

        case "TEXT_MESSAGE_END":
            _require_open_message(state, event.message_id, event.type)
            buffers = dict(state.text_buffers)
            content = buffers.pop(event.message_id)
            message = AssistantMessage(id=event.message_id, content=content)
            return replace(
                state,
                messages=_upsert_message(state.messages, message),
                text_buffers=buffers,
                open_message_id=None,
            )

        case "TOOL_CALL_START":
            if state.open_tool_call is not None:
                raise ProtocolViolationError(
                    f"TOOL_CALL_START for {event.tool_call_id!r} while "
                    f"{state.open_tool_call.id!r} is open"
                )
            if state.open_message_id is not None:
                raise ProtocolViolationError(
                    f"TOOL_CALL_START while text message {state.open_message_id!r} is open"
                )
            if event.tool_call_id in state.tool_calls:
                raise ProtocolViolationError(
                    f"Tool call {event.tool_call_id!r} was already finalized"
                )
            buffer = ToolCallBuffer(
                id=event.tool_call_id,
                name=event.tool_call_name,
                parent_message_id=event.parent_message_id,
            )
            return replace(state, open_tool_call=buffer)

        case "TOOL_CALL_ARGS":
            buffer = _require_open_tool_call(state, event.tool_call_id, event.type)
            updated = replace(buffer, arguments=buffer.arguments + event.delta)
            return replace(state, open_tool_call=updated)

        case "TOOL_CALL_END":
            buffer = _require_open_tool_call(state, event.tool_call_id, event.type)
            tool_call = ToolCall(
                id=buffer.id,
                function=FunctionCall(name=buffer.name, arguments=buffer.arguments),
            )
            parent_id = buffer.parent_message_id or buffer.id
            return replace(
                state,
                open_tool_call=None,
                tool_calls={**state.tool_calls, buffer.id: tool_call},
                messages=_attach_tool_call(state.messages, parent_id, tool_call),
            )

        case "TOOL_CALL_RESULT":
            message = ToolMessage(
                id=event.message_id,
                tool_call_id=event.tool_call_id,
                content=event.content,
            )
            return replace(state, messages=_upsert_message(state.messages, message))

        case "STATE_SNAPSHOT":
            return replace(state, state=copy.deepcopy(event.snapshot))

        case "STATE_DELTA":
            try:
                patched = jsonpatch.apply_patch(state.state, event.delta)
            except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException) as exc:
                raise ProtocolViolationError(f"STATE_DELTA could not be applied: {exc}") from exc
            return replace(state, state=patched)

        case "MESSAGES_SNAPSHOT":
            return replace(state, messages=tuple(event.messages))

        case "RAW" | "CUSTOM":
            return state


def _require_open_message(state: RunState, message_id: str, event_type: str) -> None:
    if state.open_message_id != message_id:
        raise ProtocolViolationError(
            f"{event_type} references text message {message_id!r} which is not open"
        )


def _require_open_tool_call(
    state: RunState, tool_call_id: str, event_type: str
) -> ToolCallBuffer:
    buffer = state.open_tool_call
    if buffer is None or buffer.id != tool_call_id:
        raise ProtocolViolationError(
            f"{event_type} references tool call {tool_call_id!r} which is not open"
        )
    return buffer


def fold_events(run_input: RunInput, events: list[Event]) -> RunState:
    """Replay a complete event sequence, applying implicit closes on the way."""
    state = RunState.initial(run_input)
    for event in events:
        for item in [*implicit_closes(state, event), event]:
            state = apply_event(state, item)
    return state
