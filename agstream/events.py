"""AG-UI event variants exchanged between an agent and its caller."""

from typing import Any, Literal

from msgspec import field

from agstream.interface import Record
from agstream.models import Message

type EventType = Literal[
    "RUN_STARTED",
    "RUN_FINISHED",
    "RUN_ERROR",
    "STEP_STARTED",
    "STEP_FINISHED",
    "TEXT_MESSAGE_START",
    "TEXT_MESSAGE_CONTENT",
    "TEXT_MESSAGE_END",
    "TOOL_CALL_START",
    "TOOL_CALL_ARGS",
    "TOOL_CALL_END",
    "TOOL_CALL_RESULT",
    "STATE_SNAPSHOT",
    "STATE_DELTA",
    "MESSAGES_SNAPSHOT",
    "RAW",
    "CUSTOM",
]

TERMINAL_EVENT_TYPES: frozenset[str] = frozenset({"RUN_FINISHED", "RUN_ERROR"})


class BaseEvent(Record, tag_field="type", rename="camel", omit_defaults=True, kw_only=True):
    """Base class shared by all events; the `type` tag is the routing key."""

    timestamp: int | None = None
    """Producer-side emission time in milliseconds since the epoch."""

    raw_event: Any = None
    """Upstream payload this event was derived from, kept for debugging."""

    @property
    def type(self) -> EventType:
        return self.__struct_config__.tag


class RunStartedEvent(BaseEvent, tag="RUN_STARTED"):
    thread_id: str
    run_id: str
    parent_run_id: str | None = None


class RunFinishedEvent(BaseEvent, tag="RUN_FINISHED"):
    thread_id: str
    run_id: str
    result: Any = None


class RunErrorEvent(BaseEvent, tag="RUN_ERROR"):
    message: str
    code: str | None = None


class StepStartedEvent(BaseEvent, tag="STEP_STARTED"):
    step_name: str


class StepFinishedEvent(BaseEvent, tag="STEP_FINISHED"):
    step_name: str


class TextMessageStartEvent(BaseEvent, tag="TEXT_MESSAGE_START"):
    message_id: str
    role: Literal["assistant"] = "assistant"


class TextMessageContentEvent(BaseEvent, tag="TEXT_MESSAGE_CONTENT"):
    message_id: str
    delta: str
    """Text fragment appended to the open message."""


class TextMessageEndEvent(BaseEvent, tag="TEXT_MESSAGE_END"):
    message_id: str


class ToolCallStartEvent(BaseEvent, tag="TOOL_CALL_START"):
    tool_call_id: str
    tool_call_name: str
    parent_message_id: str | None = None
    """Assistant message the finalized call is attached to."""


class ToolCallArgsEvent(BaseEvent, tag="TOOL_CALL_ARGS"):
    tool_call_id: str
    delta: str
    """JSON argument fragment appended to the open call."""


class ToolCallEndEvent(BaseEvent, tag="TOOL_CALL_END"):
    tool_call_id: str


class ToolCallResultEvent(BaseEvent, tag="TOOL_CALL_RESULT"):
    message_id: str
    tool_call_id: str
    content: str
    role: Literal["tool"] = "tool"


class StateSnapshotEvent(BaseEvent, tag="STATE_SNAPSHOT"):
    snapshot: Any


class StateDeltaEvent(BaseEvent, tag="STATE_DELTA"):
    delta: list[dict[str, Any]] = field(default_factory=list)
    """RFC 6902 JSON Patch operations applied to the agent state."""


class MessagesSnapshotEvent(BaseEvent, tag="MESSAGES_SNAPSHOT"):
    messages: list[Message]


class RawEvent(BaseEvent, tag="RAW"):
    event: Any
    source: str | None = None


class CustomEvent(BaseEvent, tag="CUSTOM"):
    name: str
    value: Any = None


type Event = (
    RunStartedEvent
    | RunFinishedEvent
    | RunErrorEvent
    | StepStartedEvent
    | StepFinishedEvent
    | TextMessageStartEvent
    | TextMessageContentEvent
    | TextMessageEndEvent
    | ToolCallStartEvent
    | ToolCallArgsEvent
    | ToolCallEndEvent
    | ToolCallResultEvent
    | StateSnapshotEvent
    | StateDeltaEvent
    | MessagesSnapshotEvent
    | RawEvent
    | CustomEvent
)


def is_terminal(event: BaseEvent) -> bool:
    """Returns True for RUN_FINISHED and RUN_ERROR."""
    return event.type in TERMINAL_EVENT_TYPES
