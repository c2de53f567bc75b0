"""Conversation and run-input data models shared by events and connections."""

from typing import Any, Literal

from msgspec import field

from agstream.interface import Record

type MessageRole = Literal["user", "assistant", "tool", "system", "developer", "function"]


class FunctionCall(Record):
    """Function name plus the raw JSON argument text emitted by the model."""

    name: str
    """Registered tool name the agent wants to invoke."""

    arguments: str = ""
    """Accumulated JSON argument text, possibly partial while streaming."""


class ToolCall(Record, rename="camel"):
    """A requested function invocation referenced by an assistant message."""

    id: str
    """Stable identifier correlating argument deltas, the end event and results."""

    function: FunctionCall
    """Function name and arguments."""

    type: Literal["function"] = "function"
    """Call category; only function calls are streamed."""

    @property
    def name(self) -> str:
        return self.function.name

    @property
    def arguments(self) -> str:
        return self.function.arguments


class BaseMessage(Record, tag_field="role", rename="camel", omit_defaults=True, kw_only=True):
    """Role-tagged conversation entry."""

    id: str
    """Message identifier, unique within a thread."""


class UserMessage(BaseMessage, tag="user"):
    content: str
    name: str | None = None


class SystemMessage(BaseMessage, tag="system"):
    content: str
    name: str | None = None


class DeveloperMessage(BaseMessage, tag="developer"):
    content: str
    name: str | None = None


class AssistantMessage(BaseMessage, tag="assistant"):
    """Assistant turn with optional text and pending tool calls."""

    content: str | None = None
    name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list[ToolCall])


class ToolMessage(BaseMessage, tag="tool"):
    """Tool output relayed back to the agent."""

    content: str
    tool_call_id: str
    error: str | None = None


class FunctionMessage(BaseMessage, tag="function"):
    content: str
    name: str


type Message = (
    UserMessage
    | SystemMessage
    | DeveloperMessage
    | AssistantMessage
    | ToolMessage
    | FunctionMessage
)


def message_role(message: Message) -> MessageRole:
    return message.__struct_config__.tag


class Tool(Record):
    """Tool definition advertised to the agent for this run."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)
    """JSON Schema describing the tool arguments."""


class Context(Record):
    """Additional context entry forwarded with a run."""

    description: str
    value: str


class RunInput(Record, rename="camel", omit_defaults=True):
    """Request payload identifying a run and carrying the conversation so far."""

    thread_id: str
    """Conversation identifier shared by consecutive runs."""

    run_id: str
    """Identifier of this run."""

    parent_run_id: str | None = None
    """Run that spawned this one, when runs are nested."""

    messages: list[Message] = field(default_factory=list)
    """Ordered conversation history."""

    tools: list[Tool] = field(default_factory=list[Tool])
    """Tools the agent may call during this run."""

    state: Any = field(default_factory=dict)
    """Agent state at the start of the run."""

    context: list[Context] = field(default_factory=list[Context])
    """Extra context entries supplied by the caller."""

    forwarded_props: Any = field(default_factory=dict)
    """Opaque properties forwarded to the agent implementation."""
