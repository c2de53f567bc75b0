import copy
import inspect
from itertools import count
from time import perf_counter
from typing import Any, Awaitable, Callable, Self

from agstream.errors import HandlerError
from agstream.events import Event, EventType
from agstream.interface import ILogger, ITimer, Record
from agstream.models import Message, ToolCall
from agstream.state import RunState, StateMutation, merge_mutation

type HandlerResult = StateMutation | None | Awaitable[StateMutation | None]
type Handler = Callable[..., HandlerResult]

EVENT_HANDLER_NAMES: dict[EventType, str] = {
    "RUN_STARTED": "on_run_started",
    "RUN_FINISHED": "on_run_finished",
    "RUN_ERROR": "on_run_error",
    "STEP_STARTED": "on_step_started",
    "STEP_FINISHED": "on_step_finished",
    "TEXT_MESSAGE_START": "on_text_message_start",
    "TEXT_MESSAGE_CONTENT": "on_text_message_content",
    "TEXT_MESSAGE_END": "on_text_message_end",
    "TOOL_CALL_START": "on_tool_call_start",
    "TOOL_CALL_ARGS": "on_tool_call_args",
    "TOOL_CALL_END": "on_tool_call_end",
    "TOOL_CALL_RESULT": "on_tool_call_result",
    "STATE_SNAPSHOT": "on_state_snapshot",
    "STATE_DELTA": "on_state_delta",
    "MESSAGES_SNAPSHOT": "on_messages_snapshot",
    "RAW": "on_raw",
    "CUSTOM": "on_custom",
}

LIFECYCLE_HOOK_NAMES: tuple[str, ...] = (
    "on_run_initialized",
    "on_run_failed",
    "on_run_finalized",
    "on_new_message",
    "on_new_tool_call",
    "on_messages_changed",
    "on_state_changed",
)


class AgentSubscriber:
    """Optional base class for subscribers.

    Subscribers are duck-typed: any object implementing a subset of the
    `on_<event kind>` handlers (see `EVENT_HANDLER_NAMES`), the catch-all
    `on_event`, or the lifecycle hooks in `LIFECYCLE_HOOK_NAMES` can be
    subscribed. Event handlers receive `(event, state)` and may return a
    `StateMutation`, either directly or from a coroutine.
    """


class Subscription(Record):
    """Handle returned by `subscribe`, used to unsubscribe."""

    id: int
    subscriber: Any
    handlers: dict[str, Handler]
    """Bound handlers this subscriber implements, keyed by handler name."""


class DispatchResult(Record):
    state: RunState
    stopped: bool = False
    """True when a handler asked to stop propagation."""


def _collect_handlers(subscriber: Any) -> dict[str, Handler]:
    names = ("on_event", *EVENT_HANDLER_NAMES.values(), *LIFECYCLE_HOOK_NAMES)
    handlers: dict[str, Handler] = {}
    for name in names:
        handler = getattr(subscriber, name, None)
        if callable(handler):
            handlers[name] = handler
    return handlers


def _handler_label(subscription: Subscription, name: str) -> str:
    return f"{type(subscription.subscriber).__name__}.{name}"


class SubscriberDispatcher:
    """Routes events to subscribers in registration order."""

    def __init__(self) -> None:
        self._ids = count(1)
        self._subscriptions: dict[int, Subscription] = {}

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(self._subscriptions.values())

    def subscribe(self, subscriber: Any) -> Subscription:
        subscription = Subscription(
            id=next(self._ids),
            subscriber=subscriber,
            handlers=_collect_handlers(subscriber),
        )
        self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    def copy(self) -> Self:
        """New dispatcher with the same subscribers and independent registrations."""
        clone = copy.copy(self)
        clone._ids = count(1)
        clone._subscriptions = {}
        for subscription in self._subscriptions.values():
            clone.subscribe(subscription.subscriber)
        return clone

    async def _invoke(
        self,
        subscription: Subscription,
        name: str,
        event_type: str,
        *args: Any,
    ) -> Any:
        try:
            result = subscription.handlers[name](*args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            raise HandlerError(
                handler=_handler_label(subscription, name),
                event_type=event_type,
                error=exc,
            ) from exc
        return result

    async def dispatch(self, event: Event, state: RunState) -> DispatchResult:
        """Deliver an event to every subscriber, merging mutations as they arrive.

        Subscribers registered or removed while the event is in flight only
        take part from the next event on.
        """
        handler_name = EVENT_HANDLER_NAMES[event.type]
        for subscription in self.subscriptions:
            for name in ("on_event", handler_name):
                if name not in subscription.handlers:
                    continue
                mutation = await self._invoke(subscription, name, event.type, event, state)
                state = merge_mutation(state, mutation)
                if mutation is not None and mutation.stop_propagation:
                    return DispatchResult(state=state, stopped=True)
        return DispatchResult(state=state)

    async def notify(self, hook: str, state: RunState, *args: Any) -> RunState:
        """Call a lifecycle hook on every subscriber that implements it.

        Hooks receive their positional arguments followed by the state and
        may return a `StateMutation`.
        """
        for subscription in self.subscriptions:
            if hook not in subscription.handlers:
                continue
            mutation = await self._invoke(subscription, hook, hook, *args, state)
            state = merge_mutation(state, mutation)
        return state

    async def notify_changes(self, before: RunState, after: RunState) -> RunState:
        """Fire change hooks for the difference between two folded states."""
        state = after
        known_ids = {message.id for message in before.messages}
        new_messages: list[Message] = [
            message for message in after.messages if message.id not in known_ids
        ]
        for message in new_messages:
            state = await self.notify("on_new_message", state, message)

        new_calls: list[ToolCall] = [
            call for call_id, call in after.tool_calls.items() if call_id not in before.tool_calls
        ]
        for tool_call in new_calls:
            state = await self.notify("on_new_tool_call", state, tool_call)

        if after.messages != before.messages:
            state = await self.notify("on_messages_changed", state)
        if after.state != before.state:
            state = await self.notify("on_state_changed", state)
        return state


class LoggingDispatcher(SubscriberDispatcher):
    """Dispatcher that reports each delivery and its duration to a logger."""

    def __init__(self, logger: ILogger, timer: ITimer = perf_counter) -> None:
        super().__init__()
        self.logger = logger
        self.timer = timer

    async def dispatch(self, event: Event, state: RunState) -> DispatchResult:
        subscribers = len(self._subscriptions)
        self.logger.info(f"Dispatching {event.type} to {subscribers} subscriber(s)")
        start = self.timer()
        try:
            result = await super().dispatch(event, state)
        except HandlerError as exc:
            duration = self.timer() - start
            self.logger.exception(
                f"Dispatch of {event.type} failed in {exc.handler} after {duration:.2f}s",
            )
            raise
        duration = self.timer() - start
        suffix = ", propagation stopped" if result.stopped else ""
        self.logger.success(f"Dispatched {event.type} in {duration:.2f}s{suffix}")
        return result
