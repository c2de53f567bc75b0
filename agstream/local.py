from typing import Any, AsyncIterable, AsyncIterator, Callable

from agstream.agent import AbstractAgent
from agstream.events import Event
from agstream.models import RunInput
from agstream.translate import IdFactory, ProviderDelta, new_id, translate_stream

type DeltaSource = Callable[[RunInput], AsyncIterable[ProviderDelta]]


class LocalAgent(AbstractAgent):
    """In-process agent: feeds a provider delta source through the translator."""

    def __init__(
        self,
        source: DeltaSource,
        *,
        id_factory: IdFactory = new_id,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self._source = source
        self._id_factory = id_factory

    def stream_events(self, run_input: RunInput) -> AsyncIterator[Event]:
        return translate_stream(
            self._source(run_input),
            thread_id=run_input.thread_id,
            run_id=run_input.run_id,
            parent_run_id=run_input.parent_run_id,
            id_factory=self._id_factory,
            tracer=self._tracer,
        )
