from typing import Any, AsyncIterator, Callable, Self

import httpx
from msgspec.json import encode as json_encode
from opentelemetry.trace import SpanKind

from agstream.agent import AbstractAgent
from agstream.encoding import CONTENT_TYPES, EventDecoder, SSE_CONTENT_TYPE, negotiate
from agstream.errors import ConfigurationError, TransportError
from agstream.events import Event
from agstream.models import RunInput
from agstream.tracing import get_trace_ctx

type ClientFactory = Callable[[], httpx.AsyncClient]

# long-running agent tasks keep the stream open
DEFAULT_TIMEOUT = 300.0


class HttpAgent(AbstractAgent):
    """Agent reached over HTTP: one POST per run, events streamed back as frames.

    Usage:
        agent = HttpAgent("http://localhost:8000/agent")
        agent.add_message(UserMessage(id="m1", content="Hello"))
        async for event in agent.run(agent.prepare_input()):
            if event.type == "TEXT_MESSAGE_CONTENT":
                print(event.delta, end="", flush=True)
    """

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        accept: str = SSE_CONTENT_TYPE,
        timeout: float = DEFAULT_TIMEOUT,
        client_factory: ClientFactory | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        if not url.startswith(("http://", "https://")):
            raise ConfigurationError(f"HttpAgent url must be http(s), got {url!r}")
        if timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if CONTENT_TYPES[negotiate(accept)] not in accept.lower():
            raise ConfigurationError(f"Unsupported accept value: {accept!r}")
        self.url = url
        self.headers: dict[str, str] = dict(headers or {})
        self.accept = accept
        self.timeout = timeout
        self._client_factory = client_factory

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout)

    def clone(self) -> Self:
        clone = super().clone()
        clone.headers = dict(self.headers)
        return clone

    def request_headers(self) -> dict[str, str]:
        return {
            **self.headers,
            "Content-Type": "application/json",
            "Accept": self.accept,
        }

    async def stream_events(self, run_input: RunInput) -> AsyncIterator[Event]:
        span = self._tracer.start_span(
            "agent.transport.http",
            kind=SpanKind.CLIENT,
            context=get_trace_ctx(),
            attributes={
                "http.request.method": "POST",
                "url.full": self.url,
                "agent.run_id": run_input.run_id,
            },
        )
        frame_count = 0
        try:
            factory = self._client_factory or self._default_client
            async with factory() as client:
                async with client.stream(
                    "POST",
                    self.url,
                    content=json_encode(run_input),
                    headers=self.request_headers(),
                ) as response:
                    span.set_attribute("http.response.status_code", response.status_code)
                    if response.is_error:
                        body = (await response.aread()).decode(errors="replace")
                        raise TransportError(
                            f"Agent endpoint returned HTTP {response.status_code}: {body[:200]}"
                        )
                    decoder = EventDecoder.for_content_type(
                        response.headers.get("content-type")
                    )
                    splitter = decoder.splitter()
                    async for chunk in response.aiter_bytes():
                        for frame in splitter.feed(chunk):
                            frame_count += 1
                            yield decoder.decode(frame)
                    for frame in splitter.close():
                        frame_count += 1
                        yield decoder.decode(frame)
        except httpx.HTTPError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc
        finally:
            span.set_attribute("agent.transport.frame_count", frame_count)
            span.end()
