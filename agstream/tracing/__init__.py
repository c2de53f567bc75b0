"""Current OpenTelemetry context for code running outside the caller's task.

A run stores its `agent.run` span context here before starting the background
reader, so transport and translator spans opened in that task are parented
under the run.
"""

from contextvars import ContextVar

from opentelemetry.context import Context

_TRACE_CTX: ContextVar[Context | None] = ContextVar("agstream_trace_ctx", default=None)


def get_trace_ctx() -> Context | None:
    return _TRACE_CTX.get()


def set_trace_ctx(trace_ctx: Context | None) -> None:
    _TRACE_CTX.set(trace_ctx)
