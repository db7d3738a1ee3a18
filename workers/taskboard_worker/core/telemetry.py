from __future__ import annotations

from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from taskboard.core.telemetry import TelemetryRuntime, build_tracer_provider, close_tracer_provider
from taskboard_worker.core.config import Settings

_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


def setup_worker_telemetry(settings: Settings) -> TelemetryRuntime:
    provider = build_tracer_provider(settings)
    if provider is None:
        return TelemetryRuntime(enabled=False, provider=None)
    _HTTPX_INSTRUMENTOR.instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    close_tracer_provider(runtime.provider)
    runtime.enabled = False
