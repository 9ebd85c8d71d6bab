import logging
from typing import Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)

from health_wrapper.app_proxy.route import gateway_fallback, router as proxy_router
from health_wrapper.health.route import router as health_router
from health_wrapper.readiness import ReadinessGate
from health_wrapper.vars import (
    GATEWAY_HOST,
    GATEWAY_PORT,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
)

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streamed
    proxy responses, one per relayed chunk otherwise.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing(app: FastAPI) -> None:
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    tracer_provider = trace.get_tracer_provider()
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=OTLP_HEADERS or None,
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )
        logger.info(f"[proxy] Exporting traces to {OTLP_ENDPOINT}")

    FastAPIInstrumentor.instrument_app(app)


def create_app(
    gate: ReadinessGate,
    gateway_host: str = GATEWAY_HOST,
    gateway_port: int = GATEWAY_PORT,
) -> FastAPI:
    # docs/openapi routes would shadow gateway paths, every path but the
    # probe belongs to the gateway.
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    app.state.readiness = gate
    app.state.gateway_base_url = f"http://{gateway_host}:{gateway_port}"

    # Order matters: the probe must win over the catch-all.
    app.include_router(health_router)
    app.include_router(proxy_router)
    app.router.default = gateway_fallback
    return app
