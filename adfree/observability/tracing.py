"""
OpenTelemetry tracing for webhook ingestion, verification and storage.

Spans are exported over OTLP only when tracing is enabled; otherwise the
global no-op provider stays in place and manual spans cost nothing.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Tracer
from sqlalchemy.ext.asyncio import AsyncEngine

from adfree.config import Settings, settings

# Health and scrape endpoints would drown out webhook traces
EXCLUDED_URLS = "health,metrics"


def setup_tracing(config: Settings = settings) -> bool:
    """Install an OTLP-exporting tracer provider. Returns whether tracing is on."""
    if not config.tracing_enabled:
        return False

    provider = TracerProvider(
        resource=Resource.create(
            {SERVICE_NAME: config.service_name, SERVICE_VERSION: config.api_version}
        ),
        sampler=ParentBased(TraceIdRatioBased(config.tracing_sample_ratio)),
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=config.otlp_endpoint, insecure=config.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)
    return True


def instrument_fastapi(app: FastAPI, config: Settings = settings) -> None:
    if config.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)


def instrument_sqlalchemy(engine: AsyncEngine, config: Settings = settings) -> None:
    """Trace store queries; async engines are instrumented through their sync core."""
    if config.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str) -> Tracer:
    return trace.get_tracer(name)
