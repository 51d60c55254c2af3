import os
from typing import Optional

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from sqlalchemy import Engine


def setup_telemetry(service_name: str) -> TracerProvider:
    """
    initialize OpenTelemetry
    :param service_name:
    :return: TracerProvider:
    """

    resource = Resource.create(
        attributes={
            "service.name": service_name,
            "service.version": "1.0.0",
        }
    )
    provider = TracerProvider(resource=resource)

    # spans go to the OTLP collector (Jaeger in docker-compose)
    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
    exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    return provider


def instrument_app(app: Optional[FastAPI], engine: Optional[Engine] = None) -> None:
    """
    Auto-Instrument the API, the event store, redis locks and PixelFly calls
    :param app:
    :param engine:
    :return:
    """
    if app:
        FastAPIInstrumentor.instrument_app(app)

    if engine:
        SQLAlchemyInstrumentor().instrument(engine=engine)

    RedisInstrumentor().instrument()
    HTTPXClientInstrumentor().instrument()


def get_tracer(name: str) -> trace.Tracer:
    """No-op tracer until setup_telemetry installs a provider"""
    return trace.get_tracer(name, "1.0.0")
