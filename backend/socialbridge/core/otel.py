"""OpenTelemetry export (OTLP over gRPC) and instrumentation

Nothing is exported unless OTEL_EXPORTER_OTLP_ENDPOINT is set; the
instrumentors still run and fall back to the no-op providers.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from socialbridge.core.config import settings

logger = logging.getLogger(__name__)

TRACER_NAME = "socialbridge"
EXPORT_INTERVAL_MILLIS = 5000
EXPORT_TIMEOUT_MILLIS = 30000


def _exporter_options() -> dict:
    return {"endpoint": settings.OTEL_EXPORTER_OTLP_ENDPOINT, "insecure": True}


def _resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": "1.0.0",
        "deployment.environment": settings.OTEL_ENVIRONMENT,
    })


def initialize_otel() -> bool:
    """Install SDK trace and metric providers. Returns False when export is off or fails."""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False
    resource = _resource()
    try:
        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_exporter_options())))
        trace.set_tracer_provider(tracer_provider)

        reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(**_exporter_options()),
            export_interval_millis=EXPORT_INTERVAL_MILLIS,
            export_timeout_millis=EXPORT_TIMEOUT_MILLIS,
        )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    except Exception as e:
        logger.warning(f"OpenTelemetry export disabled, provider setup failed: {e}")
        return False
    logger.info(f"Exporting traces and metrics to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    return True


def setup_otel_logging() -> bool:
    """Attach an OTLP handler to the root logger so the oauth/refresh/security logs are shipped too"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False
    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        logger_provider = LoggerProvider(resource=_resource())
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(
            OTLPLogExporter(**_exporter_options()),
            schedule_delay_millis=EXPORT_INTERVAL_MILLIS,
            export_timeout_millis=EXPORT_TIMEOUT_MILLIS,
        ))
        set_logger_provider(logger_provider)
        logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))
    except Exception as e:
        logger.warning(f"OpenTelemetry log export disabled: {e}")
        return False
    return True


def instrument_fastapi(app):
    FastAPIInstrumentor.instrument_app(app)


def instrument_httpx():
    """Every provider token and API call becomes a client span"""
    HTTPXClientInstrumentor().instrument()


def instrument_sqlalchemy(engine):
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    except Exception as e:
        logger.warning(f"SQLAlchemy instrumentation skipped: {e}")


@contextmanager
def traced(name: str, provider: str, user_id: Optional[int] = None) -> Iterator[None]:
    """Span around a provider round trip. Attributes carry ids only, never tokens.

    Without an SDK provider this uses the no-op tracer, so callers need no checks.
    """
    attributes = {"socialbridge.provider": provider}
    if user_id is not None:
        attributes["socialbridge.user_id"] = user_id
    with trace.get_tracer(TRACER_NAME).start_as_current_span(name, attributes=attributes):
        yield
