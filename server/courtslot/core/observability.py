"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from .config import settings

SERVICE_NAME = "courtslot-api"
SERVICE_VERSION = "1.0.0"

# Prometheus metrics
REGISTRY = CollectorRegistry()

CART_ITEMS = Counter(
    "cart_items_total",
    "Cart items processed, by outcome",
    ["outcome"],
    registry=REGISTRY
)

CHECKOUTS = Counter(
    "checkouts_total",
    "Checkout attempts, by result",
    ["result"],
    registry=REGISTRY
)

TRANSACTION_DECISIONS = Counter(
    "transaction_decisions_total",
    "Staff and system decisions on cart transactions",
    ["decision"],
    registry=REGISTRY
)

WAITLIST_PROMOTIONS = Counter(
    "waitlist_promotions_total",
    "Waitlist entries promoted to notified",
    registry=REGISTRY
)

WAITLIST_EXPIRATIONS = Counter(
    "waitlist_expirations_total",
    "Notified waitlist entries expired unpaid",
    registry=REGISTRY
)

RECONCILIATION_REPAIRS = Counter(
    "reconciliation_repairs_total",
    "State drift repaired by the reconciliation sweep",
    ["kind"],
    registry=REGISTRY
)

NOTIFICATION_FAILURES = Counter(
    "notification_failures_total",
    "Notification events that could not be delivered",
    ["event_type"],
    registry=REGISTRY
)

WORKER_UP = Gauge(
    "background_worker_running",
    "Whether a background worker loop is running",
    ["worker"],
    registry=REGISTRY
)


def setup_structured_logging():
    """Configure structured logging with structlog."""

    def add_trace_context(logger, method_name, event_dict):
        """Add trace context to log events."""
        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            event_dict["trace_id"] = format(ctx.trace_id, "032x")
            event_dict["span_id"] = format(ctx.span_id, "016x")
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _service_resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "environment": settings.environment,
    })


def setup_tracing():
    """Setup OpenTelemetry tracing."""
    provider = TracerProvider(resource=_service_resource())

    if settings.otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint)))

    trace.set_tracer_provider(provider)
    return trace.get_tracer(__name__)


def setup_metrics():
    """Setup OpenTelemetry metrics."""
    if settings.otlp_endpoint:
        reader = PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(endpoint=settings.otlp_endpoint),
            export_interval_millis=60000
        )
        metrics.set_meter_provider(MeterProvider(resource=_service_resource(), metric_readers=[reader]))

    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine):
    """Instrument the async engine's sync core with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


class MetricsCollector:
    """Collector for business metrics."""

    @staticmethod
    def record_cart_item(outcome: str, count: int = 1):
        """Record cart items by outcome (added, waitlisted, rejected)."""
        if count:
            CART_ITEMS.labels(outcome=outcome).inc(count)

    @staticmethod
    def record_checkout(result: str):
        """Record a checkout attempt (success, stale)."""
        CHECKOUTS.labels(result=result).inc()

    @staticmethod
    def record_transaction_decision(decision: str):
        """Record an approval, rejection, cancellation or expiry."""
        TRANSACTION_DECISIONS.labels(decision=decision).inc()

    @staticmethod
    def record_waitlist_promotion():
        WAITLIST_PROMOTIONS.inc()

    @staticmethod
    def record_waitlist_expiration():
        WAITLIST_EXPIRATIONS.inc()

    @staticmethod
    def record_reconciliation_repair(kind: str):
        RECONCILIATION_REPAIRS.labels(kind=kind).inc()

    @staticmethod
    def record_notification_failure(event_type: str):
        NOTIFICATION_FAILURES.labels(event_type=event_type).inc()

    @staticmethod
    def set_worker_running(worker: str, running: bool):
        WORKER_UP.labels(worker=worker).set(1 if running else 0)


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)
