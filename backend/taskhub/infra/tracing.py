"""OpenTelemetry wiring for the API process.

Spans are exported over OTLP only when ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set
and the process is not under test; otherwise the provider records locally.
"""

import atexit
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger(__name__)

_VERSION_ENV_KEYS = ("GIT_SHA", "GIT_COMMIT", "SOURCE_VERSION", "SERVICE_VERSION")


class _TracingState:
    configured = False
    shut_down = False
    instrumented_engines: set[int] = set()


def _build_resource(service_name: str) -> Resource:
    attributes = {
        SERVICE_NAME: service_name,
        DEPLOYMENT_ENVIRONMENT: os.getenv("DEPLOYMENT_ENV", "local"),
    }
    version = next((os.environ[key] for key in _VERSION_ENV_KEYS if os.getenv(key)), None)
    if version:
        attributes[SERVICE_VERSION] = version
    return Resource.create(attributes)


def _record_route_only(span, scope) -> None:  # noqa: ANN001
    # The websocket token rides in the query string; spans keep the route template.
    if span is None or not span.is_recording():
        return
    route = getattr(scope.get("route"), "path", None) or scope.get("path", "/")
    span.set_attribute("http.route", route)
    span.set_attribute("http.target", route)


def configure_tracing(*, service_name: str | None = None) -> None:
    if _TracingState.configured:
        return
    name = os.getenv("OTEL_SERVICE_NAME") or service_name or "taskhub-api"
    provider = TracerProvider(resource=_build_resource(name))
    trace.set_tracer_provider(provider)

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    testing = os.getenv("TESTING", "").lower() == "true"
    if endpoint and not testing:
        exporter = OTLPSpanExporter(endpoint=endpoint, insecure=endpoint.startswith("http://"))
        provider.add_span_processor(BatchSpanProcessor(exporter))
    elif not testing:
        logger.debug("tracing_exporter_disabled", extra={"extra": {"service": name}})

    _TracingState.configured = True
    atexit.register(shutdown_tracing)


def instrument_fastapi(app: FastAPI, *, tracer_provider=None) -> None:  # noqa: ANN001
    FastAPIInstrumentor().instrument_app(
        app,
        tracer_provider=tracer_provider or trace.get_tracer_provider(),
        server_request_hook=_record_route_only,
    )


def instrument_sqlalchemy(engine) -> None:  # noqa: ANN001
    if engine is None or id(engine) in _TracingState.instrumented_engines:
        return
    SQLAlchemyInstrumentor().instrument(
        engine=engine,
        tracer_provider=trace.get_tracer_provider(),
        enable_commenter=False,
    )
    _TracingState.instrumented_engines.add(id(engine))


def shutdown_tracing() -> None:
    if _TracingState.shut_down:
        return
    _TracingState.shut_down = True
    provider = trace.get_tracer_provider()
    try:
        for hook in ("force_flush", "shutdown"):
            method = getattr(provider, hook, None)
            if callable(method):
                method()
    except Exception as exc:  # noqa: BLE001
        logger.warning("tracing_shutdown_failed", extra={"extra": {"error": type(exc).__name__}})
