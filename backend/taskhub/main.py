import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskhub.api.middleware import MetricsMiddleware, RequestContextMiddleware, SecurityHeadersMiddleware
from taskhub.api.problem_details import register_problem_handlers
from taskhub.api.routes_health import router as health_router
from taskhub.api.routes_jobs import router as jobs_router
from taskhub.api.routes_notifications import router as notifications_router
from taskhub.api.routes_payments import router as payments_router
from taskhub.api.routes_providers import router as providers_router
from taskhub.api.routes_quotes import router as quotes_router
from taskhub.api.routes_service_requests import router as service_requests_router
from taskhub.infra.db import dispose_engine, get_session_factory
from taskhub.infra.logging import configure_logging
from taskhub.infra.metrics import configure_metrics
from taskhub.infra.tracing import configure_tracing, instrument_fastapi
from taskhub.services import build_app_services
from taskhub.settings import settings

logger = logging.getLogger(__name__)

_DOMAIN_ROUTERS = (
    jobs_router,
    service_requests_router,
    quotes_router,
    payments_router,
    providers_router,
    notifications_router,
)


def _allowed_origins(app_settings) -> list[str]:
    if app_settings.cors_origins:
        return list(app_settings.cors_origins)
    if app_settings.app_env == "dev" and not app_settings.strict_cors:
        return ["http://localhost:3000"]
    return []


def create_app(app_settings, *, tracer_provider=None, services=None) -> FastAPI:
    if tracer_provider is None:
        configure_tracing(service_name=f"{app_settings.app_name}-api")
    configure_logging()
    services = services or build_app_services(
        app_settings, metrics=configure_metrics(app_settings.metrics_enabled)
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Tests swap services and the session factory on app.state before startup.
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        logger.info(
            "startup",
            extra={"extra": {"app_env": app_settings.app_env, "metrics": app_settings.metrics_enabled}},
        )
        yield
        await dispose_engine()

    app = FastAPI(title="TaskHub Marketplace", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.state.metrics = services.metrics
    app.state.app_settings = app_settings

    # Starlette runs the last-added middleware first.
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=services.metrics)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(app_settings),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    instrument_fastapi(app, tracer_provider=tracer_provider)
    register_problem_handlers(app)

    app.include_router(health_router)
    for router in _DOMAIN_ROUTERS:
        app.include_router(router)
    if app_settings.metrics_enabled:
        from taskhub.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
