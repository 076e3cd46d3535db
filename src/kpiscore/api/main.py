"""kpiscore FastAPI application factory."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from kpiscore import __version__
from kpiscore.api.errors import (
    KpiHttpError,
    generic_exception_handler,
    http_exception_handler,
    kpi_http_error_handler,
    request_validation_error_handler,
    storage_unavailable_handler,
)
from kpiscore.api.middleware.db_tx import DBTransactionMiddleware
from kpiscore.api.middleware.request_id import RequestIdMiddleware
from kpiscore.api.routes.analytics import router as analytics_router
from kpiscore.api.routes.health import router as health_router
from kpiscore.api.routes.indicators import router as indicators_router
from kpiscore.api.routes.me import router as me_router
from kpiscore.api.routes.scores import router as scores_router
from kpiscore.api.routes.subjects import router as subjects_router
from kpiscore.audit.sink import AuditSink, get_audit_sink
from kpiscore.observability.tracing import configure_tracing, instrument_fastapi, instrument_httpx
from kpiscore.persistence.db import StorageUnavailableError
from kpiscore.scoring.config import AnalyticsConfig, load_analytics_config
from kpiscore.services.notifications.dispatcher import (
    NotificationDispatcher,
    build_notification_dispatcher,
)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Deliver notifications still queued by a background dispatcher.
    shutdown = getattr(app.state.notification_dispatcher, "shutdown", None)
    if shutdown is not None:
        shutdown()


def create_app(
    audit_sink: AuditSink | None = None,
    notification_dispatcher: NotificationDispatcher | None = None,
    analytics_config: AnalyticsConfig | None = None,
) -> FastAPI:
    """Create and configure the kpiscore FastAPI application.

    Middleware ordering (outermost to innermost):
    1. RequestIdMiddleware - ensures request_id is available everywhere
    2. DBTransactionMiddleware - opens the request's DB connection when Postgres is configured

    Starlette adds middleware in reverse order (last added = outermost).
    Authentication and RBAC run as a route dependency (RequireActingSubject),
    after routing has resolved the operation_id.

    Args:
        audit_sink: AuditSink for mutation events. If None, uses the JSONL file sink.
        notification_dispatcher: Receives submit/verify events. If None, built
            from the environment: background push delivery when
            KPISCORE_PUSH_GATEWAY_URL is set, otherwise the log.
        analytics_config: Aggregation settings. If None, loaded from the environment.

    Returns:
        Configured FastAPI application instance.

    Raises:
        AnalyticsConfigError: If aggregation settings in the environment are invalid.
    """
    app = FastAPI(
        title="kpiscore API",
        description="Role-scoped weighted KPI scoring and analytics",
        version=__version__,
        lifespan=_lifespan,
    )

    app.state.audit_sink = audit_sink if audit_sink is not None else get_audit_sink()
    app.state.notification_dispatcher = (
        notification_dispatcher
        if notification_dispatcher is not None
        else build_notification_dispatcher()
    )
    app.state.analytics_config = (
        analytics_config if analytics_config is not None else load_analytics_config()
    )

    configure_tracing()
    instrument_httpx()

    app.add_middleware(DBTransactionMiddleware)
    app.add_middleware(RequestIdMiddleware)

    instrument_fastapi(app)

    app.add_exception_handler(KpiHttpError, kpi_http_error_handler)
    app.add_exception_handler(StorageUnavailableError, storage_unavailable_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health_router)
    app.include_router(me_router)
    app.include_router(indicators_router)
    app.include_router(scores_router)
    app.include_router(analytics_router)
    app.include_router(subjects_router)

    return app
