from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .auth.rbac import require_viewer_role
from .config import Settings, settings as global_settings
from .db import SessionFactory, db_session, engine
from .errors import InvalidTransitionError, NotFoundError, PipelineError
from .migrations import maybe_run_startup_migrations
from .observability import (
    RequestContextMiddleware,
    configure_logging,
    get_request_id,
    maybe_instrument_opentelemetry,
)
from .routes.alerts import router as alerts_router
from .routes.ingest import router as ingest_router
from .routes.pipeline import router as pipeline_router
from .routes.rules import router as rules_router
from .runtime import PipelineRuntime, build_runtime, start_runtime, stop_runtime
from .version import __version__


logger = logging.getLogger("carbonwatch")


# Operator-facing domain errors; anything else from the pipeline is a 500.
_ERROR_STATUS: dict[type[PipelineError], int] = {
    NotFoundError: 404,
    InvalidTransitionError: 409,
}


def error_body(code: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"error": {"code": code, "message": message, **extra, "request_id": get_request_id() or "unknown"}}


def _error_response(status_code: int, body: dict[str, Any], headers: dict[str, str] | None = None) -> JSONResponse:
    out_headers = dict(headers or {})
    out_headers.setdefault("X-Request-ID", body["error"].get("request_id") or "unknown")
    return JSONResponse(status_code=status_code, content=body, headers=out_headers)


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # pydantic puts exception objects in `ctx`; stringify them for the envelope.
    out: list[dict[str, Any]] = []
    for err in exc.errors():
        item = {k: v for k, v in err.items() if k != "ctx"}
        if "ctx" in err:
            item["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        out.append(item)
    return out


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PipelineError)
    async def _pipeline_error(request: Request, exc: PipelineError):
        for cls, status_code in _ERROR_STATUS.items():
            if isinstance(exc, cls):
                return _error_response(status_code, error_body(exc.code, str(exc)))
        logger.exception(
            "unhandled_pipeline_error",
            extra={"fields": {"path": request.url.path, "code": exc.code}},
        )
        return _error_response(500, error_body("INTERNAL", "Internal server error"))

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        detail = exc.detail
        if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
            # Routes may raise with a ready-made envelope (e.g. INGEST_PAUSED).
            inner = detail["error"]
            body = error_body(str(inner.get("code", "HTTP_ERROR")), str(inner.get("message", "")))
        else:
            body = error_body("HTTP_ERROR", str(detail))
        return _error_response(exc.status_code, body, dict(exc.headers or {}))

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            422, error_body("VALIDATION_ERROR", "Request validation failed", details=jsonable_errors(exc))
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={"fields": {"path": request.url.path, "method": request.method}},
        )
        return _error_response(500, error_body("INTERNAL", "Internal server error"))


def create_app(
    _settings: Settings | None = None,
    *,
    runtime: PipelineRuntime | None = None,
    session_factory: SessionFactory = db_session,
    run_migrations: bool = True,
) -> FastAPI:
    """Build the HTTP app around one pipeline runtime.

    Tests pass their own Settings, session factory or a prebuilt runtime so
    nothing needs a module reload.
    """

    settings = _settings or global_settings
    pipeline_runtime = runtime or build_runtime(settings, session_factory=session_factory)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        level = getattr(logging, settings.log_level.upper(), logging.INFO)
        configure_logging(level=level, log_format=settings.log_format, service_name=settings.service_name)
        if run_migrations:
            maybe_run_startup_migrations(engine=engine)
        await start_runtime(pipeline_runtime, settings)
        logger.info("carbonwatch_started", extra={"fields": {"version": __version__, "env": settings.app_env}})
        try:
            yield
        finally:
            await stop_runtime(pipeline_runtime)
            logger.info("carbonwatch_stopped")

    app = FastAPI(
        title="CarbonWatch Telemetry API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.enable_docs else None,
        redoc_url="/redoc" if settings.enable_docs else None,
        openapi_url="/openapi.json" if settings.enable_docs else None,
    )
    app.state.runtime = pipeline_runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    install_error_handlers(app)

    maybe_instrument_opentelemetry(
        enabled=settings.enable_otel,
        app=app,
        sqlalchemy_engine=engine,
        service_name=settings.service_name,
        service_version=__version__,
        environment=settings.app_env,
    )

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {
            "ok": True,
            "version": __version__,
            "env": settings.app_env,
            "features": {
                "authz": {"enabled": settings.authz_enabled, "default_role": settings.authz_default_role},
                "mqtt": {"enabled": settings.mqtt_enabled},
                "otel": {"enabled": settings.enable_otel},
                "routes": {"ingest": settings.enable_ingest_routes, "read": settings.enable_read_routes},
                "pipeline": {
                    "max_workers": settings.pipeline_max_workers,
                    "device_queue_capacity": settings.device_queue_capacity,
                    "alert_hysteresis_clear_count": settings.alert_hysteresis_clear_count,
                },
            },
        }

    @app.get("/readyz", include_in_schema=False)
    def readyz():
        """Ready when the database answers and the schema has been migrated."""

        try:
            with pipeline_runtime.session_factory() as session:
                session.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
        except SQLAlchemyError as exc:
            raise HTTPException(status_code=503, detail=f"not ready: {type(exc).__name__}")
        return {"ready": True, "gateway_paused": pipeline_runtime.gateway.paused}

    if settings.enable_ingest_routes:
        app.include_router(ingest_router)
    else:
        logger.info("ingest_routes_disabled", extra={"fields": {"env": "ENABLE_INGEST_ROUTES"}})

    if settings.enable_read_routes:
        for router in (alerts_router, rules_router, pipeline_router):
            app.include_router(router, dependencies=[Depends(require_viewer_role)])
    else:
        logger.info("read_routes_disabled", extra={"fields": {"env": "ENABLE_READ_ROUTES"}})

    return app


# ASGI entrypoint
app = create_app()
