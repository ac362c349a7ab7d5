"""
SSO Hub Notifier - Application Entry Point.

Builds the FastAPI application: structured logging, service wiring in the
lifespan, exception handlers and health probes.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from .api import router
from .config import Environment, NotifierConfig, get_config
from .domain.service import NotifierService, create_notifier_service
from .exceptions import NotifierError

logger = structlog.get_logger(__name__)


def configure_logging(config: NotifierConfig) -> None:
    """Configure structlog for the process."""
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if config.service.env == Environment.DEVELOPMENT:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.service.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def create_app(config: NotifierConfig | None = None, *, service: NotifierService | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    When a pre-built service is supplied the lifespan only connects it and
    never starts background workers; the caller drives processing.
    """
    config = config or (service.config if service is not None else get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(config)
        notifier = service or create_notifier_service(config)
        logger.info("notifier_starting", service=config.service.name, env=config.service.env.value,
                    queue_provider=config.queue.provider, database_provider=config.database.provider,
                    channels=config.get_enabled_channels())
        await notifier.startup(run_workers=False if service is not None else None)
        app.state.notifier = notifier
        logger.info("notifier_ready")
        try:
            yield
        finally:
            await notifier.shutdown()
            app.state.notifier = None
            logger.info("notifier_shutdown")

    app = FastAPI(
        title="SSO Hub Notifier",
        description="Notification and alerting dispatcher with retry and escalation",
        version=config.service.version,
        lifespan=lifespan,
        docs_url="/docs" if not config.is_production() else None,
        redoc_url="/redoc" if not config.is_production() else None,
    )
    app.state.notifier = None
    app.include_router(router)
    _register_exception_handlers(app)

    @app.get("/healthz", tags=["health"])
    async def healthz() -> dict[str, str]:
        """Liveness probe."""
        return {"status": "healthy", "service": config.service.name, "version": config.service.version}

    @app.get("/readyz", tags=["health"])
    async def readyz(request: Request) -> JSONResponse:
        """Readiness probe: store and queue must both answer."""
        notifier: NotifierService | None = request.app.state.notifier
        if notifier is None:
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                                content={"status": "not_ready", "reason": "service_not_initialized"})
        checks = await notifier.readiness()
        ready = all(checks.values())
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if ready else "not_ready", "checks": checks,
                     "processing": notifier.pool.status()},
        )

    return app


def _register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""
    @app.exception_handler(NotifierError)
    async def notifier_error_handler(request: Request, exc: NotifierError) -> JSONResponse:
        log = logger.error if exc.http_status >= 500 else logger.warning
        log("request_failed", path=request.url.path, code=exc.error_code, error=exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = []
        for error in exc.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append({"field": loc, "message": error["msg"], "type": error["type"]})
        logger.warning("validation_error", path=request.url.path, errors=errors)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": {"code": "VALIDATION_ERROR", "message": "Request validation failed", "details": errors}},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND"}.get(exc.status_code, "HTTP_ERROR")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": code, "message": str(exc.detail)}},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_type=type(exc).__name__)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}},
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_config()
    uvicorn.run(
        "sso_notifier.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.env == Environment.DEVELOPMENT,
        log_level=settings.service.log_level.lower(),
    )
