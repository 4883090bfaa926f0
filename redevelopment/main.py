import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from redevelopment.api.v1.router import v1_router
from redevelopment.core.config import Settings, get_settings
from redevelopment.core.errors import DomainError, Unexpected
from redevelopment.core.logging import configure_logging
from redevelopment.core.middleware import RequestIdMiddleware
from redevelopment.db.session import SessionLocal
from redevelopment.services.notifications import (
    LoggingDispatcher,
    NotificationDispatcher,
    OutboxDispatcher,
)

logger = logging.getLogger(__name__)


def build_dispatcher(settings: Settings) -> NotificationDispatcher:
    if settings.notification_backend == "log":
        return LoggingDispatcher()
    return OutboxDispatcher(SessionLocal)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        rid = getattr(request.state, "request_id", None)
        if exc.http_status >= 500:
            logger.error(
                "domain_error",
                extra={"request_id": rid, "code": exc.code, "path": request.url.path},
            )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        rid = getattr(request.state, "request_id", None)
        logger.exception(
            "unexpected_error",
            extra={"request_id": rid, "path": request.url.path, "method": request.method},
        )
        err = Unexpected(
            "An unexpected error occurred.",
            context={"correlationId": rid},
        )
        return JSONResponse(status_code=err.http_status, content=err.to_dict())


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
    )

    # Middleware: Request ID
    app.add_middleware(RequestIdMiddleware, header_name=settings.request_id_header)

    register_exception_handlers(app)

    # Notifications go out after commit through this dispatcher
    app.state.dispatcher = build_dispatcher(settings)

    # API v1
    app.include_router(v1_router, prefix=settings.api_prefix)

    return app


app = create_app()
