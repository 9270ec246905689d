"""Application factory for the automation service."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import traceback
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from replyflow.automation.models import utc_now_iso
from replyflow.config import Settings, get_settings
from replyflow.errors import RateLimitExceededError, ReplyflowError
from replyflow.server.runtime import AutomationRuntime
from replyflow.utils.logger import clear_request_context, request_id_var, set_request_id, setup_logging


def _error_body(request_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    body = dict(payload)
    body["requestId"] = request_id
    body["timestamp"] = utc_now_iso()
    return body


def create_app(
    settings: Settings | None = None,
    runtime_factory: Any = None,
) -> FastAPI:
    """Create the FastAPI application.

    ``runtime_factory`` receives the settings and returns an AutomationRuntime;
    tests use it to swap repositories or senders.
    """
    settings = settings or get_settings()
    setup_logging(settings.logging)
    logger = logging.getLogger(__name__)
    build_runtime = runtime_factory or AutomationRuntime.from_settings

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        runtime = build_runtime(settings)
        app.state.runtime = runtime
        try:
            yield
        finally:
            await runtime.close()

    app = FastAPI(title="replyflow automation service", version="0.1.0", lifespan=_lifespan)
    app.state.settings = settings

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        request_id = set_request_id(request.headers.get("x-request-id"))
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(ReplyflowError)
    async def _handle_replyflow_error(request: Request, exc: ReplyflowError) -> JSONResponse:
        request_id = request_id_var.get()
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "request failed",
            extra={
                "event_code": "http.request.failed",
                "path": request.url.path,
                "method": request.method,
                "code": exc.code,
                "error": exc.message,
            },
        )
        body = _error_body(request_id, exc.to_dict())
        if settings.server.debug:
            body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitExceededError) else None
        return JSONResponse(status_code=exc.status_code, content=body, headers=headers)

    @app.exception_handler(Exception)
    async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        request_id = request_id_var.get()
        logger.exception(
            "unhandled error",
            extra={"event_code": "http.request.unhandled", "path": request.url.path, "method": request.method},
        )
        message = str(exc) if settings.server.debug else "Internal server error"
        body = _error_body(request_id, {"error": message, "code": "INTERNAL_ERROR"})
        if settings.server.debug:
            body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=body)

    from replyflow.server.routes import router

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "replyflow"}

    app.include_router(router)
    return app
