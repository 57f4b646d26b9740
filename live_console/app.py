"""FastAPI application for the live console session engine."""
from __future__ import annotations

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from live_console.common.error_envelope import build_error_envelope
from live_console.config import runtime_config
from live_console.session.routes import router as session_router

logger = logging.getLogger(__name__)

SERVICE_NAME = "live_console"
SERVICE_VERSION = "0.1.0"

# --- Error Handling ---

async def _http_exception_handler(request: Request, exc: HTTPException):
    # Envelopes built by error_response pass through unchanged
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        return JSONResponse(content=detail, status_code=exc.status_code)

    envelope = build_error_envelope(
        code="http.exception",
        message=str(detail) if detail else "HTTP exception",
        status_code=exc.status_code,
    )
    return JSONResponse(content=envelope.model_dump(), status_code=exc.status_code)


async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    envelope = build_error_envelope(
        code="validation.error",
        message="Validation failed",
        status_code=400,
        details={"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]},
    )
    return JSONResponse(content=envelope.model_dump(), status_code=400)


async def _generic_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    envelope = build_error_envelope(
        code="internal.error",
        message="Internal server error",
        status_code=500,
    )
    return JSONResponse(content=envelope.model_dump(), status_code=500)


def register_error_handlers(target_app: FastAPI) -> None:
    target_app.add_exception_handler(HTTPException, _http_exception_handler)
    target_app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    target_app.add_exception_handler(Exception, _generic_exception_handler)


def configure_logging() -> None:
    logging.basicConfig(
        level=runtime_config.get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

# --- App Factory ---

def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Live Console Sessions", version=SERVICE_VERSION)
    register_error_handlers(app)
    app.include_router(session_router)

    @app.get("/health")
    async def health_check():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "time": time.time(),
            "status": "ok",
        }

    return app


app = create_app()
