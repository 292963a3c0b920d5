"""FastAPI application entry point with lifespan and structured logging.

This module initializes the FastAPI application with:
- Lifespan context manager that builds the orchestrator (and, with
  ENABLE_POLLING=true, runs the queue poller in the background)
- Structured logging (JSON) to logs/worker.log
- Exception handlers for consistent error responses
- Liveness endpoints

The orchestrator is stored in app.state.orchestrator for route handlers. If
app.state.orchestrator is already set before startup, it is used as-is.

Usage:
    uvicorn botcheck.api.app:app
"""

import asyncio
import traceback
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from botcheck.api.models import ErrorEnvelope, ErrorDetail
from botcheck.api.responses import VALIDATION_ERROR, NOT_FOUND, INTERNAL_ERROR
from botcheck.api.routes import analyze
from botcheck.backend.db.connection import init_schema
from botcheck.backend.utils.logging_config import get_logger, setup_logging
from botcheck.config import load_settings
from botcheck.orchestrator import build_orchestrator
from botcheck.poller import QueuePoller

# Seconds shutdown waits for the request in progress before cancelling it
POLLER_SHUTDOWN_TIMEOUT_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the orchestrator on startup and release its clients on shutdown.

    Args:
        app: FastAPI application instance

    Yields:
        None (context manager for startup/shutdown)
    """
    logger = get_logger(__name__)

    settings = load_settings()
    owns_orchestrator = getattr(app.state, "orchestrator", None) is None

    if owns_orchestrator:
        init_schema(settings.db_path)
        app.state.orchestrator = build_orchestrator(settings)
        logger.info("orchestrator_ready", db_path=settings.db_path)

    poller = None
    poller_task = None
    if settings.enable_polling:
        orchestrator = app.state.orchestrator
        poller = QueuePoller(
            orchestrator.store,
            orchestrator,
            interval_seconds=settings.poll_interval_seconds,
            batch_size=settings.poll_batch_size,
        )
        poller_task = asyncio.create_task(poller.run_forever())
        logger.info("background_poller_started")

    try:
        yield
    finally:
        if poller is not None:
            poller.stop()
            try:
                await asyncio.wait_for(poller_task, timeout=POLLER_SHUTDOWN_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                # wait_for has cancelled the task; the in-flight request is marked error
                logger.warning("background_poller_shutdown_timeout", timeout=POLLER_SHUTDOWN_TIMEOUT_SECONDS)
            logger.info("background_poller_stopped")

        if owns_orchestrator:
            await app.state.orchestrator.aclose()
            app.state.orchestrator = None
            logger.info("orchestrator_closed")


# Initialize logging before creating the app
setup_logging(log_dir="logs", log_filename="worker.log")

app = FastAPI(
    title="botcheck Analysis Worker",
    description="Bot-likelihood analysis of social-media users' text history",
    version="1.0.0",
    lifespan=lifespan,
)

logger = get_logger(__name__)

app.include_router(analyze.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Convert request validation errors into the ErrorEnvelope format (422)."""
    logger = get_logger(__name__)
    logger.warning("validation_error", path=request.url.path, errors=exc.errors())

    error_envelope = ErrorEnvelope(
        error=ErrorDetail(
            code=VALIDATION_ERROR,
            message=f"Request validation failed: {exc.errors()[0]['msg']}"
        )
    )

    return JSONResponse(status_code=422, content=error_envelope.model_dump())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException with error envelope format.

    Routes exceptions raised via raise_api_error() or raw HTTPException
    into the standard ErrorEnvelope structure.
    """
    logger = get_logger(__name__)
    logger.warning("http_exception", path=request.url.path, status=exc.status_code)

    if isinstance(exc.detail, dict) and "code" in exc.detail:
        code = exc.detail["code"]
        message = exc.detail["message"]
    else:
        code_map = {404: NOT_FOUND, 422: VALIDATION_ERROR}
        code = code_map.get(exc.status_code, INTERNAL_ERROR)
        message = str(exc.detail) if exc.detail else "An error occurred"

    error_envelope = ErrorEnvelope(error=ErrorDetail(code=code, message=message))

    return JSONResponse(status_code=exc.status_code, content=error_envelope.model_dump())


@app.exception_handler(404)
async def not_found_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert unknown-route 404s into the ErrorEnvelope format."""
    logger = get_logger(__name__)
    logger.warning("not_found", path=request.url.path)

    detail = getattr(exc, "detail", None)
    if isinstance(detail, dict) and "message" in detail:
        message = detail["message"]
    else:
        message = f"Resource not found: {request.url.path}"

    error_envelope = ErrorEnvelope(error=ErrorDetail(code=NOT_FOUND, message=message))

    return JSONResponse(status_code=404, content=error_envelope.model_dump())


@app.exception_handler(500)
async def internal_server_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert uncaught server errors into the ErrorEnvelope format."""
    logger = get_logger(__name__)
    logger.error(
        "internal_server_error",
        path=request.url.path,
        error=str(exc),
        traceback=traceback.format_exc(),
    )

    error_envelope = ErrorEnvelope(
        error=ErrorDetail(
            code=INTERNAL_ERROR,
            message="An internal server error occurred"
        )
    )

    return JSONResponse(status_code=500, content=error_envelope.model_dump())


@app.get("/")
async def root() -> Dict[str, str]:
    """Root endpoint for basic liveness check.

    Example:
        GET / -> {"status": "ok", "message": "botcheck analysis worker"}
    """
    return {
        "status": "ok",
        "message": "botcheck analysis worker"
    }


@app.get("/health")
async def health() -> Dict[str, str]:
    """Health check endpoint.

    Example:
        GET /health -> {"status": "healthy"}
    """
    return {"status": "healthy"}
