"""
FastAPI application for planloom.

Creates the app, wires an Engine into ``app.state`` and maps planloom
errors onto consistent JSON error responses.

Usage:
    # Run the server
    uvicorn planloom.core.api.app:create_app --factory

    # Or from Python, with an engine of your own
    app = create_app(build_engine(config))
"""

import logging
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from planloom import __version__
from planloom.core.api.routes import phases, plans, refine, tasks
from planloom.core.engine import Engine, build_engine
from planloom.core.errors import (
    DependencyDeadlock,
    HarnessUnavailable,
    InvalidTransition,
    NotFoundError,
    PlanloomError,
    RefinementFailure,
    SessionBusy,
    StorageFailure,
    ValidationFailure,
)

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standard error codes for API responses."""

    # Client errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    SESSION_BUSY = "SESSION_BUSY"
    DEPENDENCY_DEADLOCK = "DEPENDENCY_DEADLOCK"

    # Server errors (5xx)
    DATABASE_ERROR = "DATABASE_ERROR"
    GENERATION_ERROR = "GENERATION_ERROR"
    HARNESS_UNAVAILABLE = "HARNESS_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error_code: ErrorCode
    message: str
    detail: str | None = None
    request_id: str | None = None


# Most specific first
ERROR_MAP: list[tuple[type[PlanloomError], int, ErrorCode]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND, ErrorCode.NOT_FOUND),
    (DependencyDeadlock, status.HTTP_409_CONFLICT, ErrorCode.DEPENDENCY_DEADLOCK),
    (SessionBusy, status.HTTP_409_CONFLICT, ErrorCode.SESSION_BUSY),
    (InvalidTransition, status.HTTP_409_CONFLICT, ErrorCode.INVALID_TRANSITION),
    (ValidationFailure, status.HTTP_400_BAD_REQUEST, ErrorCode.VALIDATION_ERROR),
    (StorageFailure, status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.DATABASE_ERROR),
    (HarnessUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE, ErrorCode.HARNESS_UNAVAILABLE),
    (RefinementFailure, status.HTTP_502_BAD_GATEWAY, ErrorCode.GENERATION_ERROR),
]


def _error_body(
    request: Request, error_code: ErrorCode, message: str, detail: str | None = None
) -> dict[str, str | None]:
    return ErrorResponse(
        error_code=error_code,
        message=message,
        detail=detail if detail is not None else message,
        request_id=str(id(request)),
    ).model_dump(mode="json")


def create_app(engine: Engine | None = None) -> FastAPI:
    """
    Create the FastAPI app.

    Args:
        engine: Engine to serve. When omitted one is built from the loaded
            configuration at startup and closed at shutdown.

    Returns:
        Configured FastAPI app
    """
    owns_engine = engine is None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.engine is None:
            app.state.engine = build_engine()
        current: Engine = app.state.engine
        current.controller.recover()
        try:
            yield
        finally:
            if owns_engine:
                await current.shutdown()
            else:
                await current.controller.shutdown()

    app = FastAPI(
        title="Planloom API",
        description="Plan orchestration and refinement",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    # Configure CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(plans.router, prefix="/api", tags=["plans"])
    app.include_router(phases.router, prefix="/api", tags=["phases"])
    app.include_router(tasks.router, prefix="/api", tags=["tasks"])
    app.include_router(refine.router, prefix="/api", tags=["refine"])

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    _register_exception_handlers(app)
    return app


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PlanloomError)
    async def planloom_exception_handler(request: Request, exc: PlanloomError) -> JSONResponse:
        """Map planloom errors to HTTP statuses."""
        http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
        error_code = ErrorCode.INTERNAL_ERROR
        for error_type, mapped_status, mapped_code in ERROR_MAP:
            if isinstance(exc, error_type):
                http_status, error_code = mapped_status, mapped_code
                break

        if http_status >= 500:
            logger.error(
                "HTTP %d on %s %s: %s", http_status, request.method, request.url.path, exc
            )
        else:
            logger.info(
                "HTTP %d on %s %s: %s", http_status, request.method, request.url.path, exc
            )

        return JSONResponse(
            status_code=http_status,
            content=_error_body(request, error_code, exc.message),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Handle HTTPException with the standard error body."""
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            error_code = ErrorCode.NOT_FOUND
        elif exc.status_code < 500:
            error_code = ErrorCode.INVALID_REQUEST
        else:
            error_code = ErrorCode.INTERNAL_ERROR
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, error_code, message),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request body/query validation errors."""
        logger.warning(
            "Validation error on %s %s: %s", request.method, request.url.path, exc.errors()
        )
        first_error = exc.errors()[0] if exc.errors() else {}
        field = " -> ".join(str(loc) for loc in first_error.get("loc", []))
        error_msg = first_error.get("msg", "Invalid input")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body(
                request,
                ErrorCode.VALIDATION_ERROR,
                "Request validation failed",
                f"{field}: {error_msg}" if field else error_msg,
            ),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log uncaught exceptions; return a clean 500."""
        logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.url.path,
            exc,
            traceback.format_exc(),
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(
                request,
                ErrorCode.INTERNAL_ERROR,
                "An internal server error occurred",
                str(exc),
            ),
        )
