"""
GammaDesk: Global Exception Handlers

Every error response follows one JSON schema:
    {"error": true, "status_code": ..., "detail": ..., "request_id": ...}

ValueError from input validation (bad ticker, bad symbol, bad price) maps to
400; request-model validation to 422 with field details; anything else to
500 without internals.
"""

from __future__ import annotations

import traceback

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

log = structlog.get_logger(__name__)


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


def _error_body(status_code: int, detail, request: Request, **extra) -> dict:
    return {
        "error": True,
        "status_code": status_code,
        "detail": detail,
        "request_id": _request_id(request),
        **extra,
    }


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, exc.detail, request),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Pydantic request validation errors → 422 with field details."""
        errors = [
            {
                "field": ".".join(str(loc) for loc in err.get("loc", [])),
                "message": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        log.warning(
            "validation_error",
            path=str(request.url.path),
            errors=errors,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=422,
            content=_error_body(422, "Validation error", request, errors=errors),
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """Domain input errors → 400."""
        detail = str(exc).splitlines()[0] if str(exc) else "Invalid input"
        log.info("bad_request", path=str(request.url.path), detail=detail)
        return JSONResponse(status_code=400, content=_error_body(400, detail, request))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions → 500 with safe details."""
        log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
            traceback=traceback.format_exc(),
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=500,
            content=_error_body(500, "Internal server error", request),
        )
