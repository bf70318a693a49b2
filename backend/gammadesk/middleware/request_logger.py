"""
GammaDesk: Request Logger Middleware

Every HTTP call gets a request id that follows it through the structlog
context, the uniform error body and the X-Request-ID response header.
Analytics calls also bind the operation and ticker, so a burst of
`flow.trade_rejected` warnings can be traced back to the push that caused it.

Completion is logged at a level matching the outcome: info for success,
warning for client errors or slow calls, error for server errors.
"""

from __future__ import annotations

import re
import time
import uuid
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from gammadesk.config import Settings, get_settings

log = structlog.get_logger(__name__)

_QUIET_PATHS = frozenset({"/health", "/metrics", "/favicon.ico"})

# /v1/api/<operation>/<ticker>
_ANALYTICS_PATH = re.compile(r"^/v\d+/api/(?P<operation>[a-z-]+)/(?P<ticker>[^/]+)$")

# Caller-supplied ids are echoed into logs and headers, keep them tame
_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def resolve_request_id(header: Optional[str]) -> str:
    """Reuse a well-formed caller id, otherwise mint one."""
    if header and _REQUEST_ID.match(header):
        return header
    return uuid.uuid4().hex


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """Bind request context and log one completion line per analytics call."""

    def __init__(self, app, settings: Optional[Settings] = None):
        super().__init__(app)
        self._slow_ms = (settings or get_settings()).slow_request_ms

    async def dispatch(self, request: Request, call_next):
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        request.state.request_id = request_id
        path = request.url.path

        if path in _QUIET_PATHS:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

        context = {"request_id": request_id}
        match = _ANALYTICS_PATH.match(path)
        if match:
            context["operation"] = match["operation"]
            context["ticker"] = match["ticker"].upper()
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**context)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            log.error(
                "request.error",
                method=request.method,
                path=path,
                latency_ms=round((time.perf_counter() - start) * 1000, 1),
            )
            raise

        latency_ms = round((time.perf_counter() - start) * 1000, 1)
        status = response.status_code
        if status >= 500:
            emit = log.error
        elif status >= 400 or latency_ms > self._slow_ms:
            emit = log.warning
        else:
            emit = log.info
        emit(
            "request.complete",
            method=request.method,
            path=path,
            status=status,
            latency_ms=latency_ms,
            slow=latency_ms > self._slow_ms,
        )

        response.headers["X-Request-ID"] = request_id
        return response
