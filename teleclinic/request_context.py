"""
Per-request trace id.

The id comes from the incoming X-Request-Id header (or a fresh UUID4), is kept
in a context variable for the lifetime of the request, and is echoed back on
the response so clients can correlate logs and audit rows.
"""

import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-Id"

_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)


def get_trace_id() -> Optional[str]:
    return _trace_id.get()


def set_trace_id(trace_id: Optional[str]) -> None:
    _trace_id.set(trace_id)


class TraceIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        trace_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.trace_id = trace_id
        token = _trace_id.set(trace_id)
        try:
            response = await call_next(request)
        finally:
            _trace_id.reset(token)
        response.headers[REQUEST_ID_HEADER] = trace_id
        return response
