"""Request ID propagation.

HTTP requests carry X-Request-ID (generated when absent); fetches started
outside an HTTP request (the CLI) bind their FetchRequest id instead, so
every log line of a fetch can be correlated.
"""

import contextvars
import uuid
from contextlib import contextmanager

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default=""
)


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        with bind_request_id(rid):
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response


@contextmanager
def bind_request_id(rid: str):
    """Set the current request id for the enclosed block."""
    token = request_id_var.set(rid)
    try:
        yield rid
    finally:
        request_id_var.reset(token)


def get_request_id() -> str:
    """Get the current request ID (empty string outside a request)."""
    return request_id_var.get()
