"""
TradeInbox Backend — Request ID Middleware
============================================

What:  Assigns a correlation ID to each request and echoes it in X-Request-ID.
Why:   Error responses carry the ID, so a failed upload or webhook can be found
       in the logs from the client side.
How:   Client-provided X-Request-ID wins; otherwise a short UUID is generated.
       The ID lives in a ContextVar (coroutine-local) and on request.state.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Sets request_id_var for the duration of the request."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response
