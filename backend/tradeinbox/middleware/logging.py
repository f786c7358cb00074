"""
TradeInbox Backend — Request Logging Middleware
=================================================

What:  One access log line per HTTP request: method, path, status, duration.
Why:   Webhook deliveries and uploads are the pipeline's entry points; their
       status and latency are the first thing to check when items go missing.
How:   Logger "tradeinbox.access"; level follows the status class
       (5xx → ERROR, 4xx → WARNING, else INFO). /health is not logged.

What we log vs what we DON'T log (privacy):
    Log:       method, path, status, duration, IP, request ID
    Don't log: bodies (email text, phone numbers, attachments), query strings
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from tradeinbox.middleware.request_id import request_id_var

logger = logging.getLogger("tradeinbox.access")

QUIET_PATHS = {"/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = getattr(request.client, "host", "unknown") if request.client else "unknown"

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        rid = request_id_var.get("")
        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
