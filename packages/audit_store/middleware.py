"""Request ID middleware for the audit API.

Binds the caller's X-Request-ID (or a fresh UUID) to the logging context for
the duration of a request and echoes it back on the response, so log entries
written while serving an audit query can be traced to it.
"""

import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from packages.structured_logging import set_request_id

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Propagates X-Request-ID through the logging context and response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        set_request_id(request_id)

        try:
            response = await call_next(request)
        finally:
            set_request_id("")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
