"""Request logging middleware: request id propagation and timing."""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One structured log line per request; failures are logged before re-raising."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        fields = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        }

        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            fields["duration_ms"] = round((time.monotonic() - start) * 1000, 1)
            logger.exception("request_failed", extra=fields)
            raise

        fields["status"] = response.status_code
        fields["duration_ms"] = round((time.monotonic() - start) * 1000, 1)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info("request", extra=fields)
        return response
