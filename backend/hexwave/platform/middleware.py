import time
import uuid
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from .request_context import set_request_id, set_user_id

logger = logging.getLogger("hexwave.middleware")

_QUIET_PATHS = {"/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Stamp request and caller ids into the log context and log each request."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        set_request_id(request_id)
        set_user_id(request.headers.get("X-User-Id") or None)
        response = await call_next(request)

        duration_ms = (time.time() - start_time) * 1000

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "%s %s -> %d in %.1fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={"request_id": request_id, "status_code": response.status_code},
            )

        response.headers["X-Process-Time-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = request_id

        return response
