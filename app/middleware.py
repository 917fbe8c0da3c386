"""FastAPI middleware for request tracking, logging and rate limiting."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings

logger = logging.getLogger(__name__)

# Shared limiter; routes decorate their endpoints with ``limiter.limit(RATE_LIMIT)``
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
RATE_LIMIT = f"{settings.rate_limit_per_minute}/minute"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log its method, path, status and duration."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Add request ID to request state and response headers."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        logger.info(
            f"Request [{request_id}]: {request.method} {request.url.path}",
            extra={"request_id": request_id, "method": request.method, "path": request.url.path},
        )

        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.info(
            f"Response [{request_id}]: {response.status_code} in {elapsed * 1000:.1f}ms",
            extra={"request_id": request_id, "status_code": response.status_code},
        )
        return response
