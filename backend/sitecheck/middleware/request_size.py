"""
Request size enforcement middleware.

Check requests carry a single URL, so anything large is rejected with 413
before the body is parsed.
"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
import structlog

logger = structlog.get_logger()


class RequestSizeMiddleware(BaseHTTPMiddleware):
    """Reject request bodies larger than ``max_size`` bytes."""

    def __init__(self, app, max_size: int = 64 * 1024):
        super().__init__(app)
        self.max_size = max_size

    def _too_large(self, request: Request, size: int) -> JSONResponse:
        logger.warning(
            "Request size exceeded",
            path=request.url.path,
            size_bytes=size,
            limit_bytes=self.max_size,
            client=request.client.host if request.client else "unknown",
        )
        return JSONResponse(
            status_code=413,
            content={"detail": f"Request body too large. Maximum size is {self.max_size} bytes"},
        )

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("Content-Length")

        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                size = None
            if size is not None and size > self.max_size:
                return self._too_large(request, size)
        elif request.method in ("POST", "PUT", "PATCH"):
            # No Content-Length header on mutating requests -- enforce limit via body read
            body = await request.body()
            if len(body) > self.max_size:
                return self._too_large(request, len(body))

        return await call_next(request)
