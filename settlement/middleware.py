"""Application middleware: request body size limits, HSTS, security headers."""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

UPLOAD_PATH_PREFIX = "/batches"


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject request bodies over the limit based on Content-Length.

    Batch file uploads get their own, larger limit.
    """

    def __init__(self, app, max_bytes: int = 1_048_576, upload_max_bytes: int | None = None) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.max_bytes = max_bytes
        self.upload_max_bytes = upload_max_bytes or max_bytes

    def _limit_for(self, request: Request) -> int:
        if request.method == "POST" and request.url.path.rstrip("/") == UPLOAD_PATH_PREFIX:
            # multipart framing adds a little on top of the file itself
            return self.upload_max_bytes + 64 * 1024
        return self.max_bytes

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        if request.method in ("POST", "PATCH", "PUT", "DELETE"):
            content_length = request.headers.get("content-length")
            limit = self._limit_for(request)
            if content_length:
                try:
                    size = int(content_length)
                except ValueError:
                    return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length"})
                if size > limit:
                    return JSONResponse(
                        status_code=413,
                        content={"detail": f"Request body too large (max {limit} bytes)"},
                    )
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses. Nothing here is cacheable."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        response = await call_next(request)
        response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response
