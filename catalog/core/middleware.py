"""HTTP middleware: request logging with request ids, and timing headers.

CORS and CSRF are wired in ``main.create_app`` (Starlette's ``CORSMiddleware``
and ``catalog.core.csrf.CSRFMiddleware``).
"""
import time
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from catalog.core.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def log_requests(request: Request, call_next):
    """Log every request with timing and status code, tagged with a request id."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request.state.request_id = request_id

    start_time = time.perf_counter()

    logger.info(
        f"Request started: {request.method} {request.url.path}",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "client": request.client.host if request.client else None,
        }
    )

    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round(duration_ms, 2),
                "error": str(e),
            },
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "code": "error", "request_id": request_id},
            headers={REQUEST_ID_HEADER: request_id},
        )

    duration_ms = (time.perf_counter() - start_time) * 1000
    user = getattr(request.state, "user", None)

    logger.info(
        f"Request completed: {request.method} {request.url.path}",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "user_id": user.id if user is not None else None,
        }
    )

    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def add_process_time_header(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{time.perf_counter() - start_time:.4f}"
    return response
