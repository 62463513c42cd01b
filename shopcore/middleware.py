"""
Middleware for FastAPI: request correlation, access logging and latency header.
"""
import time
import uuid
import hashlib
import logging
from typing import Callable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from shopcore.config import Config

# Configure logging
logging.basicConfig(
    level=Config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def hash_identifier(identifier: str) -> str:
    """Hash identifier for logging (no PII)"""
    return hashlib.sha256(identifier.encode()).hexdigest()[:8]


def _owner_tag(request: Request) -> Optional[str]:
    # Same precedence as owner resolution: user beats guest session
    user_id = request.headers.get("X-User-ID")
    if user_id:
        return f"user:{hash_identifier(user_id)}"
    session_id = request.headers.get("X-Session-ID")
    if session_id:
        return f"guest:{hash_identifier(session_id)}"
    return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log per request, tagged with a request id and a hashed owner"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        owner = _owner_tag(request)
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Unhandled {type(e).__name__} on {request.method} {request.url.path} [{request_id}]",
                extra={"request_id": request_id, "owner": owner},
                exc_info=True
            )
            raise

        latency_ms = (time.perf_counter() - started) * 1000
        level = logging.WARNING if latency_ms >= Config.SLOW_REQUEST_MS else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} {response.status_code} {latency_ms:.1f}ms [{request_id}]",
            extra={
                "request_id": request_id,
                "owner": owner,
                "status_code": response.status_code,
                "latency_ms": round(latency_ms, 2),
                "remote_addr": request.client.host if request.client else None
            }
        )

        response.headers["X-Response-Time-Ms"] = f"{latency_ms:.2f}"
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
