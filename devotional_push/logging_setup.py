import logging
import time
import uuid
from urllib.parse import urlparse

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

NOISY_LOGGERS = ("httpx", "urllib3", "sqlalchemy.engine")

_CONTEXT_SCOPE_KEY = "devotional_push.log_context"

access_logger = logging.getLogger("devotional_push.access")


def init_logging(level: str = "INFO"):
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def push_service(endpoint: str) -> str:
    """Host of the push service behind an endpoint, safe to log in full."""
    return urlparse(endpoint).netloc or "unknown"


def log_context(request: Request, **fields) -> None:
    """Attach fields to the request's access log line."""
    context = request.scope.get(_CONTEXT_SCOPE_KEY)
    if context is not None:
        context.update(fields)


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        context: dict = {}
        request.scope[_CONTEXT_SCOPE_KEY] = context
        start = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start) * 1000
        extra = " ".join(f"{key}={value}" for key, value in context.items())
        access_logger.info(
            "%s %s %s %.2fms request_id=%s%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
            f" {extra}" if extra else "",
        )
        response.headers["X-Request-ID"] = request_id
        return response
