import logging
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .config import settings

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

access_logger = structlog.get_logger("flowtrade.access")


def setup_logging() -> None:
    level = settings.log_level.upper()
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def resolve_request_id(incoming: Optional[str]) -> str:
    """Caller-supplied id when usable, otherwise a fresh uuid4."""
    if incoming and incoming.strip() and len(incoming) <= MAX_REQUEST_ID_LENGTH:
        return incoming.strip()
    return str(uuid.uuid4())


@contextmanager
def request_context(request_id: str, **fields) -> Iterator[str]:
    """Bind ``request_id`` (and any extra fields) to every log line in the block."""
    names = ["request_id", *fields]
    structlog.contextvars.bind_contextvars(request_id=request_id, **fields)
    try:
        yield request_id
    finally:
        structlog.contextvars.unbind_contextvars(*names)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        started = time.perf_counter()
        with request_context(request_id, method=request.method, path=request.url.path):
            response = await call_next(request)
            access_logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
