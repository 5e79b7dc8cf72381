"""
Observability: logging setup and request correlation.

Every request gets a correlation ID (taken from `X-Correlation-ID` or
generated). It is echoed back on the response and stamped on every log
record emitted while the request runs, so a payout failure or fraud block
can be traced to the call that caused it.
"""

import time
import uuid
import logging
from contextvars import ContextVar
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from billing_backend.app.core.config import settings

logger = logging.getLogger("billing.http")

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s %(message)s"


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        return True


def configure_logging(level: str = None) -> None:
    """Configure root logging once for the process."""
    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.basicConfig(level=(level or settings.log_level).upper(), handlers=[handler])


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            response.headers["X-Correlation-ID"] = correlation_id
            response.headers["X-Process-Time"] = str(duration_ms)

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(
                level, "%s %s -> %s (%sms)",
                request.method, request.url.path, response.status_code, duration_ms,
                extra={"path": request.url.path, "status_code": response.status_code, "duration_ms": duration_ms},
            )
            return response
        finally:
            correlation_id_var.reset(token)
