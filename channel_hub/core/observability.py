from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Context variables to carry across the request lifecycle
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
organization_id_ctx: ContextVar[str] = ContextVar("organization_id", default="-")
route_ctx: ContextVar[str] = ContextVar("route", default="-")

# Process-local counters
_METRICS: Dict[str, float] = {
    "requests_total": 0.0,
    "requests_errors_total": 0.0,
    "verifications_total": 0.0,
    "verification_failures_total": 0.0,
    "status_probes_total": 0.0,
    "status_probe_failures_total": 0.0,
    "messages_sent_total": 0.0,
    "adapter_latency_ms_sum": 0.0,
}

# Keys whose values are never written to a log record
SENSITIVE_KEYS = {
    "token",
    "access_token",
    "accesstoken",
    "refresh_token",
    "apikey",
    "api_key",
    "password",
    "secret",
    "authorization",
    "credentials",
}


def metrics_snapshot() -> Dict[str, float]:
    """Return a shallow copy of current metrics."""
    return dict(_METRICS)


# PUBLIC_INTERFACE
def increment_metric(name: str, inc: float = 1.0) -> None:
    """Increment a named metric counter by inc."""
    _METRICS[name] = _METRICS.get(name, 0.0) + inc


# PUBLIC_INTERFACE
def observe_latency(name: str, ms: float) -> None:
    """Accumulate latency in milliseconds for a given metric name."""
    _METRICS[name] = _METRICS.get(name, 0.0) + ms


def mask_secret_value(value: Optional[str], keep: int = 4) -> Optional[str]:
    """Mask a secret for safe logging. Keep last N chars."""
    if value is None:
        return None
    v = str(value)
    if len(v) <= keep * 2:
        return "*" * len(v)
    return "*" * (len(v) - keep) + v[-keep:]


def scrub(data: Any) -> Any:
    """Return a copy of data with sensitive keys masked, for log extras."""
    if isinstance(data, dict):
        out: Dict[str, Any] = {}
        for key, value in data.items():
            if str(key).lower().replace("-", "_") in SENSITIVE_KEYS:
                out[key] = mask_secret_value(value) if isinstance(value, str) else "***"
            else:
                out[key] = scrub(value)
        return out
    if isinstance(data, list):
        return [scrub(item) for item in data]
    return data


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request id and organization id to the context and emit request logs + metrics."""

    def __init__(self, app, tenant_header_name: str = "X-Tenant-ID", logger: Optional[logging.Logger] = None):
        super().__init__(app)
        self.tenant_header_name = tenant_header_name
        self.logger = logger or logging.getLogger(__name__)

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_ctx.set(rid)
        oid = request.headers.get(self.tenant_header_name) or "-"
        organization_id_ctx.set(oid)
        route_ctx.set(request.url.path)

        increment_metric("requests_total", 1.0)
        self.logger.info(
            "request_start",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client": request.client.host if request.client else None,
            },
        )
        try:
            response: Response = await call_next(request)
            if response.status_code >= 400:
                increment_metric("requests_errors_total", 1.0)
            response.headers["X-Request-ID"] = rid
            return response
        except Exception as ex:
            increment_metric("requests_errors_total", 1.0)
            self.logger.exception("request_error", extra={"error": type(ex).__name__})
            raise
        finally:
            dur_ms = (time.perf_counter() - start) * 1000.0
            self.logger.info("request_end", extra={"duration_ms": round(dur_ms, 2)})


# PUBLIC_INTERFACE
def get_structured_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger that adds correlation attributes through logging Filters."""
    logger = logging.getLogger(name or __name__)
    if not any(isinstance(f, _ContextFilter) for f in logger.filters):
        logger.addFilter(_ContextFilter())
    return logger


class _ContextFilter(logging.Filter):
    """Inject request context (request_id, organization_id, route) into records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        record.organization_id = organization_id_ctx.get()
        record.route = route_ctx.get()
        return True
