"""
Error Handlers - HTTP mapping of data-access errors
====================================================

Route handlers built on the service facade do not translate errors
themselves. They let ``TenantSheetsError`` subclasses propagate, and the
handlers registered here turn them into JSON responses with a stable
status code:

| kind                                     | status |
|------------------------------------------|--------|
| tenant_not_found                         | 404    |
| tenant_disabled                          | 403    |
| throttled (+ Retry-After header)         | 429    |
| invalid                                  | 400    |
| sheet_not_found                          | 404    |
| pool_exhausted, queue_full, queue_shutdown | 503  |
| connection_failed, quota_exceeded, unavailable, timeout, remote_auth, document_not_found, retries_exhausted | 502 |
| anything else                            | 500    |

The status comes from the exception class (``http_status``), so a new
error only has to declare its own.

Usage:
    app = FastAPI()
    register_exception_handlers(app, metrics=service.metrics)
"""

import math
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tenant_sheets.core.exceptions import TenantSheetsError, ThrottledError
from tenant_sheets.core.logging import get_logger
from tenant_sheets.infrastructure.monitoring.metrics_collector import MetricsCollector

logger = get_logger(__name__)

RETRY_AFTER_UNBOUNDED = 3600  # seconds, for buckets that can never refill


def retry_after_header(retry_after: float) -> str:
    """Retry-After takes whole seconds; never advertise less than one."""
    if not math.isfinite(retry_after):
        return str(RETRY_AFTER_UNBOUNDED)
    return str(max(1, math.ceil(retry_after)))


def error_response(exc: TenantSheetsError) -> JSONResponse:
    headers = {}
    if isinstance(exc, ThrottledError):
        headers["Retry-After"] = retry_after_header(exc.retry_after)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


def register_exception_handlers(
    app: FastAPI,
    metrics: MetricsCollector | None = None,
    include_traceback: bool = False,
) -> None:
    """
    Register the data-access error handlers on a FastAPI application.

    Args:
        app: FastAPI application instance
        metrics: Collector that counts errors by kind (optional)
        include_traceback: Add stack traces to 500 responses
            (development only, never in production)
    """

    async def tenant_sheets_error_handler(request: Request, exc: TenantSheetsError) -> JSONResponse:
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            f"Request failed: {exc.message}",
            stage="SV.9",
            method=request.method,
            path=request.url.path,
            error_kind=exc.kind,
            status=exc.http_status,
            tenant_id=exc.tenant_id,
        )
        if metrics is not None:
            metrics.record_error(exc.kind, "http")
        return error_response(exc)

    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        # Last line of defense: log everything, expose nothing
        logger.error(
            f"Unhandled exception in request: {request.method} {request.url.path}",
            stage="SV.9",
            error_type=type(exc).__name__,
            exc_info=exc,
        )
        if metrics is not None:
            metrics.record_error(type(exc).__name__, "unhandled_exception")

        content = {
            "error_type": "internal_server_error",
            "kind": TenantSheetsError.kind,
            "message": "An unexpected error occurred while processing your request",
        }
        if include_traceback:
            content["traceback"] = "".join(traceback.format_exception(exc))
        return JSONResponse(status_code=500, content=content)

    app.add_exception_handler(TenantSheetsError, tenant_sheets_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    logger.info("Exception handlers registered", stage="SV.9", include_traceback=include_traceback)
