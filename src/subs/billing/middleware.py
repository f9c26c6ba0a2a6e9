"""
Billing HTTP middleware.

Turns ``BillingError`` into JSON error bodies, tags every response with a
correlation id and logs billing requests.
"""

import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from subs.billing.exceptions import BillingError
from subs.logging import bind_request_context, clear_request_context

logger = structlog.get_logger(__name__)

BILLING_PATH_PREFIX = "/api/v1/billing/"
DEFAULT_CORRELATION_HEADER = "X-Correlation-ID"

INTERNAL_ERROR = {
    "error_code": "INTERNAL_ERROR",
    "message": "An unexpected error occurred processing your request",
    "status_code": 500,
    "recovery_hint": "Please try again later or contact support if the issue persists",
}


class BillingErrorMiddleware(BaseHTTPMiddleware):
    """Converts billing errors to JSON responses with a correlation id."""

    def __init__(
        self,
        app: ASGIApp,
        header_name: str = DEFAULT_CORRELATION_HEADER,
        enable_correlation_ids: bool = True,
    ) -> None:
        super().__init__(app)
        self.header_name = header_name
        self.enable_correlation_ids = enable_correlation_ids

    def _error_response(
        self, request: Request, status_code: int, error: dict[str, Any], correlation_id: str | None
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={
                "error": error,
                "correlation_id": correlation_id,
                "request_path": request.url.path,
            },
            headers={self.header_name: correlation_id} if correlation_id else None,
        )

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id: str | None = None
        if self.enable_correlation_ids:
            correlation_id = request.headers.get(self.header_name) or str(uuid.uuid4())
            bind_request_context(correlation_id=correlation_id)
        request.state.correlation_id = correlation_id

        path = request.url.path
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except BillingError as e:
            logger.warning(
                "billing.request.error",
                method=request.method,
                path=path,
                error_code=e.error_code,
                error_message=e.message,
                error_context=e.context,
                duration=time.perf_counter() - started,
            )
            return self._error_response(request, e.status_code, e.to_dict(), correlation_id)
        except Exception as e:
            logger.exception(
                "billing.request.unexpected_error",
                method=request.method,
                path=path,
                error=str(e),
                duration=time.perf_counter() - started,
            )
            return self._error_response(request, 500, INTERNAL_ERROR, correlation_id)
        finally:
            clear_request_context()

        if path.startswith(BILLING_PATH_PREFIX):
            logger.info(
                "billing.request.completed",
                method=request.method,
                path=path,
                correlation_id=correlation_id,
                status_code=response.status_code,
                duration=time.perf_counter() - started,
            )
        if correlation_id:
            response.headers.setdefault(self.header_name, correlation_id)
        return response


def setup_billing_middleware(
    app: FastAPI,
    header_name: str = DEFAULT_CORRELATION_HEADER,
    enable_correlation_ids: bool = True,
) -> None:
    """Install billing middleware on the application."""
    app.add_middleware(
        BillingErrorMiddleware,
        header_name=header_name,
        enable_correlation_ids=enable_correlation_ids,
    )
    logger.info(
        "billing.middleware.configured",
        correlation_header=header_name,
        correlation_ids=enable_correlation_ids,
    )
