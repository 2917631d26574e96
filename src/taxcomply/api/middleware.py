from __future__ import annotations

import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from taxcomply.core.constants import REQUEST_ID_HEADER, USER_ID_HEADER
from taxcomply.core.logging import bind_request_context, clear_request_context

Logger = structlog.BoundLogger


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tag every request and response with a request id."""

    def __init__(self, app: ASGIApp, header_name: str = REQUEST_ID_HEADER) -> None:
        super().__init__(app)
        self._header_name = header_name

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(self._header_name) or str(uuid.uuid4())
        context: dict[str, str] = {}
        user_id = request.headers.get(USER_ID_HEADER)
        if user_id:
            context["user_id"] = user_id
        bind_request_context(request_id=request_id, **context)
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        finally:
            clear_request_context()

        response.headers[self._header_name] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)
        self._logger: Logger = structlog.get_logger("taxcomply.request")

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.perf_counter()
        path = request.url.path

        try:
            response = await call_next(request)
        except Exception:
            self._logger.exception(
                "request_failed",
                method=request.method,
                path=path,
                duration_ms=round((time.perf_counter() - start) * 1000, 3),
            )
            raise

        self._logger.info(
            "request_completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 3),
        )
        return response
