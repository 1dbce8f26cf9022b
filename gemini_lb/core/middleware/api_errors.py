from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from gemini_lb.core.errors import dashboard_error
from gemini_lb.core.utils.request_id import get_request_id

logger = logging.getLogger(__name__)

JSON_ERROR_PREFIXES = ("/api/", "/debug/")


def wants_json_errors(path: str) -> bool:
    return path.startswith(JSON_ERROR_PREFIXES)


def add_api_unhandled_error_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def api_unhandled_error_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        try:
            return await call_next(request)
        except Exception:
            if not wants_json_errors(request.url.path):
                raise
            logger.exception(
                "api_unhandled_error method=%s path=%s request_id=%s",
                request.method,
                request.url.path,
                get_request_id(),
            )
            return JSONResponse(
                status_code=500,
                content=dashboard_error("internal_error", "Unexpected error"),
            )
