from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import Response

from gemini_lb.core.utils.request_id import reset_request_id, set_request_id

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"


def add_request_id_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def request_id_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or request.headers.get("request-id") or str(uuid4())
        token = set_request_id(request_id)
        started = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        if request.url.path.startswith("/api/gemini/"):
            logger.debug(
                "request_done method=%s path=%s status=%s latency_ms=%d request_id=%s",
                request.method,
                request.url.path,
                response.status_code,
                int((time.monotonic() - started) * 1000),
                request_id,
            )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response
