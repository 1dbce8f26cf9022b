from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from gemini_lb.core.errors import dashboard_error
from gemini_lb.core.middleware.api_errors import wants_json_errors


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> Response:
        if not wants_json_errors(request.url.path):
            return await request_validation_exception_handler(request, exc)
        message = "Invalid request payload"
        errors = exc.errors()
        if errors:
            loc = errors[0].get("loc", [])
            if isinstance(loc, (list, tuple)):
                param = ".".join(str(part) for part in loc if part != "body")
                if param:
                    message = f"{message}: {param}"
        return JSONResponse(status_code=422, content=dashboard_error("validation_error", message))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request,
        exc: StarletteHTTPException,
    ) -> Response:
        if not wants_json_errors(request.url.path):
            return await http_exception_handler(request, exc)
        # Routes may raise HTTPException(detail={"code": ..., "message": ...}) for a specific code.
        if isinstance(exc.detail, dict) and "code" in exc.detail:
            content = dashboard_error(str(exc.detail["code"]), str(exc.detail.get("message", "Request failed")))
        else:
            detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
            content = dashboard_error(f"http_{exc.status_code}", detail)
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)
