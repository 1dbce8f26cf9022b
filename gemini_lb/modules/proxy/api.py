from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import JSONResponse

from gemini_lb.core.errors import dashboard_error
from gemini_lb.dependencies import GenerateContext, get_generate_context
from gemini_lb.modules.proxy.schemas import GenerateRequest, GenerateResponse
from gemini_lb.modules.proxy.service import GenerateError

router = APIRouter(prefix="/api/gemini", tags=["proxy"])


@router.post("/generate", response_model=GenerateResponse)
async def generate(
    payload: GenerateRequest = Body(...),
    context: GenerateContext = Depends(get_generate_context),
) -> GenerateResponse | JSONResponse:
    if not payload.resolved_contents():
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_request", "message": "Either prompt or contents is required"},
        )
    try:
        return await context.service.generate(payload)
    except GenerateError as exc:
        return JSONResponse(
            status_code=exc.status_code,
            content=dashboard_error(exc.code, exc.message),
            headers=exc.headers,
        )
