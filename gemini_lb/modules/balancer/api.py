from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException

from gemini_lb.core.config.settings import get_settings
from gemini_lb.dependencies import GenerateContext, get_generate_context
from gemini_lb.modules.balancer.load_test import run_synthetic_load
from gemini_lb.modules.balancer.schemas import DashboardResponse, LoadTestRequest, LoadTestResponse

router = APIRouter(prefix="/api/gemini", tags=["dashboard"])


@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    context: GenerateContext = Depends(get_generate_context),
) -> DashboardResponse:
    snapshot = await context.balancer.snapshot()
    return DashboardResponse.from_snapshot(snapshot)


@router.post("/test-balancer", response_model=LoadTestResponse)
async def run_balancer_load_test(
    payload: LoadTestRequest | None = Body(default=None),
    context: GenerateContext = Depends(get_generate_context),
) -> LoadTestResponse:
    settings = get_settings()
    payload = payload or LoadTestRequest()
    if payload.count > settings.load_test_max_count:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "validation_error",
                "message": f"count must be <= {settings.load_test_max_count}",
            },
        )
    report = await run_synthetic_load(
        context.balancer,
        count=payload.count,
        model=payload.model or settings.default_model,
        dry_run=payload.dry_run,
        caller=context.service.probe,
    )
    return LoadTestResponse.from_report(report)
