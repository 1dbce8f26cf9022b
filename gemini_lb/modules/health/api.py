from __future__ import annotations

from fastapi import APIRouter, Request

from gemini_lb.modules.shared.schemas import DashboardModel

router = APIRouter(tags=["health"])


class HealthResponse(DashboardModel):
    status: str
    keys: int


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    balancer = getattr(request.app.state, "balancer", None)
    return HealthResponse(status="ok", keys=balancer.size if balancer is not None else 0)
