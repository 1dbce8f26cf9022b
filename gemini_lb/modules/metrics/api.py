from __future__ import annotations

from fastapi import APIRouter, Request
from starlette.responses import Response

from gemini_lb.core.metrics import get_metrics

router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request) -> Response:
    metrics = get_metrics()
    balancer = getattr(request.app.state, "balancer", None)
    if balancer is not None:
        metrics.refresh_key_gauges(await balancer.snapshot())
    return Response(
        content=metrics.render(),
        media_type=metrics.content_type,
        headers={"Cache-Control": "no-cache"},
    )
