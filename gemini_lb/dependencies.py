from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from gemini_lb.modules.balancer.service import KeyBalancer
from gemini_lb.modules.proxy.service import GenerateService


@dataclass(slots=True)
class GenerateContext:
    balancer: KeyBalancer
    service: GenerateService


def get_balancer(request: Request) -> KeyBalancer:
    balancer = getattr(request.app.state, "balancer", None)
    if balancer is None:
        raise HTTPException(
            status_code=503,
            detail={
                "code": "balancer_not_configured",
                "message": "No API keys configured; set GEMINI_LB_API_KEYS",
            },
        )
    return balancer


def get_generate_context(request: Request) -> GenerateContext:
    balancer = get_balancer(request)
    service = getattr(request.app.state, "generate_service", None)
    if service is None or service.balancer is not balancer:
        service = GenerateService(balancer)
        request.app.state.generate_service = service
    return GenerateContext(balancer=balancer, service=service)
