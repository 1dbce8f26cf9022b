from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import anyio

from gemini_lb.core.balancer import AllKeysUnavailable, Outcome, Reservation, Success
from gemini_lb.core.clients.gemini import (
    GeminiGenerateResult,
    GeminiResponseError,
    classify_failure,
    generate_content,
)
from gemini_lb.core.config.settings import get_settings
from gemini_lb.core.metrics import get_metrics
from gemini_lb.core.utils.request_id import get_request_id
from gemini_lb.core.utils.tokens import estimate_tokens
from gemini_lb.modules.balancer.load_test import PROBE_PROMPT
from gemini_lb.modules.balancer.service import KeyBalancer
from gemini_lb.modules.proxy.schemas import GenerateRequest, GenerateResponse, GenerateUsage, KeyRef

logger = logging.getLogger(__name__)

ProviderCall = Callable[..., Awaitable[GeminiGenerateResult]]


class GenerateError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        *,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.retry_after_seconds = retry_after_seconds

    @property
    def headers(self) -> dict[str, str] | None:
        if self.retry_after_seconds is None:
            return None
        return {"Retry-After": str(max(1, math.ceil(self.retry_after_seconds)))}


def unavailable_error(result: AllKeysUnavailable) -> GenerateError:
    code = "request_too_large" if result.reason_code == "request_too_large" else "all_keys_unavailable"
    return GenerateError(429, code, result.message, retry_after_seconds=result.retry_after_seconds)


def provider_failure_error(exc: GeminiResponseError) -> GenerateError:
    status = exc.status_code if 400 <= exc.status_code <= 599 else 502
    code = "upstream_unavailable" if status >= 500 else "upstream_error"
    return GenerateError(status, code, exc.message)


class GenerateService:
    """Caller-side retry policy around the balancer.

    Key faults (throttling, quota, transient errors) are reported and retried on
    a fresh acquire, at most once per key in the pool. Request faults abandon
    the reservation and fail immediately.
    """

    def __init__(self, balancer: KeyBalancer, *, call: ProviderCall = generate_content) -> None:
        self._balancer = balancer
        self._call = call

    @property
    def balancer(self) -> KeyBalancer:
        return self._balancer

    async def generate(self, payload: GenerateRequest) -> GenerateResponse:
        model = payload.model or get_settings().default_model
        contents = payload.resolved_contents()
        estimated = estimate_tokens(contents)
        body = payload.provider_body()

        last_error: GeminiResponseError | None = None
        for attempt in range(1, self._balancer.size + 1):
            acquired = await self._balancer.acquire(estimated)
            if isinstance(acquired, AllKeysUnavailable):
                raise unavailable_error(acquired)

            if payload.dry_run:
                await self._balancer.report_outcome(acquired, Success(actual_tokens=estimated))
                return GenerateResponse(
                    text=None,
                    usage=GenerateUsage(estimated_tokens=estimated),
                    key=KeyRef(id_short=acquired.id_short),
                    model=model,
                    attempts=attempt,
                )

            try:
                result = await self._call_provider(acquired, model=model, body=body)
            except GeminiResponseError as exc:
                outcome = classify_failure(exc)
                if outcome is None:
                    await self._balancer.abandon(acquired)
                    raise provider_failure_error(exc) from exc
                await self._balancer.report_outcome(acquired, outcome)
                last_error = exc
                logger.info(
                    "generate_retry attempt=%s/%s key=%s status=%s request_id=%s",
                    attempt,
                    self._balancer.size,
                    acquired.id_short,
                    exc.status_code,
                    get_request_id(),
                )
                continue

            actual = result.usage.effective_total or estimated
            await self._balancer.report_outcome(acquired, Success(actual_tokens=actual))
            return GenerateResponse(
                text=result.text,
                usage=GenerateUsage(
                    prompt_tokens=result.usage.prompt_tokens,
                    candidates_tokens=result.usage.candidates_tokens,
                    total_tokens=result.usage.effective_total or None,
                    estimated_tokens=estimated,
                ),
                key=KeyRef(id_short=acquired.id_short),
                model=model,
                attempts=attempt,
            )

        if last_error is None:
            raise GenerateError(502, "upstream_unavailable", "Provider call was not attempted")
        raise provider_failure_error(last_error)

    async def probe(self, reservation: Reservation, model: str) -> Outcome | None:
        """One provider call with a fixed prompt, used by the synthetic load test."""
        body = {"contents": [{"role": "user", "parts": [{"text": PROBE_PROMPT}]}]}
        try:
            result = await self._call_provider(reservation, model=model, body=body)
        except GeminiResponseError as exc:
            return classify_failure(exc)
        return Success(actual_tokens=result.usage.effective_total or reservation.estimated_tokens)

    async def _call_provider(
        self,
        reservation: Reservation,
        *,
        model: str,
        body: Mapping[str, Any],
    ) -> GeminiGenerateResult:
        started = time.monotonic()
        status = "ok"
        try:
            return await self._call(api_key=reservation.api_key, model=model, body=body)
        except GeminiResponseError as exc:
            status = str(exc.status_code)
            raise
        except asyncio.CancelledError:
            status = "cancelled"
            with anyio.CancelScope(shield=True):
                await self._balancer.abandon(reservation)
            raise
        finally:
            get_metrics().observe_generate_latency(
                model=model,
                status=status,
                latency_ms=(time.monotonic() - started) * 1000,
            )
