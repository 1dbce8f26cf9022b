from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Mapping, Protocol

import aiohttp

from gemini_lb.core.balancer.types import Outcome, QuotaExhausted, RateLimited, TransientError
from gemini_lb.core.clients.http import get_http_client
from gemini_lb.core.config.settings import get_settings
from gemini_lb.core.errors import provider_error

logger = logging.getLogger(__name__)

_DAY_QUOTA_MARKERS = ("perday", "per day", "per_day")


class GeminiResponseError(Exception):
    status_code: int
    payload: Mapping[str, Any]

    def __init__(self, status_code: int, payload: Mapping[str, Any]) -> None:
        super().__init__(f"Gemini response error ({status_code})")
        self.status_code = status_code
        self.payload = payload

    @property
    def message(self) -> str:
        error = self.payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return message
        return f"Provider error: HTTP {self.status_code}"


@dataclass(frozen=True, slots=True)
class GeminiUsage:
    prompt_tokens: int | None
    candidates_tokens: int | None
    total_tokens: int | None

    @property
    def effective_total(self) -> int:
        if self.total_tokens:
            return self.total_tokens
        return (self.prompt_tokens or 0) + (self.candidates_tokens or 0)


@dataclass(frozen=True, slots=True)
class GeminiGenerateResult:
    text: str | None
    usage: GeminiUsage
    raw: dict[str, Any]


class _ResponseProtocol(Protocol):
    status: int
    reason: str | None

    async def json(self, *, content_type: str | None = None) -> Any: ...

    async def text(self) -> str: ...


class ClientSessionProtocol(Protocol):
    def post(
        self,
        url: str,
        *,
        json: Mapping[str, Any],
        headers: Mapping[str, str],
        timeout: aiohttp.ClientTimeout,
    ) -> AsyncContextManager[_ResponseProtocol]: ...


async def generate_content(
    *,
    api_key: str,
    model: str,
    body: Mapping[str, Any],
    session: ClientSessionProtocol | None = None,
) -> GeminiGenerateResult:
    settings = get_settings()
    url = f"{settings.gemini_base_url}/models/{model}:generateContent"
    headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}
    timeout = aiohttp.ClientTimeout(
        total=settings.gemini_timeout_seconds,
        sock_connect=settings.gemini_connect_timeout_seconds,
    )
    client_session: ClientSessionProtocol = session or get_http_client().session
    try:
        async with client_session.post(url, json=body, headers=headers, timeout=timeout) as resp:
            if resp.status >= 400:
                raise GeminiResponseError(resp.status, await _error_payload_from_response(resp))
            try:
                data = await resp.json(content_type=None)
            except (ValueError, aiohttp.ContentTypeError) as exc:
                raise GeminiResponseError(502, provider_error(502, "Invalid JSON from provider")) from exc
    except GeminiResponseError:
        raise
    except asyncio.TimeoutError as exc:
        logger.warning("gemini_request_timeout model=%s timeout=%s", model, settings.gemini_timeout_seconds)
        raise GeminiResponseError(504, provider_error(504, "Provider request timed out", "DEADLINE_EXCEEDED")) from exc
    except aiohttp.ClientError as exc:
        logger.warning("gemini_request_failed model=%s error=%s", model, exc.__class__.__name__)
        raise GeminiResponseError(502, provider_error(502, str(exc) or "Provider unavailable")) from exc

    if not isinstance(data, dict):
        raise GeminiResponseError(502, provider_error(502, "Unexpected provider payload"))
    return parse_generate_response(data)


def parse_generate_response(data: dict[str, Any]) -> GeminiGenerateResult:
    metadata = data.get("usageMetadata")
    metadata = metadata if isinstance(metadata, dict) else {}
    usage = GeminiUsage(
        prompt_tokens=_int_or_none(metadata.get("promptTokenCount")),
        candidates_tokens=_int_or_none(metadata.get("candidatesTokenCount")),
        total_tokens=_int_or_none(metadata.get("totalTokenCount")),
    )
    return GeminiGenerateResult(text=_candidate_text(data), usage=usage, raw=data)


def classify_failure(exc: GeminiResponseError) -> Outcome | None:
    """Map a provider failure to a balancer outcome; None means the request itself was bad."""
    status = exc.status_code
    if status == 429:
        if _names_day_quota(exc.payload):
            return QuotaExhausted(exc.message)
        return RateLimited(exc.message)
    if status in (401, 403):
        # The key itself was rejected; park it until its day window rolls over.
        return QuotaExhausted(exc.message)
    if status >= 500 or status == 408:
        return TransientError(exc.message)
    return None


def _names_day_quota(payload: Mapping[str, Any]) -> bool:
    try:
        text = json.dumps(dict(payload)).lower()
    except (TypeError, ValueError):
        return False
    return any(marker in text for marker in _DAY_QUOTA_MARKERS)


def _candidate_text(data: dict[str, Any]) -> str | None:
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    first = candidates[0]
    content = first.get("content") if isinstance(first, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return None
    texts = [part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)]
    return "".join(texts) if texts else None


def _int_or_none(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


async def _error_payload_from_response(resp: _ResponseProtocol) -> dict[str, Any]:
    fallback_message = f"Provider error: HTTP {resp.status}"
    if resp.reason:
        fallback_message += f" {resp.reason}"
    try:
        data = await resp.json(content_type=None)
    except (ValueError, aiohttp.ContentTypeError):
        text = await resp.text()
        return dict(provider_error(resp.status, text.strip() or fallback_message, "UNKNOWN"))

    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return data
    if isinstance(data, dict):
        for key in ("message", "detail"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return dict(provider_error(resp.status, value, "UNKNOWN"))
    return dict(provider_error(resp.status, fallback_message, "UNKNOWN"))
