from __future__ import annotations

from typing import TypedDict


class ErrorDetail(TypedDict):
    code: str
    message: str


class ErrorEnvelope(TypedDict):
    error: ErrorDetail


class ProviderErrorDetail(TypedDict, total=False):
    code: int
    message: str
    status: str


class ProviderErrorEnvelope(TypedDict):
    error: ProviderErrorDetail


def dashboard_error(code: str, message: str) -> ErrorEnvelope:
    return {"error": {"code": code, "message": message}}


def provider_error(status_code: int, message: str, status: str = "UNAVAILABLE") -> ProviderErrorEnvelope:
    return {"error": {"code": status_code, "message": message, "status": status}}
