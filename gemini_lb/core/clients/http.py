from __future__ import annotations

from dataclasses import dataclass

import aiohttp

from gemini_lb.core.config.settings import get_settings


@dataclass(slots=True)
class HttpClient:
    session: aiohttp.ClientSession


_http_client: HttpClient | None = None


async def init_http_client() -> HttpClient:
    global _http_client
    if _http_client is not None:
        return _http_client

    settings = get_settings()
    connector = aiohttp.TCPConnector(
        limit=settings.http_client_connector_limit,
        limit_per_host=settings.http_client_connector_limit_per_host,
        keepalive_timeout=settings.http_client_keepalive_timeout_seconds,
    )
    # trust_env picks up HTTP(S)_PROXY / NO_PROXY from the environment.
    session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=None),
        connector=connector,
        trust_env=True,
    )
    _http_client = HttpClient(session=session)
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is None:
        return
    await _http_client.session.close()
    _http_client = None


def get_http_client() -> HttpClient:
    if _http_client is None:
        raise RuntimeError("HTTP client not initialized")
    return _http_client
