from __future__ import annotations

import logging
import os
import re
from typing import Final, Iterable

from gemini_lb.core.balancer.types import key_id_for, short_key_id
from gemini_lb.core.config.settings import BASE_DIR, Settings, get_settings

logger = logging.getLogger(__name__)

_ENV_PREFIX: Final[str] = "GEMINI_LB_"
_PROXY_VARS: Final[tuple[str, ...]] = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "NO_PROXY")
_MASK: Final[str] = "***"
# Any env var whose name contains one of these is never echoed.
_SECRET_MARKERS: Final[tuple[str, ...]] = ("API_KEYS", "DATABASE_URL", "PASSWORD", "SECRET", "TOKEN")
# [scheme://]userinfo@rest; a scheme-less "user:pass@host" would otherwise parse as a path.
_USERINFO_RE: Final[re.Pattern[str]] = re.compile(r"^(?P<scheme>[A-Za-z][A-Za-z0-9+.-]*://)?(?P<userinfo>[^@/]+)@")


def log_startup_config() -> None:
    """Log the pool summary, plus the full settings / env snapshot when enabled."""
    settings = get_settings()
    logger.info(
        "Balancer config: keys=%s limits=rpm:%s,rpd:%s,tpm:%s strategy=%s persist=%s",
        _pool_summary(settings.api_keys),
        settings.limit_rpm,
        settings.limit_rpd,
        settings.limit_tpm,
        settings.selection_strategy,
        settings.persist_enabled,
    )
    if not (settings.startup_log_config or settings.startup_log_env):
        return

    present = [path.name for path in (BASE_DIR / ".env", BASE_DIR / ".env.local") if path.exists()]
    logger.info("Startup config: env_files=[%s]", ", ".join(present) or "none")

    if settings.startup_log_env:
        logger.info("Startup env snapshot (allowlist):")
        for name, value in sorted(_collect_env().items()):
            logger.info("  %s=%s", name, "<unset>" if value is None else _redact_env(name, value))

    if settings.startup_log_config:
        logger.info("Startup settings snapshot:")
        for name, value in sorted(settings.model_dump(mode="json").items()):
            logger.info("  %s=%s", name, _redact_setting(name, value))


def _pool_summary(api_keys: Iterable[str]) -> str:
    return ",".join(short_key_id(key_id_for(key)) for key in api_keys) or "<none>"


def _collect_env() -> dict[str, str | None]:
    values: dict[str, str | None] = {
        name: os.environ.get(name) or os.environ.get(name.lower()) for name in _PROXY_VARS
    }
    values.update({name: value for name, value in os.environ.items() if name.startswith(_ENV_PREFIX)})
    return values


def _redact_env(name: str, value: str) -> str:
    upper = name.upper()
    if upper in _PROXY_VARS:
        return _redact_proxy_url(value)
    if any(marker in upper for marker in _SECRET_MARKERS) or upper.endswith("_KEY"):
        return _MASK
    return value


def _redact_setting(name: str, value: object) -> object:
    if name == "api_keys" and isinstance(value, list):
        return f"<{len(value)} keys>"
    if name == "database_url":
        return _MASK
    return value


def _redact_proxy_url(value: str) -> str:
    match = _USERINFO_RE.match(value)
    if match is None:
        return value
    masked = f"{_MASK}:{_MASK}" if ":" in match.group("userinfo") else _MASK
    return f"{match.group('scheme') or ''}{masked}@{value[match.end():]}"
