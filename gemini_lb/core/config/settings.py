from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DOCKER_DATA_DIR = Path("/var/lib/gemini-lb")


def _in_container() -> bool:
    return Path("/.dockerenv").exists() or Path("/run/.containerenv").exists()


def _default_home_dir() -> Path:
    if _in_container():
        return DOCKER_DATA_DIR
    return Path.home() / ".gemini-lb"


DEFAULT_HOME_DIR = _default_home_dir()
DEFAULT_DB_PATH = DEFAULT_HOME_DIR / "store.db"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GEMINI_LB_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Ordered credential pool; the order is the round-robin sequence.
    api_keys: Annotated[list[str], NoDecode] = Field(default_factory=list)
    # Single authoritative source for quota limits (free-tier defaults).
    limit_rpm: int = Field(default=15, gt=0)
    limit_rpd: int = Field(default=1500, gt=0)
    limit_tpm: int = Field(default=20_000, gt=0)
    selection_strategy: Literal["round_robin", "least_recently_used"] = "round_robin"
    max_outstanding_reservations: int = Field(default=10_000, gt=0)

    database_url: str = f"sqlite+aiosqlite:///{DEFAULT_DB_PATH}"
    persist_enabled: bool = True
    # Debounce interval: at most one snapshot write per interval.
    persist_interval_seconds: float = Field(default=2.0, gt=0)

    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_timeout_seconds: float = Field(default=60.0, gt=0)
    gemini_connect_timeout_seconds: float = Field(default=30.0, gt=0)
    default_model: str = "gemini-2.5-pro"
    http_client_connector_limit: int = Field(default=100, gt=0)
    http_client_connector_limit_per_host: int = Field(default=50, gt=0)
    http_client_keepalive_timeout_seconds: float = Field(default=30.0, gt=0)

    load_test_max_count: int = Field(default=500, gt=0)
    debug_endpoints_enabled: bool = False
    access_log_enabled: bool = False
    startup_log_config: bool = False
    startup_log_env: bool = False

    @field_validator("database_url")
    @classmethod
    def _expand_database_url(cls, value: str) -> str:
        for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
            if value.startswith(prefix):
                path = value[len(prefix) :]
                if path.startswith("~"):
                    return f"{prefix}{Path(path).expanduser()}"
        return value

    @field_validator("gemini_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("api_keys", mode="before")
    @classmethod
    def _normalize_api_keys(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            raw = value.strip()
            entries: list[object] | None = None
            if raw.startswith("["):
                try:
                    parsed = json.loads(raw)
                except ValueError:
                    parsed = None
                if isinstance(parsed, list):
                    entries = parsed
            if entries is None:
                cleaned = "".join(ch for ch in raw if ch not in "[]\"' \t\r\n")
                entries = cleaned.split(",")
            return _dedupe_keys(entries)
        if isinstance(value, list):
            return _dedupe_keys(value)
        raise TypeError("api_keys must be a list, a JSON array or a comma-separated string")


def _dedupe_keys(entries: list[object]) -> list[str]:
    seen: set[str] = set()
    keys: list[str] = []
    for entry in entries:
        key = str(entry).strip()
        if not key or key in seen:
            continue
        seen.add(key)
        keys.append(key)
    return keys


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
