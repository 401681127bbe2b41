"""Environment-driven settings for the finder and its web backend."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .discovery_overpass import OVERPASS_URL, _normalize_overpass_urls

NOMINATIM_URL = "https://nominatim.openstreetmap.org"
DEFAULT_USER_AGENT = "CampFinder/1.0 (+https://github.com/camp-finder)"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"
DEFAULT_COUNTRY = "België"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_overpass_urls(env: Mapping[str, str]) -> list[str]:
    multi = [url for url in (env.get("OVERPASS_URLS") or "").split(",") if url.strip()]
    return _normalize_overpass_urls(env.get("OVERPASS_URL"), multi)


@dataclass(slots=True)
class Settings:
    nominatim_url: str = NOMINATIM_URL
    user_agent: str = DEFAULT_USER_AGENT
    overpass_urls: list[str] = field(default_factory=lambda: [OVERPASS_URL])
    gemini_api_key: Optional[str] = None
    gemini_model: str = DEFAULT_GEMINI_MODEL
    nominatim_min_interval: float = 1.0
    overpass_min_interval: float = 1.0
    gemini_min_interval: float = 1.5
    http_timeout: float = 30.0
    default_country: str = DEFAULT_COUNTRY
    website_check_concurrency: int = 2
    max_active_jobs: int = 3
    job_ttl_seconds: int = 60 * 60

    @property
    def gemini_enabled(self) -> bool:
        return bool(self.gemini_api_key)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            nominatim_url=(env.get("NOMINATIM_URL") or NOMINATIM_URL).rstrip("/"),
            user_agent=(env.get("NOMINATIM_USER_AGENT") or DEFAULT_USER_AGENT).strip(),
            overpass_urls=_parse_overpass_urls(env),
            gemini_api_key=(env.get("GEMINI_API_KEY") or "").strip() or None,
            gemini_model=(env.get("GEMINI_MODEL") or DEFAULT_GEMINI_MODEL).strip(),
            nominatim_min_interval=_env_float(env, "NOMINATIM_MIN_INTERVAL", 1.0),
            overpass_min_interval=_env_float(env, "OVERPASS_MIN_INTERVAL", 1.0),
            gemini_min_interval=_env_float(env, "GEMINI_MIN_INTERVAL", 1.5),
            http_timeout=_env_float(env, "HTTP_TIMEOUT", 30.0),
            default_country=(env.get("DEFAULT_COUNTRY") or DEFAULT_COUNTRY).strip(),
            website_check_concurrency=max(1, _env_int(env, "WEBSITE_CHECK_CONCURRENCY", 2)),
            max_active_jobs=max(1, _env_int(env, "MAX_ACTIVE_JOBS", 3)),
            job_ttl_seconds=max(60, _env_int(env, "JOB_TTL_SECONDS", 60 * 60)),
        )
