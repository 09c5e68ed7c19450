"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class BackendSettings:
    binding_secret: str
    database_url: str | None
    host: str
    port: int
    match_rule: str
    yelp_api_key: str | None
    google_places_api_key: str | None
    provider_timeout: float
    group_ttl_hours: int
    log_level: str


def load_settings() -> BackendSettings:
    port_raw = os.getenv("GRUBMATCH_PORT", "8000")
    return BackendSettings(
        binding_secret=os.getenv("GRUBMATCH_BINDING_SECRET", "dev-secret"),
        database_url=os.getenv("GRUBMATCH_DATABASE_URL") or None,
        host=os.getenv("GRUBMATCH_HOST", "127.0.0.1"),
        port=int(port_raw),
        match_rule=os.getenv("GRUBMATCH_MATCH_RULE", "unanimous"),
        yelp_api_key=os.getenv("GRUBMATCH_YELP_API_KEY") or None,
        google_places_api_key=os.getenv("GRUBMATCH_GOOGLE_PLACES_API_KEY") or None,
        provider_timeout=float(os.getenv("GRUBMATCH_PROVIDER_TIMEOUT", "8.0")),
        group_ttl_hours=int(os.getenv("GRUBMATCH_GROUP_TTL_HOURS", "24")),
        log_level=os.getenv("GRUBMATCH_LOG_LEVEL", "INFO").upper(),
    )
