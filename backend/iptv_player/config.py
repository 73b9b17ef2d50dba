"""Environment-driven settings for the IPTV backend."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

APP_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_PLAYLIST_URL = "https://raw.githubusercontent.com/alex4528/m3u/refs/heads/main/jstar.m3u"
DEFAULT_JWT_SECRET = "fallback-secret-key-change-in-production"


def _get_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {value!r}") from exc


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]
    stats_file: Path
    retention_days: int
    fingerprint_secret: str
    playlist_url: str
    playlist_timeout_seconds: int
    admin_password: str
    jwt_secret: str
    jwt_ttl_seconds: int
    stats_rate_limit: int
    stats_rate_window_seconds: int
    retention_interval_seconds: int
    db_probe_interval_seconds: int
    log_level: str


def get_settings() -> Settings:
    """Read the current environment. Not cached so tests can monkeypatch it."""

    stats_file = os.environ.get("IPTV_STATS_FILE")
    return Settings(
        database_url=os.environ.get("IPTV_DATABASE_URL") or None,
        stats_file=Path(stats_file) if stats_file else APP_ROOT / "iptvstats.json",
        retention_days=_get_int("IPTV_STATS_RETENTION_DAYS", 30),
        fingerprint_secret=os.environ.get("IPTV_FINGERPRINT_SECRET", "iptv-stats"),
        playlist_url=os.environ.get("IPTV_PLAYLIST_URL", DEFAULT_PLAYLIST_URL),
        playlist_timeout_seconds=_get_int("IPTV_PLAYLIST_TIMEOUT_SECONDS", 15),
        admin_password=os.environ.get("IPTV_ADMIN_PASSWORD", "admin123"),
        jwt_secret=os.environ.get("IPTV_JWT_SECRET", DEFAULT_JWT_SECRET),
        jwt_ttl_seconds=_get_int("IPTV_JWT_TTL_SECONDS", 24 * 60 * 60),
        stats_rate_limit=_get_int("IPTV_STATS_RATE_LIMIT", 60),
        stats_rate_window_seconds=_get_int("IPTV_STATS_RATE_WINDOW", 60),
        retention_interval_seconds=_get_int("IPTV_RETENTION_INTERVAL_SECONDS", 24 * 60 * 60),
        db_probe_interval_seconds=_get_int("IPTV_DB_PROBE_INTERVAL_SECONDS", 30),
        log_level=os.environ.get("IPTV_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
