"""FastAPI application entrypoint for the IPTV player backend."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import suppress
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import schemas
from .auth import InvalidPasswordError, issue_admin_token, verify_admin_token
from .config import Settings, configure_logging, get_settings
from .database import (
    BackendHealth,
    build_engine,
    build_session_factory,
    create_schema,
    probe,
    watch_engine,
)
from .playlist import PlaylistFetchError, fetch_playlist, filter_channels, list_groups, parse_playlist
from .stats import DatabaseStatsBackend, FileStatsBackend, StatsStore

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging(settings.log_level)

app = FastAPI(
    title="IPTV Stream+ API",
    description="Playlist access, channel listing and anonymized viewing statistics.",
    version="2.0.0",
)

_started_at = time.monotonic()


def check_database(engine: Engine, health: BackendHealth) -> bool:
    if not probe(engine, health):
        return False
    try:
        create_schema(engine)
    except SQLAlchemyError as exc:
        logger.warning("Could not create statistics schema: %s", exc)
        health.mark_disconnected()
        return False
    return True


def build_stats_store(settings: Settings) -> Tuple[StatsStore, Optional[Engine]]:
    health = BackendHealth()
    file_backend = FileStatsBackend(settings.stats_file, settings.retention_days)
    engine: Optional[Engine] = None
    database_backend: Optional[DatabaseStatsBackend] = None

    if settings.database_url:
        engine = build_engine(settings.database_url)
        watch_engine(engine, health)
        database_backend = DatabaseStatsBackend(build_session_factory(engine))
    else:
        logger.info("Using local statistics file %s (no database URL configured)", settings.stats_file)

    store = StatsStore(
        file_backend,
        database_backend,
        health,
        retention_days=settings.retention_days,
        fingerprint_secret=settings.fingerprint_secret,
    )
    if engine is not None and not check_database(engine, health):
        logger.warning("Database unavailable at startup, falling back to local statistics file")
    return store, engine


stats_store, db_engine = build_stats_store(settings)


class RateLimitError(Exception):
    """Raised when a caller exceeds the configured rate limit."""


class FixedWindowRateLimiter:
    """Simple in-memory fixed window rate limiter keyed by identifier."""

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [key for key, (_, start) in self._counters.items() if now - start >= self._window_seconds]
        for key in expired:
            self._counters.pop(key, None)

    def check(self, key: str) -> None:
        now = time.monotonic()
        with self._lock:
            self._purge(now)
            count, window_start = self._counters.get(key, (0, now))
            if now - window_start >= self._window_seconds:
                count = 0
                window_start = now
            if count >= self._max_requests:
                raise RateLimitError(f"Rate limit exceeded for key {key}")
            self._counters[key] = (count + 1, window_start)


def _get_rate_limiter() -> FixedWindowRateLimiter:
    current = get_settings()
    return FixedWindowRateLimiter(current.stats_rate_limit, current.stats_rate_window_seconds)


_admin_rate_limiter = _get_rate_limiter()
_background_tasks: list[asyncio.Task[None]] = []


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return ""


def _enforce_rate_limit(request: Request) -> None:
    try:
        _admin_rate_limiter.check(_client_ip(request) or "anonymous")
    except RateLimitError:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _run_in_thread(job: Callable[[], object], description: str) -> None:
    try:
        await asyncio.to_thread(job)
    except Exception:  # pragma: no cover - log unexpected failures
        logger.exception("Failed to %s", description)


async def _periodic_worker(job: Callable[[], object], description: str, interval_seconds: int) -> None:
    try:
        while True:
            await _run_in_thread(job, description)
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
        pass


def _start_background_workers() -> None:
    if _background_tasks:
        return
    loop = asyncio.get_running_loop()
    _background_tasks.append(
        loop.create_task(
            _periodic_worker(stats_store.cleanup, "apply statistics retention", settings.retention_interval_seconds)
        )
    )
    if db_engine is not None:
        engine = db_engine
        _background_tasks.append(
            loop.create_task(
                _periodic_worker(
                    lambda: check_database(engine, stats_store.health),
                    "probe database connectivity",
                    settings.db_probe_interval_seconds,
                )
            )
        )


@app.get("/health", response_model=schemas.HealthOut)
def health_check() -> schemas.HealthOut:
    if db_engine is None:
        database_state = "disabled"
    else:
        database_state = "connected" if stats_store.health.is_available else "disconnected"
    return schemas.HealthOut(
        status="healthy",
        timestamp=_utcnow(),
        uptime=round(time.monotonic() - _started_at, 3),
        database=database_state,
    )


@app.post("/api/visit", response_model=schemas.VisitResult)
def record_visit(visit_in: schemas.VisitIn, request: Request) -> schemas.VisitResult:
    user_agent = visit_in.user_agent or request.headers.get("user-agent", "")
    return stats_store.record_visit(user_agent, visit_in.channel_name, _client_ip(request))


@app.get("/api/playlist", response_model=schemas.PlaylistOut)
def get_playlist(request: Request) -> schemas.PlaylistOut:
    stats_store.record_visit(request.headers.get("user-agent", ""), None, _client_ip(request))
    return schemas.PlaylistOut(playlist_url=settings.playlist_url)


@app.get("/api/channels", response_model=schemas.ChannelListOut)
def list_channels(
    search: Optional[str] = Query(None, max_length=200),
    group: Optional[str] = Query(None, max_length=200),
    sort: Optional[str] = Query(None, pattern="^(name|name-desc|group)$"),
) -> schemas.ChannelListOut:
    try:
        playlist_text = fetch_playlist(settings.playlist_url, settings.playlist_timeout_seconds)
    except PlaylistFetchError as exc:
        logger.error("%s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to fetch playlist") from exc

    channels = parse_playlist(playlist_text)
    visible = filter_channels(channels, search=search, group=group, sort=sort)
    return schemas.ChannelListOut(
        total=len(visible),
        groups=list_groups(channels),
        channels=[schemas.ChannelOut(**asdict(channel)) for channel in visible],
    )


@app.post("/admin/login", response_model=schemas.LoginOut)
def admin_login(login_in: schemas.LoginIn, request: Request) -> schemas.LoginOut:
    _enforce_rate_limit(request)
    try:
        token = issue_admin_token(login_in.password)
    except InvalidPasswordError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid password") from exc
    return schemas.LoginOut(token=token, expires_in=get_settings().jwt_ttl_seconds)


@app.get("/admin/stats", response_model=schemas.StatsOut)
def admin_stats(
    request: Request,
    days: int = Query(7, ge=1, le=90),
    _: dict = Depends(verify_admin_token),
) -> schemas.StatsOut:
    _enforce_rate_limit(request)
    return schemas.StatsOut(data=stats_store.get_stats(days), requested_days=days, timestamp=_utcnow())


@app.get("/admin/stats/summary", response_model=schemas.SummaryOut)
def admin_summary(
    request: Request,
    _: dict = Depends(verify_admin_token),
) -> schemas.SummaryOut:
    _enforce_rate_limit(request)
    return schemas.SummaryOut(data=stats_store.get_summary_stats(), timestamp=_utcnow())


@app.post("/admin/cleanup", response_model=schemas.CleanupOut)
def admin_cleanup(_: dict = Depends(verify_admin_token)) -> schemas.CleanupOut:
    result = stats_store.cleanup()
    return schemas.CleanupOut(
        message="Cleanup completed successfully",
        deleted=result.deleted,
        timestamp=_utcnow(),
    )


@app.on_event("startup")
async def start_maintenance() -> None:
    _start_background_workers()


@app.on_event("shutdown")
async def stop_maintenance() -> None:
    tasks = list(_background_tasks)
    _background_tasks.clear()
    for task in tasks:
        task.cancel()
    for task in tasks:
        with suppress(asyncio.CancelledError):
            await task
    if db_engine is not None:
        db_engine.dispose()


def reset_application_state() -> None:
    """Reset mutable globals for test isolation."""

    global _admin_rate_limiter
    _admin_rate_limiter = _get_rate_limiter()
