"""Daily visit and channel-play statistics.

Counters are kept in one bucket per UTC day. Buckets live either in the
``statistics`` table or in a single JSON file; ``StatsStore`` picks the
database while it is reachable and serves any call that fails there from the
file instead.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import math
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import schemas
from .database import BackendHealth, session_scope
from .models import Statistic

logger = logging.getLogger(__name__)

STORAGE_DATABASE = "database"
STORAGE_LOCAL = "local"
MAX_RANKED_CHANNELS = 50
TOP_CHANNELS_REPORTED = 10
SUMMARY_DAYS = 30
DATE_FORMAT = "%Y-%m-%d"

Clock = Callable[[], datetime]


class StatsBackendError(Exception):
    """Raised when the database backend cannot complete an operation."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def day_key(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(DATE_FORMAT)


def retention_cutoff(now: datetime, retention_days: int) -> str:
    """Date key of the oldest bucket that survives pruning.

    Today counts as the first of the ``retention_days`` kept buckets.
    """
    return day_key(now - timedelta(days=retention_days - 1))


def visitor_fingerprint(user_agent: str, client_ip: str, day: str, secret: str) -> str:
    message = "|".join((user_agent, client_ip, day)).encode("utf-8", errors="ignore")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()[:12]


def _isoformat(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_timestamp(value: Union[str, datetime, None], default: datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif value:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return default
    else:
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_count(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def _ranking_from_entries(entries: Optional[Iterable[Dict[str, Any]]]) -> Dict[str, int]:
    ranking: Dict[str, int] = {}
    for entry in entries or []:
        name = entry.get("name") if isinstance(entry, dict) else None
        if name:
            ranking[name] = ranking.get(name, 0) + _as_count(entry.get("playCount"))
    return ranking


@dataclass
class DailyBucket:
    date: str
    visit_count: int = 0
    unique_visitor_ids: Set[str] = field(default_factory=set)
    channel_play_count: int = 0
    channel_ranking: Dict[str, int] = field(default_factory=dict)
    user_agent_samples: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, date: str, now: datetime) -> "DailyBucket":
        return cls(date=date, created_at=now, updated_at=now)

    def record(self, visitor_id: str, user_agent: Optional[str], channel_name: Optional[str], now: datetime) -> None:
        self.visit_count += 1
        self.unique_visitor_ids.add(visitor_id)
        if user_agent and user_agent.strip():
            self.user_agent_samples.append(user_agent)
        if channel_name and channel_name.strip():
            self.channel_play_count += 1
            self.channel_ranking[channel_name] = self.channel_ranking.get(channel_name, 0) + 1
            if len(self.channel_ranking) > MAX_RANKED_CHANNELS:
                self.channel_ranking = dict(self.ranked_channels(MAX_RANKED_CHANNELS))
        self.updated_at = now

    def ranked_channels(self, limit: Optional[int] = None) -> List[Tuple[str, int]]:
        # sorted() is stable: equal counts keep first-played order.
        ranked = sorted(self.channel_ranking.items(), key=lambda item: item[1], reverse=True)
        return ranked if limit is None else ranked[:limit]

    def to_day_stats(self, storage_used: str) -> schemas.DayStats:
        return schemas.DayStats(
            date=self.date,
            visits=self.visit_count,
            unique_visitors=len(self.unique_visitor_ids),
            channels_played=self.channel_play_count,
            top_channels=[
                schemas.ChannelPlays(name=name, play_count=count)
                for name, count in self.ranked_channels(TOP_CHANNELS_REPORTED)
            ],
            storage_used=storage_used,
        )

    def to_visit_result(self, storage_used: str) -> schemas.VisitResult:
        return schemas.VisitResult(
            success=True,
            storage_used=storage_used,
            visits=self.visit_count,
            unique_visitors=len(self.unique_visitor_ids),
            channels_played=self.channel_play_count,
        )

    # JSON file representation

    def to_document(self) -> Dict[str, Any]:
        return {
            "visits": self.visit_count,
            "uniqueVisitors": sorted(self.unique_visitor_ids),
            "channelsPlayed": self.channel_play_count,
            "popularChannels": [
                {"name": name, "playCount": count} for name, count in self.channel_ranking.items()
            ],
            "userAgents": list(self.user_agent_samples),
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }

    @classmethod
    def from_document(cls, date: str, document: Dict[str, Any], now: datetime) -> "DailyBucket":
        return cls(
            date=date,
            visit_count=_as_count(document.get("visits")),
            unique_visitor_ids=set(document.get("uniqueVisitors") or []),
            channel_play_count=_as_count(document.get("channelsPlayed")),
            channel_ranking=_ranking_from_entries(document.get("popularChannels")),
            user_agent_samples=list(document.get("userAgents") or []),
            created_at=_parse_timestamp(document.get("createdAt"), now),
            updated_at=_parse_timestamp(document.get("updatedAt"), now),
        )

    # ``statistics`` table representation

    def apply_to_row(self, row: Statistic) -> None:
        row.date = self.date
        row.visits = self.visit_count
        row.unique_visitors = sorted(self.unique_visitor_ids)
        row.channels_played = self.channel_play_count
        row.popular_channels = [
            {"name": name, "playCount": count} for name, count in self.channel_ranking.items()
        ]
        row.user_agents = list(self.user_agent_samples)
        row.created_at = self.created_at
        row.updated_at = self.updated_at

    @classmethod
    def from_row(cls, row: Statistic) -> "DailyBucket":
        now = utcnow()
        return cls(
            date=row.date,
            visit_count=row.visits or 0,
            unique_visitor_ids=set(row.unique_visitors or []),
            channel_play_count=row.channels_played or 0,
            channel_ranking=_ranking_from_entries(row.popular_channels),
            user_agent_samples=list(row.user_agents or []),
            created_at=_parse_timestamp(row.created_at, now),
            updated_at=_parse_timestamp(row.updated_at, now),
        )


_file_locks: Dict[str, threading.Lock] = {}
_file_locks_guard = threading.Lock()


def _lock_for_path(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _file_locks_guard:
        return _file_locks.setdefault(key, threading.Lock())


class FileStatsBackend:
    """All buckets in one JSON document, rewritten on every visit.

    Writers sharing a path are serialized on a process-wide lock, so
    concurrent visits cannot overwrite each other's increments.
    """

    storage_name = STORAGE_LOCAL

    def __init__(self, path: Union[str, Path], retention_days: int) -> None:
        self.path = Path(path)
        self.retention_days = retention_days
        self._lock = _lock_for_path(self.path)

    def read_buckets(self) -> Dict[str, DailyBucket]:
        with self.path.open("r", encoding="utf-8") as handle:
            document = json.load(handle)
        if not isinstance(document, dict):
            raise ValueError(f"{self.path} does not contain a JSON object")
        now = utcnow()
        buckets: Dict[str, DailyBucket] = {}
        for date, entry in document.items():
            if not isinstance(entry, dict):
                logger.warning("Skipping malformed bucket %s in %s", date, self.path)
                continue
            try:
                buckets[date] = DailyBucket.from_document(date, entry, now)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed bucket %s in %s: %s", date, self.path, exc)
        return buckets

    def _load_for_write(self) -> Dict[str, DailyBucket]:
        try:
            return self.read_buckets()
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Stats file %s is unreadable, starting fresh: %s", self.path, exc)
            return {}

    def _write_buckets(self, buckets: Dict[str, DailyBucket]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        document = {date: buckets[date].to_document() for date in sorted(buckets)}
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.path)

    def record(
        self,
        day: str,
        visitor_id: str,
        user_agent: Optional[str],
        channel_name: Optional[str],
        now: datetime,
    ) -> DailyBucket:
        with self._lock:
            buckets = self._load_for_write()
            bucket = buckets.get(day) or DailyBucket.new(day, now)
            bucket.record(visitor_id, user_agent, channel_name, now)
            buckets[day] = bucket

            cutoff = retention_cutoff(now, self.retention_days)
            kept = {date: entry for date, entry in buckets.items() if date >= cutoff}
            if len(kept) < len(buckets):
                logger.debug("Pruned %d stale buckets from %s", len(buckets) - len(kept), self.path)
            self._write_buckets(kept)
        return bucket

    def recent(self, days: int) -> List[DailyBucket]:
        buckets = self.read_buckets()
        return [buckets[date] for date in sorted(buckets, reverse=True)[:days]]


class DatabaseStatsBackend:
    """One ``statistics`` row per day, updated inside a single transaction."""

    storage_name = STORAGE_DATABASE

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._lock = threading.Lock()

    def record(
        self,
        day: str,
        visitor_id: str,
        user_agent: Optional[str],
        channel_name: Optional[str],
        now: datetime,
    ) -> DailyBucket:
        try:
            with self._lock, session_scope(self._session_factory) as session:
                row = session.execute(
                    select(Statistic).where(Statistic.date == day).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    row = Statistic(date=day)
                    session.add(row)
                    bucket = DailyBucket.new(day, now)
                else:
                    bucket = DailyBucket.from_row(row)
                bucket.record(visitor_id, user_agent, channel_name, now)
                bucket.apply_to_row(row)
        except SQLAlchemyError as exc:
            raise StatsBackendError(f"Database write failed: {exc}") from exc
        return bucket

    def recent(self, days: int) -> List[DailyBucket]:
        try:
            with session_scope(self._session_factory) as session:
                rows = (
                    session.execute(select(Statistic).order_by(Statistic.date.desc()).limit(days))
                    .scalars()
                    .all()
                )
                return [DailyBucket.from_row(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StatsBackendError(f"Database read failed: {exc}") from exc

    def delete_older_than(self, cutoff: str) -> int:
        try:
            with self._lock, session_scope(self._session_factory) as session:
                result = session.execute(delete(Statistic).where(Statistic.date < cutoff))
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise StatsBackendError(f"Database cleanup failed: {exc}") from exc


class StatsStore:
    """Visit statistics facade over the database and file backends."""

    def __init__(
        self,
        file_backend: FileStatsBackend,
        database_backend: Optional[DatabaseStatsBackend] = None,
        health: Optional[BackendHealth] = None,
        retention_days: int = 30,
        fingerprint_secret: str = "",
        clock: Clock = utcnow,
    ) -> None:
        self.file_backend = file_backend
        self.database_backend = database_backend
        self.health = health or BackendHealth(available=database_backend is not None)
        self.retention_days = retention_days
        self._fingerprint_secret = fingerprint_secret
        self._clock = clock
        self.health.subscribe(self._on_connectivity_change)

    def _on_connectivity_change(self, available: bool) -> None:
        if available:
            logger.info("Database connection established, recording statistics to the database")
        else:
            logger.warning("Database disconnected, switched to local statistics file")

    @property
    def database_active(self) -> bool:
        return self.database_backend is not None and self.health.is_available

    @property
    def storage_in_use(self) -> str:
        return STORAGE_DATABASE if self.database_active else STORAGE_LOCAL

    def record_visit(
        self,
        user_agent: Optional[str] = "",
        channel_name: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> schemas.VisitResult:
        now = self._clock()
        day = day_key(now)
        visitor_id = visitor_fingerprint(user_agent or "", client_ip or "", day, self._fingerprint_secret)

        if self.database_active:
            try:
                bucket = self.database_backend.record(day, visitor_id, user_agent, channel_name, now)
                return bucket.to_visit_result(STORAGE_DATABASE)
            except Exception as exc:
                logger.error("Database stats error, falling back to local: %s", exc)

        try:
            bucket = self.file_backend.record(day, visitor_id, user_agent, channel_name, now)
        except Exception as exc:
            logger.error("Local stats error: %s", exc)
            return schemas.VisitResult(success=False, storage_used=STORAGE_LOCAL, error=str(exc))
        return bucket.to_visit_result(STORAGE_LOCAL)

    def get_stats(self, days: int = 7) -> List[schemas.DayStats]:
        days = max(days, 0)
        if self.database_active:
            try:
                return [bucket.to_day_stats(STORAGE_DATABASE) for bucket in self.database_backend.recent(days)]
            except Exception as exc:
                logger.error("Database stats retrieval error, falling back to local: %s", exc)

        try:
            return [bucket.to_day_stats(STORAGE_LOCAL) for bucket in self.file_backend.recent(days)]
        except Exception as exc:
            logger.warning("Local stats file read error: %s", exc)
            now = self._clock()
            return [DailyBucket.new(day_key(now), now).to_day_stats(STORAGE_LOCAL)]

    @staticmethod
    def get_most_popular_channels(days: Iterable[schemas.DayStats]) -> List[schemas.ChannelPlays]:
        totals: Dict[str, int] = {}
        for day in days:
            for channel in day.top_channels:
                totals[channel.name] = totals.get(channel.name, 0) + channel.play_count
        ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)[:TOP_CHANNELS_REPORTED]
        return [schemas.ChannelPlays(name=name, play_count=count) for name, count in ranked]

    def get_summary_stats(self) -> schemas.SummaryStats:
        try:
            days = self.get_stats(SUMMARY_DAYS)
            total_visits = sum(day.visits for day in days)
            return schemas.SummaryStats(
                total_visits=total_visits,
                total_unique_visitors=sum(day.unique_visitors for day in days),
                total_channels_played=sum(day.channels_played for day in days),
                average_daily_visits=math.floor(total_visits / len(days) + 0.5) if days else 0,
                most_popular_channels=self.get_most_popular_channels(days),
                storage_used=self.storage_in_use,
            )
        except Exception as exc:
            logger.exception("Summary stats error")
            return schemas.SummaryStats(storage_used=self.storage_in_use, error=str(exc))

    def cleanup(self) -> schemas.CleanupResult:
        """Delete database buckets past the retention window.

        The file backend prunes itself on every write, so there is nothing to
        do here while the database is unavailable.
        """

        if not self.database_active:
            return schemas.CleanupResult(deleted=0, storage_used=STORAGE_LOCAL)

        cutoff = retention_cutoff(self._clock(), self.retention_days)
        try:
            deleted = self.database_backend.delete_older_than(cutoff)
        except Exception as exc:
            logger.error("Database cleanup error: %s", exc)
            return schemas.CleanupResult(deleted=0, storage_used=STORAGE_DATABASE)
        logger.info("Cleaned up %d old statistics records", deleted)
        return schemas.CleanupResult(deleted=deleted, storage_used=STORAGE_DATABASE)
