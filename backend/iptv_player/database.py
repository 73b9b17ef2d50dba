"""Database configuration and connectivity tracking for the statistics store."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


def build_engine(database_url: str) -> Engine:
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {},
        pool_pre_ping=True,
        future=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Provide a transactional scope for database operations."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class BackendHealth:
    """Thread-safe connectivity flag for the durable backend.

    Only ``mark_connected``/``mark_disconnected`` change the flag; listeners
    registered with ``subscribe`` are told about every transition.
    """

    def __init__(self, available: bool = False) -> None:
        self._available = available
        self._lock = threading.Lock()
        self._listeners: List[ConnectivityListener] = []

    @property
    def is_available(self) -> bool:
        with self._lock:
            return self._available

    def subscribe(self, listener: ConnectivityListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def mark_connected(self) -> None:
        self._set(True)

    def mark_disconnected(self) -> None:
        self._set(False)

    def _set(self, available: bool) -> None:
        with self._lock:
            changed = self._available != available
            self._available = available
            listeners = list(self._listeners)
        if not changed:
            return
        for listener in listeners:
            listener(available)


def watch_engine(engine: Engine, health: BackendHealth) -> None:
    """Translate engine connection events into health transitions."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        health.mark_connected()

    @event.listens_for(engine, "handle_error")
    def _on_error(context) -> None:
        if context.is_disconnect:
            health.mark_disconnected()


def probe(engine: Engine, health: BackendHealth) -> bool:
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Database probe failed: %s", exc)
        health.mark_disconnected()
        return False
    health.mark_connected()
    return True


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
