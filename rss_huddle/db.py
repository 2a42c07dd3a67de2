"""Database abstraction layer for the persisted feed cache."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, String, Text, create_engine, delete, make_url, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class CacheRecordModel(Base):
    """One JSON blob per cache key."""

    __tablename__ = "feed_cache"

    cache_key = Column(String(128), primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))


def masked_url(connection_string: str) -> str:
    """Render a connection string with its password hidden."""
    return make_url(connection_string).render_as_string(hide_password=True)


def init_engine(connection_string: str) -> Engine:
    """Initialize the database engine and create tables."""
    logger.info("Initializing cache database connection: %s", masked_url(connection_string))
    kwargs = {}
    if connection_string.startswith("sqlite"):
        # Background refreshes write from a worker thread.
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in connection_string or connection_string == "sqlite://":
            kwargs["poolclass"] = StaticPool
    engine = create_engine(connection_string, **kwargs)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory for the given engine."""
    return sessionmaker(bind=engine)


def get_payload(session: Session, key: str) -> Optional[str]:
    """Return the stored payload for ``key``, if any."""
    stmt = select(CacheRecordModel).where(CacheRecordModel.cache_key == key)
    result = session.execute(stmt).scalar_one_or_none()
    if result is None:
        return None
    return result.payload


def put_payload(session: Session, key: str, payload: str) -> None:
    """Insert or replace the payload stored under ``key``."""
    stmt = select(CacheRecordModel).where(CacheRecordModel.cache_key == key)
    existing = session.execute(stmt).scalar_one_or_none()

    if existing:
        existing.payload = payload
        existing.updated_at = datetime.now(timezone.utc)
    else:
        session.add(
            CacheRecordModel(
                cache_key=key,
                payload=payload,
                updated_at=datetime.now(timezone.utc),
            )
        )

    try:
        session.commit()
    except Exception:
        session.rollback()
        raise


def delete_payload(session: Session, key: str) -> None:
    """Delete the payload stored under ``key``; missing keys are ignored."""
    session.execute(delete(CacheRecordModel).where(CacheRecordModel.cache_key == key))
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise


class BlobStore:
    """Key-value blob store over a lazily created engine.

    The engine is created on first use so that an unreachable database shows
    up as a store error on the call that needed it.
    """

    def __init__(self, connection_string: str):
        self.connection_string = connection_string
        self._session_factory: Optional[sessionmaker[Session]] = None
        self._lock = threading.Lock()

    def _sessions(self) -> sessionmaker[Session]:
        with self._lock:
            if self._session_factory is None:
                engine = init_engine(self.connection_string)
                self._session_factory = get_session_factory(engine)
            return self._session_factory

    def get(self, key: str) -> Optional[str]:
        with self._sessions()() as session:
            return get_payload(session, key)

    def put(self, key: str, payload: str) -> None:
        with self._sessions()() as session:
            put_payload(session, key, payload)

    def delete(self, key: str) -> None:
        with self._sessions()() as session:
            delete_payload(session, key)
