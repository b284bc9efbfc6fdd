"""
Database access — engine, session factory and schema initialisation.

Usage:
    database = Database(settings.database_url_sync)
    database.initialize()  # create tables, seed default notice templates

    with database.session() as session:
        ...

``session()`` yields a session inside ``session.begin()``: it commits when
the block exits normally and rolls back on any exception, so a workflow
operation never leaves half its writes behind.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mata_finance.store.models import Base, SystemNoticeDB

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Default Notice Templates
# ════════════════════════════════════════════════════════════════

DEFAULT_NOTICES = [
    {
        "title": "Pola Kecepatan Persetujuan",
        "message": "Kecepatan pemrosesan persetujuan menyimpang dari pola tipikal sistem.",
        "category": "speed_deviation",
        "priority": 2,
    },
    {
        "title": "Penanganan Permintaan Mendesak",
        "message": (
            "Permintaan darurat ditangani dengan kecepatan yang signifikan "
            "di atas rata-rata normal."
        ),
        "category": "emergency_bias",
        "priority": 3,
    },
    {
        "title": "Pola Klarifikasi Berulang",
        "message": "Terdeteksi penggunaan pola klarifikasi yang berulang secara periodik.",
        "category": "clarification_pattern",
        "priority": 1,
    },
    {
        "title": "Variansi Pola Keputusan",
        "message": "Terdeteksi variansi pada pola pengambilan keputusan dalam periode ini.",
        "category": "behavioral_drift",
        "priority": 2,
    },
    {
        "title": "Stabilitas Sistem",
        "message": "Sistem mempertahankan stabilitas melalui pemantauan pola perilaku agregat.",
        "category": "general",
        "priority": 0,
    },
]


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        """
        Args:
            database_url: SQLAlchemy URL. PostgreSQL (psycopg2) in production;
                ``sqlite://`` gives a shared in-memory database for tests.
        """
        self.engine = self._create_engine(database_url, echo)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    @staticmethod
    def _create_engine(database_url: str, echo: bool) -> Engine:
        if not database_url.startswith("sqlite"):
            return create_engine(database_url, echo=echo, pool_pre_ping=True)

        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    def initialize(self) -> None:
        """Create the schema and seed the default notice templates once."""
        Base.metadata.create_all(self.engine)

        with self.session() as session:
            count = session.execute(
                select(func.count()).select_from(SystemNoticeDB)
            ).scalar() or 0
            if count == 0:
                for template in DEFAULT_NOTICES:
                    session.add(SystemNoticeDB(**template))
                logger.info("Seeded %d default system notices", len(DEFAULT_NOTICES))

    @contextmanager
    def session(self) -> Iterator[Session]:
        with self.SessionLocal() as session:
            with session.begin():
                yield session

    def dispose(self) -> None:
        self.engine.dispose()
