"""
Activity Log — append-only, hash-chained history of every action.

Every lifecycle transition, replacement and emergency declaration writes
one entry here, inside the same database transaction as the change it
describes. Entries are never updated or deleted. Each entry's hash covers
the previous entry's hash, so ``verify_chain()`` detects any retroactive
alteration.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID, uuid4

from sqlalchemy import func, select, text
from sqlalchemy.orm import Session

from mata_finance.domain.clock import Clock, ensure_utc, utc_now
from mata_finance.domain.schema import Actor
from mata_finance.store.database import Database
from mata_finance.store.models import ActivityLogDB

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64  # previous_hash of the first entry

# pg_advisory_xact_lock key held while appending; released at commit/rollback
APPEND_LOCK_KEY = 0x4D415441


class ActivityIntegrityError(Exception):
    """Raised when the activity hash chain fails verification."""
    pass


def lock_appends(session: Session) -> None:
    """
    Serialize appends until the caller's transaction ends.

    On PostgreSQL a transaction-scoped advisory lock is taken before the
    head is read. Under READ COMMITTED the head query that follows runs
    with a fresh snapshot, so it sees the entry the previous holder
    committed. SQLite already serializes writers.
    """
    if session.get_bind().dialect.name == "postgresql":
        session.execute(
            text("SELECT pg_advisory_xact_lock(:key)"), {"key": APPEND_LOCK_KEY}
        )


class ActivityLog:
    """
    Writer and reader for the activity log.

    Usage:
        log = ActivityLog(database)
        with database.session() as session:
            ...  # mutate a transaction
            log.record(session, actor, "SUBMIT_TRANSACTION", "transaction", tx.id,
                       {"previousStatus": "draft", "newStatus": "submitted"})
    """

    def __init__(self, database: Database, clock: Clock = utc_now) -> None:
        self.database = database
        self.clock = clock

    def record(
        self,
        session: Session,
        actor: Actor | None,
        action: str,
        entity_type: str,
        entity_id: UUID | None,
        details: dict[str, Any] | None = None,
    ) -> ActivityLogDB:
        """
        Append an entry using the caller's session.

        The entry commits or rolls back together with the caller's work.
        ``actor=None`` records a system action.
        """
        lock_appends(session)
        last_entry = session.execute(
            select(ActivityLogDB)
            .order_by(ActivityLogDB.sequence_number.desc())
            .limit(1)
        ).scalar_one_or_none()

        if last_entry is None:
            new_seq, previous_hash = 1, GENESIS_HASH
        else:
            new_seq, previous_hash = last_entry.sequence_number + 1, last_entry.entry_hash

        entry_id = uuid4()
        timestamp = self.clock()
        actor_id = actor.user_id if actor else None
        actor_role = actor.role.value if actor else "system"
        # Normalise to plain JSON so the stored value hashes the same after a round trip
        content = json.loads(json.dumps(details or {}, default=str))

        entry_hash = self._compute_hash(
            entry_id=entry_id,
            sequence_number=new_seq,
            previous_hash=previous_hash,
            timestamp=timestamp,
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=content,
        )

        entry = ActivityLogDB(
            id=entry_id,
            sequence_number=new_seq,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            timestamp=timestamp,
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=content,
        )
        session.add(entry)
        session.flush()

        logger.debug(
            "Activity recorded: seq=%d action=%s entity=%s hash=%s",
            new_seq, action, entity_id, entry_hash[:16],
        )
        return entry

    def verify_chain(self) -> tuple[bool, int, str]:
        """
        Recompute every hash from the first entry forward.

        Returns:
            Tuple of (is_valid, entries_verified, message).
        """
        with self.database.session() as session:
            entries = session.execute(
                select(ActivityLogDB).order_by(ActivityLogDB.sequence_number.asc())
            ).scalars().all()

            if not entries:
                return True, 0, "Activity log is empty"

            if entries[0].previous_hash != GENESIS_HASH:
                return False, 0, "First entry has incorrect previous_hash"

            for i, entry in enumerate(entries):
                expected_hash = self._compute_hash(
                    entry_id=entry.id,
                    sequence_number=entry.sequence_number,
                    previous_hash=entry.previous_hash,
                    timestamp=entry.timestamp,
                    actor_id=entry.actor_id,
                    actor_role=entry.actor_role,
                    action=entry.action,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    details=entry.details,
                )

                if entry.entry_hash != expected_hash:
                    message = (
                        f"Hash mismatch at sequence {entry.sequence_number}: "
                        f"stored={entry.entry_hash[:16]}... "
                        f"computed={expected_hash[:16]}..."
                    )
                    logger.error("Activity chain verification failed: %s", message)
                    return False, i, message

                if i > 0 and entry.previous_hash != entries[i - 1].entry_hash:
                    message = (
                        f"Chain break at sequence {entry.sequence_number}: "
                        f"previous_hash does not match prior entry's hash"
                    )
                    logger.error("Activity chain verification failed: %s", message)
                    return False, i, message

            return (
                True, len(entries),
                f"Chain verified: {len(entries)} entries, integrity intact",
            )

    def assert_valid(self) -> None:
        is_valid, _, message = self.verify_chain()
        if not is_valid:
            raise ActivityIntegrityError(message)

    # ── Queries ─────────────────────────────────────────────────

    def get_entity_entries(self, entity_type: str, entity_id: UUID) -> list[ActivityLogDB]:
        """All entries for one entity, oldest first."""
        with self.database.session() as session:
            return list(
                session.execute(
                    select(ActivityLogDB)
                    .where(
                        ActivityLogDB.entity_type == entity_type,
                        ActivityLogDB.entity_id == entity_id,
                    )
                    .order_by(ActivityLogDB.sequence_number.asc())
                ).scalars().all()
            )

    def get_actor_entries(
        self,
        actor_id: UUID,
        actions: Iterable[str] | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[ActivityLogDB]:
        """Entries written by one actor, newest first."""
        with self.database.session() as session:
            stmt = select(ActivityLogDB).where(ActivityLogDB.actor_id == actor_id)
            if actions is not None:
                stmt = stmt.where(ActivityLogDB.action.in_(list(actions)))
            if since is not None:
                stmt = stmt.where(ActivityLogDB.timestamp >= since)
            stmt = stmt.order_by(ActivityLogDB.sequence_number.desc()).limit(limit)
            return list(session.execute(stmt).scalars().all())

    def count_actor_entries(
        self,
        actor_id: UUID,
        actions: Iterable[str] | None = None,
        since: datetime | None = None,
    ) -> dict[str, int]:
        """Entries written by one actor, counted per action."""
        with self.database.session() as session:
            stmt = (
                select(ActivityLogDB.action, func.count())
                .where(ActivityLogDB.actor_id == actor_id)
                .group_by(ActivityLogDB.action)
            )
            if actions is not None:
                stmt = stmt.where(ActivityLogDB.action.in_(list(actions)))
            if since is not None:
                stmt = stmt.where(ActivityLogDB.timestamp >= since)
            return {action: count for action, count in session.execute(stmt).all()}

    def get_latest_entries(self, limit: int = 50) -> list[ActivityLogDB]:
        with self.database.session() as session:
            return list(
                session.execute(
                    select(ActivityLogDB)
                    .order_by(ActivityLogDB.sequence_number.desc())
                    .limit(limit)
                ).scalars().all()
            )

    def get_entry_count(self) -> int:
        with self.database.session() as session:
            return session.execute(
                select(func.count()).select_from(ActivityLogDB)
            ).scalar() or 0

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _compute_hash(
        entry_id: UUID,
        sequence_number: int,
        previous_hash: str,
        timestamp: datetime,
        actor_id: UUID | None,
        actor_role: str,
        action: str,
        entity_type: str,
        entity_id: UUID | None,
        details: dict[str, Any],
    ) -> str:
        """Hash = SHA-256(previous_hash || canonical_json(entry_fields))."""
        hashable = {
            "id": str(entry_id),
            "sequence_number": sequence_number,
            "previous_hash": previous_hash,
            "timestamp": ensure_utc(timestamp).isoformat(),
            "actor_id": str(actor_id) if actor_id else None,
            "actor_role": actor_role,
            "action": action,
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id else None,
            "details": details,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256(
            (previous_hash + canonical).encode("utf-8")
        ).hexdigest()
