"""
Tests for the activity log hash chain.

Validates:
- Append-only sequencing from the genesis hash
- Chain verification
- Tamper detection
- Append serialization on PostgreSQL
- The audit command
"""

from __future__ import annotations

from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import update

from mata_finance.domain.schema import DecisionOutcome
from mata_finance.store import activity
from mata_finance.store.activity import (
    APPEND_LOCK_KEY,
    GENESIS_HASH,
    ActivityIntegrityError,
    ActivityLog,
    lock_appends,
)
from mata_finance.store.audit import main, run_audit
from mata_finance.store.database import Database
from mata_finance.store.models import ActivityLogDB

from tests.support import BASE_TIME, FakeClock, Workspace


class TestActivityHash:
    def _hash(self, **overrides):
        fields = {
            "entry_id": uuid4(),
            "sequence_number": 1,
            "previous_hash": GENESIS_HASH,
            "timestamp": BASE_TIME,
            "actor_id": uuid4(),
            "actor_role": "approver",
            "action": "APPROVE",
            "entity_type": "transaction",
            "entity_id": uuid4(),
            "details": {"code": "TRX-001"},
        }
        fields.update(overrides)
        return fields, ActivityLog._compute_hash(**fields)

    def test_hash_is_deterministic(self):
        fields, first = self._hash()
        assert ActivityLog._compute_hash(**fields) == first

    def test_hash_format(self):
        _, digest = self._hash()
        assert len(digest) == 64, "SHA-256 hex digest should be 64 chars"
        assert all(c in "0123456789abcdef" for c in digest)

    def test_hash_changes_with_details(self):
        fields, first = self._hash()
        fields["details"] = {"code": "TRX-002"}
        assert ActivityLog._compute_hash(**fields) != first

    def test_naive_timestamp_hashes_as_utc(self):
        fields, first = self._hash()
        fields["timestamp"] = BASE_TIME.replace(tzinfo=None)
        assert ActivityLog._compute_hash(**fields) == first


class TestActivityChain:
    def setup_method(self):
        self.ws = Workspace()
        self.log = self.ws.activity_log

    def teardown_method(self):
        self.ws.close()

    def _write(self, count: int) -> None:
        for i in range(count):
            with self.ws.database.session() as session:
                self.log.record(session, self.ws.admin, "TEST", "transaction", uuid4(), {"n": i})

    def test_empty_log_is_valid(self):
        assert self.log.verify_chain() == (True, 0, "Activity log is empty")

    def test_entries_link_from_genesis(self):
        self._write(3)
        entries = sorted(self.log.get_latest_entries(), key=lambda e: e.sequence_number)
        assert [e.sequence_number for e in entries] == [1, 2, 3]
        assert entries[0].previous_hash == GENESIS_HASH
        assert entries[1].previous_hash == entries[0].entry_hash
        assert entries[2].previous_hash == entries[1].entry_hash

    def test_chain_verifies(self):
        self._write(3)
        is_valid, verified, _ = self.log.verify_chain()
        assert is_valid
        assert verified == 3

    def test_workflow_entries_verify(self):
        view = self.ws.submitted()
        self.ws.transactions.decide(
            self.ws.approver, view.id, DecisionOutcome.REJECT, "dokumen tidak lengkap",
        )
        self.ws.replacements.create_replacement(self.ws.admin, view.id)
        self.log.assert_valid()

    def test_tampered_details_are_detected(self):
        self._write(3)
        with self.ws.database.session() as session:
            session.execute(
                update(ActivityLogDB)
                .where(ActivityLogDB.sequence_number == 2)
                .values(details={"n": 99})
            )

        is_valid, failed_at, message = self.log.verify_chain()
        assert not is_valid
        assert failed_at == 1
        assert "Hash mismatch at sequence 2" in message
        with pytest.raises(ActivityIntegrityError):
            self.log.assert_valid()

    def test_rolled_back_work_leaves_no_entry(self):
        with pytest.raises(RuntimeError):
            with self.ws.database.session() as session:
                self.log.record(session, None, "TEST", "transaction", uuid4())
                raise RuntimeError("abort")
        assert self.log.get_entry_count() == 0


    def test_record_takes_the_append_lock(self, monkeypatch):
        locked = []
        monkeypatch.setattr(activity, "lock_appends", locked.append)
        with self.ws.database.session() as session:
            self.log.record(session, self.ws.admin, "TEST", "transaction", uuid4())
            assert locked == [session]

    def test_counts_per_action(self):
        self._write(2)
        self.ws.submitted()
        counts = self.log.count_actor_entries(self.ws.admin.user_id)
        assert counts["TEST"] == 2
        assert counts["SUBMIT_TRANSACTION"] == 1
        assert self.log.count_actor_entries(
            self.ws.admin.user_id, actions=["SUBMIT_TRANSACTION"],
        ) == {"SUBMIT_TRANSACTION": 1}


class TestAppendLock:
    def _session(self, dialect: str) -> MagicMock:
        session = MagicMock()
        session.get_bind.return_value.dialect.name = dialect
        return session

    def test_postgresql_takes_transaction_advisory_lock(self):
        session = self._session("postgresql")
        lock_appends(session)

        session.execute.assert_called_once()
        statement, params = session.execute.call_args.args
        assert "pg_advisory_xact_lock(:key)" in str(statement)
        assert params == {"key": APPEND_LOCK_KEY}

    def test_sqlite_needs_no_lock(self):
        session = self._session("sqlite")
        lock_appends(session)
        session.execute.assert_not_called()


class TestAuditCommand:
    def test_audit_reports_valid_chain(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'audit.db'}"
        database = Database(url)
        database.initialize()
        log = ActivityLog(database, clock=FakeClock())
        with database.session() as session:
            log.record(session, None, "SEED", "system", None, {"ok": True})
        database.dispose()

        assert run_audit(url, verbose=True) is True

    def test_audit_of_empty_log(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'empty.db'}"
        database = Database(url)
        database.initialize()
        database.dispose()

        assert run_audit(url) is True

    def test_audit_flags_broken_chain(self, tmp_path, capsys):
        url = f"sqlite:///{tmp_path / 'broken.db'}"
        database = Database(url)
        database.initialize()
        log = ActivityLog(database, clock=FakeClock())
        for i in range(2):
            with database.session() as session:
                log.record(session, None, "SEED", "system", None, {"n": i})
        with database.session() as session:
            session.execute(update(ActivityLogDB).values(action="EDITED"))
        database.dispose()

        assert run_audit(url) is False
        assert "broken" in capsys.readouterr().out
        with pytest.raises(SystemExit) as excinfo:
            main(["--database-url", url, "--verbose", "--limit", "1"])
        assert excinfo.value.code == 1
