"""
Transaction Store — SQLAlchemy models for Mata Finance.

Tables:

- ``users``: admins and approvers, with the session id their token must carry
- ``transactions`` with ``transaction_items`` and ``transaction_documents``;
  predecessor/successor links form the replacement chain
- ``emergency_requests``: an admin's bid for expedited review
- ``system_signals``: append-only metric snapshots
- ``system_notices`` and ``user_notice_exposures``
- ``activity_log``: append-only, SHA-256 hash-chained history of every action

Referential integrity: deleting a user cascades to their transactions,
notices and exposures; deleting a transaction cascades to its items,
documents and emergency requests. The activity log keeps no foreign keys
so history survives those deletions.

Column types are the generic ``Uuid`` and a JSON type that becomes JSONB on
PostgreSQL, so the same models run on SQLite in tests.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all Mata Finance models."""
    pass


class UserDB(Base):
    """Admins and approvers. The role is authoritative here, never in tokens."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(200), nullable=False)
    role = Column(
        String(20), nullable=False,
        comment="'admin' or 'approver'",
    )
    public_alias = Column(String(100), nullable=True)
    department = Column(String(100), nullable=True)
    login_id = Column(
        String(64), nullable=True,
        comment="Current login session id; tokens carrying another id are rejected",
    )
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    transactions = relationship(
        "TransactionDB", back_populates="admin",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    notices = relationship(
        "SystemNoticeDB", back_populates="creator",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    notice_exposures = relationship(
        "UserNoticeExposureDB", back_populates="user",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User {self.name} role={self.role}>"


class TransactionDB(Base):
    """
    A financial transaction drafted by an admin and decided by an approver.

    Status changes go through conditional UPDATEs keyed on the expected
    pre-state (see ``workflow.transactions``), never through blind writes.
    """

    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    code = Column(
        String(40), nullable=False, unique=True,
        comment="Human-readable code, e.g. TRX-20260105-A1B2C3",
    )
    admin_id = Column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        comment="Creating admin; sole editor until submission",
    )
    transaction_type = Column(String(20), nullable=False, default="payment")
    amount = Column(Numeric(18, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="IDR")
    status = Column(String(30), nullable=False, default="in_progress")
    description = Column(Text, nullable=False, default="")
    recipient_name = Column(String(200), nullable=False, default="")
    vendor_ref = Column(String(100), nullable=True)
    cost_center = Column(String(100), nullable=True)
    risk_level = Column(String(10), nullable=False, default="low")
    internal_flags = Column(
        JSONType, nullable=False, default=list,
        comment="Set of internal tags, e.g. ocr_mismatch",
    )
    ocr_result = Column(
        JSONType, nullable=True,
        comment="Latest OCR extraction copied from the attached documents",
    )
    reject_reason = Column(
        Text, nullable=True,
        comment="Present only when status = rejected",
    )
    revision_note = Column(Text, nullable=True, comment="Approver note on return")
    revision_count = Column(Integer, nullable=False, default=0)

    # Replacement chain
    predecessor_id = Column(
        Uuid, ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True,
        comment="The rejected transaction this one replaces",
    )
    successor_id = Column(
        Uuid, ForeignKey("transactions.id", ondelete="SET NULL"),
        nullable=True, unique=True,
        comment="The replacement created for this transaction",
    )
    is_latest = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
    clock_started_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(),
        comment="Start of the current editing window; reset on return for revision",
    )
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    decided_by = Column(Uuid, nullable=True)

    admin = relationship("UserDB", back_populates="transactions")
    items = relationship(
        "TransactionItemDB", back_populates="transaction",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="TransactionItemDB.position",
    )
    documents = relationship(
        "TransactionDocumentDB", back_populates="transaction",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="TransactionDocumentDB.uploaded_at",
    )
    emergency_requests = relationship(
        "EmergencyRequestDB", back_populates="transaction",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_transaction_status_submitted", "status", "submitted_at"),
        Index("ix_transaction_admin_status", "admin_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Transaction {self.code} status={self.status}>"


class TransactionItemDB(Base):
    """Line-level breakdown; the transaction amount is the sum of totals."""

    __tablename__ = "transaction_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    transaction_id = Column(
        Uuid, ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False,
    )
    position = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=False)
    quantity = Column(Numeric(18, 4), nullable=False, default=1)
    unit_price = Column(Numeric(18, 2), nullable=False)
    total = Column(Numeric(18, 2), nullable=False)

    transaction = relationship("TransactionDB", back_populates="items")


class TransactionDocumentDB(Base):
    """Uploaded evidence. Replacements re-reference the same ``file_path``."""

    __tablename__ = "transaction_documents"

    id = Column(Uuid, primary_key=True, default=uuid4)
    transaction_id = Column(
        Uuid, ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False,
    )
    category = Column(String(50), nullable=False, default="invoice")
    file_name = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)
    ocr_result = Column(JSONType, nullable=True)
    ocr_match = Column(
        Boolean, nullable=True,
        comment="True/False from OCR comparison; NULL when nothing to compare",
    )
    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    transaction = relationship("TransactionDB", back_populates="documents")

    __table_args__ = (
        Index("ix_document_transaction_category", "transaction_id", "category"),
    )


class EmergencyRequestDB(Base):
    """An admin's request for expedited approval of one transaction."""

    __tablename__ = "emergency_requests"

    id = Column(Uuid, primary_key=True, default=uuid4)
    transaction_id = Column(
        Uuid, ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False,
    )
    admin_id = Column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    admin_reason = Column(Text, nullable=False)
    status = Column(
        String(20), nullable=False, default="PENDING",
        comment="PENDING until a decision lands on the transaction, then RESOLVED",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    transaction = relationship("TransactionDB", back_populates="emergency_requests")

    __table_args__ = (
        Index("ix_emergency_transaction_status", "transaction_id", "status"),
    )


class SystemSignalDB(Base):
    """Append-only metric snapshot. Never exposed to approvers."""

    __tablename__ = "system_signals"

    id = Column(Uuid, primary_key=True, default=uuid4)
    signal_type = Column(String(50), nullable=False)
    signal_data = Column(
        JSONType, nullable=False,
        comment="Payload validated against the signal_type's schema",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        Index("ix_signal_type_created", "signal_type", "created_at"),
    )


class SystemNoticeDB(Base):
    """Notice template shown to approvers."""

    __tablename__ = "system_notices"

    id = Column(Uuid, primary_key=True, default=uuid4)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    category = Column(String(50), nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=True,
        comment="NULL for seeded templates",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    creator = relationship("UserDB", back_populates="notices")
    exposures = relationship(
        "UserNoticeExposureDB", back_populates="notice",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_notice_category", "category"),
    )


class UserNoticeExposureDB(Base):
    """One row per time a user was shown a notice."""

    __tablename__ = "user_notice_exposures"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    notice_id = Column(
        Uuid, ForeignKey("system_notices.id", ondelete="CASCADE"), nullable=False,
    )
    exposed_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    context = Column(String(100), nullable=True)

    user = relationship("UserDB", back_populates="notice_exposures")
    notice = relationship("SystemNoticeDB", back_populates="exposures")

    __table_args__ = (
        Index("ix_exposure_user_notice", "user_id", "notice_id", "exposed_at"),
    )


class ActivityLogDB(Base):
    """
    Immutable history of every action.

    APPEND-ONLY: rows are never updated or deleted. Each row stores the
    SHA-256 of (previous_hash || canonical_json(row)), so any retroactive
    edit is detectable by ``ActivityLog.verify_chain``.
    """

    __tablename__ = "activity_log"

    id = Column(Uuid, primary_key=True, default=uuid4)
    sequence_number = Column(
        Integer, nullable=False, unique=True, index=True,
        comment="Monotonically increasing sequence number",
    )
    previous_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False, unique=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=func.now())
    actor_id = Column(Uuid, nullable=True, comment="NULL for system actions")
    actor_role = Column(String(20), nullable=False)
    action = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Uuid, nullable=True)
    details = Column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_activity_actor_action", "actor_id", "action", "timestamp"),
        Index("ix_activity_entity", "entity_type", "entity_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ActivityLog seq={self.sequence_number} "
            f"action={self.action} hash={self.entry_hash[:12]}...>"
        )
