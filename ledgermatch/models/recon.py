"""SQLAlchemy models for reconciliation sessions."""

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .ledger import Base


class SessionStatus(str, Enum):
    """Reconciliation session states. Completed is terminal."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ItemType(str, Enum):
    """Outcome row kinds produced by a matching pass."""

    MATCHED = "matched"
    UNMATCHED_BANK = "unmatched_bank"
    UNMATCHED_INTERNAL = "unmatched_internal"


class ReconciliationSession(Base):
    """One account's statement period under review."""

    __tablename__ = "reconciliation_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )

    # Statement figures
    statement_end_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    statement_end_balance: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    calculated_balance: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))

    status: Mapped[str] = mapped_column(String(20), default=SessionStatus.IN_PROGRESS.value)
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))

    items: Mapped[list["ReconciliationItem"]] = relationship(
        "ReconciliationItem", back_populates="session", cascade="all"
    )

    __table_args__ = (
        Index("idx_recon_sessions_account", "account_id", "statement_end_date"),
        Index("idx_recon_sessions_user", "user_id"),
    )

    @property
    def balance_difference(self) -> Decimal:
        """Statement balance minus ledger balance."""
        return self.statement_end_balance - (self.calculated_balance or Decimal("0"))

    @property
    def is_completed(self) -> bool:
        return self.status == SessionStatus.COMPLETED.value

    def __repr__(self) -> str:
        return f"<ReconciliationSession {self.id} {self.status}>"


class ReconciliationItem(Base):
    """Outcome row of a matching pass. Superseded rows are kept for history."""

    __tablename__ = "reconciliation_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("reconciliation_sessions.id", ondelete="CASCADE"), nullable=False
    )
    item_type: Mapped[str] = mapped_column(String(30), nullable=False)

    # Internal side
    transaction_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("transactions.id", ondelete="SET NULL")
    )

    # Bank side snapshot, tagged by provider
    external_id: Mapped[str | None] = mapped_column(String(100))
    bank_provider: Mapped[str | None] = mapped_column(String(50))
    bank_reference: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    # Match scoring
    match_confidence: Mapped[Decimal | None] = mapped_column(Numeric(5, 4))
    match_method: Mapped[str | None] = mapped_column(String(20))  # exact, fuzzy, manual
    match_reasons: Mapped[list[str] | None] = mapped_column(JSON)

    # Review
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    approved_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))

    # Set when a re-run of the matching pass replaces this row
    superseded_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    session: Mapped["ReconciliationSession"] = relationship(
        "ReconciliationSession", back_populates="items"
    )

    __table_args__ = (
        Index("idx_recon_items_session", "session_id", "item_type"),
        Index("idx_recon_items_tx", "transaction_id"),
    )

    def __repr__(self) -> str:
        return f"<ReconciliationItem {self.id} {self.item_type} {self.match_confidence}>"


class ReconciliationAuditLog(Base):
    """Append-only record of decisions taken on a session."""

    __tablename__ = "reconciliation_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("reconciliation_sessions.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (Index("idx_recon_audit_session", "session_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<ReconciliationAuditLog {self.session_id} {self.action}>"
