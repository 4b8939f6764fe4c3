"""SQLAlchemy models for the transaction ledger."""

import datetime as dt
from decimal import Decimal
from enum import Enum

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
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    # Server-side timestamps are read back on flush; async sessions cannot lazy load them
    __mapper_args__ = {"eager_defaults": True}


class TransactionStatus(str, Enum):
    """Clearing state of a ledger transaction."""

    PENDING = "pending"
    CLEARED = "cleared"
    RECONCILED = "reconciled"


class ShareRole(str, Enum):
    """Access level granted on a shared account."""

    VIEWER = "viewer"
    MANAGER = "manager"


class Account(Base):
    """Bank or cash account owned by a user."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Provider account id when connected to a bank feed
    bank_account_ref: Mapped[str | None] = mapped_column(String(100))

    # Stamped by a completed reconciliation
    last_reconciled_date: Mapped[dt.date | None] = mapped_column(Date)
    last_reconciled_balance: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    shares: Mapped[list["AccountShare"]] = relationship(
        "AccountShare", back_populates="account", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("idx_accounts_user", "user_id"),)

    def __repr__(self) -> str:
        return f"<Account {self.id} {self.name}>"


class AccountShare(Base):
    """Access granted on an account to a user other than the owner."""

    __tablename__ = "account_shares"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=ShareRole.VIEWER.value)

    account: Mapped["Account"] = relationship("Account", back_populates="shares")

    __table_args__ = (Index("idx_account_shares_user", "account_id", "user_id", unique=True),)

    def __repr__(self) -> str:
        return f"<AccountShare {self.account_id} {self.user_id} {self.role}>"


class Transaction(Base):
    """Ledger transaction. Negative amounts are outflows."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    # Bank feed identity
    external_id: Mapped[str | None] = mapped_column(String(100))
    reference: Mapped[str | None] = mapped_column(String(255))
    bank_category: Mapped[str | None] = mapped_column(String(100))

    category_id: Mapped[int | None] = mapped_column(Integer)
    notes: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(String(20), default=TransactionStatus.PENDING.value)
    is_reviewed: Mapped[bool] = mapped_column(Boolean, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)

    # Transfer linkage
    transfer_id: Mapped[str | None] = mapped_column(String(36))
    is_transfer_source: Mapped[bool | None] = mapped_column(Boolean)
    related_transaction_id: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_tx_account_date", "account_id", "date"),
        Index("idx_tx_user_date", "user_id", "date"),
        Index("idx_tx_external_id", "external_id"),
        Index("idx_tx_transfer", "transfer_id"),
    )

    def __repr__(self) -> str:
        return f"<Transaction {self.id} {self.date} {self.amount}>"


class Transfer(Base):
    """Money moved between two accounts of the same user."""

    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transfer_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="completed")
    source_account_id: Mapped[int] = mapped_column(Integer, ForeignKey("accounts.id"))
    destination_account_id: Mapped[int] = mapped_column(Integer, ForeignKey("accounts.id"))

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Transfer {self.transfer_id} {self.amount}>"


class DuplicateDismissal(Base):
    """A transaction set the user declared not to be duplicates."""

    __tablename__ = "duplicate_dismissals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # Sorted member ids, and the same ids joined with "," for lookup
    transaction_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False)
    member_key: Mapped[str] = mapped_column(String(1000), nullable=False)

    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (Index("idx_dismissals_user_key", "user_id", "member_key", unique=True),)

    def __repr__(self) -> str:
        return f"<DuplicateDismissal {self.user_id} [{self.member_key}]>"
