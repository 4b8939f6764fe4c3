"""Reconciliation audit trail.

Every decision on a session is written as one of a fixed set of typed
events. Events are serialized the same way at the persistence boundary and
rows are never updated or deleted afterwards.
"""

import logging
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgermatch.models.recon import ReconciliationAuditLog

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    """Audited actions."""

    STARTED = "started"
    STATEMENT_IMPORTED = "statement_imported"
    MANUAL_LINK = "manual_link"
    TRANSACTIONS_IMPORTED = "transactions_imported"
    MATCHES_APPROVED = "matches_approved"
    COMPLETED = "completed"


@dataclass(frozen=True)
class BalanceComparison:
    """Bank balance net of pending items vs the ledger balance."""

    bank_balance: Decimal
    pending_total: Decimal
    pending_count: int
    calculated_balance: Decimal
    difference: Decimal
    is_balanced: bool

    @property
    def available_balance(self) -> Decimal:
        return self.bank_balance - self.pending_total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            **_to_json(self),
            "available_balance": str(self.available_balance),
        }


@dataclass(frozen=True)
class AuditEvent:
    """Base for audit event variants."""

    ACTION: ClassVar[AuditAction]

    def to_details(self) -> dict[str, Any]:
        """JSON-safe payload."""
        return {f.name: _to_json(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class SessionStarted(AuditEvent):
    ACTION: ClassVar[AuditAction] = AuditAction.STARTED

    account_id: int
    account_name: str
    statement_end_date: date
    statement_end_balance: Decimal
    calculated_balance: Decimal | None
    balance_difference: Decimal


@dataclass(frozen=True)
class StatementImported(AuditEvent):
    ACTION: ClassVar[AuditAction] = AuditAction.STATEMENT_IMPORTED

    source: str
    total_external: int
    total_internal: int
    exact_matches: int
    fuzzy_matches: int
    unmatched_bank: int
    unmatched_internal: int
    overall_match_percentage: Decimal
    superseded_items: int = 0
    balance_comparison: BalanceComparison | None = None


@dataclass(frozen=True)
class ManualLinkCreated(AuditEvent):
    ACTION: ClassVar[AuditAction] = AuditAction.MANUAL_LINK

    item_id: int
    transaction_id: int
    external_id: str | None
    confidence: Decimal
    superseded_item_id: int | None = None


@dataclass(frozen=True)
class TransactionsImported(AuditEvent):
    ACTION: ClassVar[AuditAction] = AuditAction.TRANSACTIONS_IMPORTED

    imported_count: int
    skipped_count: int
    created_ids: list[int] = field(default_factory=list)
    error_count: int = 0


@dataclass(frozen=True)
class MatchesApproved(AuditEvent):
    ACTION: ClassVar[AuditAction] = AuditAction.MATCHES_APPROVED

    approved_item_ids: list[int] = field(default_factory=list)
    error_count: int = 0


@dataclass(frozen=True)
class SessionCompleted(AuditEvent):
    ACTION: ClassVar[AuditAction] = AuditAction.COMPLETED

    total_items: int
    matched: int
    unmatched_bank: int
    unmatched_internal: int
    match_percentage: Decimal
    transactions_reconciled: int
    final_balance_difference: Decimal
    force_finalized: bool
    notes: str | None = None


AUDIT_EVENT_TYPES = (
    SessionStarted,
    StatementImported,
    ManualLinkCreated,
    TransactionsImported,
    MatchesApproved,
    SessionCompleted,
)


def _to_json(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value):
        return {f.name: _to_json(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, list | tuple):
        return [_to_json(v) for v in value]
    return value


class AuditTrail:
    """Writes and reads audit entries for reconciliation sessions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self, session_id: int, user_id: int, event: AuditEvent
    ) -> ReconciliationAuditLog:
        """Append an audit entry. Flushed, committed by the caller."""
        if not isinstance(event, AUDIT_EVENT_TYPES):
            raise TypeError(f"Unsupported audit event: {type(event).__name__}")

        entry = ReconciliationAuditLog(
            session_id=session_id,
            user_id=user_id,
            action=event.ACTION.value,
            details=event.to_details(),
        )
        self.session.add(entry)
        await self.session.flush()

        logger.info(f"Audit: session {session_id} {event.ACTION.value} by user {user_id}")
        return entry

    async def history(self, session_id: int) -> list[ReconciliationAuditLog]:
        """Entries for a session, oldest first."""
        result = await self.session.execute(
            select(ReconciliationAuditLog)
            .where(ReconciliationAuditLog.session_id == session_id)
            .order_by(ReconciliationAuditLog.id)
        )
        return list(result.scalars().all())
