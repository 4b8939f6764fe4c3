"""Database models."""

from .ledger import (
    Account,
    AccountShare,
    Base,
    DuplicateDismissal,
    ShareRole,
    Transaction,
    TransactionStatus,
    Transfer,
)
from .recon import (
    ItemType,
    ReconciliationAuditLog,
    ReconciliationItem,
    ReconciliationSession,
    SessionStatus,
)

__all__ = [
    "Base",
    "Account",
    "AccountShare",
    "ShareRole",
    "Transaction",
    "TransactionStatus",
    "Transfer",
    "DuplicateDismissal",
    "ReconciliationSession",
    "ReconciliationItem",
    "ReconciliationAuditLog",
    "SessionStatus",
    "ItemType",
]
