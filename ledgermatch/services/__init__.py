"""Services for reconciliation and ledger cleanup."""

from .audit import AuditTrail
from .bank_feed import BankFeedClient
from .cache import CacheClient
from .categories import CategoryMappingClient, CategoryResolver
from .reconcile import ReconciliationLifecycle
from .resolution import ResolutionApplier

__all__ = [
    "AuditTrail",
    "BankFeedClient",
    "CacheClient",
    "CategoryMappingClient",
    "CategoryResolver",
    "ReconciliationLifecycle",
    "ResolutionApplier",
]
