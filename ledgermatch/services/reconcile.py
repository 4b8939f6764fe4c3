"""Reconciliation session lifecycle."""

import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgermatch.config import MatchingConfig, settings
from ledgermatch.errors import BusinessRuleViolation, NotFoundError, UpstreamUnavailable
from ledgermatch.models import (
    Account,
    ItemType,
    ReconciliationItem,
    ReconciliationSession,
    SessionStatus,
    Transaction,
    TransactionStatus,
)
from ledgermatch.services.access import load_account, load_reconciliation
from ledgermatch.services.audit import (
    AuditTrail,
    BalanceComparison,
    ManualLinkCreated,
    SessionCompleted,
    SessionStarted,
    StatementImported,
)
from ledgermatch.services.bank_data import BankDataError, ExternalTransaction, decode_reference
from ledgermatch.services.bank_feed import BankFeedClient, BankFeedClientError
from ledgermatch.services.matching import (
    FuzzyMatchScorer,
    ReconciliationMatchingEngine,
    ReconciliationMatchResult,
)

logger = logging.getLogger(__name__)

# Default statement period when the caller gives no start date
DEFAULT_PERIOD_DAYS = 30


@dataclass
class SessionSummary:
    """Item counts for a session's current matching pass."""

    session: ReconciliationSession
    total_items: int = 0
    matched: int = 0
    unmatched_bank: int = 0
    unmatched_internal: int = 0
    balance_tolerance: Decimal = Decimal("0.01")

    @property
    def unmatched(self) -> int:
        return self.unmatched_bank + self.unmatched_internal

    @property
    def matched_percentage(self) -> Decimal:
        if self.total_items == 0:
            return Decimal("0.00")
        return (Decimal(self.matched) / Decimal(self.total_items) * 100).quantize(Decimal("0.01"))

    @property
    def unmatched_ratio(self) -> Decimal:
        """Unrounded unmatched share in percent, used by the finalize gate."""
        if self.total_items == 0:
            return Decimal("0")
        return Decimal(self.unmatched) / Decimal(self.total_items) * 100

    @property
    def unmatched_percentage(self) -> Decimal:
        return self.unmatched_ratio.quantize(Decimal("0.01"))

    @property
    def balance_difference(self) -> Decimal:
        return self.session.balance_difference

    @property
    def is_balanced(self) -> bool:
        """Ledger balance known and within tolerance of the statement."""
        return (
            self.session.calculated_balance is not None
            and abs(self.balance_difference) <= self.balance_tolerance
        )


@dataclass
class ImportAndMatchResult:
    """Outcome of one import-and-match pass."""

    session_id: int
    source: str
    match: ReconciliationMatchResult
    items_created: int = 0
    superseded_items: int = 0
    balance_comparison: BalanceComparison | None = None


@dataclass
class FinalizeResult:
    """Outcome of finalizing a session."""

    session: ReconciliationSession
    summary: SessionSummary
    transactions_reconciled: int = 0
    force_finalized: bool = False
    warnings: list[str] = field(default_factory=list)


class ReconciliationLifecycle:
    """Drives a reconciliation session from creation to completion.

    Flow:
    1. create: snapshot the ledger balance, status in_progress
    2. import_and_match: match bank records, replace the session's items
    3. manual_link: pair leftover bank rows by hand
    4. finalize: validate unmatched share, reconcile matched transactions, complete
    """

    def __init__(
        self,
        session: AsyncSession,
        bank_feed: BankFeedClient | None = None,
        config: MatchingConfig | None = None,
        engine: ReconciliationMatchingEngine | None = None,
    ):
        """Initialize lifecycle.

        Args:
            session: Database session
            bank_feed: Bank feed client, needed only to fetch records
            config: Matching thresholds, defaults to settings.matching
            engine: Matching engine
        """
        self.session = session
        self.bank_feed = bank_feed
        self.config = config or settings.matching
        self.scorer = FuzzyMatchScorer()
        self.engine = engine or ReconciliationMatchingEngine(self.scorer)
        self.audit = AuditTrail(session)

    async def create(
        self,
        user_id: int,
        account_id: int,
        statement_end_date: date,
        statement_end_balance: Decimal,
        notes: str | None = None,
    ) -> ReconciliationSession:
        """Start a reconciliation session.

        Args:
            user_id: Acting user
            account_id: Account being reconciled
            statement_end_date: Last day of the statement
            statement_end_balance: Closing balance printed on the statement
            notes: Optional notes

        Returns:
            The new session, status in_progress

        Raises:
            NotFoundError: Account missing or not visible
            UnauthorizedError: View-only access
        """
        account = await load_account(self.session, account_id, user_id, modify=True)
        calculated = await self._calculate_balance(account.id, statement_end_date)

        recon = ReconciliationSession(
            user_id=user_id,
            account_id=account.id,
            statement_end_date=statement_end_date,
            statement_end_balance=statement_end_balance,
            calculated_balance=calculated,
            status=SessionStatus.IN_PROGRESS.value,
            notes=notes,
        )
        self.session.add(recon)
        await self.session.flush()

        await self.audit.record(
            recon.id,
            user_id,
            SessionStarted(
                account_id=account.id,
                account_name=account.name,
                statement_end_date=statement_end_date,
                statement_end_balance=statement_end_balance,
                calculated_balance=calculated,
                balance_difference=recon.balance_difference,
            ),
        )
        await self.session.commit()

        logger.info(
            f"Started reconciliation {recon.id} for account {account.id}: "
            f"statement {statement_end_balance}, ledger {calculated}"
        )
        return recon

    async def import_and_match(
        self,
        session_id: int,
        user_id: int,
        externals: list[ExternalTransaction] | None = None,
        *,
        amount_tolerance: Decimal | None = None,
        date_tolerance_days: int | None = None,
        use_description_matching: bool = True,
        use_date_range_matching: bool = True,
        start_date: date | None = None,
    ) -> ImportAndMatchResult:
        """Match bank records against the ledger and replace the session's items.

        Args:
            session_id: Reconciliation session
            user_id: Acting user
            externals: Bank records; fetched from the bank feed when None
            amount_tolerance: Overrides the configured amount tolerance
            date_tolerance_days: Overrides the configured date window
            use_description_matching: Let description similarity move scores
            use_date_range_matching: Enforce the date window
            start_date: First day of the period

        Returns:
            ImportAndMatchResult

        Raises:
            BusinessRuleViolation: Session completed, or no bank feed connected
            UpstreamUnavailable: Bank feed failed while fetching records
        """
        recon, account = await load_reconciliation(self.session, session_id, user_id, modify=True)
        self._ensure_in_progress(recon)

        date_window = (
            date_tolerance_days
            if date_tolerance_days is not None
            else self.config.reconciliation.date_tolerance_days
        )

        balance_comparison = None
        if externals is None:
            source = "bank_feed"
            period_start = start_date or recon.statement_end_date - timedelta(
                days=DEFAULT_PERIOD_DAYS
            )
            externals = await self._fetch_externals(account, period_start, recon.statement_end_date)
            balance_comparison = await self._compare_balance(account, recon)
        else:
            source = "statement"
            period_start = start_date or min(
                (e.date for e in externals),
                default=recon.statement_end_date - timedelta(days=DEFAULT_PERIOD_DAYS),
            )

        # Decode every snapshot up front so a bad record leaves no partial state
        try:
            snapshots = {id(e): e.snapshot() for e in externals}
        except BankDataError as e:
            raise BusinessRuleViolation(str(e)) from e

        internals = await self._load_internals(
            account.id,
            period_start - timedelta(days=date_window),
            recon.statement_end_date + timedelta(days=date_window),
        )

        match = self.engine.match(
            externals,
            internals,
            amount_tolerance=amount_tolerance,
            date_tolerance_days=date_tolerance_days,
            use_description_matching=use_description_matching,
            use_date_range_matching=use_date_range_matching,
            params=self.config.reconciliation,
        )

        superseded = await self._supersede_items(recon.id)

        items: list[ReconciliationItem] = []
        for pair in match.matched_pairs:
            snapshot = snapshots[id(pair.external)]
            items.append(
                ReconciliationItem(
                    session_id=recon.id,
                    item_type=ItemType.MATCHED.value,
                    transaction_id=pair.internal.id,
                    external_id=pair.external.external_id,
                    bank_provider=snapshot.provider,
                    bank_reference=snapshot.to_payload(),
                    match_confidence=pair.confidence,
                    match_method=pair.method.value,
                    match_reasons=pair.score.reasons,
                )
            )
        for external in match.unmatched_bank:
            snapshot = snapshots[id(external)]
            items.append(
                ReconciliationItem(
                    session_id=recon.id,
                    item_type=ItemType.UNMATCHED_BANK.value,
                    external_id=external.external_id,
                    bank_provider=snapshot.provider,
                    bank_reference=snapshot.to_payload(),
                )
            )
        for internal in match.unmatched_internal:
            items.append(
                ReconciliationItem(
                    session_id=recon.id,
                    item_type=ItemType.UNMATCHED_INTERNAL.value,
                    transaction_id=internal.id,
                )
            )
        self.session.add_all(items)
        await self.session.flush()

        await self.audit.record(
            recon.id,
            user_id,
            StatementImported(
                source=source,
                total_external=len(externals),
                total_internal=len(internals),
                exact_matches=match.exact_matches,
                fuzzy_matches=match.fuzzy_matches,
                unmatched_bank=len(match.unmatched_bank),
                unmatched_internal=len(match.unmatched_internal),
                overall_match_percentage=match.overall_match_percentage,
                superseded_items=superseded,
                balance_comparison=balance_comparison,
            ),
        )
        await self.session.commit()

        return ImportAndMatchResult(
            session_id=recon.id,
            source=source,
            match=match,
            items_created=len(items),
            superseded_items=superseded,
            balance_comparison=balance_comparison,
        )

    async def manual_link(
        self,
        session_id: int,
        user_id: int,
        item_id: int,
        transaction_id: int,
    ) -> ReconciliationItem:
        """Pair an unmatched bank row with an existing ledger transaction.

        Returns:
            The re-typed item, method manual

        Raises:
            NotFoundError: Item or transaction missing
            BusinessRuleViolation: Item is not an unmatched bank row, or the
                transaction is already matched in this session
        """
        recon, account = await load_reconciliation(self.session, session_id, user_id, modify=True)
        self._ensure_in_progress(recon)

        item = await self.session.get(ReconciliationItem, item_id)
        if item is None or item.session_id != recon.id or item.superseded_at is not None:
            raise NotFoundError("Reconciliation item", item_id)
        if item.item_type != ItemType.UNMATCHED_BANK.value:
            raise BusinessRuleViolation(f"Item {item_id} is not an unmatched bank item")

        transaction = await self.session.get(Transaction, transaction_id)
        if transaction is None or transaction.account_id != account.id or transaction.is_deleted:
            raise NotFoundError("Transaction", transaction_id)

        active = await self.active_items(recon.id)
        if any(
            i.transaction_id == transaction_id and i.item_type == ItemType.MATCHED.value
            for i in active
        ):
            raise BusinessRuleViolation(
                f"Transaction {transaction_id} is already matched in this reconciliation"
            )

        try:
            bank = decode_reference(item.bank_provider, item.bank_reference)
        except BankDataError as e:
            raise BusinessRuleViolation(str(e)) from e

        score = self.scorer.score_manual(
            bank.amount,
            bank.date,
            bank.description,
            transaction.amount,
            transaction.date,
            transaction.description,
            self.config.reconciliation,
        )

        item.item_type = ItemType.MATCHED.value
        item.transaction_id = transaction.id
        item.match_method = score.method.value
        item.match_confidence = score.confidence
        item.match_reasons = score.reasons

        superseded_item_id = None
        now = datetime.now(UTC)
        for other in active:
            if (
                other.transaction_id == transaction_id
                and other.item_type == ItemType.UNMATCHED_INTERNAL.value
            ):
                other.superseded_at = now
                superseded_item_id = other.id

        await self.audit.record(
            recon.id,
            user_id,
            ManualLinkCreated(
                item_id=item.id,
                transaction_id=transaction.id,
                external_id=item.external_id,
                confidence=score.confidence,
                superseded_item_id=superseded_item_id,
            ),
        )
        await self.session.commit()

        logger.info(f"Linked item {item.id} to transaction {transaction.id} in session {recon.id}")
        return item

    async def finalize(
        self,
        session_id: int,
        user_id: int,
        notes: str | None = None,
        force: bool = False,
    ) -> FinalizeResult:
        """Close the session.

        Args:
            session_id: Reconciliation session
            user_id: Acting user
            notes: Closing notes
            force: Finalize even with too many unmatched items

        Returns:
            FinalizeResult

        Raises:
            BusinessRuleViolation: Already completed, or too many unmatched
                items without force; nothing is changed in either case
        """
        recon, account = await load_reconciliation(self.session, session_id, user_id, modify=True)
        self._ensure_in_progress(recon)

        summary = await self.get_summary(session_id, user_id)
        limit = self.config.finalize_max_unmatched_percent
        if not force and summary.unmatched > 0 and summary.unmatched_ratio > limit:
            raise BusinessRuleViolation(
                f"Too many unmatched items ({summary.unmatched_ratio:.1f}%). "
                "Use force finalize to override.",
                {"unmatched_percentage": str(summary.unmatched_percentage)},
            )

        # Terminal-state guard: a concurrent finalize that got here first wins
        completed_at = datetime.now(UTC)
        guarded = await self.session.execute(
            update(ReconciliationSession)
            .where(
                ReconciliationSession.id == recon.id,
                ReconciliationSession.status == SessionStatus.IN_PROGRESS.value,
            )
            .values(status=SessionStatus.COMPLETED.value, completed_at=completed_at)
            .execution_options(synchronize_session=False)
        )
        if guarded.rowcount == 0:
            await self.session.rollback()
            raise BusinessRuleViolation("Reconciliation is already completed")

        recon.status = SessionStatus.COMPLETED.value
        recon.completed_at = completed_at
        recon.calculated_balance = await self._calculate_balance(
            account.id, recon.statement_end_date
        )
        if notes:
            recon.notes = notes

        matched_ids = {
            i.transaction_id
            for i in await self.active_items(recon.id)
            if i.item_type == ItemType.MATCHED.value and i.transaction_id is not None
        }
        reconciled = 0
        if matched_ids:
            result = await self.session.execute(
                select(Transaction).where(Transaction.id.in_(matched_ids))
            )
            for transaction in result.scalars().all():
                if transaction.status != TransactionStatus.RECONCILED.value:
                    transaction.status = TransactionStatus.RECONCILED.value
                    reconciled += 1

        account.last_reconciled_date = recon.statement_end_date
        account.last_reconciled_balance = recon.statement_end_balance

        warnings = []
        if force and summary.unmatched_ratio > limit:
            warnings.append(
                f"Force finalized with {summary.unmatched_percentage:.1f}% unmatched items"
            )

        await self.audit.record(
            recon.id,
            user_id,
            SessionCompleted(
                total_items=summary.total_items,
                matched=summary.matched,
                unmatched_bank=summary.unmatched_bank,
                unmatched_internal=summary.unmatched_internal,
                match_percentage=summary.matched_percentage,
                transactions_reconciled=reconciled,
                final_balance_difference=recon.balance_difference,
                force_finalized=force,
                notes=notes,
            ),
        )
        await self.session.commit()

        logger.info(
            f"Completed reconciliation {recon.id}: {reconciled} transactions reconciled, "
            f"{summary.unmatched} unmatched items"
        )
        return FinalizeResult(
            session=recon,
            summary=summary,
            transactions_reconciled=reconciled,
            force_finalized=force,
            warnings=warnings,
        )

    async def get_summary(self, session_id: int, user_id: int) -> SessionSummary:
        """Counts over the session's active items. View access suffices."""
        recon, _ = await load_reconciliation(self.session, session_id, user_id, modify=False)
        summary = SessionSummary(session=recon, balance_tolerance=self.config.balance_tolerance)
        for item in await self.active_items(recon.id):
            summary.total_items += 1
            if item.item_type == ItemType.MATCHED.value:
                summary.matched += 1
            elif item.item_type == ItemType.UNMATCHED_BANK.value:
                summary.unmatched_bank += 1
            elif item.item_type == ItemType.UNMATCHED_INTERNAL.value:
                summary.unmatched_internal += 1
        return summary

    async def active_items(self, session_id: int) -> list[ReconciliationItem]:
        """Items of the latest matching pass."""
        result = await self.session.execute(
            select(ReconciliationItem)
            .where(
                ReconciliationItem.session_id == session_id,
                ReconciliationItem.superseded_at.is_(None),
            )
            .order_by(ReconciliationItem.id)
        )
        return list(result.scalars().all())

    @staticmethod
    def _ensure_in_progress(recon: ReconciliationSession) -> None:
        if recon.is_completed:
            raise BusinessRuleViolation("Reconciliation is already completed")

    async def _calculate_balance(self, account_id: int, as_of: date) -> Decimal:
        """Ledger balance of the account up to and including as_of."""
        result = await self.session.execute(
            select(func.sum(Transaction.amount)).where(
                Transaction.account_id == account_id,
                Transaction.is_deleted.is_(False),
                Transaction.date <= as_of,
            )
        )
        total = result.scalar_one_or_none()
        return Decimal(str(total or 0)).quantize(Decimal("0.01"))

    async def _load_internals(
        self, account_id: int, start: date, end: date
    ) -> list[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(
                Transaction.account_id == account_id,
                Transaction.is_deleted.is_(False),
                Transaction.status != TransactionStatus.RECONCILED.value,
                Transaction.date >= start,
                Transaction.date <= end,
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(result.scalars().all())

    async def _supersede_items(self, session_id: int) -> int:
        """Retire the previous pass's items; they stay for history."""
        result = await self.session.execute(
            update(ReconciliationItem)
            .where(
                ReconciliationItem.session_id == session_id,
                ReconciliationItem.superseded_at.is_(None),
            )
            .values(superseded_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _fetch_externals(
        self, account: Account, start: date, end: date
    ) -> list[ExternalTransaction]:
        if self.bank_feed is None or not account.bank_account_ref:
            raise BusinessRuleViolation(f"Account {account.id} is not connected to a bank feed")
        try:
            return await self.bank_feed.get_transactions(account.bank_account_ref, start, end)
        except BankFeedClientError as e:
            raise UpstreamUnavailable("bank feed", str(e)) from e

    async def _compare_balance(
        self, account: Account, recon: ReconciliationSession
    ) -> BalanceComparison | None:
        """Bank balance net of pending vs the ledger; None when the feed fails."""
        try:
            bank_balance = await self.bank_feed.get_balance(account.bank_account_ref)
            pending = await self.bank_feed.get_pending(account.bank_account_ref)
        except BankFeedClientError as e:
            logger.warning(f"Balance comparison skipped for account {account.id}: {e}")
            return None

        calculated = recon.calculated_balance or Decimal("0.00")
        difference = (bank_balance - pending.total) - calculated
        return BalanceComparison(
            bank_balance=bank_balance,
            pending_total=pending.total,
            pending_count=pending.count,
            calculated_balance=calculated,
            difference=difference,
            is_balanced=abs(difference) <= self.config.balance_tolerance,
        )
