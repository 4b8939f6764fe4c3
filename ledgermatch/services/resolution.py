"""Applies user decisions on match, duplicate and transfer results."""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgermatch.config import MatchingConfig, ToleranceParams, settings
from ledgermatch.errors import BusinessRuleViolation, NotFoundError
from ledgermatch.models import (
    Account,
    DuplicateDismissal,
    ItemType,
    ReconciliationItem,
    Transaction,
    TransactionStatus,
    Transfer,
)
from ledgermatch.services.access import load_reconciliation, load_user_transactions
from ledgermatch.services.audit import AuditTrail, MatchesApproved, TransactionsImported
from ledgermatch.services.bank_data import BankDataError, decode_reference
from ledgermatch.services.batch import BatchResult, apply_each
from ledgermatch.services.categories import CategoryClientError, CategoryResolver
from ledgermatch.services.matching import (
    DuplicateDetectionEngine,
    DuplicateDetectionResult,
    MatchMethod,
    TransferDetectionEngine,
    TransferDetectionResult,
)
from ledgermatch.services.matching.duplicates import member_key

logger = logging.getLogger(__name__)

NOTE_SEPARATOR = " | "


class DuplicateAction(str, Enum):
    """What to do with a duplicate group."""

    KEEP_NEWEST = "keep_newest"
    KEEP_OLDEST = "keep_oldest"
    KEEP_SELECTED = "keep_selected"
    MARK_NOT_DUPLICATE = "mark_not_duplicate"


@dataclass
class DuplicateResolution:
    """The user's decision for one duplicate group."""

    action: DuplicateAction
    transaction_ids: list[int]
    group_id: str | None = None
    keep_ids: list[int] = field(default_factory=list)
    delete_ids: list[int] = field(default_factory=list)
    notes: str | None = None

    @property
    def label(self) -> str:
        return f"Group {self.group_id or member_key(self.transaction_ids)}"


@dataclass
class ImportResult:
    """Outcome of importing unmatched bank rows."""

    imported_count: int = 0
    skipped_count: int = 0
    created_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class ResolveDuplicatesResult:
    """Outcome of a batch of duplicate resolutions."""

    success: bool
    message: str
    transactions_deleted: int = 0
    transactions_kept: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class TransferPair:
    """A source/destination pair the user confirmed as a transfer."""

    source_id: int
    destination_id: int
    description: str | None = None


def _append_note(existing: str | None, note: str) -> str:
    return NOTE_SEPARATOR.join(filter(None, [existing, note]))


def _with_overrides(params: ToleranceParams, **overrides) -> ToleranceParams:
    """Copy of params with the non-None overrides applied."""
    update = {k: v for k, v in overrides.items() if v is not None}
    return params.model_copy(update=update) if update else params


class ResolutionApplier:
    """Mutates ledger state from reviewed results.

    Every multi-item action runs each item in its own savepoint, so a failing
    item is reported and rolled back alone while the others are kept.
    """

    def __init__(
        self,
        session: AsyncSession,
        category_resolver: CategoryResolver | None = None,
        config: MatchingConfig | None = None,
    ):
        self.session = session
        self.category_resolver = category_resolver
        self.config = config or settings.matching
        self.duplicates = DuplicateDetectionEngine()
        self.transfers = TransferDetectionEngine()
        self.audit = AuditTrail(session)

    # Reconciliation items

    async def import_unmatched(
        self,
        session_id: int,
        user_id: int,
        item_ids: list[int] | None = None,
        import_all: bool = False,
    ) -> ImportResult:
        """Create ledger transactions for unmatched bank rows.

        Rows whose external id already exists on the account are linked to
        the existing transaction and counted as skipped.

        Args:
            session_id: Reconciliation session
            user_id: Acting user
            item_ids: Unmatched bank items to import
            import_all: Import every unmatched bank item of the session

        Returns:
            ImportResult with per-item errors

        Raises:
            BusinessRuleViolation: No items given, or session completed
        """
        if not item_ids and not import_all:
            raise BusinessRuleViolation("No items specified for import")

        recon, account = await load_reconciliation(self.session, session_id, user_id)
        if recon.is_completed:
            raise BusinessRuleViolation("Reconciliation is already completed")

        query = select(ReconciliationItem).where(
            ReconciliationItem.session_id == recon.id,
            ReconciliationItem.superseded_at.is_(None),
            ReconciliationItem.item_type == ItemType.UNMATCHED_BANK.value,
        )
        if not import_all:
            query = query.where(ReconciliationItem.id.in_(item_ids))
        result = await self.session.execute(query.order_by(ReconciliationItem.id))
        items = list(result.scalars().all())

        outcome = ImportResult()
        if not import_all:
            found = {i.id for i in items}
            outcome.errors.extend(
                f"Failed to import item {item_id}: not an unmatched bank item"
                for item_id in item_ids
                if item_id not in found
            )

        mappings = await self._resolve_categories(account.user_id, items)

        async def import_item(item: ReconciliationItem) -> tuple[bool, int]:
            bank = decode_reference(item.bank_provider, item.bank_reference)

            # Rows without a bank id are always new
            transaction = None
            if bank.external_id:
                existing = await self.session.execute(
                    select(Transaction).where(
                        Transaction.account_id == account.id,
                        Transaction.external_id == bank.external_id,
                        Transaction.is_deleted.is_(False),
                    )
                )
                transaction = existing.scalars().first()
            created = transaction is None

            if created:
                mapping = mappings.get(bank.bank_category) if bank.bank_category else None
                notes = []
                if bank.bank_category:
                    notes.append(f"Bank category: {bank.bank_category}")
                if bank.reference:
                    notes.append(f"Reference: {bank.reference}")
                notes.append("Imported from bank reconciliation")

                transaction = Transaction(
                    user_id=account.user_id,
                    account_id=account.id,
                    amount=bank.amount,
                    date=bank.date,
                    description=bank.display_description,
                    external_id=bank.external_id or None,
                    reference=bank.reference,
                    bank_category=bank.bank_category,
                    category_id=mapping.category_id if mapping else None,
                    notes=NOTE_SEPARATOR.join(notes),
                    status=TransactionStatus.CLEARED.value,
                    is_reviewed=bool(
                        mapping and mapping.confidence >= self.config.auto_review_threshold
                    ),
                )
                self.session.add(transaction)
                await self.session.flush()

            item.item_type = ItemType.MATCHED.value
            item.transaction_id = transaction.id
            item.match_method = MatchMethod.MANUAL.value
            item.match_confidence = Decimal("1.0000")
            item.match_reasons = ["imported_from_bank" if created else "external_id_match"]
            return created, transaction.id

        batch = await apply_each(
            self.session,
            items,
            import_item,
            label=lambda i: f"Failed to import item {i.id}",
        )
        for created, transaction_id in batch.successes:
            if created:
                outcome.imported_count += 1
                outcome.created_ids.append(transaction_id)
            else:
                outcome.skipped_count += 1
        outcome.errors.extend(batch.errors)

        await self.audit.record(
            recon.id,
            user_id,
            TransactionsImported(
                imported_count=outcome.imported_count,
                skipped_count=outcome.skipped_count,
                created_ids=outcome.created_ids,
                error_count=len(outcome.errors),
            ),
        )
        await self.session.commit()

        logger.info(
            f"Imported {outcome.imported_count} bank rows into session {recon.id} "
            f"({outcome.skipped_count} skipped, {len(outcome.errors)} errors)"
        )
        return outcome

    async def bulk_approve_matches(
        self,
        session_id: int,
        user_id: int,
        min_confidence: Decimal | None = None,
        item_ids: list[int] | None = None,
    ) -> BatchResult[int]:
        """Approve matched items and enrich their ledger transactions.

        Args:
            session_id: Reconciliation session
            user_id: Acting user
            min_confidence: Approve matches at or above this confidence
            item_ids: Approve exactly these items instead

        Returns:
            BatchResult of approved item ids
        """
        recon, _ = await load_reconciliation(self.session, session_id, user_id)
        if recon.is_completed:
            raise BusinessRuleViolation("Reconciliation is already completed")

        query = select(ReconciliationItem).where(
            ReconciliationItem.session_id == recon.id,
            ReconciliationItem.superseded_at.is_(None),
            ReconciliationItem.item_type == ItemType.MATCHED.value,
            ReconciliationItem.is_approved.is_(False),
        )
        if item_ids:
            query = query.where(ReconciliationItem.id.in_(item_ids))
        else:
            threshold = (
                min_confidence if min_confidence is not None else self.config.auto_approve_threshold
            )
            query = query.where(ReconciliationItem.match_confidence >= threshold)
        result = await self.session.execute(query.order_by(ReconciliationItem.id))

        async def approve(item: ReconciliationItem) -> int:
            transaction = await self.session.get(Transaction, item.transaction_id)
            if transaction is None or transaction.is_deleted:
                raise NotFoundError("Transaction", item.transaction_id)

            if item.bank_reference:
                try:
                    bank = decode_reference(item.bank_provider, item.bank_reference)
                except BankDataError as e:
                    logger.warning(f"Skipping enrichment for item {item.id}: {e}")
                else:
                    transaction.reference = transaction.reference or bank.reference
                    transaction.bank_category = transaction.bank_category or bank.bank_category
            transaction.external_id = transaction.external_id or item.external_id
            transaction.status = TransactionStatus.RECONCILED.value

            item.is_approved = True
            item.approved_at = datetime.now(UTC)
            return item.id

        batch = await apply_each(
            self.session,
            result.scalars().all(),
            approve,
            label=lambda i: f"Item {i.id}",
        )

        await self.audit.record(
            recon.id,
            user_id,
            MatchesApproved(approved_item_ids=batch.successes, error_count=len(batch.failures)),
        )
        await self.session.commit()
        return batch

    # Duplicates

    async def detect_duplicates(
        self,
        user_id: int,
        *,
        amount_tolerance: Decimal | None = None,
        date_tolerance_days: int | None = None,
        min_confidence: Decimal | None = None,
        include_reviewed: bool = False,
        same_account_only: bool = False,
    ) -> DuplicateDetectionResult:
        """Find duplicate groups in the user's ledger. Read only."""
        params = _with_overrides(
            self.config.duplicates,
            amount_tolerance=amount_tolerance,
            date_tolerance_days=date_tolerance_days,
            min_confidence=min_confidence,
        )
        transactions = await self._user_transactions(user_id)

        result = await self.session.execute(
            select(DuplicateDismissal.transaction_ids).where(DuplicateDismissal.user_id == user_id)
        )
        dismissed = list(result.scalars().all())

        return self.duplicates.detect(
            transactions,
            params,
            include_reviewed=include_reviewed,
            same_account_only=same_account_only,
            dismissed=dismissed,
        )

    async def resolve_duplicates(
        self, user_id: int, resolutions: list[DuplicateResolution]
    ) -> ResolveDuplicatesResult:
        """Apply duplicate resolutions, each group all-or-nothing.

        Returns:
            ResolveDuplicatesResult with one error per failed group
        """

        async def resolve(resolution: DuplicateResolution) -> tuple[int, int]:
            return await self._resolve_group(user_id, resolution)

        batch = await apply_each(self.session, resolutions, resolve, label=lambda r: r.label)
        await self.session.commit()

        deleted = sum(d for d, _ in batch.successes)
        kept = sum(k for _, k in batch.successes)
        message = f"Resolved {len(batch.successes)} of {len(resolutions)} duplicate groups"
        logger.info(f"{message} for user {user_id}: {deleted} deleted, {kept} kept")
        return ResolveDuplicatesResult(
            success=batch.ok,
            message=message,
            transactions_deleted=deleted,
            transactions_kept=kept,
            errors=batch.errors,
        )

    async def _resolve_group(
        self, user_id: int, resolution: DuplicateResolution
    ) -> tuple[int, int]:
        """Returns (deleted, kept) counts."""
        ids = sorted(set(resolution.transaction_ids))
        if len(ids) < 2:
            raise BusinessRuleViolation("A duplicate group needs at least two transactions")

        found = await load_user_transactions(self.session, user_id, ids)
        for transaction_id in ids:
            if transaction_id not in found:
                raise NotFoundError("Transaction", transaction_id)
            if found[transaction_id].is_deleted:
                raise BusinessRuleViolation(f"Transaction {transaction_id} is already deleted")

        action = DuplicateAction(resolution.action)
        if action == DuplicateAction.MARK_NOT_DUPLICATE:
            await self._dismiss(user_id, ids, resolution.notes)
            return 0, len(ids)

        by_date = sorted(found.values(), key=lambda t: (t.date, t.id))
        if action == DuplicateAction.KEEP_NEWEST:
            keep, delete = [by_date[-1]], by_date[:-1]
        elif action == DuplicateAction.KEEP_OLDEST:
            keep, delete = [by_date[0]], by_date[1:]
        else:
            keep, delete = self._selected(found, resolution)

        kept_ids = ", ".join(str(t.id) for t in keep)
        for transaction in delete:
            transaction.is_deleted = True
            transaction.notes = _append_note(
                transaction.notes, f"Duplicate resolution: duplicate of {kept_ids}"
            )
        deleted_ids = ", ".join(str(t.id) for t in delete)
        for transaction in keep:
            note = f"Duplicate resolution: kept over {deleted_ids}"
            if resolution.notes:
                note = f"{note} ({resolution.notes})"
            transaction.notes = _append_note(transaction.notes, note)

        return len(delete), len(keep)

    @staticmethod
    def _selected(
        found: dict[int, Transaction], resolution: DuplicateResolution
    ) -> tuple[list[Transaction], list[Transaction]]:
        keep_ids = set(resolution.keep_ids)
        delete_ids = set(resolution.delete_ids) or set(found) - keep_ids
        if not keep_ids:
            raise BusinessRuleViolation("keep_selected needs at least one transaction to keep")
        if keep_ids & delete_ids:
            raise BusinessRuleViolation("A transaction cannot be both kept and deleted")
        if not (keep_ids | delete_ids) <= set(found):
            raise BusinessRuleViolation("Selected transactions must belong to the group")
        return (
            [found[i] for i in sorted(keep_ids)],
            [found[i] for i in sorted(delete_ids)],
        )

    async def _dismiss(self, user_id: int, ids: list[int], notes: str | None) -> None:
        key = member_key(ids)
        existing = await self.session.execute(
            select(DuplicateDismissal).where(
                DuplicateDismissal.user_id == user_id,
                DuplicateDismissal.member_key == key,
            )
        )
        if existing.scalar_one_or_none() is None:
            self.session.add(
                DuplicateDismissal(
                    user_id=user_id, transaction_ids=ids, member_key=key, notes=notes
                )
            )
            await self.session.flush()

    # Transfers

    async def detect_transfers(
        self,
        user_id: int,
        *,
        amount_tolerance: Decimal | None = None,
        date_tolerance_days: int | None = None,
        min_confidence: Decimal | None = None,
        include_reviewed: bool = False,
        include_existing_transfers: bool = False,
    ) -> TransferDetectionResult:
        """Find transfer candidates across the user's accounts. Read only."""
        params = _with_overrides(
            self.config.transfers,
            amount_tolerance=amount_tolerance,
            date_tolerance_days=date_tolerance_days,
            min_confidence=min_confidence,
        )
        transactions = await self._user_transactions(user_id)
        return self.transfers.detect(
            transactions,
            params,
            include_reviewed=include_reviewed,
            include_existing_transfers=include_existing_transfers,
        )

    async def link_transfer(
        self,
        user_id: int,
        source_id: int,
        destination_id: int,
        description: str | None = None,
    ) -> Transfer:
        """Link two transactions as one transfer.

        Args:
            user_id: Acting user
            source_id: Outflow transaction; swapped with destination if reversed
            destination_id: Inflow transaction
            description: Transfer description

        Returns:
            The created Transfer

        Raises:
            NotFoundError: A transaction is missing
            BusinessRuleViolation: Same account, already linked, same sign,
                or amounts too far apart
        """
        transfer = await self._link(user_id, TransferPair(source_id, destination_id, description))
        await self.session.commit()
        return transfer

    async def bulk_confirm_transfers(
        self, user_id: int, pairs: list[TransferPair]
    ) -> BatchResult[Transfer]:
        """Link many pairs; each pair succeeds or fails alone."""

        async def confirm(pair: TransferPair) -> Transfer:
            return await self._link(user_id, pair)

        batch = await apply_each(
            self.session,
            pairs,
            confirm,
            label=lambda p: f"Transfer {p.source_id} -> {p.destination_id}",
        )
        await self.session.commit()
        logger.info(
            f"Confirmed {len(batch.successes)} of {len(pairs)} transfers for user {user_id}"
        )
        return batch

    async def _link(self, user_id: int, pair: TransferPair) -> Transfer:
        if pair.source_id == pair.destination_id:
            raise BusinessRuleViolation("A transfer needs two different transactions")

        found = await load_user_transactions(
            self.session, user_id, [pair.source_id, pair.destination_id]
        )
        for transaction_id in (pair.source_id, pair.destination_id):
            if transaction_id not in found or found[transaction_id].is_deleted:
                raise NotFoundError("Transaction", transaction_id)
        source, destination = found[pair.source_id], found[pair.destination_id]

        if source.account_id == destination.account_id:
            raise BusinessRuleViolation("Transfer transactions must be in different accounts")
        for transaction in (source, destination):
            if transaction.transfer_id:
                raise BusinessRuleViolation(
                    f"Transaction {transaction.id} is already part of a transfer"
                )
        if (source.amount < 0) == (destination.amount < 0):
            raise BusinessRuleViolation("A transfer needs one outflow and one inflow")
        if source.amount > 0:
            source, destination = destination, source

        larger = max(abs(source.amount), abs(destination.amount))
        difference = abs(abs(source.amount) - abs(destination.amount))
        if larger and difference / larger * 100 > self.config.transfer_link_tolerance_percent:
            raise BusinessRuleViolation(
                f"Transfer amounts differ by more than "
                f"{self.config.transfer_link_tolerance_percent}%"
            )

        if pair.description:
            description = pair.description
        else:
            source_account = await self.session.get(Account, source.account_id)
            destination_account = await self.session.get(Account, destination.account_id)
            description = f"Transfer from {source_account.name} to {destination_account.name}"

        transfer = Transfer(
            transfer_id=str(uuid4()),
            user_id=user_id,
            amount=larger,
            date=source.date,
            description=description,
            source_account_id=source.account_id,
            destination_account_id=destination.account_id,
        )
        self.session.add(transfer)

        source.transfer_id = destination.transfer_id = transfer.transfer_id
        source.is_transfer_source = True
        destination.is_transfer_source = False
        source.related_transaction_id = destination.id
        destination.related_transaction_id = source.id
        source.is_reviewed = destination.is_reviewed = True
        await self.session.flush()

        logger.info(
            f"Linked transfer {transfer.transfer_id}: {source.id} -> {destination.id} ({larger})"
        )
        return transfer

    async def reverse_transfer(self, user_id: int, transfer_id: str) -> Transfer | None:
        """Swap source and destination of a linked transfer; the link is kept.

        Raises:
            NotFoundError: No transactions carry the transfer id
            BusinessRuleViolation: The link does not have exactly two sides
        """
        result = await self.session.execute(
            select(Transaction).where(
                Transaction.transfer_id == transfer_id,
                Transaction.user_id == user_id,
                Transaction.is_deleted.is_(False),
            )
        )
        transactions = list(result.scalars().all())
        if not transactions:
            raise NotFoundError("Transfer", transfer_id)
        if len(transactions) != 2:
            raise BusinessRuleViolation(
                f"Transfer {transfer_id} has {len(transactions)} transactions, expected 2"
            )

        for transaction in transactions:
            transaction.is_transfer_source = not transaction.is_transfer_source

        result = await self.session.execute(
            select(Transfer).where(Transfer.transfer_id == transfer_id, Transfer.user_id == user_id)
        )
        transfer = result.scalar_one_or_none()
        if transfer is not None:
            transfer.source_account_id, transfer.destination_account_id = (
                transfer.destination_account_id,
                transfer.source_account_id,
            )

        await self.session.commit()
        logger.info(f"Reversed transfer {transfer_id}")
        return transfer

    # Helpers

    async def _user_transactions(self, user_id: int) -> list[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id, Transaction.is_deleted.is_(False))
            .order_by(Transaction.date, Transaction.id)
        )
        return list(result.scalars().all())

    async def _resolve_categories(self, user_id: int, items: list[ReconciliationItem]) -> dict:
        """Category mappings for the items' bank categories; empty when unavailable."""
        if self.category_resolver is None or not items:
            return {}
        categories = []
        for item in items:
            try:
                bank = decode_reference(item.bank_provider, item.bank_reference)
            except BankDataError:
                # Reported when the item itself is imported
                continue
            if bank.bank_category and bank.bank_category not in categories:
                categories.append(bank.bank_category)
        if not categories:
            return {}
        try:
            return await self.category_resolver.resolve(user_id, categories)
        except CategoryClientError as e:
            logger.warning(f"Category lookup unavailable, importing without categories: {e}")
            return {}

