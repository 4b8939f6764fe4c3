"""Tests for applying reviewed match, duplicate and transfer results."""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from ledgermatch.errors import BusinessRuleViolation, NotFoundError
from ledgermatch.models import (
    DuplicateDismissal,
    ItemType,
    ReconciliationItem,
    Transaction,
    TransactionStatus,
    Transfer,
)
from ledgermatch.services.bank_data import ExternalTransaction
from ledgermatch.services.cache import CategoryMapping
from ledgermatch.services.categories import CategoryAPIError, CategoryResolver
from ledgermatch.services.reconcile import ReconciliationLifecycle
from ledgermatch.services.resolution import (
    DuplicateAction,
    DuplicateResolution,
    ResolutionApplier,
    TransferPair,
)

STATEMENT_END = date(2024, 1, 31)


def external(external_id, amount, on, description=None, **fields):
    return ExternalTransaction(
        external_id=external_id,
        amount=Decimal(str(amount)),
        date=on,
        description=description,
        **fields,
    )


async def reload(async_session, model, record_id):
    """Fresh copy from the database, past any savepoint expiry."""
    record = await async_session.get(model, record_id)
    await async_session.refresh(record)
    return record


@pytest.fixture
def applier(async_session):
    return ResolutionApplier(async_session)


@pytest.fixture
def mock_resolver():
    resolver = MagicMock(spec=CategoryResolver)
    resolver.resolve = AsyncMock(return_value={})
    return resolver


@pytest.fixture
def reconcile(async_session, make_account):
    """Start a session and run one statement import against it."""

    async def _reconcile(externals, account=None):
        account = account or await make_account()
        lifecycle = ReconciliationLifecycle(async_session)
        recon = await lifecycle.create(1, account.id, STATEMENT_END, Decimal("0.00"))
        await lifecycle.import_and_match(recon.id, 1, externals)
        items = await lifecycle.active_items(recon.id)
        return account, recon, items

    return _reconcile


def of_type(items, item_type):
    return [i for i in items if i.item_type == item_type.value]


class TestImportUnmatched:
    """Tests for creating ledger transactions from bank rows."""

    @pytest.mark.asyncio
    async def test_import_creates_transactions(self, async_session, applier, reconcile):
        account, recon, items = await reconcile(
            [
                external(
                    "B1",
                    "-12.50",
                    date(2024, 1, 4),
                    "Cafe",
                    bank_category="Dining",
                    reference="4829",
                )
            ]
        )
        bank_item = of_type(items, ItemType.UNMATCHED_BANK)[0]

        result = await applier.import_unmatched(recon.id, 1, item_ids=[bank_item.id])

        assert result.imported_count == 1
        assert result.skipped_count == 0
        assert result.errors == []

        created = await reload(async_session, Transaction, result.created_ids[0])
        assert created.account_id == account.id
        assert created.amount == Decimal("-12.50")
        assert created.description == "Cafe"
        assert created.external_id == "B1"
        assert created.status == TransactionStatus.CLEARED.value
        assert created.notes == (
            "Bank category: Dining | Reference: 4829 | Imported from bank reconciliation"
        )
        assert created.is_reviewed is False

        item = await reload(async_session, ReconciliationItem, bank_item.id)
        assert item.item_type == ItemType.MATCHED.value
        assert item.transaction_id == created.id
        assert item.match_reasons == ["imported_from_bank"]

    @pytest.mark.asyncio
    async def test_existing_external_id_is_linked_not_duplicated(
        self, async_session, applier, reconcile, make_account, make_transaction
    ):
        account = await make_account()
        existing = await make_transaction(
            account,
            "-12.50",
            date(2024, 1, 4),
            external_id="B1",
            status=TransactionStatus.RECONCILED.value,
        )
        _, recon, items = await reconcile(
            [external("B1", "-12.50", date(2024, 1, 4))], account=account
        )

        result = await applier.import_unmatched(recon.id, 1, import_all=True)

        assert result.imported_count == 0
        assert result.skipped_count == 1
        item = await reload(async_session, ReconciliationItem, items[0].id)
        assert item.transaction_id == existing.id
        assert item.match_reasons == ["external_id_match"]
        ids = (await async_session.execute(select(Transaction.id))).scalars().all()
        assert ids == [existing.id]

    @pytest.mark.asyncio
    async def test_confident_category_marks_reviewed(
        self, async_session, mock_resolver, reconcile
    ):
        mock_resolver.resolve.return_value = {
            "Groceries": CategoryMapping("Groceries", 12, Decimal("0.97")),
            "Fuel": CategoryMapping("Fuel", 20, Decimal("0.60")),
        }
        _, recon, _ = await reconcile(
            [
                external("B1", "-45.00", date(2024, 1, 4), bank_category="Groceries"),
                external("B2", "-60.00", date(2024, 1, 5), bank_category="Fuel"),
            ]
        )
        applier = ResolutionApplier(async_session, category_resolver=mock_resolver)

        result = await applier.import_unmatched(recon.id, 1, import_all=True)

        groceries, fuel = [
            await reload(async_session, Transaction, i) for i in result.created_ids
        ]
        assert (groceries.category_id, groceries.is_reviewed) == (12, True)
        assert (fuel.category_id, fuel.is_reviewed) == (20, False)
        mock_resolver.resolve.assert_awaited_once_with(1, ["Groceries", "Fuel"])

    @pytest.mark.asyncio
    async def test_category_service_down_imports_uncategorized(
        self, async_session, mock_resolver, reconcile
    ):
        mock_resolver.resolve.side_effect = CategoryAPIError("API error: 503", status_code=503)
        _, recon, _ = await reconcile(
            [external("B1", "-45.00", date(2024, 1, 4), bank_category="Groceries")]
        )
        applier = ResolutionApplier(async_session, category_resolver=mock_resolver)

        result = await applier.import_unmatched(recon.id, 1, import_all=True)

        assert result.imported_count == 1
        created = await reload(async_session, Transaction, result.created_ids[0])
        assert created.category_id is None

    @pytest.mark.asyncio
    async def test_bad_item_fails_alone(self, async_session, applier, reconcile):
        _, recon, items = await reconcile(
            [
                external("B1", "-1.00", date(2024, 1, 4)),
                external("B2", "-2.00", date(2024, 1, 5)),
            ]
        )
        broken = items[0]
        broken.bank_provider = "plaid"
        await async_session.commit()

        result = await applier.import_unmatched(
            recon.id, 1, item_ids=[broken.id, items[1].id, 999]
        )

        assert result.imported_count == 1
        assert "Failed to import item 999: not an unmatched bank item" in result.errors
        assert any(
            e.startswith(f"Failed to import item {broken.id}: No decoder") for e in result.errors
        )
        item = await reload(async_session, ReconciliationItem, broken.id)
        assert item.item_type == ItemType.UNMATCHED_BANK.value

    @pytest.mark.asyncio
    async def test_rows_without_bank_id_each_create_a_transaction(
        self, async_session, applier, reconcile
    ):
        _, recon, items = await reconcile(
            [
                external("", "-5.00", date(2024, 1, 10)),
                external("", "-7.00", date(2024, 1, 20)),
            ]
        )

        result = await applier.import_unmatched(recon.id, 1, import_all=True)

        assert (result.imported_count, result.skipped_count, result.errors) == (2, 0, [])
        created = [await reload(async_session, Transaction, i) for i in result.created_ids]
        assert sorted(t.amount for t in created) == [Decimal("-7.00"), Decimal("-5.00")]
        assert all(t.external_id is None for t in created)
        linked = {
            (await reload(async_session, ReconciliationItem, i.id)).transaction_id for i in items
        }
        assert linked == set(result.created_ids)

    @pytest.mark.asyncio
    async def test_undecodable_item_left_out_of_category_lookup(
        self, async_session, mock_resolver, reconcile
    ):
        _, recon, items = await reconcile(
            [
                external("B1", "-1.00", date(2024, 1, 4), bank_category="Dining"),
                external("B2", "-2.00", date(2024, 1, 5), bank_category="Fuel"),
            ]
        )
        broken = next(i for i in items if i.bank_reference["external_id"] == "B1")
        broken.bank_provider = "plaid"
        await async_session.commit()
        applier = ResolutionApplier(async_session, category_resolver=mock_resolver)

        result = await applier.import_unmatched(recon.id, 1, import_all=True)

        assert result.imported_count == 1
        mock_resolver.resolve.assert_awaited_once_with(1, ["Fuel"])

    @pytest.mark.asyncio
    async def test_nothing_selected(self, applier, reconcile):
        _, recon, _ = await reconcile([])
        with pytest.raises(BusinessRuleViolation, match="No items specified for import"):
            await applier.import_unmatched(recon.id, 1)


class TestBulkApproveMatches:
    """Tests for approving matched items."""

    @pytest.mark.asyncio
    async def test_default_threshold_approves_confident_matches(
        self, async_session, applier, reconcile, make_account, make_transaction
    ):
        account = await make_account()
        exact = await make_transaction(account, "-45.00", date(2024, 1, 4), external_id="B1")
        fuzzy = await make_transaction(account, "-20.01", date(2024, 1, 6))
        _, recon, items = await reconcile(
            [
                external(
                    "B1", "-45.00", date(2024, 1, 4), reference="INV-1", bank_category="Shops"
                ),
                external("B2", "-20.00", date(2024, 1, 5)),
            ],
            account=account,
        )

        result = await applier.bulk_approve_matches(recon.id, 1)

        exact_item = next(i for i in items if i.transaction_id == exact.id)
        assert result.successes == [exact_item.id]
        assert result.ok

        approved = await reload(async_session, Transaction, exact.id)
        assert approved.status == TransactionStatus.RECONCILED.value
        assert approved.reference == "INV-1"
        assert approved.bank_category == "Shops"
        item = await reload(async_session, ReconciliationItem, exact_item.id)
        assert item.is_approved is True
        assert item.approved_at is not None

        untouched = await reload(async_session, Transaction, fuzzy.id)
        assert untouched.status == TransactionStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_explicit_items(self, applier, reconcile, make_account, make_transaction):
        account = await make_account()
        await make_transaction(account, "-20.01", date(2024, 1, 6))
        _, recon, items = await reconcile(
            [external("B2", "-20.00", date(2024, 1, 5))], account=account
        )
        matched = of_type(items, ItemType.MATCHED)

        result = await applier.bulk_approve_matches(recon.id, 1, item_ids=[matched[0].id])

        assert result.successes == [matched[0].id]


class TestDuplicates:
    """Tests for detecting and resolving duplicate groups."""

    @pytest.fixture
    async def pair(self, make_account, make_transaction):
        account = await make_account()
        first = await make_transaction(account, "-45.00", date(2024, 3, 1), "Countdown Ponsonby")
        second = await make_transaction(account, "-45.00", date(2024, 3, 2), "Countdown Ponsonby")
        return account, first, second

    @pytest.mark.asyncio
    async def test_detect(self, applier, pair):
        _, first, second = pair

        result = await applier.detect_duplicates(1)

        assert result.total_groups == 1
        assert result.groups[0].transaction_ids == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_keep_newest(self, async_session, applier, pair):
        _, first, second = pair

        result = await applier.resolve_duplicates(
            1, [DuplicateResolution(DuplicateAction.KEEP_NEWEST, [first.id, second.id])]
        )

        assert result.success
        assert (result.transactions_deleted, result.transactions_kept) == (1, 1)
        assert result.message == "Resolved 1 of 1 duplicate groups"
        deleted = await reload(async_session, Transaction, first.id)
        kept = await reload(async_session, Transaction, second.id)
        assert deleted.is_deleted is True
        assert deleted.notes == f"Duplicate resolution: duplicate of {second.id}"
        assert kept.is_deleted is False
        assert kept.notes == f"Duplicate resolution: kept over {first.id}"

    @pytest.mark.asyncio
    async def test_keep_oldest(self, async_session, applier, pair):
        _, first, second = pair

        await applier.resolve_duplicates(
            1, [DuplicateResolution(DuplicateAction.KEEP_OLDEST, [first.id, second.id])]
        )

        assert (await reload(async_session, Transaction, first.id)).is_deleted is False
        assert (await reload(async_session, Transaction, second.id)).is_deleted is True

    @pytest.mark.asyncio
    async def test_keep_selected(self, async_session, applier, pair, make_transaction):
        account, first, second = pair
        third = await make_transaction(account, "-45.00", date(2024, 3, 2), "Countdown")

        result = await applier.resolve_duplicates(
            1,
            [
                DuplicateResolution(
                    DuplicateAction.KEEP_SELECTED,
                    [first.id, second.id, third.id],
                    keep_ids=[second.id],
                    notes="bank double post",
                )
            ],
        )

        assert result.transactions_deleted == 2
        assert (await reload(async_session, Transaction, first.id)).is_deleted is True
        assert (await reload(async_session, Transaction, third.id)).is_deleted is True
        kept = await reload(async_session, Transaction, second.id)
        assert kept.notes == (
            f"Duplicate resolution: kept over {first.id}, {third.id} (bank double post)"
        )

    @pytest.mark.asyncio
    async def test_keep_selected_needs_a_keeper(self, applier, pair):
        _, first, second = pair

        result = await applier.resolve_duplicates(
            1, [DuplicateResolution(DuplicateAction.KEEP_SELECTED, [first.id, second.id])]
        )

        assert not result.success
        assert "at least one transaction to keep" in result.errors[0]

    @pytest.mark.asyncio
    async def test_mark_not_duplicate_hides_group(self, async_session, applier, pair):
        _, first, second = pair
        resolution = DuplicateResolution(
            DuplicateAction.MARK_NOT_DUPLICATE, [second.id, first.id], notes="two coffees"
        )

        await applier.resolve_duplicates(1, [resolution])
        await applier.resolve_duplicates(1, [resolution])

        dismissals = (await async_session.execute(select(DuplicateDismissal))).scalars().all()
        assert len(dismissals) == 1
        assert dismissals[0].member_key == f"{first.id},{second.id}"

        result = await applier.detect_duplicates(1)
        assert result.total_groups == 0
        assert result.dismissed_groups == 1

    @pytest.mark.asyncio
    async def test_dismissed_group_resurfaces_with_new_member(
        self, applier, pair, make_transaction
    ):
        account, first, second = pair
        await applier.resolve_duplicates(
            1,
            [DuplicateResolution(DuplicateAction.MARK_NOT_DUPLICATE, [first.id, second.id])],
        )
        third = await make_transaction(account, "-45.00", date(2024, 3, 2), "Countdown Ponsonby")

        result = await applier.detect_duplicates(1)

        assert result.total_groups == 1
        assert result.groups[0].transaction_ids == [first.id, second.id, third.id]
        assert result.groups[0].overlaps_dismissal is True

    @pytest.mark.asyncio
    async def test_failed_group_does_not_block_others(
        self, async_session, applier, pair, make_transaction
    ):
        account, first, second = pair
        third = await make_transaction(account, "-9.00", date(2024, 3, 5), "Parking")
        gone = await make_transaction(
            account, "-9.00", date(2024, 3, 5), "Parking", is_deleted=True
        )

        result = await applier.resolve_duplicates(
            1,
            [
                DuplicateResolution(DuplicateAction.KEEP_NEWEST, [first.id, second.id]),
                DuplicateResolution(DuplicateAction.KEEP_NEWEST, [third.id, gone.id]),
            ],
        )

        assert result.success is False
        assert result.message == "Resolved 1 of 2 duplicate groups"
        assert result.errors == [
            f"Group {third.id},{gone.id}: Transaction {gone.id} is already deleted"
        ]
        assert (await reload(async_session, Transaction, first.id)).is_deleted is True
        assert (await reload(async_session, Transaction, third.id)).is_deleted is False

    @pytest.mark.asyncio
    async def test_other_users_transactions_not_found(
        self, applier, make_account, make_transaction
    ):
        stranger = await make_account(user_id=2)
        a = await make_transaction(stranger, "-5.00", date(2024, 3, 1))
        b = await make_transaction(stranger, "-5.00", date(2024, 3, 1))

        result = await applier.resolve_duplicates(
            1, [DuplicateResolution(DuplicateAction.KEEP_OLDEST, [a.id, b.id])]
        )

        assert result.errors == [f"Group {a.id},{b.id}: Transaction {a.id} not found"]


class TestTransfers:
    """Tests for linking and reversing transfers."""

    @pytest.fixture
    async def accounts(self, make_account):
        everyday = await make_account(name="Everyday")
        savings = await make_account(name="Savings")
        return everyday, savings

    @pytest.fixture
    async def legs(self, accounts, make_transaction):
        everyday, savings = accounts
        outflow = await make_transaction(everyday, "-500.00", date(2024, 3, 1), "To savings")
        inflow = await make_transaction(savings, "500.00", date(2024, 3, 1), "From everyday")
        return outflow, inflow

    @pytest.mark.asyncio
    async def test_detect(self, applier, legs):
        outflow, inflow = legs

        result = await applier.detect_transfers(1)

        assert result.total_groups == 1
        assert result.groups[0].source.id == outflow.id
        assert result.groups[0].destination.id == inflow.id

    @pytest.mark.asyncio
    async def test_link_swaps_reversed_roles(self, async_session, applier, accounts, legs):
        everyday, savings = accounts
        outflow, inflow = legs

        transfer = await applier.link_transfer(1, inflow.id, outflow.id)

        assert transfer.source_account_id == everyday.id
        assert transfer.destination_account_id == savings.id
        assert transfer.amount == Decimal("500.00")
        assert transfer.description == "Transfer from Everyday to Savings"

        source = await reload(async_session, Transaction, outflow.id)
        destination = await reload(async_session, Transaction, inflow.id)
        assert source.transfer_id == destination.transfer_id == transfer.transfer_id
        assert (source.is_transfer_source, destination.is_transfer_source) == (True, False)
        assert source.related_transaction_id == inflow.id
        assert destination.related_transaction_id == outflow.id
        assert source.is_reviewed and destination.is_reviewed

        result = await applier.detect_transfers(1)
        assert result.total_groups == 0

    @pytest.mark.asyncio
    async def test_link_rejects_same_account(self, applier, accounts, make_transaction):
        everyday, _ = accounts
        a = await make_transaction(everyday, "-10.00", date(2024, 3, 1))
        b = await make_transaction(everyday, "10.00", date(2024, 3, 1))

        with pytest.raises(BusinessRuleViolation, match="different accounts"):
            await applier.link_transfer(1, a.id, b.id)

    @pytest.mark.asyncio
    async def test_link_rejects_same_sign(self, applier, accounts, make_transaction):
        everyday, savings = accounts
        a = await make_transaction(everyday, "-10.00", date(2024, 3, 1))
        b = await make_transaction(savings, "-10.00", date(2024, 3, 1))

        with pytest.raises(BusinessRuleViolation, match="one outflow and one inflow"):
            await applier.link_transfer(1, a.id, b.id)

    @pytest.mark.asyncio
    async def test_link_rejects_distant_amounts(self, applier, accounts, make_transaction):
        everyday, savings = accounts
        a = await make_transaction(everyday, "-500.00", date(2024, 3, 1))
        b = await make_transaction(savings, "400.00", date(2024, 3, 1))

        with pytest.raises(BusinessRuleViolation, match="differ by more than"):
            await applier.link_transfer(1, a.id, b.id)

    @pytest.mark.asyncio
    async def test_link_rejects_already_linked(self, applier, legs, accounts, make_transaction):
        outflow, inflow = legs
        _, savings = accounts
        await applier.link_transfer(1, outflow.id, inflow.id)
        other = await make_transaction(savings, "500.00", date(2024, 3, 1))

        with pytest.raises(BusinessRuleViolation, match="already part of a transfer"):
            await applier.link_transfer(1, outflow.id, other.id)

    @pytest.mark.asyncio
    async def test_link_missing_transaction(self, applier, legs):
        outflow, _ = legs
        with pytest.raises(NotFoundError):
            await applier.link_transfer(1, outflow.id, 9999)

    @pytest.mark.asyncio
    async def test_bulk_confirm_partial_failure(
        self, async_session, applier, accounts, legs, make_transaction
    ):
        everyday, _ = accounts
        outflow, inflow = legs
        a = await make_transaction(everyday, "-10.00", date(2024, 3, 2))
        b = await make_transaction(everyday, "10.00", date(2024, 3, 2))

        result = await applier.bulk_confirm_transfers(
            1,
            [
                TransferPair(outflow.id, inflow.id, "Savings top up"),
                TransferPair(a.id, b.id),
            ],
        )

        assert len(result.successes) == 1
        assert result.successes[0].description == "Savings top up"
        assert result.errors == [
            f"Transfer {a.id} -> {b.id}: Transfer transactions must be in different accounts"
        ]
        transfers = (await async_session.execute(select(Transfer))).scalars().all()
        assert len(transfers) == 1

    @pytest.mark.asyncio
    async def test_reverse(self, async_session, applier, accounts, legs):
        everyday, savings = accounts
        outflow, inflow = legs
        transfer = await applier.link_transfer(1, outflow.id, inflow.id)

        reversed_transfer = await applier.reverse_transfer(1, transfer.transfer_id)

        assert reversed_transfer.source_account_id == savings.id
        assert reversed_transfer.destination_account_id == everyday.id
        assert (await reload(async_session, Transaction, outflow.id)).is_transfer_source is False
        assert (await reload(async_session, Transaction, inflow.id)).is_transfer_source is True

    @pytest.mark.asyncio
    async def test_reverse_unknown(self, applier):
        with pytest.raises(NotFoundError):
            await applier.reverse_transfer(1, "no-such-transfer")
