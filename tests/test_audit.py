"""Tests for the reconciliation audit trail."""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

import pytest

from ledgermatch.models import ReconciliationSession
from ledgermatch.services.audit import (
    AuditAction,
    AuditEvent,
    AuditTrail,
    BalanceComparison,
    SessionStarted,
    StatementImported,
)


@pytest.fixture
async def recon(async_session, make_account):
    account = await make_account()
    session = ReconciliationSession(
        user_id=1,
        account_id=account.id,
        statement_end_date=date(2024, 1, 31),
        statement_end_balance=Decimal("100.00"),
    )
    async_session.add(session)
    await async_session.commit()
    return session


class TestAuditEvents:
    """Tests for event serialization."""

    def test_details_are_json_safe(self):
        event = SessionStarted(
            account_id=1,
            account_name="Everyday",
            statement_end_date=date(2024, 1, 31),
            statement_end_balance=Decimal("100.00"),
            calculated_balance=None,
            balance_difference=Decimal("100.00"),
        )
        assert event.to_details() == {
            "account_id": 1,
            "account_name": "Everyday",
            "statement_end_date": "2024-01-31",
            "statement_end_balance": "100.00",
            "calculated_balance": None,
            "balance_difference": "100.00",
        }

    def test_nested_balance_comparison(self):
        comparison = BalanceComparison(
            bank_balance=Decimal("150.00"),
            pending_total=Decimal("-20.00"),
            pending_count=1,
            calculated_balance=Decimal("170.00"),
            difference=Decimal("0.00"),
            is_balanced=True,
        )
        event = StatementImported(
            source="bank_feed",
            total_external=3,
            total_internal=3,
            exact_matches=2,
            fuzzy_matches=1,
            unmatched_bank=0,
            unmatched_internal=0,
            overall_match_percentage=Decimal("100.00"),
            balance_comparison=comparison,
        )
        details = event.to_details()
        assert details["balance_comparison"]["is_balanced"] is True
        assert details["balance_comparison"]["bank_balance"] == "150.00"
        assert comparison.available_balance == Decimal("170.00")


class TestAuditTrail:
    """Tests for AuditTrail."""

    @pytest.mark.asyncio
    async def test_record_and_history(self, async_session, recon):
        trail = AuditTrail(async_session)
        await trail.record(
            recon.id,
            1,
            SessionStarted(
                account_id=recon.account_id,
                account_name="Everyday",
                statement_end_date=recon.statement_end_date,
                statement_end_balance=recon.statement_end_balance,
                calculated_balance=Decimal("0.00"),
                balance_difference=Decimal("100.00"),
            ),
        )
        await async_session.commit()

        history = await trail.history(recon.id)
        assert len(history) == 1
        assert history[0].action == AuditAction.STARTED.value
        assert history[0].details["calculated_balance"] == "0.00"

    @pytest.mark.asyncio
    async def test_rejects_events_outside_closed_set(self, async_session, recon):
        @dataclass(frozen=True)
        class Freeform(AuditEvent):
            ACTION = AuditAction.STARTED
            text: str = "anything"

        with pytest.raises(TypeError, match="Unsupported audit event"):
            await AuditTrail(async_session).record(recon.id, 1, Freeform())
