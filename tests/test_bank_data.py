"""Tests for provider-tagged bank snapshots."""

from datetime import date
from decimal import Decimal

import pytest

from ledgermatch.services.bank_data import (
    AkahuBankData,
    BankDataError,
    ExternalTransaction,
    GenericBankData,
    decode_reference,
    registered_providers,
)


@pytest.fixture
def akahu_record():
    return ExternalTransaction(
        external_id="trans_1",
        amount=Decimal("-45.00"),
        date=date(2024, 3, 1),
        description="POS W/D COUNTDOWN",
        bank_category="Groceries",
        reference="4829",
        provider="akahu",
        extra={"merchant_name": "Countdown", "transaction_type": "EFTPOS"},
    )


class TestBankSnapshots:
    """Tests for snapshot encoding and decoding."""

    def test_builtin_providers_registered(self):
        assert {"generic", "akahu"} <= set(registered_providers())

    def test_snapshot_decodes_to_provider_variant(self, akahu_record):
        snapshot = akahu_record.snapshot()

        assert isinstance(snapshot, AkahuBankData)
        assert snapshot.provider == "akahu"
        assert snapshot.merchant_name == "Countdown"
        assert snapshot.amount == Decimal("-45.00")
        assert snapshot.display_description == "Countdown"

    def test_stored_payload_round_trip(self, akahu_record):
        payload = akahu_record.snapshot().to_payload()
        assert payload["amount"] == "-45.00"
        assert payload["date"] == "2024-03-01"

        decoded = decode_reference("akahu", payload)
        assert decoded == akahu_record.snapshot()

    def test_generic_display_description(self):
        record = ExternalTransaction(
            external_id="s1", amount=Decimal("-5"), date=date(2024, 3, 1)
        )
        snapshot = record.snapshot()
        assert isinstance(snapshot, GenericBankData)
        assert snapshot.display_description == "Unknown"

    def test_unknown_provider(self):
        with pytest.raises(BankDataError, match="No decoder registered"):
            decode_reference("plaid", {"external_id": "x", "amount": "1", "date": "2024-03-01"})

    def test_missing_payload(self):
        with pytest.raises(BankDataError):
            decode_reference("generic", None)

    def test_malformed_payload(self):
        with pytest.raises(BankDataError, match="Malformed"):
            decode_reference("generic", {"external_id": "x", "amount": "abc", "date": "2024-03-01"})
        with pytest.raises(BankDataError, match="Malformed"):
            decode_reference("generic", {"amount": "1", "date": "2024-03-01"})
