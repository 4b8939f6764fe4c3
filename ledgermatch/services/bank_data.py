"""Bank-side transaction records and their provider-tagged snapshots.

Unmatched bank rows are stored on the reconciliation item as a snapshot so
they can be imported later without asking the provider again. Each provider
has its own snapshot type and a decoder registered under the provider name:

    @register_decoder("akahu")
    def _decode_akahu(payload: dict) -> AkahuBankData: ...

    data = decode_reference(item.bank_provider, item.bank_reference)
"""

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar

logger = logging.getLogger(__name__)


class BankDataError(Exception):
    """Snapshot cannot be decoded."""

    pass


@dataclass(frozen=True)
class ExternalTransaction:
    """Normalized bank record as supplied by the bank feed."""

    external_id: str
    amount: Decimal
    date: date
    description: str | None = None
    bank_category: str | None = None
    reference: str | None = None
    provider: str = "generic"
    # Provider specific fields kept verbatim in the snapshot
    extra: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe snapshot payload."""
        payload = {
            "external_id": self.external_id,
            "amount": str(self.amount),
            "date": self.date.isoformat(),
            "description": self.description,
            "bank_category": self.bank_category,
            "reference": self.reference,
        }
        payload.update(self.extra)
        return payload

    def snapshot(self) -> "BankReferenceData":
        """Typed snapshot for this record's provider."""
        return decode_reference(self.provider, self.to_payload())


@dataclass(frozen=True)
class BankReferenceData:
    """Fields every provider snapshot carries."""

    PROVIDER: ClassVar[str] = ""

    external_id: str
    amount: Decimal
    date: date
    description: str | None = None
    bank_category: str | None = None
    reference: str | None = None

    @property
    def provider(self) -> str:
        return self.PROVIDER

    @property
    def display_description(self) -> str:
        """Best human-readable description."""
        return self.description or "Unknown"

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["amount"] = str(self.amount)
        payload["date"] = self.date.isoformat()
        return payload


@dataclass(frozen=True)
class GenericBankData(BankReferenceData):
    """Snapshot for statement uploads and providers without extra fields."""

    PROVIDER: ClassVar[str] = "generic"


@dataclass(frozen=True)
class AkahuBankData(BankReferenceData):
    """Snapshot from the Akahu open-banking feed."""

    PROVIDER: ClassVar[str] = "akahu"

    merchant_name: str | None = None
    category_group: str | None = None
    transaction_type: str | None = None

    @property
    def display_description(self) -> str:
        return self.merchant_name or self.description or "Unknown"


Decoder = Callable[[dict[str, Any]], BankReferenceData]

_DECODERS: dict[str, Decoder] = {}


def register_decoder(provider: str) -> Callable[[Decoder], Decoder]:
    """Register a snapshot decoder for a provider name."""

    def decorator(func: Decoder) -> Decoder:
        if provider in _DECODERS:
            logger.warning(f"Replacing bank data decoder for provider '{provider}'")
        _DECODERS[provider] = func
        return func

    return decorator


def registered_providers() -> list[str]:
    return sorted(_DECODERS)


def decode_reference(provider: str | None, payload: dict[str, Any] | None) -> BankReferenceData:
    """Decode a stored snapshot with its provider's decoder.

    Raises:
        BankDataError: Unknown provider or malformed payload
    """
    if not payload:
        raise BankDataError("No bank reference data stored")
    decoder = _DECODERS.get(provider or "")
    if decoder is None:
        raise BankDataError(f"No decoder registered for provider '{provider}'")
    try:
        return decoder(payload)
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise BankDataError(f"Malformed {provider} bank data: {e}") from e


def _common_fields(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "external_id": str(payload["external_id"]),
        "amount": Decimal(str(payload["amount"])),
        "date": date.fromisoformat(payload["date"]),
        "description": payload.get("description"),
        "bank_category": payload.get("bank_category"),
        "reference": payload.get("reference"),
    }


@register_decoder(GenericBankData.PROVIDER)
def _decode_generic(payload: dict[str, Any]) -> GenericBankData:
    return GenericBankData(**_common_fields(payload))


@register_decoder(AkahuBankData.PROVIDER)
def _decode_akahu(payload: dict[str, Any]) -> AkahuBankData:
    return AkahuBankData(
        **_common_fields(payload),
        merchant_name=payload.get("merchant_name"),
        category_group=payload.get("category_group"),
        transaction_type=payload.get("transaction_type"),
    )
