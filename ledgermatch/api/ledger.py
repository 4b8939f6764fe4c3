"""Duplicate and transfer API endpoints."""

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from ledgermatch.services.resolution import DuplicateAction, DuplicateResolution, TransferPair

from .deps import Applier, UserId

router = APIRouter(prefix="/api", tags=["ledger"])


class DuplicateDetectionResponse(BaseModel):
    groups: list[dict[str, Any]]
    total_groups: int
    total_transactions: int
    dismissed_groups: int


class DuplicateResolutionIn(BaseModel):
    """The user's decision for one group."""

    action: DuplicateAction
    transaction_ids: list[int] = Field(min_length=2)
    group_id: str | None = None
    keep_ids: list[int] = Field(default_factory=list)
    delete_ids: list[int] = Field(default_factory=list)
    notes: str | None = None


class ResolveDuplicatesRequest(BaseModel):
    resolutions: list[DuplicateResolutionIn]


class ResolveDuplicatesResponse(BaseModel):
    success: bool
    message: str
    transactions_deleted: int
    transactions_kept: int
    errors: list[str]


class TransferDetectionResponse(BaseModel):
    groups: list[dict[str, Any]]
    total_groups: int


class LinkTransferRequest(BaseModel):
    source_transaction_id: int
    destination_transaction_id: int
    description: str | None = None


class TransferResponse(BaseModel):
    transfer_id: str
    amount: Decimal
    source_account_id: int
    destination_account_id: int
    description: str | None


class BulkConfirmTransfersRequest(BaseModel):
    transfers: list[LinkTransferRequest]


class BulkConfirmTransfersResponse(BaseModel):
    confirmed: list[TransferResponse]
    errors: list[str]


def _transfer_response(transfer) -> TransferResponse:
    return TransferResponse(
        transfer_id=transfer.transfer_id,
        amount=transfer.amount,
        source_account_id=transfer.source_account_id,
        destination_account_id=transfer.destination_account_id,
        description=transfer.description,
    )


@router.get("/duplicates", response_model=DuplicateDetectionResponse)
async def detect_duplicates(
    user_id: UserId,
    applier: Applier,
    amount_tolerance: Decimal | None = Query(None, ge=0),
    date_tolerance_days: int | None = Query(None, ge=0),
    min_confidence: Decimal | None = Query(None, ge=0, le=1),
    include_reviewed: bool = Query(False),
    same_account_only: bool = Query(False),
):
    """Find groups of likely duplicate transactions."""
    result = await applier.detect_duplicates(
        user_id,
        amount_tolerance=amount_tolerance,
        date_tolerance_days=date_tolerance_days,
        min_confidence=min_confidence,
        include_reviewed=include_reviewed,
        same_account_only=same_account_only,
    )
    return DuplicateDetectionResponse(
        groups=[g.to_dict() for g in result.groups],
        total_groups=result.total_groups,
        total_transactions=result.total_transactions,
        dismissed_groups=result.dismissed_groups,
    )


@router.post("/duplicates/resolve", response_model=ResolveDuplicatesResponse)
async def resolve_duplicates(
    request: ResolveDuplicatesRequest,
    user_id: UserId,
    applier: Applier,
):
    """Apply duplicate resolutions; failures are reported per group."""
    result = await applier.resolve_duplicates(
        user_id,
        [DuplicateResolution(**r.model_dump()) for r in request.resolutions],
    )
    return ResolveDuplicatesResponse(
        success=result.success,
        message=result.message,
        transactions_deleted=result.transactions_deleted,
        transactions_kept=result.transactions_kept,
        errors=result.errors,
    )


@router.get("/transfers/candidates", response_model=TransferDetectionResponse)
async def detect_transfers(
    user_id: UserId,
    applier: Applier,
    amount_tolerance: Decimal | None = Query(None, ge=0),
    date_tolerance_days: int | None = Query(None, ge=0),
    min_confidence: Decimal | None = Query(None, ge=0, le=1),
    include_reviewed: bool = Query(False),
    include_existing_transfers: bool = Query(False),
):
    """Find unlinked transfer pairs across the user's accounts."""
    result = await applier.detect_transfers(
        user_id,
        amount_tolerance=amount_tolerance,
        date_tolerance_days=date_tolerance_days,
        min_confidence=min_confidence,
        include_reviewed=include_reviewed,
        include_existing_transfers=include_existing_transfers,
    )
    return TransferDetectionResponse(
        groups=[c.to_dict() for c in result.groups],
        total_groups=result.total_groups,
    )


@router.post("/transfers", response_model=TransferResponse, status_code=201)
async def link_transfer(request: LinkTransferRequest, user_id: UserId, applier: Applier):
    """Link two transactions as a transfer."""
    transfer = await applier.link_transfer(
        user_id,
        request.source_transaction_id,
        request.destination_transaction_id,
        description=request.description,
    )
    return _transfer_response(transfer)


@router.post("/transfers/bulk", response_model=BulkConfirmTransfersResponse)
async def bulk_confirm_transfers(
    request: BulkConfirmTransfersRequest,
    user_id: UserId,
    applier: Applier,
):
    """Link many pairs; each pair succeeds or fails alone."""
    result = await applier.bulk_confirm_transfers(
        user_id,
        [
            TransferPair(t.source_transaction_id, t.destination_transaction_id, t.description)
            for t in request.transfers
        ],
    )
    return BulkConfirmTransfersResponse(
        confirmed=[_transfer_response(t) for t in result.successes],
        errors=result.errors,
    )


@router.post("/transfers/{transfer_id}/reverse")
async def reverse_transfer(transfer_id: str, user_id: UserId, applier: Applier):
    """Swap a transfer's source and destination."""
    await applier.reverse_transfer(user_id, transfer_id)
    return {"status": "ok", "transfer_id": transfer_id}
