"""Reconciliation API endpoints."""

import datetime as dt
from decimal import Decimal
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ledgermatch.database import get_session
from ledgermatch.models import ReconciliationItem, ReconciliationSession
from ledgermatch.services.access import load_reconciliation
from ledgermatch.services.audit import AuditTrail
from ledgermatch.services.bank_data import ExternalTransaction
from ledgermatch.services.reconcile import SessionSummary

from .deps import Applier, Lifecycle, UserId

router = APIRouter(prefix="/api/reconciliations", tags=["reconciliation"])


class CreateReconciliationRequest(BaseModel):
    """Request to start a reconciliation."""

    account_id: int
    statement_end_date: dt.date
    statement_end_balance: Decimal
    notes: str | None = None


class ExternalTransactionIn(BaseModel):
    """One bank statement row."""

    external_id: str = Field(min_length=1)
    amount: Decimal
    date: dt.date
    description: str | None = None
    bank_category: str | None = None
    reference: str | None = None
    provider: str = "generic"
    extra: dict[str, Any] = Field(default_factory=dict)

    def to_external(self) -> ExternalTransaction:
        return ExternalTransaction(**self.model_dump())


class ImportAndMatchRequest(BaseModel):
    """Statement rows to match; omit them to fetch from the bank feed."""

    external_transactions: list[ExternalTransactionIn] | None = None
    amount_tolerance: Decimal | None = Field(None, ge=0)
    date_tolerance_days: int | None = Field(None, ge=0)
    use_description_matching: bool = True
    use_date_range_matching: bool = True
    start_date: dt.date | None = None


class FinalizeRequest(BaseModel):
    notes: str | None = None
    force_finalize: bool = False


class ManualLinkRequest(BaseModel):
    transaction_id: int


class ImportUnmatchedRequest(BaseModel):
    item_ids: list[int] | None = None
    import_all: bool = False


class ApproveMatchesRequest(BaseModel):
    min_confidence: Decimal | None = Field(None, ge=0, le=1)
    item_ids: list[int] | None = None


class SessionResponse(BaseModel):
    """Reconciliation session with derived balance fields."""

    id: int
    account_id: int
    statement_end_date: dt.date
    statement_end_balance: Decimal
    calculated_balance: Decimal | None
    balance_difference: Decimal
    status: str
    notes: str | None
    created_at: dt.datetime | None
    completed_at: dt.datetime | None


class ItemResponse(BaseModel):
    """One reconciliation outcome row."""

    id: int
    item_type: str
    transaction_id: int | None
    external_id: str | None
    bank_provider: str | None
    bank_reference: dict[str, Any] | None
    match_confidence: Decimal | None
    match_method: str | None
    match_reasons: list[str] | None
    is_approved: bool


class SummaryResponse(BaseModel):
    total_items: int
    matched: int
    unmatched_bank: int
    unmatched_internal: int
    matched_percentage: Decimal
    balance_difference: Decimal
    is_balanced: bool


class ReconciliationDetailResponse(BaseModel):
    session: SessionResponse
    summary: SummaryResponse
    items: list[ItemResponse]


class ImportAndMatchResponse(BaseModel):
    session_id: int
    source: str
    matched: int
    exact_matches: int
    fuzzy_matches: int
    unmatched_bank: int
    unmatched_internal: int
    overall_match_percentage: Decimal
    items_created: int
    superseded_items: int
    balance_comparison: dict[str, Any] | None = None


class FinalizeResponse(BaseModel):
    session: SessionResponse
    transactions_reconciled: int
    force_finalized: bool
    warnings: list[str]


class ImportUnmatchedResponse(BaseModel):
    imported_count: int
    skipped_count: int
    created_ids: list[int]
    errors: list[str]


class ApproveMatchesResponse(BaseModel):
    approved_item_ids: list[int]
    errors: list[str]


class AuditEntryResponse(BaseModel):
    id: int
    action: str
    user_id: int
    details: dict[str, Any]
    created_at: dt.datetime | None


def _session_response(recon: ReconciliationSession) -> SessionResponse:
    return SessionResponse(
        id=recon.id,
        account_id=recon.account_id,
        statement_end_date=recon.statement_end_date,
        statement_end_balance=recon.statement_end_balance,
        calculated_balance=recon.calculated_balance,
        balance_difference=recon.balance_difference,
        status=recon.status,
        notes=recon.notes,
        created_at=recon.created_at,
        completed_at=recon.completed_at,
    )


def _item_response(item: ReconciliationItem) -> ItemResponse:
    return ItemResponse(
        id=item.id,
        item_type=item.item_type,
        transaction_id=item.transaction_id,
        external_id=item.external_id,
        bank_provider=item.bank_provider,
        bank_reference=item.bank_reference,
        match_confidence=item.match_confidence,
        match_method=item.match_method,
        match_reasons=item.match_reasons,
        is_approved=item.is_approved,
    )


def _summary_response(summary: SessionSummary) -> SummaryResponse:
    return SummaryResponse(
        total_items=summary.total_items,
        matched=summary.matched,
        unmatched_bank=summary.unmatched_bank,
        unmatched_internal=summary.unmatched_internal,
        matched_percentage=summary.matched_percentage,
        balance_difference=summary.balance_difference,
        is_balanced=summary.is_balanced,
    )


@router.post("", response_model=SessionResponse, status_code=201)
async def create_reconciliation(
    request: CreateReconciliationRequest,
    user_id: UserId,
    lifecycle: Lifecycle,
):
    """Start a reconciliation for an account."""
    recon = await lifecycle.create(
        user_id,
        request.account_id,
        request.statement_end_date,
        request.statement_end_balance,
        notes=request.notes,
    )
    return _session_response(recon)


@router.get("/{session_id}", response_model=ReconciliationDetailResponse)
async def get_reconciliation(session_id: int, user_id: UserId, lifecycle: Lifecycle):
    """Session with its current items and summary."""
    summary = await lifecycle.get_summary(session_id, user_id)
    items = await lifecycle.active_items(session_id)
    return ReconciliationDetailResponse(
        session=_session_response(summary.session),
        summary=_summary_response(summary),
        items=[_item_response(i) for i in items],
    )


@router.post("/{session_id}/import-and-match", response_model=ImportAndMatchResponse)
async def import_and_match(
    session_id: int,
    request: ImportAndMatchRequest,
    user_id: UserId,
    lifecycle: Lifecycle,
):
    """Match statement rows (or the bank feed) against the ledger."""
    externals = None
    if request.external_transactions is not None:
        externals = [e.to_external() for e in request.external_transactions]

    result = await lifecycle.import_and_match(
        session_id,
        user_id,
        externals,
        amount_tolerance=request.amount_tolerance,
        date_tolerance_days=request.date_tolerance_days,
        use_description_matching=request.use_description_matching,
        use_date_range_matching=request.use_date_range_matching,
        start_date=request.start_date,
    )
    comparison = result.balance_comparison
    return ImportAndMatchResponse(
        session_id=result.session_id,
        source=result.source,
        matched=len(result.match.matched_pairs),
        exact_matches=result.match.exact_matches,
        fuzzy_matches=result.match.fuzzy_matches,
        unmatched_bank=len(result.match.unmatched_bank),
        unmatched_internal=len(result.match.unmatched_internal),
        overall_match_percentage=result.match.overall_match_percentage,
        items_created=result.items_created,
        superseded_items=result.superseded_items,
        balance_comparison=comparison.to_dict() if comparison else None,
    )


@router.post("/{session_id}/items/{item_id}/link", response_model=ItemResponse)
async def manual_link(
    session_id: int,
    item_id: int,
    request: ManualLinkRequest,
    user_id: UserId,
    lifecycle: Lifecycle,
):
    """Pair an unmatched bank row with a ledger transaction."""
    item = await lifecycle.manual_link(session_id, user_id, item_id, request.transaction_id)
    return _item_response(item)


@router.post("/{session_id}/finalize", response_model=FinalizeResponse)
async def finalize_reconciliation(
    session_id: int,
    request: FinalizeRequest,
    user_id: UserId,
    lifecycle: Lifecycle,
):
    """Complete the reconciliation."""
    result = await lifecycle.finalize(
        session_id, user_id, notes=request.notes, force=request.force_finalize
    )
    return FinalizeResponse(
        session=_session_response(result.session),
        transactions_reconciled=result.transactions_reconciled,
        force_finalized=result.force_finalized,
        warnings=result.warnings,
    )


@router.post("/{session_id}/import-unmatched", response_model=ImportUnmatchedResponse)
async def import_unmatched(
    session_id: int,
    request: ImportUnmatchedRequest,
    user_id: UserId,
    applier: Applier,
):
    """Create ledger transactions for unmatched bank rows."""
    result = await applier.import_unmatched(
        session_id, user_id, item_ids=request.item_ids, import_all=request.import_all
    )
    return ImportUnmatchedResponse(
        imported_count=result.imported_count,
        skipped_count=result.skipped_count,
        created_ids=result.created_ids,
        errors=result.errors,
    )


@router.post("/{session_id}/approve", response_model=ApproveMatchesResponse)
async def approve_matches(
    session_id: int,
    request: ApproveMatchesRequest,
    user_id: UserId,
    applier: Applier,
):
    """Approve matched items by confidence or by id."""
    result = await applier.bulk_approve_matches(
        session_id,
        user_id,
        min_confidence=request.min_confidence,
        item_ids=request.item_ids,
    )
    return ApproveMatchesResponse(approved_item_ids=result.successes, errors=result.errors)


@router.get("/{session_id}/audit", response_model=list[AuditEntryResponse])
async def get_audit_log(
    session_id: int,
    user_id: UserId,
    session: Annotated[AsyncSession, Depends(get_session)],
):
    """Audit entries for the session, oldest first."""
    await load_reconciliation(session, session_id, user_id, modify=False)
    entries = await AuditTrail(session).history(session_id)
    return [
        AuditEntryResponse(
            id=e.id,
            action=e.action,
            user_id=e.user_id,
            details=e.details or {},
            created_at=e.created_at,
        )
        for e in entries
    ]
