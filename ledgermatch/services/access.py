"""Ownership and permission checks."""

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgermatch.errors import NotFoundError, UnauthorizedError
from ledgermatch.models import (
    Account,
    AccountShare,
    ReconciliationSession,
    ShareRole,
    Transaction,
)


async def load_account(
    session: AsyncSession, account_id: int, user_id: int, *, modify: bool = True
) -> Account:
    """Load an account the user can see, and change when modify is set.

    Raises:
        NotFoundError: Account missing or not visible to the user
        UnauthorizedError: User only has view access and modify was requested
    """
    account = await session.get(Account, account_id)
    if account is None:
        raise NotFoundError("Account", account_id)
    if account.user_id == user_id:
        return account

    result = await session.execute(
        select(AccountShare).where(
            AccountShare.account_id == account_id,
            AccountShare.user_id == user_id,
        )
    )
    share = result.scalar_one_or_none()
    if share is None:
        raise NotFoundError("Account", account_id)
    if modify and share.role != ShareRole.MANAGER.value:
        raise UnauthorizedError(
            f"User {user_id} has view-only access to account {account_id}",
            {"account_id": account_id},
        )
    return account


async def load_user_transactions(
    session: AsyncSession, user_id: int, transaction_ids: Iterable[int]
) -> dict[int, Transaction]:
    """Transactions owned by the user, keyed by id. Missing ids are omitted."""
    ids = list(set(transaction_ids))
    if not ids:
        return {}
    result = await session.execute(
        select(Transaction).where(Transaction.id.in_(ids), Transaction.user_id == user_id)
    )
    return {t.id: t for t in result.scalars().all()}


async def load_reconciliation(
    session: AsyncSession, session_id: int, user_id: int, *, modify: bool = True
) -> tuple[ReconciliationSession, Account]:
    """Load a reconciliation session through its account's permissions.

    Raises:
        NotFoundError: Session missing or its account not visible to the user
        UnauthorizedError: View-only access and modify was requested
    """
    recon = await session.get(ReconciliationSession, session_id)
    if recon is None:
        raise NotFoundError("Reconciliation", session_id)
    try:
        account = await load_account(session, recon.account_id, user_id, modify=modify)
    except NotFoundError:
        raise NotFoundError("Reconciliation", session_id) from None
    return recon, account
