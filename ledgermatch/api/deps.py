"""Request dependencies shared by the API routers."""

from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from ledgermatch.database import get_session
from ledgermatch.services.bank_feed import BankFeedClient
from ledgermatch.services.cache import CacheClient
from ledgermatch.services.categories import CategoryMappingClient, CategoryResolver
from ledgermatch.services.reconcile import ReconciliationLifecycle
from ledgermatch.services.resolution import ResolutionApplier


async def current_user_id(x_user_id: Annotated[int, Header()]) -> int:
    """User resolved by the gateway in front of this service."""
    return x_user_id


async def get_bank_feed() -> AsyncIterator[BankFeedClient]:
    async with BankFeedClient() as client:
        yield client


async def get_category_resolver() -> AsyncIterator[CategoryResolver]:
    async with CategoryMappingClient() as client, CacheClient() as cache:
        yield CategoryResolver(client, cache)


async def get_lifecycle(
    session: Annotated[AsyncSession, Depends(get_session)],
    bank_feed: Annotated[BankFeedClient, Depends(get_bank_feed)],
) -> ReconciliationLifecycle:
    return ReconciliationLifecycle(session, bank_feed=bank_feed)


async def get_applier(
    session: Annotated[AsyncSession, Depends(get_session)],
    resolver: Annotated[CategoryResolver, Depends(get_category_resolver)],
) -> ResolutionApplier:
    return ResolutionApplier(session, category_resolver=resolver)


UserId = Annotated[int, Depends(current_user_id)]
Lifecycle = Annotated[ReconciliationLifecycle, Depends(get_lifecycle)]
Applier = Annotated[ResolutionApplier, Depends(get_applier)]
