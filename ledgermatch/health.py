"""Dependency checks behind the readiness endpoints."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy import func, select

from .database import engine
from .models import ReconciliationSession, SessionStatus
from .services.bank_feed import BankFeedClient
from .services.cache import CacheClient

logger = logging.getLogger(__name__)

Check = Callable[[], Awaitable[dict[str, Any]]]

CHECK_TIMEOUT = 5.0


async def check_database() -> dict[str, Any]:
    """Ledger database, with the number of reconciliations still open."""
    async with engine.connect() as conn:
        open_sessions = await conn.scalar(
            select(func.count())
            .select_from(ReconciliationSession)
            .where(ReconciliationSession.status == SessionStatus.IN_PROGRESS.value)
        )
    return {"status": "healthy", "open_reconciliations": open_sessions}


async def check_category_cache() -> dict[str, Any]:
    async with CacheClient() as cache:
        info = await cache.client.info("server")
    return {"status": "healthy", "version": info.get("redis_version", "unknown")}


async def check_bank_feed() -> dict[str, Any]:
    async with BankFeedClient() as feed:
        await feed.ping()
    return {"status": "healthy", "provider": feed.provider}


# name -> (check, required); a failed optional check only degrades the status
CHECKS: dict[str, tuple[Check, bool]] = {
    "database": (check_database, True),
    "category_cache": (check_category_cache, False),
    "bank_feed": (check_bank_feed, False),
}


async def _run_check(name: str, check: Check) -> dict[str, Any]:
    try:
        return await asyncio.wait_for(check(), timeout=CHECK_TIMEOUT)
    except Exception as e:
        logger.warning(f"Health check {name} failed: {e}")
        return {"status": "unhealthy", "error": str(e) or type(e).__name__}


async def get_health_status() -> dict[str, Any]:
    """Run every check concurrently.

    Returns:
        "healthy" when all checks pass, "unhealthy" when a required one
        fails, otherwise "degraded"; plus the per-service results
    """
    names = list(CHECKS)
    results = await asyncio.gather(*(_run_check(name, CHECKS[name][0]) for name in names))
    services = dict(zip(names, results, strict=True))

    failed = [name for name, result in services.items() if result["status"] != "healthy"]
    if not failed:
        status = "healthy"
    elif any(CHECKS[name][1] for name in failed):
        status = "unhealthy"
    else:
        status = "degraded"

    return {"status": status, "services": services}
