"""Per-item batch execution with partial failure reporting."""

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

K = TypeVar("K")
T = TypeVar("T")


@dataclass
class BatchFailure:
    """One item that could not be applied."""

    key: Any
    error: str


@dataclass
class BatchResult(Generic[T]):
    """Outcome of a multi-item operation. Failures never hide successes."""

    successes: list[T] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def errors(self) -> list[str]:
        return [f.error for f in self.failures]


async def apply_each(
    session: AsyncSession,
    items: Iterable[K],
    operation: Callable[[K], Awaitable[T]],
    *,
    label: Callable[[K], str] = str,
) -> BatchResult[T]:
    """Apply an operation to each item inside its own savepoint.

    A failing item is rolled back alone and recorded as a failure; the
    other items are unaffected. Committing is left to the caller.

    Args:
        session: Database session
        items: Items to apply
        operation: Async callable applied to one item
        label: Names an item in error messages

    Returns:
        BatchResult with one entry per item
    """
    result: BatchResult[T] = BatchResult()
    for item in items:
        # Named up front, a rolled back savepoint expires the item
        name = label(item)
        try:
            async with session.begin_nested():
                value = await operation(item)
        except Exception as e:
            logger.error(f"Batch item {name} failed: {e}")
            result.failures.append(BatchFailure(key=name, error=f"{name}: {e}"))
        else:
            result.successes.append(value)
    return result
