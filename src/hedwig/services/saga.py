"""Saga helpers for sequential writes without a multi-table transaction.

Each workflow step commits its primary write on its own.  Secondary writes
(linking, mirroring, audit rows) run through ``run_best_effort`` so that a
failure is logged and rolled back without touching the committed primary.
Primary writes that may hit transient store errors run through
``run_with_retry``.

A session rollback expires every loaded instance; pass the objects the
caller keeps using as ``refresh`` so they are reloaded afterwards.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _rollback_and_refresh(db: AsyncSession, refresh: Iterable) -> None:
    await db.rollback()
    for obj in refresh:
        if obj is not None:
            await db.refresh(obj)


async def commit_primary(db: AsyncSession, label: str) -> None:
    """Commit a primary write, surfacing store failures as retryable errors."""
    from hedwig.app.config import get_settings
    from hedwig.exceptions import TransientStoreError

    try:
        await db.commit()
    except SQLAlchemyError as e:
        logger.error("Primary write '%s' failed: %s", label, e)
        await db.rollback()
        raise TransientStoreError(
            f"Failed to save {label}",
            retry_after=get_settings().store_retry_after_seconds,
        ) from e


async def run_best_effort(
    db: AsyncSession,
    label: str,
    action: Callable[[], Awaitable[T]],
    refresh: Iterable = (),
) -> Optional[T]:
    """Run a secondary write; on failure log a warning and return None."""
    try:
        return await action()
    except Exception as e:
        logger.warning("Best-effort step '%s' failed: %s", label, e)
        await _rollback_and_refresh(db, refresh)
        return None


async def run_with_retry(
    db: AsyncSession,
    action: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    backoff_base: float = 1.0,
    retry_on: tuple = (SQLAlchemyError,),
    label: str = "store write",
    refresh: Iterable = (),
) -> T:
    """Execute a primary write with exponential backoff between attempts.

    Sleeps ``backoff_base * 2**attempt`` after each failed attempt except the
    last, then re-raises the final error.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")
    refresh = list(refresh)
    for attempt in range(attempts):
        try:
            return await action()
        except retry_on as exc:
            logger.warning(
                "%s failed (attempt %d/%d): %s", label, attempt + 1, attempts, exc,
            )
            await _rollback_and_refresh(db, refresh)
            if attempt >= attempts - 1:
                raise
            await asyncio.sleep(backoff_base * (2 ** attempt))
    raise AssertionError("unreachable")  # pragma: no cover
