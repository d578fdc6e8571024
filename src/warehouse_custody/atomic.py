"""Atomic units of work with retry on concurrent modification."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from warehouse_custody.exceptions import CustodyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Work = Callable[[AsyncSession], Awaitable[T]]
RejectionRecorder = Callable[[AsyncSession, CustodyError], Awaitable[object]]


def compute_backoff_delay(attempt: int, backoff_seconds: float) -> float:
    """Delay before retrying a unit that lost a concurrent update.

    delay = backoff_seconds * 2^(attempt - 1)
    """
    return backoff_seconds * (2 ** (attempt - 1))


async def run_atomic(
    session_factory: async_sessionmaker[AsyncSession],
    work: Work[T],
    *,
    max_attempts: int = 3,
    backoff_seconds: float = 0.05,
    on_rejected: RejectionRecorder | None = None,
) -> T:
    """Run ``work`` in one transaction and return its result.

    A version conflict (another transaction committed the same row first)
    rolls the unit back and runs it again from scratch. A ``CustodyError``
    rolls the unit back, is handed to ``on_rejected`` in a fresh
    transaction, and is re-raised.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            async with session_factory() as session:
                async with session.begin():
                    return await work(session)
        except StaleDataError as exc:
            if attempt >= max_attempts:
                logger.warning(
                    "Giving up after %d conflicting attempts: %s",
                    attempt,
                    exc,
                )
                raise
            delay = compute_backoff_delay(attempt, backoff_seconds)
            logger.info(
                "Concurrent update on attempt %d, retrying in %.3fs: %s",
                attempt,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
        except CustodyError as exc:
            if on_rejected is not None:
                async with session_factory() as session:
                    async with session.begin():
                        await on_rejected(session, exc)
            raise
