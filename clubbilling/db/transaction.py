import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from clubbilling.core.errors import ConflictError

log = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_DELAY = 0.05


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    attempts: int = 3,
    label: str = "tx",
) -> T:
    """
    Run ``work`` in a fresh session inside one transaction.

    Rows carrying a version column raise StaleDataError when another writer
    committed first, and inserts racing on the same key raise IntegrityError.
    Either way the whole unit is re-run from scratch, so its reads (including
    any idempotency check) see the winner's rows. After ``attempts`` conflicts
    a ConflictError is raised for the caller to retry.
    """
    for attempt in range(1, attempts + 1):
        async with session_factory() as db:
            try:
                async with db.begin():
                    return await work(db)
            except StaleDataError:
                log.warning("tx.conflict label=%s attempt=%d/%d", label, attempt, attempts)
            except IntegrityError as e:
                log.warning("tx.integrity label=%s attempt=%d/%d err=%s", label, attempt, attempts, e.orig)
        if attempt < attempts:
            await asyncio.sleep(RETRY_DELAY * attempt)

    log.error("tx.conflict.exhausted label=%s attempts=%d", label, attempts)
    raise ConflictError("The record was modified concurrently. Please retry.", label=label)
