"""Stale push-token sweep.

Removes every push token whose ``last_used_at`` is older than the
threshold, across all users, in one pass. Runs periodically from the API
process, or once from the command line.
"""

import asyncio
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Optional

import structlog
from pymongo.database import Database
from pymongo.errors import PyMongoError

from schemas import utcnow

logger = structlog.get_logger(__name__)

STALE_AFTER = timedelta(days=30)


def prune_stale_push_tokens(db: Database, now: Optional[datetime] = None, max_age: timedelta = STALE_AFTER) -> int:
    """Pull stale tokens from every user; returns the number of users touched."""
    cutoff = (now or utcnow()) - max_age
    res = db["user"].update_many(
        {"push_tokens.last_used_at": {"$lt": cutoff}},
        {"$pull": {"push_tokens": {"last_used_at": {"$lt": cutoff}}}},
    )
    logger.info("Stale push tokens swept", users=res.modified_count, cutoff=cutoff.isoformat())
    return res.modified_count


async def run_periodically(db: Database, interval_seconds: int, max_age: timedelta = STALE_AFTER) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(prune_stale_push_tokens, db, None, max_age)
        except PyMongoError as exc:
            logger.error("Stale token sweep failed", error=str(exc))
        except Exception:
            # Keep the loop alive; the next tick retries
            logger.exception("Stale token sweep crashed")


async def stop(task: Optional[asyncio.Task]) -> None:
    """Cancel a running sweep task and wait for it to finish."""
    if task is None:
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


if __name__ == "__main__":
    from database import connect
    from logging_setup import configure_logging
    from settings import load_settings

    settings = load_settings()
    configure_logging(settings.environment)
    prune_stale_push_tokens(connect(settings), max_age=timedelta(days=settings.stale_token_days))
