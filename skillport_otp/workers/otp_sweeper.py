from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timezone

from ..repos.otp_store import InMemoryOtpStore

logger = logging.getLogger(__name__)

SLEEP_ERROR = 5.0


async def sweep_once(store: InMemoryOtpStore) -> int:
    removed = await store.purge_expired(datetime.now(timezone.utc))
    if removed:
        logger.info("otp_sweeper: purged %d expired records", removed)
    return removed


async def run_forever(store: InMemoryOtpStore, interval_sec: float) -> None:
    while True:
        try:
            await sweep_once(store)
            await asyncio.sleep(interval_sec)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("otp_sweeper: sweep failed")
            await asyncio.sleep(SLEEP_ERROR)
