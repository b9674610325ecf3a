"""Auto-verify worker: runs check-today for every open auto-verifiable quest.

Runs as a dedicated process. Each cycle lists quests with no completion for
the current UTC day and checks them one after another; the cadence is
``AUTO_VERIFY_INTERVAL_SECONDS`` between cycle starts.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from typing import Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import init_database
from services.completion_store import QuestStore
from services.ledger_client import ledger_client
from services.quest_verifier import QuestVerifier, quest_verifier, run_auto_verify_cycle
from utils.logger import get_logger, setup_logging

logger = get_logger("auto_verify_worker")

_MIN_LOOP_SLEEP_SECONDS = 1.0


async def run_once(
    verifier: Optional[QuestVerifier] = None,
    quest_store: Optional[QuestStore] = None,
) -> dict:
    return await run_auto_verify_cycle(verifier or quest_verifier, quest_store or QuestStore())


async def _run_loop(
    interval_seconds: Optional[float] = None,
    *,
    verifier: Optional[QuestVerifier] = None,
    quest_store: Optional[QuestStore] = None,
    max_cycles: Optional[int] = None,
) -> int:
    interval = float(interval_seconds or settings.AUTO_VERIFY_INTERVAL_SECONDS)
    logger.info("Auto-verify worker started", interval_seconds=interval)

    cycles = 0
    while True:
        started = time.monotonic()
        try:
            await run_once(verifier, quest_store)
        except Exception as exc:
            # Keep the loop alive across store/ledger outages; next cycle retries.
            logger.exception("Auto-verify cycle failed", error=str(exc))

        cycles += 1
        if max_cycles is not None and cycles >= max_cycles:
            return cycles

        elapsed = time.monotonic() - started
        await asyncio.sleep(max(_MIN_LOOP_SLEEP_SECONDS, interval - elapsed))


async def main() -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
    await init_database()
    logger.info("Database initialized")

    if not settings.AUTO_VERIFY_ENABLED:
        logger.info("Auto-verify disabled (AUTO_VERIFY_ENABLED=false); exiting")
        return

    try:
        await _run_loop()
    except asyncio.CancelledError:
        logger.info("Auto-verify worker shutting down")
    finally:
        await ledger_client.close()


if __name__ == "__main__":
    asyncio.run(main())
