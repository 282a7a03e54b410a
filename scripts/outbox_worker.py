from __future__ import annotations

import asyncio
import logging

from edugov.core.config import get_settings
from edugov.core.logging import configure_logging
from edugov.persistence.db import Database
from edugov.services.outbox import run_delivery_cycle


logger = logging.getLogger(__name__)


async def _main() -> None:
    # Run outbox delivery without redis/arq, for local development.
    settings = get_settings()
    configure_logging(settings.log_level)
    database = Database(settings=settings)
    try:
        while True:
            async with database.session() as session:
                stats = await run_delivery_cycle(session)
            if stats["scanned"]:
                logger.info("outbox_cycle_completed %s", " ".join(f"{k}={v}" for k, v in stats.items()))
            await asyncio.sleep(max(1, settings.worker_outbox_interval_s))
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(_main())
