"""
State Sweeper Worker.

Periodically drops expired dedup window entries and call records that
are past their grace period (terminal) or idle past the stale limit
(non-terminal). Runs inside the API process, started and stopped by the
application lifespan hook.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from callbridge.logging_config import get_logger

logger = get_logger(__name__)


class StateSweeper:
    """Background loop around ``DedupWindow.sweep`` and ``CallRecordStore.purge_expired``."""

    def __init__(self, dedup: Any, store: Any, interval: float = 60.0) -> None:
        self._dedup = dedup
        self._store = store
        self._interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> tuple[int, int]:
        """Run one pass. Returns (dedup entries removed, call records removed)."""
        dedup_removed = await self._dedup.sweep()
        records_removed = await self._store.purge_expired()
        if dedup_removed or records_removed:
            logger.info(
                "state_swept",
                dedup_removed=dedup_removed,
                records_removed=records_removed,
            )
        return dedup_removed, records_removed

    async def run(self) -> None:
        """Sweep every ``interval`` seconds until stopped."""
        self._running = True
        logger.info("state_sweeper_started", interval=self._interval)

        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("state_sweep_error", error=str(e))
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Gracefully stop the loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("state_sweeper_stopped")
