"""Background reclamation of expired files.

The scheduler sweeps once when started and then every ``interval_seconds``.
A sweep takes a point-in-time snapshot of records with
``expires_at <= now``; anything inserted after the snapshot waits for the
next sweep. For each snapshotted record the blob is removed first and the
record second, so the index may briefly point at a missing blob but never
the reverse.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .files.index import MetadataIndex
from .files.schemas import utc_now
from .files.storage import BlobStorage

logger = logging.getLogger(__name__)


class ExpirationScheduler:
    """Periodic sweep over the metadata index and blob storage."""

    def __init__(
        self,
        index: MetadataIndex,
        storage: BlobStorage,
        interval_seconds: float,
    ) -> None:
        self._index = index
        self._storage = storage
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def sweep_once(self, now: Optional[datetime] = None) -> int:
        """Reclaim every record expired at *now*; return how many were reclaimed.

        A failure on one record is logged and the sweep moves on.
        """
        now = now or utc_now()
        expired = self._index.list_expired(now)

        reclaimed = 0
        for record in expired:
            try:
                self._storage.remove(record.filename)
                self._index.delete(record.id)
            except Exception:
                logger.exception("Cleanup: failed to reclaim %s", record.filename)
                continue
            reclaimed += 1

        if reclaimed:
            logger.info("Cleanup: deleted %d expired file(s).", reclaimed)
        if reclaimed < len(expired):
            logger.warning("Cleanup: %d expired file(s) could not be reclaimed", len(expired) - reclaimed)
        return reclaimed

    async def _sweep_in_executor(self) -> int:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self.sweep_once)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Sweep immediately, then keep sweeping on the interval."""
        if self.running:
            return
        try:
            await self._sweep_in_executor()
        except Exception:
            logger.exception("Cleanup: startup sweep failed")
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Expiration scheduler started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Expiration scheduler stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._sweep_in_executor()
            except Exception:
                logger.exception("Cleanup: sweep failed")
