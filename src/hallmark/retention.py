"""Periodic store snapshot with age-based pruning of old snapshots."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from hallmark.errors import StoreError

if TYPE_CHECKING:
    from hallmark.store import RecordStore

logger = logging.getLogger(__name__)
audit = logging.getLogger("hallmark.audit")


class BackupRetention:
    """Snapshots the store every ``interval_secs`` and prunes expired snapshots.

    - A failed snapshot is logged and retried on the next interval.
    - A failed prune is logged and never stops the loop.
    """

    def __init__(
        self,
        store: RecordStore,
        retention_days: int = 30,
        interval_secs: int = 24 * 60 * 60,
    ) -> None:
        self._store = store
        self._retention_days = retention_days
        self._interval = interval_secs
        self._task: asyncio.Task[None] | None = None
        self._last_backup_at: str | None = None
        self._last_backup_file: str | None = None
        self._total_backups = 0
        self._total_pruned = 0
        self._failures = 0

    async def run_once(self, now: datetime | None = None) -> bool:
        """Snapshot then prune. Returns True if the snapshot step succeeded."""
        snapshot_ok = True
        try:
            path = await self._store.snapshot()
        except StoreError:
            logger.exception("Scheduled backup failed; will retry next interval.")
            self._failures += 1
            snapshot_ok = False
        else:
            if path is not None:
                self._total_backups += 1
                self._last_backup_at = datetime.now(timezone.utc).isoformat()
                self._last_backup_file = path.name
                audit.info("Backup done", extra={"type": "AUTO_BACKUP_DONE", "file": str(path)})

        try:
            pruned = await self._store.prune_backups(self._retention_days, now=now)
        except StoreError:
            logger.exception("Backup retention pruning failed.")
        else:
            self._total_pruned += pruned
            if pruned:
                logger.info(
                    "Pruned %d backup(s) older than %d day(s).", pruned, self._retention_days,
                )
        return snapshot_ok

    async def start(self) -> None:
        """Run one cycle now, then keep running every interval in the background."""
        if self._task is not None:
            return
        await self.run_once()
        self._task = asyncio.create_task(self._loop())

    async def _loop(self) -> None:
        logger.info(
            "Backup retention loop started (interval=%ds, retention=%dd).",
            self._interval, self._retention_days,
        )
        try:
            while True:
                await asyncio.sleep(self._interval)
                await self.run_once()
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def health(self) -> dict[str, object]:
        return {
            "last_backup_at": self._last_backup_at,
            "last_backup_file": self._last_backup_file,
            "total_backups": self._total_backups,
            "total_pruned": self._total_pruned,
            "snapshot_failures": self._failures,
            "retention_days": self._retention_days,
            "running": self._task is not None and not self._task.done(),
        }
