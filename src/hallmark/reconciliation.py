"""Durable queue of certificates committed to the ledger but not stored locally.

A record lands here when a bulk batch aborts after some rows were already
committed, or when the store write fails after a successful commit. No
compensating ledger write is ever attempted; an operator drains the queue
with ``reconcile_pending()`` once the cause is fixed.

The queue is a JSON-lines file, rewritten atomically on every change.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from hallmark.errors import ConflictError, StoreError
from hallmark.record import CertificateRecord

if TYPE_CHECKING:
    from hallmark.store import RecordStore

logger = logging.getLogger(__name__)

REASON_BULK_ABORTED = "bulk_aborted"
REASON_STORE_FAILED = "store_failed"


@dataclass
class ReconciliationEntry:
    """One ledger-committed record awaiting local persistence."""

    record: CertificateRecord
    reason: str
    queued_at: str = ""
    detail: str = ""

    @property
    def serial(self) -> str:
        return self.record.serial

    def to_dict(self) -> dict[str, Any]:
        return {
            "serial": self.record.serial,
            "reason": self.reason,
            "queued_at": self.queued_at,
            "detail": self.detail,
            "record": self.record.to_row(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReconciliationEntry:
        return cls(
            record=CertificateRecord.from_row(data.get("record", {})),
            reason=str(data.get("reason", "")),
            queued_at=str(data.get("queued_at", "")),
            detail=str(data.get("detail", "")),
        )


class ReconciliationQueue:
    """JSON-lines queue with an asyncio lock around every read-modify-write."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    # -- blocking helpers -----------------------------------------------------

    def _read_sync(self) -> tuple[list[ReconciliationEntry], list[str]]:
        """Parsed entries, plus raw lines that could not be parsed."""
        if not self._path.exists():
            return [], []
        entries = []
        unreadable = []
        with self._path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(ReconciliationEntry.from_dict(json.loads(line)))
                except (json.JSONDecodeError, AttributeError):
                    logger.error(
                        "Unparseable reconciliation entry at %s:%d; leaving it for manual review.",
                        self._path, lineno,
                    )
                    unreadable.append(line)
        return entries, unreadable

    def _write_sync(self, entries: list[ReconciliationEntry], unreadable: list[str]) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                for entry in entries:
                    fh.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
                # Kept verbatim; they may hold the only copy of a ledger reference.
                for line in unreadable:
                    fh.write(line + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def _append_sync(self, entries: list[ReconciliationEntry]) -> None:
        with self._path.open("a", encoding="utf-8") as fh:
            for entry in entries:
                fh.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
            fh.flush()
            os.fsync(fh.fileno())

    # -- public API -----------------------------------------------------------

    async def enqueue(
        self,
        records: list[CertificateRecord],
        reason: str,
        detail: str = "",
    ) -> bool:
        """Queue ledger-committed records. Returns False on failure (logged, not raised).

        The caller is usually already on an error path; losing the queue
        write must not hide the original failure, so references are logged
        at CRITICAL level before giving up.
        """
        if not records:
            return True
        now = datetime.now(timezone.utc).isoformat()
        entries = [
            ReconciliationEntry(record=r, reason=reason, queued_at=now, detail=detail)
            for r in records
        ]
        try:
            async with self._lock:
                await asyncio.to_thread(self._append_sync, entries)
        except OSError:
            for r in records:
                ref = r.ledger_reference
                logger.critical(
                    "CRITICAL: Failed to queue serial %s (tx %s) for reconciliation. "
                    "It is on the ledger but not in the local store.",
                    r.serial, ref.transaction_hash if ref else "?",
                )
            return False

        logger.warning(
            "Queued %d ledger-committed record(s) for reconciliation (%s): %s",
            len(records), reason, ", ".join(r.serial for r in records),
        )
        return True

    async def _read(self) -> tuple[list[ReconciliationEntry], list[str]]:
        try:
            return await asyncio.to_thread(self._read_sync)
        except OSError as e:
            raise StoreError(f"Failed to read reconciliation queue {self._path}: {e}") from e

    async def pending(self) -> list[ReconciliationEntry]:
        entries, _ = await self._read()
        return entries

    async def pending_serials(self) -> set[str]:
        """Serials already on the ledger but not yet in the local store."""
        return {entry.serial for entry in await self.pending()}

    async def reconcile_pending(self, store: RecordStore) -> dict[str, Any]:
        """Persist queued records whose serial is still free.

        Records whose serial was taken in the meantime stay queued and are
        reported as conflicts. A store failure stops the run: records
        persisted so far are dequeued, then the error propagates.
        """
        failure: StoreError | None = None
        async with self._lock:
            entries, unreadable = await self._read()
            persisted: list[str] = []
            conflicts: list[str] = []
            remaining: list[ReconciliationEntry] = []

            for i, entry in enumerate(entries):
                if entry.record.ledger_reference is None:
                    logger.error("Queued serial %s has no ledger reference; skipping.", entry.serial)
                    remaining.append(entry)
                    continue
                try:
                    await store.append(entry.record)
                except ConflictError:
                    conflicts.append(entry.serial)
                    remaining.append(entry)
                except StoreError as e:
                    remaining.extend(entries[i:])
                    failure = e
                    break
                else:
                    persisted.append(entry.serial)

            if persisted:
                try:
                    await asyncio.to_thread(self._write_sync, remaining, unreadable)
                except OSError as e:
                    raise StoreError(
                        f"Reconciled {len(persisted)} record(s) but failed to rewrite "
                        f"queue {self._path}: {e}"
                    ) from e

        if failure is not None:
            raise failure
        if persisted:
            logger.info("Reconciled %d record(s): %s", len(persisted), ", ".join(persisted))
        if conflicts:
            logger.warning(
                "Serial conflict on %d queued record(s): %s", len(conflicts), ", ".join(conflicts)
            )
        return {
            "persisted": persisted,
            "conflicts": conflicts,
            "remaining": len(remaining) + len(unreadable),
        }
