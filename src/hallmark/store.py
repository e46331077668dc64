"""Durable CSV store of certificate records with snapshot-before-mutate.

Every mutation copies the current file into the backup directory, then
rewrites the whole relation to a temporary file and swaps it in with
``os.replace``. Readers never observe a partial file and take no lock;
writers are serialized by a single ``asyncio.Lock`` per store.

Serials can be reserved for the duration of a ledger commit so two
concurrent issuances cannot both pass the uniqueness check.
"""

from __future__ import annotations

import asyncio
import csv
import logging
import os
import shutil
import tempfile
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from hallmark.constants import BACKUP_PREFIX, BACKUP_SUFFIX, CUSTOM_FIELDS, STORE_COLUMNS
from hallmark.errors import ConflictError, StoreError, ValidationError
from hallmark.record import CertificateRecord, validate_bar_fields
from hallmark.serial import SerialAllocator

if TYPE_CHECKING:
    from hallmark.reconciliation import ReconciliationQueue

logger = logging.getLogger(__name__)
audit = logging.getLogger("hallmark.audit")

_BACKUP_TS_FORMAT = "%Y%m%d_%H%M%S"


class RecordStore:
    """Certificate relation backed by a delimited text file.

    - ``read_all()`` returns an empty list when the file does not exist yet.
    - ``append()`` / ``append_batch()`` refuse duplicate serials.
    - ``update()`` / ``delete()`` are the maintenance path, addressed by row index.
    - ``reserve()`` claims serials across in-flight issuances. Serials waiting
      in the reconciliation queue are already on the ledger and count as taken.
    """

    def __init__(
        self,
        csv_path: str | os.PathLike[str],
        backup_path: str | os.PathLike[str],
        delimiter: str = ";",
        encoding: str = "utf-8",
        allocator: SerialAllocator | None = None,
        reconciliation: ReconciliationQueue | None = None,
    ) -> None:
        self._path = Path(csv_path)
        self._backup_dir = Path(backup_path)
        self._delimiter = delimiter
        self._encoding = encoding
        self._allocator = allocator or SerialAllocator()
        self._reconciliation = reconciliation
        self._lock = asyncio.Lock()
        self._reserved: set[str] = set()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_dir.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    # -- blocking helpers (run via asyncio.to_thread) ---------------------------

    def _read_sync(self) -> list[CertificateRecord]:
        if not self._path.exists():
            return []
        with self._path.open("r", encoding=self._encoding, newline="") as fh:
            reader = csv.DictReader(fh, delimiter=self._delimiter)
            return [CertificateRecord.from_row(row) for row in reader]

    def _write_sync(self, records: Iterable[CertificateRecord]) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding=self._encoding, newline="") as fh:
                writer = csv.DictWriter(
                    fh, fieldnames=list(STORE_COLUMNS), delimiter=self._delimiter
                )
                writer.writeheader()
                for record in records:
                    writer.writerow(record.to_row())
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def _snapshot_sync(self, now: datetime | None = None) -> Path | None:
        if not self._path.exists():
            return None
        now = now or datetime.now(timezone.utc)
        stem = f"{BACKUP_PREFIX}{now.strftime(_BACKUP_TS_FORMAT)}"
        target = self._backup_dir / f"{stem}{BACKUP_SUFFIX}"
        n = 1
        while target.exists():
            target = self._backup_dir / f"{stem}_{n}{BACKUP_SUFFIX}"
            n += 1
        shutil.copy2(self._path, target)
        logger.info("Backup created: %s", target)
        return target

    async def _run_io(self, func: Any, *args: Any) -> Any:
        """Run a blocking store operation, mapping I/O failures to StoreError."""
        try:
            return await asyncio.to_thread(func, *args)
        except (OSError, csv.Error, UnicodeError) as e:
            raise StoreError(f"Store I/O failed ({self._path}): {e}") from e

    # -- reads ----------------------------------------------------------------

    async def read_all(self) -> list[CertificateRecord]:
        return await self._run_io(self._read_sync)

    async def all_serials(self) -> list[str]:
        return [r.serial for r in await self.read_all()]

    async def is_unique(self, serial: str) -> bool:
        return all(r.serial != serial for r in await self.read_all())

    def is_reserved(self, serial: str) -> bool:
        return serial in self._reserved

    async def find_by_serial(self, serial: str) -> CertificateRecord | None:
        for record in await self.read_all():
            if record.serial == serial:
                return record
        return None

    async def last_serial(self) -> str | None:
        serials = await self.all_serials()
        return max(serials) if serials else None

    # -- reservations ---------------------------------------------------------

    async def pending_serials(self) -> set[str]:
        """Serials committed to the ledger that still await local persistence."""
        if self._reconciliation is None:
            return set()
        return await self._reconciliation.pending_serials()

    def _check_free(self, serial: str, stored: set[str], pending: set[str]) -> None:
        if serial in stored or serial in self._reserved:
            raise ConflictError(f"Serial {serial} already exists", serial=serial)
        if serial in pending:
            raise ConflictError(
                f"Serial {serial} is on the ledger awaiting reconciliation", serial=serial
            )

    @asynccontextmanager
    async def reserve(self, *serials: str) -> AsyncIterator[None]:
        """Atomically claim ``serials`` until the block exits.

        Raises ``ConflictError`` if any serial is already stored, reserved
        by another in-flight issuance, or queued for reconciliation. Claims
        are all-or-nothing.
        """
        async with self._lock:
            stored = {r.serial for r in await self.read_all()}
            pending = await self.pending_serials()
            for serial in serials:
                self._check_free(serial, stored, pending)
            self._reserved.update(serials)
        try:
            yield
        finally:
            self._reserved.difference_update(serials)

    # -- mutations ------------------------------------------------------------

    async def snapshot(self) -> Path | None:
        """Copy the current store into the backup directory."""
        return await self._run_io(self._snapshot_sync)

    async def append(self, record: CertificateRecord) -> None:
        await self.append_batch([record])

    async def append_batch(self, records: list[CertificateRecord]) -> None:
        """Persist ``records`` in one snapshot and one rewrite.

        Raises ``ConflictError`` if any serial is already stored or repeated
        within ``records``; nothing is written in that case.
        """
        if not records:
            return
        async with self._lock:
            existing = await self.read_all()
            seen = {r.serial for r in existing}
            for record in records:
                if record.serial in seen:
                    raise ConflictError(
                        f"Serial {record.serial} already exists", serial=record.serial
                    )
                seen.add(record.serial)

            await self.snapshot()
            await self._run_io(self._write_sync, [*existing, *records])

        for record in records:
            logger.info("Certificate %s saved.", record.serial)

    async def update(self, index: int, fields: Mapping[str, Any]) -> CertificateRecord:
        """Merge ``fields`` into the row at ``index`` (maintenance path).

        The serial may change but never to a blank, malformed or taken
        value. The ledger reference is immutable. Bar-type rules are
        checked again when the bar type or engraving fields change.
        """
        unknown = sorted(set(fields) - set(STORE_COLUMNS))
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(unknown)}")

        async with self._lock:
            records = await self.read_all()
            self._check_index(index, len(records))
            current = records[index]
            row = current.to_row()

            for name in ("ledger_reference_hash", "ledger_reference_link"):
                if name in fields and _cell(fields[name]) != row[name]:
                    raise ValidationError(f"{name} cannot be changed")

            if "serial" in fields:
                new_serial = _cell(fields["serial"])
                if not self._allocator.validate_format(new_serial):
                    raise ValidationError("Invalid serial format")
                if new_serial != current.serial:
                    self._check_free(
                        new_serial,
                        {r.serial for r in records},
                        await self.pending_serials(),
                    )

            row.update({k: _cell(v) for k, v in fields.items()})
            if {"bar_type", *CUSTOM_FIELDS} & set(fields):
                errors = validate_bar_fields(row)
                if errors:
                    raise ValidationError("; ".join(errors), errors)
            updated = CertificateRecord.from_row(row)
            records[index] = updated

            await self.snapshot()
            await self._run_io(self._write_sync, records)

        audit.info(
            "CSV row updated",
            extra={"type": "CSV_ROW_UPDATED", "index": index, "serial": updated.serial},
        )
        return updated

    async def delete(self, index: int) -> CertificateRecord:
        """Remove the row at ``index`` (maintenance path). Returns the removed record."""
        async with self._lock:
            records = await self.read_all()
            self._check_index(index, len(records))
            deleted = records.pop(index)

            await self.snapshot()
            await self._run_io(self._write_sync, records)

        audit.info(
            "CSV row deleted",
            extra={"type": "CSV_ROW_DELETED", "index": index, "serial": deleted.serial},
        )
        return deleted

    @staticmethod
    def _check_index(index: int, size: int) -> None:
        if index < 0 or index >= size:
            raise ValidationError(f"Invalid row index {index} (store has {size} rows)")

    # -- backups --------------------------------------------------------------

    def _backup_created_at(self, path: Path) -> datetime:
        """Creation time encoded in the snapshot name, falling back to mtime."""
        stem = path.name[len(BACKUP_PREFIX):-len(BACKUP_SUFFIX)]
        try:
            return datetime.strptime(stem[:15], _BACKUP_TS_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)

    def _backup_files(self) -> list[Path]:
        return [
            p for p in self._backup_dir.iterdir()
            if p.is_file() and p.name.startswith(BACKUP_PREFIX) and p.name.endswith(BACKUP_SUFFIX)
        ]

    def _list_backups_sync(self) -> list[dict[str, Any]]:
        entries = []
        for path in self._backup_files():
            stat = path.stat()
            created = self._backup_created_at(path)
            entries.append({
                "filename": path.name,
                "size": stat.st_size,
                "created": created.isoformat(),
                "modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                "_sort": (created, path.name),
            })
        entries.sort(key=lambda e: e["_sort"], reverse=True)
        for entry in entries:
            del entry["_sort"]
        return entries

    async def list_backups(self) -> list[dict[str, Any]]:
        """Snapshot filename/size/created/modified, newest first."""
        return await self._run_io(self._list_backups_sync)

    def _prune_sync(self, retention_days: int, now: datetime) -> int:
        cutoff = now - timedelta(days=retention_days)
        removed = 0
        for path in self._backup_files():
            if self._backup_created_at(path) >= cutoff:
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Failed to delete old backup %s: %s", path.name, e)
        return removed

    async def prune_backups(self, retention_days: int, now: datetime | None = None) -> int:
        """Delete snapshots older than ``retention_days``. Returns the count removed."""
        now = now or datetime.now(timezone.utc)
        return await self._run_io(self._prune_sync, retention_days, now)


def _cell(value: Any) -> str:
    return "" if value is None else str(value).strip()
