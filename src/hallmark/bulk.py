"""Bulk certificate issuance: single-flight, validate-all, then commit in order.

Phase 0  admission: one batch process-wide; a second one gets ConcurrencyError.
Phase 1  validate every row; any error aborts with no effects.
Phase 2  commit rows to the ledger in order; the first failure stops the batch.
Phase 3  persist every committed row with one store rewrite.

Rows committed in phase 2 of an aborted batch are never written to the
store. They are queued for reconciliation and listed in the report.
"""

from __future__ import annotations

import asyncio
import csv
import io
import logging
from collections import Counter
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any

from hallmark.errors import ConcurrencyError, ConflictError, LedgerError, StoreError, ValidationError
from hallmark.reconciliation import REASON_BULK_ABORTED, REASON_STORE_FAILED
from hallmark.record import CertificateRecord, LedgerReference, parse_certificate, validate_fields
from hallmark.serial import SerialAllocator

if TYPE_CHECKING:
    from hallmark.ledger_client import LedgerWriter
    from hallmark.reconciliation import ReconciliationQueue
    from hallmark.registry import UserRegistry
    from hallmark.store import RecordStore

logger = logging.getLogger(__name__)
audit = logging.getLogger("hallmark.audit")

# Data rows of an uploaded CSV are numbered from 2; the header is row 1.
CSV_FIRST_ROW = 2

# Row statuses in a write report.
WRITTEN = "written"
INVALID = "invalid"
LEDGER_FAILED = "ledger_failed"
COMMITTED_UNPERSISTED = "committed_unpersisted"
NOT_ATTEMPTED = "not_attempted"


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass
class RowError:
    row: int  # 1-based position in the batch, or file line for a CSV upload
    serial: str | None
    errors: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "serial": self.serial, "errors": list(self.errors)}


@dataclass
class BulkValidationReport:
    total_rows: int
    errors: list[RowError] = field(default_factory=list)

    @property
    def invalid_rows(self) -> int:
        return len(self.errors)

    @property
    def valid_rows(self) -> int:
        return self.total_rows - self.invalid_rows

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "valid_rows": self.valid_rows,
            "invalid_rows": self.invalid_rows,
            "per_row_errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class RowResult:
    row: int
    serial: str | None
    status: str = NOT_ATTEMPTED
    reference: LedgerReference | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == WRITTEN

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "row": self.row,
            "serial": self.serial,
            "success": self.success,
            "status": self.status,
        }
        if self.reference is not None:
            data["ledger_reference_hash"] = self.reference.transaction_hash
            data["ledger_reference_link"] = self.reference.explorer_link
        if self.errors:
            data["errors"] = list(self.errors)
        return data


@dataclass
class BulkWriteReport:
    requested: int
    results: list[RowResult] = field(default_factory=list)
    unreconciled: list[str] = field(default_factory=list)

    @property
    def written(self) -> int:
        return sum(1 for r in self.results if r.status == WRITTEN)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.errors)

    @property
    def success(self) -> bool:
        return self.requested > 0 and self.written == self.requested

    @property
    def reconciliation_required(self) -> bool:
        return bool(self.unreconciled)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "requested": self.requested,
            "written": self.written,
            "failed": self.failed,
            "per_row_results": [r.to_dict() for r in self.results],
            "unreconciled": list(self.unreconciled),
            "reconciliation_required": self.reconciliation_required,
        }


def _serial_of(row: Any) -> str:
    if not isinstance(row, Mapping):
        return ""
    value = row.get("serial")
    return "" if value is None else str(value).strip()


def parse_csv_rows(text: str, delimiter: str = ";") -> list[dict[str, str]]:
    """Split an uploaded CSV into rows keyed by its header.

    Header names are stripped; cells beyond the header are dropped and
    missing trailing cells read as empty. Raises ``ValidationError`` for
    text that has no header or cannot be parsed.
    """
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")), delimiter=delimiter)
    try:
        fieldnames = reader.fieldnames
        if not fieldnames:
            raise ValidationError("CSV file is empty")
        reader.fieldnames = [name.strip() for name in fieldnames]
        return [
            {k: "" if v is None else v for k, v in row.items() if k is not None}
            for row in reader
        ]
    except csv.Error as e:
        raise ValidationError(f"Unreadable CSV (line {reader.line_num}): {e}") from e


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class BulkCoordinator:
    """Runs at most one batch at a time.

    The gate is an ``asyncio.Lock`` held for the whole batch through
    ``async with``, so it is released on every exit path.
    """

    def __init__(
        self,
        store: RecordStore,
        ledger: LedgerWriter,
        registry: UserRegistry,
        allocator: SerialAllocator | None = None,
        reconciliation: ReconciliationQueue | None = None,
        delimiter: str = ";",
        encoding: str = "utf-8",
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._registry = registry
        self._allocator = allocator or SerialAllocator()
        self._reconciliation = reconciliation
        self._delimiter = delimiter
        self._encoding = encoding
        self._gate = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        return self._gate.locked()

    @asynccontextmanager
    async def _single_flight(self) -> AsyncIterator[None]:
        # An uncontended asyncio.Lock is acquired without yielding, so this
        # check and the acquire below cannot be split by another task.
        if self._gate.locked():
            raise ConcurrencyError("A bulk write is already in progress")
        async with self._gate:
            yield

    # -- phase 1 --------------------------------------------------------------

    async def _pending_serials(self) -> set[str]:
        if self._reconciliation is None:
            return set()
        return await self._reconciliation.pending_serials()

    async def validate(
        self,
        rows: Sequence[Mapping[str, Any]],
        today: date | None = None,
        first_row: int = 1,
    ) -> BulkValidationReport:
        """Check every row independently. No side effects, no gate.

        Every row sharing a serial with another row of the batch is flagged,
        whether or not that serial is already stored. Rows are reported
        numbered from ``first_row``.
        """
        existing = set(await self._store.all_serials())
        on_ledger = await self._pending_serials()
        valid_users = await self._registry.user_ids()
        counts = Counter(s for s in (_serial_of(r) for r in rows) if s)

        report = BulkValidationReport(total_rows=len(rows))
        for index, row in enumerate(rows, start=first_row):
            serial = _serial_of(row)
            if not isinstance(row, Mapping):
                report.errors.append(RowError(index, None, ["Row is not an object"]))
                continue

            row_errors = validate_fields(row, self._allocator, today)
            if serial and counts[serial] > 1:
                row_errors.append("Duplicate serial in batch")
            if serial in existing:
                row_errors.append("Serial already exists in the store")
            elif serial in on_ledger:
                row_errors.append("Serial is on the ledger awaiting reconciliation")
            elif serial and self._store.is_reserved(serial):
                row_errors.append("Serial is currently being issued")
            user = str(row.get("user") or "").strip()
            if user not in valid_users:
                row_errors.append("Invalid user: user_id does not exist")

            if row_errors:
                report.errors.append(RowError(index, serial or None, row_errors))
        return report

    async def validate_csv(
        self,
        content: str | bytes,
        today: date | None = None,
    ) -> BulkValidationReport:
        """Validate an uploaded CSV. Rows are numbered as file lines, header first.

        Raises ``ValidationError`` if the content cannot be decoded or parsed.
        """
        if isinstance(content, bytes):
            try:
                content = content.decode(self._encoding)
            except UnicodeDecodeError as e:
                raise ValidationError(f"CSV file is not valid {self._encoding}: {e}") from e
        rows = parse_csv_rows(content, self._delimiter)
        return await self.validate(rows, today, first_row=CSV_FIRST_ROW)

    # -- phases 2 and 3 -------------------------------------------------------

    async def write(
        self,
        rows: Sequence[Mapping[str, Any]],
        today: date | None = None,
    ) -> BulkWriteReport:
        """Validate, commit and persist a batch, all or nothing locally.

        Raises ``ConcurrencyError`` if another batch is running and
        ``ValidationError`` for an empty batch; every other outcome is
        reported per row.
        """
        async with self._single_flight():
            if not rows:
                raise ValidationError("certificates must be a non-empty list")

            report = BulkWriteReport(requested=len(rows))
            validation = await self.validate(rows, today)
            if not validation.ok:
                return self._invalid_report(report, rows, validation)

            records = [parse_certificate(row, self._allocator, today) for row in rows]
            report.results = [
                RowResult(row=i, serial=r.serial) for i, r in enumerate(records, start=1)
            ]

            try:
                async with self._store.reserve(*(r.serial for r in records)):
                    await self._commit_and_persist(records, report)
            except ConflictError as e:
                # Lost a race with a single issuance between validation and
                # reservation; nothing has reached the ledger yet.
                for result in report.results:
                    if result.serial == e.serial:
                        result.status = INVALID
                        result.errors = [e.message]

        audit.info(
            "Bulk write finished",
            extra={
                "type": "BULK_WRITE",
                "requested": report.requested,
                "written": report.written,
                "failed": report.failed,
                "unreconciled": report.unreconciled,
            },
        )
        return report

    def _invalid_report(
        self,
        report: BulkWriteReport,
        rows: Sequence[Mapping[str, Any]],
        validation: BulkValidationReport,
    ) -> BulkWriteReport:
        by_row = {e.row: e for e in validation.errors}
        for index, row in enumerate(rows, start=1):
            error = by_row.get(index)
            if error is not None:
                report.results.append(RowResult(index, error.serial, INVALID, errors=error.errors))
            else:
                report.results.append(RowResult(index, _serial_of(row) or None))
        logger.info(
            "Bulk write rejected: %d of %d row(s) invalid.",
            validation.invalid_rows, validation.total_rows,
        )
        return report

    async def _commit_and_persist(
        self,
        records: list[CertificateRecord],
        report: BulkWriteReport,
    ) -> None:
        committed: list[CertificateRecord] = []
        try:
            for record, result in zip(records, report.results):
                try:
                    receipt = await self._ledger.commit(record)
                except LedgerError as e:
                    result.status = LEDGER_FAILED
                    result.errors = [f"Ledger error: {e.message}"]
                    logger.error(
                        "Bulk write stopped at row %d (serial %s): %s",
                        result.row, record.serial, e.message,
                    )
                    await self._park(committed, report, REASON_BULK_ABORTED, e.message)
                    return
                committed.append(record.with_reference(receipt.reference, receipt.timestamp))
                result.reference = receipt.reference
                result.status = COMMITTED_UNPERSISTED
        except BaseException as e:
            # Unexpected failure mid-batch: keep the references of what landed.
            await self._park(committed, report, REASON_BULK_ABORTED, repr(e))
            raise

        try:
            await self._store.append_batch(committed)
        except (StoreError, ConflictError) as e:
            logger.error(
                "CRITICAL: %d row(s) committed to the ledger but the store write failed: %s",
                len(committed), e,
            )
            for result in report.results:
                result.errors = [f"Store error: {e.message}"]
            await self._park(committed, report, REASON_STORE_FAILED, e.message)
            return

        for result in report.results:
            result.status = WRITTEN

    async def _park(
        self,
        committed: list[CertificateRecord],
        report: BulkWriteReport,
        reason: str,
        detail: str,
    ) -> None:
        """Record ledger-committed, unpersisted rows for reconciliation."""
        if not committed:
            return
        report.unreconciled = [r.serial for r in committed]
        if self._reconciliation is not None:
            await self._reconciliation.enqueue(committed, reason, detail)
        else:
            for record in committed:
                ref = record.ledger_reference
                logger.critical(
                    "Serial %s is on the ledger (tx %s) but not in the local store.",
                    record.serial, ref.transaction_hash if ref else "?",
                )
