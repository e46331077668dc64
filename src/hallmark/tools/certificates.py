"""Certificate tools: issuance, bulk, verification, listing, maintenance, diagnostics.

Every tool returns a plain dict. Expected failures come back as
``{"success": False, "error": {"kind": ..., "message": ...}}``; only
programming errors propagate.
"""

from __future__ import annotations

import importlib.metadata
import logging
import platform
from collections.abc import Mapping, Sequence
from datetime import date, datetime, timezone
from typing import Any

from hallmark.bulk import BulkCoordinator
from hallmark.config import HallmarkConfig
from hallmark.errors import HallmarkError, ValidationError
from hallmark.issuance import IssuanceCoordinator
from hallmark.ledger_client import LedgerWriter
from hallmark.reconciliation import ReconciliationQueue
from hallmark.serial import SerialAllocator
from hallmark.store import RecordStore

logger = logging.getLogger(__name__)
audit = logging.getLogger("hallmark.audit")

_SEARCH_FIELDS = ("serial", "company", "city", "metal")


def _failure(error: HallmarkError) -> dict[str, Any]:
    return {"success": False, "error": error.to_dict()}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Serials
# ---------------------------------------------------------------------------


async def generate_serial_tool(
    store: RecordStore,
    allocator: SerialAllocator,
    today: date | None = None,
) -> dict[str, Any]:
    """Propose the next free serial for the current year.

    The serial is not reserved; issuing it can still hit a conflict if
    another request takes it first.
    """
    try:
        serials = await store.all_serials()
        serial = allocator.allocate(serials, today=today)
    except HallmarkError as e:
        return _failure(e)
    logger.info("Serial generated: %s (previous: %s).", serial, serials[-1] if serials else None)
    return {
        "success": True,
        "serial": serial,
        "total_serials": len(serials),
        "timestamp": _now(),
    }


async def validate_serial_tool(
    store: RecordStore,
    allocator: SerialAllocator,
    serial: str,
) -> dict[str, Any]:
    """Report format validity, uniqueness and decoded parts of a serial."""
    if not serial:
        return _failure(ValidationError("Serial is required"))
    try:
        is_unique = await store.is_unique(serial)
    except HallmarkError as e:
        return _failure(e)
    return {
        "success": True,
        "serial": serial,
        "is_valid": allocator.validate_format(serial),
        "is_unique": is_unique,
        "serial_info": allocator.serial_info(serial),
    }


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


async def issue_certificate_tool(
    coordinator: IssuanceCoordinator,
    data: Mapping[str, Any],
) -> dict[str, Any]:
    """Issue one certificate: validate, reserve, commit to the ledger, persist.

    Returns dict with:
        success: True when the certificate is on the ledger and in the store.
        serial, ledger_reference_hash, ledger_reference_link, block_index,
        resource_used, write_date: on success.
        error: ``{kind, message, stage}`` on failure. ``kind ==
        "reconciliation_required"`` means the ledger write landed but the
        store write did not; the reference is included for the operator.
    """
    try:
        result = await coordinator.issue(data)
    except HallmarkError as e:
        return _failure(e)
    return {"success": True, **result.to_dict()}


async def bulk_validate_tool(
    bulk: BulkCoordinator,
    rows: Sequence[Mapping[str, Any]],
) -> dict[str, Any]:
    """Validate a batch without side effects. Rows are numbered from 1."""
    try:
        report = await bulk.validate(rows)
    except HallmarkError as e:
        return _failure(e)
    return {"success": True, **report.to_dict()}


async def bulk_validate_csv_tool(
    bulk: BulkCoordinator,
    content: str | bytes,
) -> dict[str, Any]:
    """Validate an uploaded CSV without side effects.

    Rows are numbered as lines of the file, so the first data row is 2.
    """
    try:
        report = await bulk.validate_csv(content)
    except HallmarkError as e:
        return _failure(e)
    return {"success": True, **report.to_dict()}


async def bulk_write_tool(
    bulk: BulkCoordinator,
    rows: Sequence[Mapping[str, Any]],
) -> dict[str, Any]:
    """Issue a batch. Fails closed: nothing is stored unless every row commits.

    A ConcurrencyError (another batch running) is the only failure returned
    without per-row detail.
    """
    try:
        report = await bulk.write(rows)
    except HallmarkError as e:
        return _failure(e)
    return report.to_dict()


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


async def verify_certificate_tool(
    store: RecordStore,
    ledger: LedgerWriter,
    allocator: SerialAllocator,
    serial: str,
) -> dict[str, Any]:
    """Look up a certificate and check its ledger transaction."""
    if not allocator.validate_format(serial):
        return _failure(ValidationError(
            f"Invalid serial format (must be {allocator.serial_length} digits)"
        ))

    try:
        record = await store.find_by_serial(serial)
    except HallmarkError as e:
        return _failure(e)

    if record is None:
        audit.info("Certificate verification", extra={"type": "VERIFY", "serial": serial, "found": False})
        return {
            "success": False,
            "serial": serial,
            "error": {"kind": "not_found", "message": "Certificate not found"},
        }

    verification = None
    ledger_data = None
    if record.ledger_reference is not None:
        tx_hash = record.ledger_reference.transaction_hash
        verification = await ledger.verify(tx_hash)
        try:
            ledger_data = await ledger.read(tx_hash)
        except HallmarkError as e:
            logger.warning("Could not read ledger data for %s (tx %s): %s", serial, tx_hash, e)

    audit.info("Certificate verification", extra={"type": "VERIFY", "serial": serial, "found": True})
    return {
        "success": True,
        "certificate": record.to_dict(),
        "ledger_verification": verification,
        "ledger_data": ledger_data,
        "timestamp": _now(),
    }


async def read_ledger_data_tool(ledger: LedgerWriter, tx_hash: str) -> dict[str, Any]:
    """Decode the certificate payload stored in a transaction."""
    if not tx_hash or not tx_hash.startswith("0x"):
        return _failure(ValidationError("Invalid transaction hash"))
    try:
        data = await ledger.read(tx_hash)
    except HallmarkError as e:
        return _failure(e)
    return {"success": True, "data": data, "timestamp": _now()}


# ---------------------------------------------------------------------------
# Listing and statistics
# ---------------------------------------------------------------------------


def _write_date_key(write_date: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(write_date.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def list_certificates_tool(
    store: RecordStore,
    search: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> dict[str, Any]:
    """Certificates newest first, optionally filtered by a case-insensitive search."""
    if limit < 0 or offset < 0:
        return _failure(ValidationError("limit and offset must be non-negative"))
    try:
        records = await store.read_all()
    except HallmarkError as e:
        return _failure(e)

    rows = [r.to_dict() for r in records]
    if search:
        needle = search.lower()
        rows = [r for r in rows if any(needle in r[f].lower() for f in _SEARCH_FIELDS)]

    rows.sort(key=lambda r: _write_date_key(r["write_date"]), reverse=True)
    total = len(rows)
    return {
        "success": True,
        "certificates": rows[offset:offset + limit],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < total,
        },
    }


async def stats_tool(store: RecordStore, ledger: LedgerWriter) -> dict[str, Any]:
    """Certificate counts by metal, year and month, plus ledger status."""
    try:
        records = await store.read_all()
    except HallmarkError as e:
        return _failure(e)

    by_metal: dict[str, int] = {}
    by_year: dict[str, int] = {}
    by_month: dict[str, int] = {}
    for record in records:
        by_metal[record.metal] = by_metal.get(record.metal, 0) + 1
        if not record.write_date:
            continue
        written = _write_date_key(record.write_date)
        if written.year == 1:
            continue
        year = str(written.year)
        month = f"{written.year}-{written.month:02d}"
        by_year[year] = by_year.get(year, 0) + 1
        by_month[month] = by_month.get(month, 0) + 1

    serials = [r.serial for r in records]
    return {
        "success": True,
        "stats": {
            "total_certificates": len(records),
            "last_serial": max(serials) if serials else None,
            "blockchain": await ledger.check_connection(),
            "by_metal": by_metal,
            "by_year": by_year,
            "by_month": by_month,
        },
        "timestamp": _now(),
    }


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


async def update_row_tool(
    store: RecordStore,
    index: int,
    fields: Mapping[str, Any],
) -> dict[str, Any]:
    """Edit the row at ``index``; the store snapshots before rewriting."""
    try:
        updated = await store.update(index, fields)
    except HallmarkError as e:
        return _failure(e)
    return {"success": True, "data": updated.to_dict(), "timestamp": _now()}


async def delete_row_tool(store: RecordStore, index: int) -> dict[str, Any]:
    """Delete the row at ``index``; the store snapshots before rewriting."""
    try:
        deleted = await store.delete(index)
    except HallmarkError as e:
        return _failure(e)
    return {"success": True, "deleted_row": deleted.to_dict(), "timestamp": _now()}


async def list_backups_tool(store: RecordStore) -> dict[str, Any]:
    try:
        backups = await store.list_backups()
    except HallmarkError as e:
        return _failure(e)
    return {"success": True, "backups": backups}


async def reconcile_tool(
    queue: ReconciliationQueue,
    store: RecordStore,
    apply: bool = False,
) -> dict[str, Any]:
    """List ledger-committed records missing from the store; persist them if ``apply``."""
    try:
        if apply:
            outcome = await queue.reconcile_pending(store)
            return {"success": True, **outcome}
        entries = await queue.pending()
    except HallmarkError as e:
        return _failure(e)
    return {
        "success": True,
        "pending": [e.to_dict() for e in entries],
        "count": len(entries),
    }


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


async def health_tool(store: RecordStore, ledger: LedgerWriter) -> dict[str, Any]:
    """Ledger connectivity plus the most recent serial in the store."""
    try:
        last_serial = await store.last_serial()
    except HallmarkError as e:
        return _failure(e)
    return {
        "success": True,
        "status": "healthy",
        "timestamp": _now(),
        "blockchain": await ledger.check_connection(),
        "last_serial": last_serial,
    }


async def config_status_tool(
    config: HallmarkConfig,
    ledger: LedgerWriter | None,
) -> dict[str, Any]:
    """Report configuration state and ledger reachability for diagnostics.

    Secrets are reported as present/missing only.
    """
    result: dict[str, Any] = {
        "csv_path": config.csv_path,
        "backup_path": config.backup_path,
        "users_csv_path": config.users_csv_path,
        "rpc_url": config.rpc_url or None,
        "chain_id": config.chain_id,
        "private_key_status": "present" if config.private_key else "missing",
        "explorer_base_url": config.explorer_base_url or None,
        "serial_length": config.serial_length,
        "max_progressive": config.max_progressive,
        "auto_backup": config.auto_backup,
        "backup_retention_days": config.backup_retention_days,
    }

    versions: dict[str, str] = {"python": platform.python_version()}
    for pkg in ("hallmark", "httpx", "eth-account"):
        try:
            versions[pkg.replace("-", "_")] = importlib.metadata.version(pkg)
        except importlib.metadata.PackageNotFoundError:
            versions[pkg.replace("-", "_")] = "unknown"
    result["versions"] = versions

    if ledger is None:
        result["ledger_reachable"] = None
        return result

    connection = await ledger.check_connection()
    result["ledger_reachable"] = connection["connected"]
    if connection["connected"]:
        result["wallet_address"] = connection["wallet"]["address"]
        result["wallet_balance"] = connection["wallet"]["balance"]
        chain_id = connection["network"]["chain_id"]
        result["network_matches"] = config.chain_id is None or chain_id == config.chain_id
    else:
        result["ledger_error"] = connection.get("error")
    return result
