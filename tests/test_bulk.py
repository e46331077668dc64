"""Tests for BulkCoordinator: validation, single-flight and all-or-nothing writes."""

import asyncio
from datetime import date
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from hallmark.bulk import (
    COMMITTED_UNPERSISTED,
    INVALID,
    LEDGER_FAILED,
    NOT_ATTEMPTED,
    WRITTEN,
    BulkCoordinator,
    parse_csv_rows,
)
from hallmark.errors import ConcurrencyError, LedgerError, StoreError, ValidationError
from hallmark.ledger_client import LedgerReceipt
from hallmark.reconciliation import REASON_BULK_ABORTED, REASON_STORE_FAILED, ReconciliationQueue
from hallmark.record import CertificateRecord, LedgerReference
from hallmark.registry import StaticUserRegistry
from hallmark.store import RecordStore


TODAY = date(2026, 3, 15)


def _receipt(serial: str) -> LedgerReceipt:
    tx = f"0x{serial}"
    return LedgerReceipt(
        transaction_hash=tx,
        block_number=1000,
        gas_used="21000",
        explorer_link=f"https://polygonscan.com/tx/{tx}",
        timestamp="2026-03-15T10:00:00+00:00",
    )


def _ledger(fail_on: str | None = None) -> AsyncMock:
    ledger = AsyncMock()

    def _commit(record):
        if record.serial == fail_on:
            raise LedgerError("insufficient funds")
        return _receipt(record.serial)

    ledger.commit.side_effect = _commit
    return ledger


def _row(serial: str, **overrides) -> dict:
    data = {
        "serial": serial,
        "company": "Aurum SpA",
        "production_date": "2026-03-01",
        "city": "Arezzo",
        "country": "Italy",
        "weight": "100",
        "metal": "Gold",
        "fineness": "999.9",
        "tax_code": "IT01234567890",
        "social_capital": "100000",
        "authorization": "AUTH-7",
        "user": "u1",
        "bar_type": "investment",
    }
    data.update(overrides)
    return data


def _rows(n: int) -> list[dict]:
    return [_row(f"26{i:05d}") for i in range(1, n + 1)]


def _bulk(tmp_path: Path, ledger: AsyncMock | None = None):
    queue = ReconciliationQueue(tmp_path / "reconciliation.jsonl")
    store = RecordStore(tmp_path / "certificates.csv", tmp_path / "backups", reconciliation=queue)
    ledger = ledger or _ledger()
    bulk = BulkCoordinator(
        store,
        ledger,
        StaticUserRegistry({"u1"}),
        reconciliation=queue,
    )
    return bulk, store, ledger, queue


def _stored(serial: str) -> CertificateRecord:
    return CertificateRecord(
        serial=serial, company="Aurum SpA", production_date="2026-03-01",
        city="Arezzo", country="Italy", weight="100", metal="Gold",
        fineness="999.9", tax_code="IT01234567890", social_capital="100000",
        authorization="AUTH-7", user="u1",
        ledger_reference=LedgerReference(f"0x{serial}"),
    )


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


class TestValidate:
    @pytest.mark.asyncio
    async def test_all_valid(self, tmp_path: Path) -> None:
        bulk, _, _, _ = _bulk(tmp_path)
        report = await bulk.validate(_rows(3), today=TODAY)
        assert report.ok
        assert report.to_dict() == {
            "total_rows": 3,
            "valid_rows": 3,
            "invalid_rows": 0,
            "per_row_errors": [],
        }

    @pytest.mark.asyncio
    async def test_duplicate_rows_both_flagged(self, tmp_path: Path) -> None:
        bulk, _, _, _ = _bulk(tmp_path)
        rows = [_row("2600001"), _row("2600002"), _row("2600001")]
        report = await bulk.validate(rows, today=TODAY)
        assert [e.row for e in report.errors] == [1, 3]
        assert all("Duplicate serial in batch" in e.errors for e in report.errors)
        assert report.valid_rows == 1

    @pytest.mark.asyncio
    async def test_existing_serial(self, tmp_path: Path) -> None:
        bulk, store, _, _ = _bulk(tmp_path)
        await store.append(_stored("2600002"))
        report = await bulk.validate(_rows(2), today=TODAY)
        (error,) = report.errors
        assert error.row == 2
        assert error.errors == ["Serial already exists in the store"]

    @pytest.mark.asyncio
    async def test_reserved_serial(self, tmp_path: Path) -> None:
        bulk, store, _, _ = _bulk(tmp_path)
        async with store.reserve("2600001"):
            report = await bulk.validate(_rows(1), today=TODAY)
        assert report.errors[0].errors == ["Serial is currently being issued"]

    @pytest.mark.asyncio
    async def test_unknown_user_and_field_errors(self, tmp_path: Path) -> None:
        bulk, _, _, _ = _bulk(tmp_path)
        rows = [_row("2600001", user="ghost"), _row("bad")]
        report = await bulk.validate(rows, today=TODAY)
        assert report.errors[0].errors == ["Invalid user: user_id does not exist"]
        assert report.errors[1].errors == ["Invalid serial format (must be 7 digits)"]
        assert report.errors[1].serial == "bad"

    @pytest.mark.asyncio
    async def test_non_object_row(self, tmp_path: Path) -> None:
        bulk, _, _, _ = _bulk(tmp_path)
        report = await bulk.validate([_row("2600001"), "nope"], today=TODAY)
        (error,) = report.errors
        assert error.to_dict() == {"row": 2, "serial": None, "errors": ["Row is not an object"]}


# ---------------------------------------------------------------------------
# write
# ---------------------------------------------------------------------------


class TestWrite:
    @pytest.mark.asyncio
    async def test_all_rows_written(self, tmp_path: Path) -> None:
        bulk, store, ledger, queue = _bulk(tmp_path)
        report = await bulk.write(_rows(3), today=TODAY)

        assert report.success
        assert report.written == 3
        assert report.failed == 0
        assert [r.status for r in report.results] == [WRITTEN] * 3
        assert ledger.commit.await_count == 3
        assert await store.all_serials() == ["2600001", "2600002", "2600003"]
        assert await queue.pending() == []
        # One rewrite for the whole batch.
        assert await store.list_backups() == []

    @pytest.mark.asyncio
    async def test_commit_order_follows_rows(self, tmp_path: Path) -> None:
        bulk, _, ledger, _ = _bulk(tmp_path)
        rows = [_row("2600003"), _row("2600001"), _row("2600002")]
        await bulk.write(rows, today=TODAY)
        assert [c.args[0].serial for c in ledger.commit.await_args_list] == [
            "2600003", "2600001", "2600002",
        ]

    @pytest.mark.asyncio
    async def test_invalid_batch_has_no_effects(self, tmp_path: Path) -> None:
        bulk, store, ledger, _ = _bulk(tmp_path)
        rows = [_row("2600001"), _row("2600002", user="ghost")]
        report = await bulk.write(rows, today=TODAY)

        assert not report.success
        assert report.written == 0
        assert report.failed == 1
        assert [r.status for r in report.results] == [NOT_ATTEMPTED, INVALID]
        ledger.commit.assert_not_awaited()
        assert await store.read_all() == []

    @pytest.mark.asyncio
    async def test_ledger_failure_mid_batch(self, tmp_path: Path) -> None:
        bulk, store, ledger, queue = _bulk(tmp_path, _ledger(fail_on="2600003"))
        report = await bulk.write(_rows(5), today=TODAY)

        assert not report.success
        assert report.written == 0
        assert report.failed >= 1
        assert report.unreconciled == ["2600001", "2600002"]
        assert report.reconciliation_required
        assert [r.status for r in report.results] == [
            COMMITTED_UNPERSISTED,
            COMMITTED_UNPERSISTED,
            LEDGER_FAILED,
            NOT_ATTEMPTED,
            NOT_ATTEMPTED,
        ]
        assert report.results[2].errors == ["Ledger error: insufficient funds"]
        assert report.results[0].reference.transaction_hash == "0x2600001"
        assert ledger.commit.await_count == 3
        assert await store.read_all() == []

        pending = await queue.pending()
        assert [e.serial for e in pending] == ["2600001", "2600002"]
        assert {e.reason for e in pending} == {REASON_BULK_ABORTED}

    @pytest.mark.asyncio
    async def test_retry_after_abort_does_not_recommit(self, tmp_path: Path) -> None:
        bulk, _, ledger, _ = _bulk(tmp_path, _ledger(fail_on="2600003"))
        await bulk.write(_rows(3), today=TODAY)
        assert ledger.commit.await_count == 3

        report = await bulk.write(_rows(3), today=TODAY)

        assert ledger.commit.await_count == 3
        assert [r.status for r in report.results] == [INVALID, INVALID, NOT_ATTEMPTED]
        assert report.results[0].errors == ["Serial is on the ledger awaiting reconciliation"]

    @pytest.mark.asyncio
    async def test_queued_serial_flagged_by_validate(self, tmp_path: Path) -> None:
        bulk, _, _, queue = _bulk(tmp_path)
        await queue.enqueue([_stored("2600002")], REASON_BULK_ABORTED)
        report = await bulk.validate(_rows(2), today=TODAY)
        (error,) = report.errors
        assert error.row == 2
        assert error.errors == ["Serial is on the ledger awaiting reconciliation"]

    @pytest.mark.asyncio
    async def test_ledger_failure_on_first_row_queues_nothing(self, tmp_path: Path) -> None:
        bulk, _, _, queue = _bulk(tmp_path, _ledger(fail_on="2600001"))
        report = await bulk.write(_rows(2), today=TODAY)
        assert report.unreconciled == []
        assert not report.reconciliation_required
        assert await queue.pending() == []

    @pytest.mark.asyncio
    async def test_store_failure_after_commits(self, tmp_path: Path, monkeypatch) -> None:
        bulk, store, _, queue = _bulk(tmp_path)
        monkeypatch.setattr(store, "append_batch", AsyncMock(side_effect=StoreError("disk full")))

        report = await bulk.write(_rows(2), today=TODAY)

        assert report.written == 0
        assert report.failed == 2
        assert report.unreconciled == ["2600001", "2600002"]
        assert all(r.errors == ["Store error: disk full"] for r in report.results)
        assert {e.reason for e in await queue.pending()} == {REASON_STORE_FAILED}

    @pytest.mark.asyncio
    async def test_empty_batch(self, tmp_path: Path) -> None:
        bulk, _, _, _ = _bulk(tmp_path)
        with pytest.raises(ValidationError):
            await bulk.write([], today=TODAY)
        assert not bulk.in_progress

    @pytest.mark.asyncio
    async def test_report_dict(self, tmp_path: Path) -> None:
        bulk, _, _, _ = _bulk(tmp_path)
        data = (await bulk.write(_rows(1), today=TODAY)).to_dict()
        assert data["success"] is True
        assert data["requested"] == 1
        assert data["written"] == 1
        assert data["unreconciled"] == []
        assert data["per_row_results"][0] == {
            "row": 1,
            "serial": "2600001",
            "success": True,
            "status": WRITTEN,
            "ledger_reference_hash": "0x2600001",
            "ledger_reference_link": "https://polygonscan.com/tx/0x2600001",
        }


# ---------------------------------------------------------------------------
# single-flight
# ---------------------------------------------------------------------------


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_second_batch_rejected(self, tmp_path: Path) -> None:
        gate = asyncio.Event()
        ledger = AsyncMock()

        async def _slow_commit(record):
            await gate.wait()
            return _receipt(record.serial)

        ledger.commit.side_effect = _slow_commit
        bulk, store, _, _ = _bulk(tmp_path, ledger)

        first = asyncio.create_task(bulk.write(_rows(2), today=TODAY))
        await asyncio.sleep(0.05)
        assert bulk.in_progress
        with pytest.raises(ConcurrencyError, match="already in progress"):
            await bulk.write([_row("2600009")], today=TODAY)

        gate.set()
        report = await first
        assert report.success
        assert not bulk.in_progress
        assert await store.all_serials() == ["2600001", "2600002"]

    @pytest.mark.asyncio
    async def test_gate_released_after_unexpected_error(self, tmp_path: Path) -> None:
        ledger = AsyncMock()
        ledger.commit.side_effect = RuntimeError("boom")
        bulk, _, _, _ = _bulk(tmp_path, ledger)

        with pytest.raises(RuntimeError):
            await bulk.write(_rows(1), today=TODAY)
        assert not bulk.in_progress

        bulk._ledger = _ledger()
        report = await bulk.write(_rows(1), today=TODAY)
        assert report.success

    @pytest.mark.asyncio
    async def test_unexpected_error_parks_committed_rows(self, tmp_path: Path) -> None:
        ledger = AsyncMock()
        ledger.commit.side_effect = [_receipt("2600001"), RuntimeError("boom")]
        bulk, _, _, queue = _bulk(tmp_path, ledger)

        with pytest.raises(RuntimeError):
            await bulk.write(_rows(2), today=TODAY)
        assert [e.serial for e in await queue.pending()] == ["2600001"]


# ---------------------------------------------------------------------------
# CSV upload
# ---------------------------------------------------------------------------


class TestCsvUpload:
    def test_parse_rows(self) -> None:
        rows = parse_csv_rows("\ufeffserial ; company\n2600001;Aurum SpA\n2600002\n")
        assert rows == [
            {"serial": "2600001", "company": "Aurum SpA"},
            {"serial": "2600002", "company": ""},
        ]

    def test_parse_other_delimiter(self) -> None:
        assert parse_csv_rows("serial,user\n2600001,u1\n", delimiter=",") == [
            {"serial": "2600001", "user": "u1"}
        ]

    def test_parse_drops_extra_cells(self) -> None:
        assert parse_csv_rows("serial\n2600001;surplus\n") == [{"serial": "2600001"}]

    def test_parse_empty(self) -> None:
        with pytest.raises(ValidationError, match="empty"):
            parse_csv_rows("")

    @pytest.mark.asyncio
    async def test_validate_csv_row_numbers(self, tmp_path: Path) -> None:
        bulk, store, _, _ = _bulk(tmp_path)
        await store.append(_stored("2600002"))
        columns = list(_row("2600001"))
        text = "\n".join(
            [";".join(columns)]
            + [";".join(_row(s)[c] for c in columns) for s in ("2600001", "2600002", "2600001")]
        )

        report = await bulk.validate_csv(text, today=TODAY)

        assert report.total_rows == 3
        assert [(e.row, e.errors) for e in report.errors] == [
            (2, ["Duplicate serial in batch"]),
            (3, ["Serial already exists in the store"]),
            (4, ["Duplicate serial in batch"]),
        ]

    @pytest.mark.asyncio
    async def test_validate_csv_custom_rows(self, tmp_path: Path) -> None:
        bulk, _, _, _ = _bulk(tmp_path)
        row = _row(
            "2600001",
            bar_type="custom",
            custom_icon_code="star",
            custom_date="2026-04-01",
            custom_text="Hi",
        )
        text = ";".join(row) + "\n" + ";".join(row.values()) + "\n"
        report = await bulk.validate_csv(text.encode("utf-8"), today=TODAY)
        assert report.errors[0].row == 2
        assert report.errors[0].errors == ["custom_date must not be in the future"]
