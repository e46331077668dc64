"""Tests for SerialAllocator: format validation, parsing, gap-filling allocation."""

from datetime import date

import pytest

from hallmark.errors import AllocationExhausted
from hallmark.serial import SerialAllocator, SerialParts


TODAY = date(2026, 3, 15)


# ---------------------------------------------------------------------------
# validate_format
# ---------------------------------------------------------------------------


class TestValidateFormat:
    def test_accepts_seven_digits(self) -> None:
        assert SerialAllocator().validate_format("2600001") is True

    @pytest.mark.parametrize("serial", ["260001", "26000001", "", "0"])
    def test_rejects_wrong_length(self, serial: str) -> None:
        assert SerialAllocator().validate_format(serial) is False

    @pytest.mark.parametrize("serial", ["26000a1", "26-0001", " 260001", "2600 01", "２６00001"])
    def test_rejects_non_digits(self, serial: str) -> None:
        assert SerialAllocator().validate_format(serial) is False

    def test_rejects_non_string(self) -> None:
        alloc = SerialAllocator()
        assert alloc.validate_format(2600001) is False
        assert alloc.validate_format(None) is False

    def test_configurable_length(self) -> None:
        alloc = SerialAllocator(serial_length=9, max_progressive=9_999_999)
        assert alloc.validate_format("260000001") is True
        assert alloc.validate_format("2600001") is False


class TestConstructor:
    def test_length_must_exceed_period(self) -> None:
        with pytest.raises(ValueError, match="must exceed"):
            SerialAllocator(serial_length=2, period_digits=2)

    def test_max_must_fit_width(self) -> None:
        with pytest.raises(ValueError, match="does not fit"):
            SerialAllocator(serial_length=7, max_progressive=100_000)


# ---------------------------------------------------------------------------
# parse / format
# ---------------------------------------------------------------------------


class TestParse:
    def test_parse_components(self) -> None:
        parts = SerialAllocator().parse("2600042")
        assert parts == SerialParts(period=26, full_year=2026, progressive=42)

    def test_parse_invalid_returns_none(self) -> None:
        assert SerialAllocator().parse("26x0042") is None

    def test_format_zero_pads(self) -> None:
        assert SerialAllocator().format(5, 7) == "0500007"


# ---------------------------------------------------------------------------
# allocate
# ---------------------------------------------------------------------------


class TestAllocate:
    def test_empty_set_returns_first(self) -> None:
        assert SerialAllocator().allocate(set(), today=TODAY) == "2600001"

    def test_fills_gap(self) -> None:
        existing = {"2600001", "2600002", "2600004"}
        assert SerialAllocator().allocate(existing, today=TODAY) == "2600003"

    def test_contiguous_returns_next(self) -> None:
        existing = {"2600001", "2600002", "2600003"}
        assert SerialAllocator().allocate(existing, today=TODAY) == "2600004"

    def test_gap_at_start(self) -> None:
        assert SerialAllocator().allocate({"2600002", "2600003"}, today=TODAY) == "2600001"

    def test_ignores_other_periods(self) -> None:
        existing = {"2500001", "2500002", "2600001"}
        assert SerialAllocator().allocate(existing, today=TODAY) == "2600002"

    def test_ignores_invalid_serials(self) -> None:
        existing = ["2600001", "garbage", "", "26000002"]
        assert SerialAllocator().allocate(existing, today=TODAY) == "2600002"

    def test_ignores_progressive_zero(self) -> None:
        assert SerialAllocator().allocate({"2600000"}, today=TODAY) == "2600001"

    def test_deterministic(self) -> None:
        alloc = SerialAllocator()
        existing = {"2600001", "2600003"}
        assert alloc.allocate(existing, today=TODAY) == alloc.allocate(existing, today=TODAY)

    def test_exhausted_at_maximum(self) -> None:
        alloc = SerialAllocator(max_progressive=3)
        existing = {"2600001", "2600002", "2600003"}
        with pytest.raises(AllocationExhausted, match="limit reached"):
            alloc.allocate(existing, today=TODAY)

    def test_gap_below_maximum_still_allocates(self) -> None:
        alloc = SerialAllocator(max_progressive=3)
        assert alloc.allocate({"2600001", "2600003"}, today=TODAY) == "2600002"

    def test_exhausted_kind(self) -> None:
        alloc = SerialAllocator(max_progressive=1)
        with pytest.raises(AllocationExhausted) as exc_info:
            alloc.allocate({"2600001"}, today=TODAY)
        assert exc_info.value.to_dict()["kind"] == "allocation_exhausted"


# ---------------------------------------------------------------------------
# date helpers
# ---------------------------------------------------------------------------


class TestDateHelpers:
    def test_serial_for_date(self) -> None:
        assert SerialAllocator().serial_for_date(date(2031, 1, 1), 12) == "3100012"

    def test_is_valid_for_date(self) -> None:
        alloc = SerialAllocator()
        assert alloc.is_valid_for_date("2600001", TODAY) is True
        assert alloc.is_valid_for_date("2500001", TODAY) is False
        assert alloc.is_valid_for_date("bad", TODAY) is False

    def test_serial_info(self) -> None:
        info = SerialAllocator().serial_info("2600042", today=TODAY)
        assert info == {
            "serial": "2600042",
            "year": 26,
            "full_year": 2026,
            "progressive": 42,
            "is_current_year": True,
            "is_valid": True,
            "format": "YYNNNNN",
        }

    def test_serial_info_invalid(self) -> None:
        assert SerialAllocator().serial_info("abc") is None
