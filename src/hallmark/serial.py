"""Serial number validation and gap-filling allocation.

Pure logic, no I/O. A serial is a fixed-width digit string made of a
period prefix (the last ``period_digits`` digits of the year) followed by a
zero-padded progressive, e.g. ``2600042`` is progressive 42 of 2026.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from typing import Any

from hallmark.constants import MAX_PROGRESSIVE, PERIOD_DIGITS, SERIAL_LENGTH
from hallmark.errors import AllocationExhausted

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SerialParts:
    """Components of a parsed serial."""

    period: int
    full_year: int
    progressive: int


class SerialAllocator:
    """Validates, parses and allocates serials.

    Allocation is deterministic for a given snapshot of existing serials.
    It does not guarantee uniqueness between concurrent callers; the store
    reservation does that.
    """

    def __init__(
        self,
        serial_length: int = SERIAL_LENGTH,
        period_digits: int = PERIOD_DIGITS,
        max_progressive: int = MAX_PROGRESSIVE,
    ) -> None:
        if serial_length <= period_digits:
            raise ValueError(
                f"serial_length ({serial_length}) must exceed period_digits ({period_digits})"
            )
        progressive_digits = serial_length - period_digits
        if max_progressive >= 10 ** progressive_digits:
            raise ValueError(
                f"max_progressive ({max_progressive:,}) does not fit in "
                f"{progressive_digits} digits"
            )
        self.serial_length = serial_length
        self.period_digits = period_digits
        self.max_progressive = max_progressive

    @property
    def progressive_digits(self) -> int:
        return self.serial_length - self.period_digits

    def validate_format(self, serial: object) -> bool:
        """True iff ``serial`` is a string of exactly ``serial_length`` ASCII digits."""
        if not isinstance(serial, str) or len(serial) != self.serial_length:
            return False
        return serial.isascii() and serial.isdigit()

    def parse(self, serial: object) -> SerialParts | None:
        if not self.validate_format(serial):
            return None
        assert isinstance(serial, str)
        period = int(serial[: self.period_digits])
        return SerialParts(
            period=period,
            full_year=2000 + period,
            progressive=int(serial[self.period_digits:]),
        )

    def period_of(self, day: date) -> int:
        return day.year % (10 ** self.period_digits)

    def format(self, period: int, progressive: int) -> str:
        return (
            f"{period:0{self.period_digits}d}"
            f"{progressive:0{self.progressive_digits}d}"
        )

    def allocate(self, existing_serials: Iterable[str], today: date | None = None) -> str:
        """Return the smallest unused serial of the current period.

        Scans progressives contiguously from 1 and takes the first gap, so
        ``{1, 2, 4}`` yields 3. Raises ``AllocationExhausted`` when the
        candidate exceeds ``max_progressive``.
        """
        today = today or date.today()
        period = self.period_of(today)

        used = sorted({
            parts.progressive
            for parts in (self.parse(s) for s in existing_serials)
            if parts is not None and parts.period == period
        })

        next_progressive = 1
        for progressive in used:
            if progressive == next_progressive:
                next_progressive += 1
            elif progressive > next_progressive:
                break

        if next_progressive > self.max_progressive:
            raise AllocationExhausted(
                f"Yearly progressive limit reached ({self.max_progressive:,}) "
                f"for period {period:0{self.period_digits}d}"
            )

        serial = self.format(period, next_progressive)
        logger.debug("Allocated serial %s (%d in period).", serial, len(used))
        return serial

    def serial_for_date(self, day: date, progressive: int = 1) -> str:
        return self.format(self.period_of(day), progressive)

    def is_valid_for_date(self, serial: str, day: date) -> bool:
        parts = self.parse(serial)
        return parts is not None and parts.period == self.period_of(day)

    def serial_info(self, serial: str, today: date | None = None) -> dict[str, Any] | None:
        """Describe a serial for display. Returns None if the format is invalid."""
        parts = self.parse(serial)
        if parts is None:
            return None
        today = today or date.today()
        return {
            "serial": serial,
            "year": parts.period,
            "full_year": parts.full_year,
            "progressive": parts.progressive,
            "is_current_year": parts.period == self.period_of(today),
            "is_valid": True,
            "format": "Y" * self.period_digits + "N" * self.progressive_digits,
        }
