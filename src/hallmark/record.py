"""Certificate record model. Pure data, no I/O.

``bar_type`` is a tagged union: ``InvestmentBar`` carries nothing extra,
``CustomBar`` carries the engraving fields. Records map one-to-one onto
store rows via ``to_row()`` / ``from_row()``.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, ClassVar, Union

from hallmark.constants import (
    CUSTOM_FIELDS,
    CUSTOM_ICON_CODE_MAX,
    CUSTOM_TEXT_MAX,
    LEGACY_COLUMN_ALIASES,
    REQUIRED_FIELDS,
    STORE_COLUMNS,
    BarType,
)
from hallmark.errors import ValidationError
from hallmark.serial import SerialAllocator


# ---------------------------------------------------------------------------
# Bar variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InvestmentBar:
    """Standard investment bar with no custom engraving."""

    bar_type: ClassVar[BarType] = BarType.INVESTMENT

    def to_row(self) -> dict[str, str]:
        return {
            "bar_type": self.bar_type.value,
            "custom_icon_code": "",
            "custom_date": "",
            "custom_text": "",
        }


@dataclass(frozen=True)
class CustomBar:
    """Custom bar with an icon, a commemorative date and a short text."""

    icon_code: str
    custom_date: str  # ISO YYYY-MM-DD
    custom_text: str

    bar_type: ClassVar[BarType] = BarType.CUSTOM

    def to_row(self) -> dict[str, str]:
        return {
            "bar_type": self.bar_type.value,
            "custom_icon_code": self.icon_code,
            "custom_date": self.custom_date,
            "custom_text": self.custom_text,
        }


BarVariant = Union[InvestmentBar, CustomBar]


# ---------------------------------------------------------------------------
# LedgerReference
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerReference:
    """Transaction hash of a committed write plus its explorer link."""

    transaction_hash: str
    explorer_link: str = ""


# ---------------------------------------------------------------------------
# CertificateRecord
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CertificateRecord:
    """One issued certificate, keyed by ``serial``."""

    serial: str
    company: str
    production_date: str
    city: str
    country: str
    weight: str
    metal: str
    fineness: str
    tax_code: str
    social_capital: str
    authorization: str
    user: str
    bar: BarVariant = InvestmentBar()
    write_date: str = ""
    ledger_reference: LedgerReference | None = None

    @property
    def bar_type(self) -> BarType:
        return self.bar.bar_type

    def with_reference(self, reference: LedgerReference, write_date: str) -> CertificateRecord:
        """Return a copy stamped with its ledger reference and write date."""
        return dataclasses.replace(self, ledger_reference=reference, write_date=write_date)

    # -- serialization --------------------------------------------------------

    def to_row(self) -> dict[str, str]:
        """Flat row in ``STORE_COLUMNS`` order."""
        ref = self.ledger_reference
        values = {
            "serial": self.serial,
            "company": self.company,
            "production_date": self.production_date,
            "city": self.city,
            "country": self.country,
            "weight": self.weight,
            "metal": self.metal,
            "fineness": self.fineness,
            "tax_code": self.tax_code,
            "social_capital": self.social_capital,
            "authorization": self.authorization,
            **self.bar.to_row(),
            "ledger_reference_hash": ref.transaction_hash if ref else "",
            "ledger_reference_link": ref.explorer_link if ref else "",
            "user": self.user,
            "write_date": self.write_date,
        }
        return {col: values[col] for col in STORE_COLUMNS}

    def to_dict(self) -> dict[str, Any]:
        return self.to_row()

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> CertificateRecord:
        """Build a record from a stored row without validating it.

        Accepts legacy ``blockchain_*`` headers. Unknown bar types are read as
        investment so a hand-edited store never blocks reads.
        """
        data = {LEGACY_COLUMN_ALIASES.get(k, k): v for k, v in row.items() if k is not None}

        def _get(key: str) -> str:
            value = data.get(key)
            return "" if value is None else str(value)

        bar: BarVariant
        if _get("bar_type").strip().lower() == BarType.CUSTOM.value:
            bar = CustomBar(
                icon_code=_get("custom_icon_code"),
                custom_date=_get("custom_date"),
                custom_text=_get("custom_text"),
            )
        else:
            bar = InvestmentBar()

        tx_hash = _get("ledger_reference_hash")
        reference = (
            LedgerReference(tx_hash, _get("ledger_reference_link")) if tx_hash else None
        )

        return cls(
            serial=_get("serial"),
            company=_get("company"),
            production_date=_get("production_date"),
            city=_get("city"),
            country=_get("country"),
            weight=_get("weight"),
            metal=_get("metal"),
            fineness=_get("fineness"),
            tax_code=_get("tax_code"),
            social_capital=_get("social_capital"),
            authorization=_get("authorization"),
            user=_get("user"),
            bar=bar,
            write_date=_get("write_date"),
            ledger_reference=reference,
        )


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


def _clean(value: Any) -> str:
    return "" if value is None else str(value).strip()


def parse_date(raw: str) -> date:
    """Parse a strict ``YYYY-MM-DD`` date. Raises ``ValueError`` otherwise."""
    return datetime.strptime(raw, "%Y-%m-%d").date()


def validate_fields(
    data: Mapping[str, Any],
    allocator: SerialAllocator,
    today: date | None = None,
) -> list[str]:
    """Check required fields, serial format and bar-type rules.

    Returns every problem found; an empty list means the request is valid.
    Uniqueness and user existence need I/O and are checked by the callers.
    """
    errors: list[str] = []

    missing = [f for f in REQUIRED_FIELDS if not _clean(data.get(f))]
    if missing:
        errors.append(f"Missing required fields: {', '.join(missing)}")

    serial = _clean(data.get("serial"))
    if not allocator.validate_format(serial):
        errors.append(
            f"Invalid serial format (must be {allocator.serial_length} digits)"
        )

    errors.extend(validate_bar_fields(data, today))
    return errors


def validate_bar_fields(data: Mapping[str, Any], today: date | None = None) -> list[str]:
    """Bar-type rules alone: the type itself and, for custom bars, the engraving."""
    bar_type = _clean(data.get("bar_type")).lower()
    if bar_type not in {b.value for b in BarType}:
        return ['bar_type must be either "investment" or "custom"']
    if bar_type == BarType.CUSTOM.value:
        return _validate_custom(data, today or date.today())
    return []


def _validate_custom(data: Mapping[str, Any], today: date) -> list[str]:
    errors: list[str] = []
    missing = [f for f in CUSTOM_FIELDS if not _clean(data.get(f))]
    if missing:
        errors.append(f"Missing custom fields: {', '.join(missing)}")

    if len(_clean(data.get("custom_icon_code"))) > CUSTOM_ICON_CODE_MAX:
        errors.append(f"custom_icon_code too long (max {CUSTOM_ICON_CODE_MAX} chars)")

    raw_date = _clean(data.get("custom_date"))
    if raw_date:
        try:
            parsed = parse_date(raw_date)
        except ValueError:
            errors.append("custom_date must be a valid date (YYYY-MM-DD)")
        else:
            if parsed > today:
                errors.append("custom_date must not be in the future")

    if len(_clean(data.get("custom_text"))) > CUSTOM_TEXT_MAX:
        errors.append(f"custom_text too long (max {CUSTOM_TEXT_MAX} chars)")
    return errors


def parse_certificate(
    data: Mapping[str, Any],
    allocator: SerialAllocator,
    today: date | None = None,
) -> CertificateRecord:
    """Validate a request and build an unreferenced record.

    Raises ``ValidationError`` listing every problem. Custom fields sent
    with an investment bar are dropped.
    """
    errors = validate_fields(data, allocator, today)
    if errors:
        raise ValidationError("; ".join(errors), errors)

    bar: BarVariant
    if _clean(data.get("bar_type")).lower() == BarType.CUSTOM.value:
        bar = CustomBar(
            icon_code=_clean(data.get("custom_icon_code")),
            custom_date=parse_date(_clean(data.get("custom_date"))).isoformat(),
            custom_text=_clean(data.get("custom_text")),
        )
    else:
        bar = InvestmentBar()

    return CertificateRecord(
        serial=_clean(data.get("serial")),
        company=_clean(data.get("company")),
        production_date=_clean(data.get("production_date")),
        city=_clean(data.get("city")),
        country=_clean(data.get("country")),
        weight=_clean(data.get("weight")),
        metal=_clean(data.get("metal")),
        fineness=_clean(data.get("fineness")),
        tax_code=_clean(data.get("tax_code")),
        social_capital=_clean(data.get("social_capital")),
        authorization=_clean(data.get("authorization")),
        user=_clean(data.get("user")),
        bar=bar,
    )
