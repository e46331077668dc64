"""Constants for certificate issuance."""

from enum import Enum


SERIAL_LENGTH = 7  # YYNNNNN: 2-digit year + 5-digit progressive
PERIOD_DIGITS = 2
MAX_PROGRESSIVE = 99_999

CUSTOM_ICON_CODE_MAX = 20
CUSTOM_TEXT_MAX = 120

PAYLOAD_TYPE = "GOLD_CERTIFICATE"
PAYLOAD_VERSION = "1.0"
DISCLAIMER = (
    "This certificate is authenticated and recorded on the Polygon blockchain. "
    "The authenticity can be verified through the blockchain transaction hash."
)

# Fields every issuance request must carry (non-empty).
REQUIRED_FIELDS: tuple[str, ...] = (
    "serial",
    "company",
    "production_date",
    "city",
    "country",
    "weight",
    "metal",
    "fineness",
    "tax_code",
    "social_capital",
    "authorization",
    "user",
    "bar_type",
)

CUSTOM_FIELDS: tuple[str, ...] = ("custom_icon_code", "custom_date", "custom_text")

# Column order of the local store. Readers match by name; writers use this order.
STORE_COLUMNS: tuple[str, ...] = (
    "serial",
    "company",
    "production_date",
    "city",
    "country",
    "weight",
    "metal",
    "fineness",
    "tax_code",
    "social_capital",
    "authorization",
    "bar_type",
    "custom_icon_code",
    "custom_date",
    "custom_text",
    "ledger_reference_hash",
    "ledger_reference_link",
    "user",
    "write_date",
)

# Headers written by earlier releases of the store.
LEGACY_COLUMN_ALIASES: dict[str, str] = {
    "blockchain_hash": "ledger_reference_hash",
    "blockchain_link": "ledger_reference_link",
}

BACKUP_PREFIX = "certificates_"
BACKUP_SUFFIX = ".csv"


class BarType(str, Enum):
    """Certificate variants."""

    INVESTMENT = "investment"
    CUSTOM = "custom"
