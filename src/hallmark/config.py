"""Hallmark configuration: a plain frozen dataclass, no pydantic.

The host application constructs this from its own settings and passes it
to the components. ``from_env()`` maps the conventional environment
variable names for hosts that just want to read ``os.environ``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from hallmark.constants import MAX_PROGRESSIVE, SERIAL_LENGTH


@dataclass(frozen=True)
class HallmarkConfig:
    csv_path: str = "data/certificates.csv"
    backup_path: str = "data/backups"
    csv_delimiter: str = ";"
    csv_encoding: str = "utf-8"
    users_csv_path: str | None = None
    reconciliation_path: str = "data/reconciliation.jsonl"
    rpc_url: str | None = None
    private_key: str | None = None
    chain_id: int | None = None
    explorer_base_url: str = ""
    gas_limit_multiplier: float = 1.2
    max_gas_price: int = 50_000_000_000  # 50 gwei
    max_fee_wei: int | None = None
    confirmation_timeout_secs: float = 120.0
    serial_length: int = SERIAL_LENGTH
    max_progressive: int = MAX_PROGRESSIVE
    backup_retention_days: int = 30
    auto_backup: bool = False
    backup_interval_secs: int = 24 * 60 * 60

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> HallmarkConfig:
        """Build a config from environment variables, keeping defaults for unset ones."""
        env = os.environ if environ is None else environ
        kwargs: dict[str, object] = {}

        def _str(var: str, field_name: str) -> None:
            value = env.get(var)
            if value:
                kwargs[field_name] = value

        def _num(var: str, field_name: str, cast: type) -> None:
            value = env.get(var)
            if not value:
                return
            try:
                kwargs[field_name] = cast(value)
            except ValueError as e:
                raise ValueError(f"{var} must be a {cast.__name__}, got {value!r}") from e

        _str("CSV_FILE_PATH", "csv_path")
        _str("BACKUP_PATH", "backup_path")
        _str("CSV_DELIMITER", "csv_delimiter")
        _str("CSV_ENCODING", "csv_encoding")
        _str("USERS_CSV_PATH", "users_csv_path")
        _str("RECONCILIATION_PATH", "reconciliation_path")
        _str("POLYGON_RPC_URL", "rpc_url")
        _str("PRIVATE_KEY", "private_key")
        _num("CHAIN_ID", "chain_id", int)
        _str("EXPLORER_BASE_URL", "explorer_base_url")
        _num("GAS_LIMIT_MULTIPLIER", "gas_limit_multiplier", float)
        _num("MAX_GAS_PRICE", "max_gas_price", int)
        _num("MAX_FEE_WEI", "max_fee_wei", int)
        _num("CONFIRMATION_TIMEOUT_SECS", "confirmation_timeout_secs", float)
        _num("SERIAL_LENGTH", "serial_length", int)
        _num("MAX_PROGRESSIVE", "max_progressive", int)
        _num("BACKUP_RETENTION_DAYS", "backup_retention_days", int)
        _num("BACKUP_INTERVAL_SECS", "backup_interval_secs", int)

        auto_backup = env.get("AUTO_BACKUP")
        if auto_backup:
            kwargs["auto_backup"] = auto_backup.strip().lower() == "true"

        return cls(**kwargs)  # type: ignore[arg-type]
