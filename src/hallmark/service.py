"""Wire the issuance components from a HallmarkConfig.

The host application owns the event loop and the outer surface (HTTP,
auth); it builds one ``HallmarkService`` at startup and passes its parts
to the tools.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from hallmark.bulk import BulkCoordinator
from hallmark.config import HallmarkConfig
from hallmark.issuance import IssuanceCoordinator
from hallmark.ledger_client import LedgerWriter
from hallmark.reconciliation import ReconciliationQueue
from hallmark.registry import CsvUserRegistry, StaticUserRegistry, UserRegistry
from hallmark.retention import BackupRetention
from hallmark.serial import SerialAllocator
from hallmark.store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class HallmarkService:
    config: HallmarkConfig
    allocator: SerialAllocator
    store: RecordStore
    ledger: LedgerWriter
    registry: UserRegistry
    reconciliation: ReconciliationQueue
    issuance: IssuanceCoordinator
    bulk: BulkCoordinator
    retention: BackupRetention

    @classmethod
    def from_config(cls, config: HallmarkConfig) -> HallmarkService:
        """Build every component. Raises ValueError if the ledger is not configured."""
        if not config.rpc_url or not config.private_key:
            raise ValueError("rpc_url and private_key are required to write certificates")

        allocator = SerialAllocator(
            serial_length=config.serial_length,
            max_progressive=config.max_progressive,
        )
        reconciliation = ReconciliationQueue(config.reconciliation_path)
        store = RecordStore(
            config.csv_path,
            config.backup_path,
            delimiter=config.csv_delimiter,
            encoding=config.csv_encoding,
            allocator=allocator,
            reconciliation=reconciliation,
        )
        ledger = LedgerWriter(
            config.rpc_url,
            config.private_key,
            chain_id=config.chain_id,
            explorer_base_url=config.explorer_base_url,
            gas_limit_multiplier=config.gas_limit_multiplier,
            max_gas_price=config.max_gas_price,
            max_fee_wei=config.max_fee_wei,
            confirmation_timeout_secs=config.confirmation_timeout_secs,
        )
        registry: UserRegistry
        if config.users_csv_path:
            registry = CsvUserRegistry(
                config.users_csv_path,
                delimiter=config.csv_delimiter,
                encoding=config.csv_encoding,
            )
        else:
            logger.warning("No users file configured; every user id will be rejected.")
            registry = StaticUserRegistry()

        return cls(
            config=config,
            allocator=allocator,
            store=store,
            ledger=ledger,
            registry=registry,
            reconciliation=reconciliation,
            issuance=IssuanceCoordinator(
                store, ledger, allocator, registry=registry, reconciliation=reconciliation,
            ),
            bulk=BulkCoordinator(
                store,
                ledger,
                registry,
                allocator,
                reconciliation=reconciliation,
                delimiter=config.csv_delimiter,
                encoding=config.csv_encoding,
            ),
            retention=BackupRetention(
                store,
                retention_days=config.backup_retention_days,
                interval_secs=config.backup_interval_secs,
            ),
        )

    async def start(self) -> None:
        if self.config.auto_backup:
            await self.retention.start()

    async def stop(self) -> None:
        await self.retention.stop()
        await self.ledger.close()
