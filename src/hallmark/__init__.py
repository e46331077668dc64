"""Hallmark: ledger-anchored certificates for precious-metal bars.

Serial allocation, blockchain commit and local CSV persistence, kept
consistent across single and bulk issuance.
"""

__version__ = "0.1.0"

from hallmark.bulk import BulkCoordinator, BulkValidationReport, BulkWriteReport
from hallmark.config import HallmarkConfig
from hallmark.constants import BarType, MAX_PROGRESSIVE, SERIAL_LENGTH
from hallmark.errors import (
    AllocationExhausted,
    ConcurrencyError,
    ConflictError,
    HallmarkError,
    LedgerError,
    ReconciliationError,
    StoreError,
    ValidationError,
)
from hallmark.issuance import IssuanceCoordinator, IssuanceResult, IssuanceState
from hallmark.ledger_client import LedgerReceipt, LedgerWriter
from hallmark.reconciliation import ReconciliationQueue
from hallmark.record import CertificateRecord, CustomBar, InvestmentBar, LedgerReference
from hallmark.registry import CsvUserRegistry, StaticUserRegistry, UserRegistry
from hallmark.retention import BackupRetention
from hallmark.serial import SerialAllocator
from hallmark.service import HallmarkService
from hallmark.store import RecordStore

__all__ = [
    "AllocationExhausted",
    "BackupRetention",
    "BarType",
    "BulkCoordinator",
    "BulkValidationReport",
    "BulkWriteReport",
    "CertificateRecord",
    "ConcurrencyError",
    "ConflictError",
    "CsvUserRegistry",
    "CustomBar",
    "HallmarkConfig",
    "HallmarkError",
    "HallmarkService",
    "InvestmentBar",
    "IssuanceCoordinator",
    "IssuanceResult",
    "IssuanceState",
    "LedgerError",
    "LedgerReceipt",
    "LedgerReference",
    "LedgerWriter",
    "MAX_PROGRESSIVE",
    "ReconciliationError",
    "ReconciliationQueue",
    "RecordStore",
    "SERIAL_LENGTH",
    "SerialAllocator",
    "StaticUserRegistry",
    "StoreError",
    "UserRegistry",
    "ValidationError",
]
