"""Single-certificate issuance pipeline.

States: VALIDATING -> CHECKING_UNIQUENESS -> COMMITTING -> PERSISTING -> DONE,
with FAILED reachable from any of them. Errors raised out of ``issue()``
carry the state they failed in as ``exc.stage``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import TYPE_CHECKING, Any

from hallmark.errors import ConflictError, HallmarkError, ReconciliationError, StoreError, ValidationError
from hallmark.reconciliation import REASON_STORE_FAILED
from hallmark.record import CertificateRecord, parse_certificate
from hallmark.serial import SerialAllocator

if TYPE_CHECKING:
    from hallmark.ledger_client import LedgerReceipt, LedgerWriter
    from hallmark.reconciliation import ReconciliationQueue
    from hallmark.registry import UserRegistry
    from hallmark.store import RecordStore

logger = logging.getLogger(__name__)
audit = logging.getLogger("hallmark.audit")


class IssuanceState(str, Enum):
    VALIDATING = "validating"
    CHECKING_UNIQUENESS = "checking_uniqueness"
    COMMITTING = "committing"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class IssuanceResult:
    """A persisted certificate and the receipt of its ledger commit."""

    record: CertificateRecord
    receipt: LedgerReceipt
    state: IssuanceState = IssuanceState.DONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "serial": self.record.serial,
            "ledger_reference_hash": self.receipt.transaction_hash,
            "ledger_reference_link": self.receipt.explorer_link,
            "block_index": self.receipt.block_number,
            "resource_used": self.receipt.gas_used,
            "write_date": self.record.write_date,
        }


class IssuanceCoordinator:
    """Validates, reserves, commits and persists one certificate."""

    def __init__(
        self,
        store: RecordStore,
        ledger: LedgerWriter,
        allocator: SerialAllocator | None = None,
        registry: UserRegistry | None = None,
        reconciliation: ReconciliationQueue | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._allocator = allocator or SerialAllocator()
        self._registry = registry
        self._reconciliation = reconciliation

    async def issue(self, data: Mapping[str, Any], today: date | None = None) -> IssuanceResult:
        """Run the full pipeline for one request.

        Raises:
            ValidationError: bad fields or unknown user; nothing happened.
            ConflictError: serial exists or is being issued; nothing happened.
            LedgerError: commit failed; nothing persisted, ledger state unknown.
            ReconciliationError: committed on the ledger but not stored locally.
        """
        state = IssuanceState.VALIDATING
        try:
            record = parse_certificate(data, self._allocator, today)
            if self._registry is not None and not await self._registry.user_exists(record.user):
                raise ValidationError(f"Invalid user: {record.user} does not exist")

            state = IssuanceState.CHECKING_UNIQUENESS
            async with self._store.reserve(record.serial):
                state = IssuanceState.COMMITTING
                logger.info("Starting ledger write for serial %s.", record.serial)
                receipt = await self._ledger.commit(record)
                committed = record.with_reference(receipt.reference, receipt.timestamp)

                state = IssuanceState.PERSISTING
                await self._persist(committed, receipt)
        except HallmarkError as e:
            e.stage = e.stage or state.value
            logger.warning(
                "Issuance of serial %s failed while %s: %s",
                data.get("serial"), state.value, e.message,
            )
            raise

        audit.info(
            "Certificate created",
            extra={
                "type": "CERTIFICATE_CREATED",
                "serial": committed.serial,
                "company": committed.company,
                "user": committed.user,
                "transaction_hash": receipt.transaction_hash,
                "block_number": receipt.block_number,
                "gas_used": receipt.gas_used,
            },
        )
        return IssuanceResult(record=committed, receipt=receipt)

    async def _persist(self, committed: CertificateRecord, receipt: LedgerReceipt) -> None:
        try:
            await self._store.append(committed)
        except (StoreError, ConflictError) as e:
            logger.error(
                "CRITICAL: Serial %s committed in tx %s but not stored locally: %s",
                committed.serial, receipt.transaction_hash, e,
            )
            if self._reconciliation is not None:
                await self._reconciliation.enqueue([committed], REASON_STORE_FAILED, str(e))
            raise ReconciliationError(
                f"Certificate {committed.serial} was written to the ledger "
                f"(tx {receipt.transaction_hash}) but could not be stored locally: {e.message}",
                serial=committed.serial,
                transaction_hash=receipt.transaction_hash,
                explorer_link=receipt.explorer_link,
            ) from e
