"""Exception taxonomy shared by the issuance pipeline.

Every error carries a ``kind`` discriminator and a human-readable message,
so the tools layer can turn it into ``{"kind": ..., "message": ...}``
without inspecting the class.
"""

from __future__ import annotations

from typing import Any


class HallmarkError(Exception):
    """Base exception for certificate issuance."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        # Pipeline stage the error was raised in, set by the coordinators.
        self.stage: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.stage:
            data["stage"] = self.stage
        return data


class ValidationError(HallmarkError):
    """Malformed, missing or out-of-range field. Raised before any effect."""

    kind = "validation_error"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors) if errors else [message]

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = list(self.errors)
        return data


class ConflictError(HallmarkError):
    """Serial already exists, locally or within a batch."""

    kind = "conflict_error"

    def __init__(self, message: str, serial: str | None = None) -> None:
        super().__init__(message)
        self.serial = serial


class ConcurrencyError(HallmarkError):
    """A bulk operation is already running."""

    kind = "concurrency_error"


class LedgerError(HallmarkError):
    """RPC failure, fee ceiling, rejected transaction or unknown reference.

    The ledger state is indeterminate after this error: the transaction may
    or may not have landed. Nothing has been persisted locally.
    ``transaction_hash`` is set once the node has accepted the transaction;
    look it up before retrying.
    """

    kind = "ledger_error"

    def __init__(self, message: str, transaction_hash: str | None = None) -> None:
        super().__init__(message)
        self.transaction_hash = transaction_hash

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.transaction_hash:
            data["ledger_reference_hash"] = self.transaction_hash
        return data


class StoreError(HallmarkError):
    """I/O failure reading or writing the store or a snapshot."""

    kind = "store_error"


class ReconciliationError(StoreError):
    """Ledger commit succeeded but local persistence failed.

    The ledger now holds a certificate with no local counterpart. An
    operator must reconcile it; the reference is kept on the exception.
    """

    kind = "reconciliation_required"

    def __init__(
        self,
        message: str,
        serial: str,
        transaction_hash: str,
        explorer_link: str = "",
    ) -> None:
        super().__init__(message)
        self.serial = serial
        self.transaction_hash = transaction_hash
        self.explorer_link = explorer_link

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "serial": self.serial,
            "ledger_reference_hash": self.transaction_hash,
            "ledger_reference_link": self.explorer_link,
        })
        return data


class AllocationExhausted(HallmarkError):
    """No progressive left in the current period."""

    kind = "allocation_exhausted"
