"""Typed errors raised by the reconciliation engine.

Every error carries a stable ``error_code`` so that callers (the SDK facade,
the HTTP API) can turn it into a structured result without string matching.
"""

from typing import Any, Dict, Optional


class SiteLedgerError(Exception):
    """Base class for all engine errors."""

    error_code = "SITELEDGER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class UnknownAccount(SiteLedgerError):
    """Raised when an operation references a ledger account that does not exist."""

    error_code = "UNKNOWN_ACCOUNT"

    def __init__(self, account_id: str):
        super().__init__(
            f"Ledger account {account_id} not found",
            details={"account_id": account_id},
        )


class UnknownRecord(SiteLedgerError):
    """Raised when an entry, payment or transaction ID does not exist."""

    error_code = "UNKNOWN_RECORD"

    def __init__(self, record_type: str, record_id: str):
        super().__init__(
            f"{record_type} {record_id} not found",
            details={"record_type": record_type, "record_id": record_id},
        )


class DuplicateRecord(SiteLedgerError, ValueError):
    """Raised when a record is added under an ID that is already taken."""

    error_code = "DUPLICATE_RECORD"

    def __init__(self, record_type: str, record_id: str):
        super().__init__(
            f"{record_type} with ID {record_id} already exists",
            details={"record_type": record_type, "record_id": record_id},
        )


class UnknownScope(SiteLedgerError):
    """Raised when a rebuild targets a scope with no backing account or site."""

    error_code = "UNKNOWN_SCOPE"

    def __init__(self, scope_key: str, reason: str = "scope not found"):
        super().__init__(
            f"Scope {scope_key}: {reason}",
            details={"scope": scope_key},
        )


class InvalidQuantity(SiteLedgerError):
    """Raised when a transaction quantity is malformed or would overdraw stock."""

    error_code = "INVALID_QUANTITY"


class CrossGroupMerge(SiteLedgerError):
    """Raised when merging accounts of different resources or groups."""

    error_code = "CROSS_GROUP_MERGE"

    def __init__(self, primary_id: str, duplicate_id: str):
        super().__init__(
            f"Cannot merge account {duplicate_id} into {primary_id}: "
            f"resource or group differs",
            details={"primary_id": primary_id, "duplicate_id": duplicate_id},
        )


class AllocationMismatch(SiteLedgerError):
    """Raised (or reported) when an entry's allocations do not sum to its total."""

    error_code = "ALLOCATION_MISMATCH"

    def __init__(self, entry_id: str, expected, actual):
        super().__init__(
            f"Allocations of entry {entry_id} sum to {actual}, expected {expected}",
            details={
                "entry_id": entry_id,
                "expected": str(expected),
                "actual": str(actual),
            },
        )


class ConcurrencyConflict(SiteLedgerError):
    """Raised when a same-scope operation is already in flight."""

    error_code = "CONCURRENCY_CONFLICT"

    def __init__(self, key: str):
        super().__init__(
            f"Another operation is in progress for {key}; retry after it completes",
            details={"key": key},
        )


ERROR_STATUS_CODES: Dict[str, int] = {
    UnknownAccount.error_code: 404,
    UnknownScope.error_code: 404,
    UnknownRecord.error_code: 404,
    DuplicateRecord.error_code: 409,
    InvalidQuantity.error_code: 422,
    CrossGroupMerge.error_code: 409,
    AllocationMismatch.error_code: 409,
    ConcurrencyConflict.error_code: 409,
}
