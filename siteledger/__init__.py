"""SiteLedger - settlement and inventory reconciliation for construction site groups."""

__version__ = "0.1.0"

# Main SDK interface
from siteledger.sdk import SiteLedgerSDK, OperationResult

# Core models (for advanced usage)
from siteledger.models import (
    LedgerAccount,
    SiteGroup,
    Transaction,
    TransactionType,
    Entry,
    Allocation,
    Payment,
    PaidState,
    Scope,
    ChargeLine,
    FifoViolation,
    InterSiteBalance,
    MergeReport,
)

# Components (for advanced usage)
from siteledger.store import SettlementStore
from siteledger.locking import ScopeLockManager
from siteledger.inventory_ledger import InventoryLedger
from siteledger.allocator import ChargeAllocator, AllocationOutcome, split_amount, percentages_from_counts
from siteledger.rebuilder import WaterfallRebuilder, RebuildResult
from siteledger.errors import (
    SiteLedgerError,
    UnknownAccount,
    UnknownRecord,
    UnknownScope,
    InvalidQuantity,
    CrossGroupMerge,
    AllocationMismatch,
    ConcurrencyConflict,
)

__all__ = [
    # Main SDK
    "SiteLedgerSDK",
    "OperationResult",
    # Models
    "LedgerAccount",
    "SiteGroup",
    "Transaction",
    "TransactionType",
    "Entry",
    "Allocation",
    "Payment",
    "PaidState",
    "Scope",
    "ChargeLine",
    "FifoViolation",
    "InterSiteBalance",
    "MergeReport",
    # Components
    "SettlementStore",
    "ScopeLockManager",
    "InventoryLedger",
    "ChargeAllocator",
    "AllocationOutcome",
    "split_amount",
    "percentages_from_counts",
    "WaterfallRebuilder",
    "RebuildResult",
    # Errors
    "SiteLedgerError",
    "UnknownAccount",
    "UnknownRecord",
    "UnknownScope",
    "InvalidQuantity",
    "CrossGroupMerge",
    "AllocationMismatch",
    "ConcurrencyConflict",
]
