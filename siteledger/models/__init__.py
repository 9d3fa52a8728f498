"""Core data models for SiteLedger."""

from siteledger.models.account import LedgerAccount, SiteGroup, Transaction, TransactionType
from siteledger.models.charge import Allocation, Entry, PaidState, Payment
from siteledger.models.reconciliation import (
    GROUP_SCOPE,
    ChargeKind,
    ChargeLine,
    FifoViolation,
    InterSiteBalance,
    MergeReport,
    PaymentApplication,
    Scope,
)

__all__ = [
    "LedgerAccount",
    "SiteGroup",
    "Transaction",
    "TransactionType",
    "Entry",
    "Allocation",
    "Payment",
    "PaidState",
    "GROUP_SCOPE",
    "ChargeKind",
    "ChargeLine",
    "FifoViolation",
    "InterSiteBalance",
    "MergeReport",
    "PaymentApplication",
    "Scope",
]
