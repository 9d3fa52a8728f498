"""Pydantic models for the SiteLedger HTTP API."""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from siteledger.models import (
    Allocation,
    Entry,
    FifoViolation,
    PaymentApplication,
    TransactionType,
)


# -------- Common --------

class ErrorResponse(BaseModel):
    error_code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class OperationResponse(BaseModel):
    success: bool
    operation: str
    affected_count: int = 0
    record: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


# -------- Groups / Accounts --------

class RegisterGroupRequest(BaseModel):
    group_id: Optional[str] = None
    name: Optional[str] = None
    site_ids: List[str] = Field(min_length=1)


class OpenAccountRequest(BaseModel):
    resource_id: str
    group_id: str
    account_id: Optional[str] = None


class MergeRequest(BaseModel):
    duplicate_ids: List[str] = Field(min_length=1)


# -------- Transactions --------

class TransactionRequest(BaseModel):
    transaction_type: TransactionType
    quantity: Decimal
    unit_cost: Optional[Decimal] = None
    transaction_date: date
    reference_id: Optional[str] = None
    site_id: Optional[str] = None
    paid_by_site_id: Optional[str] = None


# -------- Entries / Payments --------

class EntryRequest(BaseModel):
    entry_date: date
    amount: Decimal
    site_id: Optional[str] = None
    entry_id: Optional[str] = None


class GroupEntryRequest(BaseModel):
    entry_date: date
    amount: Decimal
    weights: Optional[Dict[str, Decimal]] = None
    allocations: Optional[Dict[str, Decimal]] = None
    entry_id: Optional[str] = None


class GroupEntryResponse(BaseModel):
    entry: Entry
    allocations: List[Allocation]


class PaymentRequest(BaseModel):
    payment_date: date
    amount: Decimal
    site_id: Optional[str] = None
    payment_id: Optional[str] = None


# -------- Waterfall --------

class RebuildRequest(BaseModel):
    site_id: Optional[str] = None


class RebuildResponse(BaseModel):
    success: bool
    scope_key: str
    account_id: str
    site_id: Optional[str] = None
    affected_count: int = 0
    surplus: Decimal = Decimal("0")
    violations: List[FifoViolation] = Field(default_factory=list)
    mismatches: List[ErrorResponse] = Field(default_factory=list)
    applications: List[PaymentApplication] = Field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class ConsolidateResponse(OperationResponse):
    rebuilds: List[RebuildResponse] = Field(default_factory=list)
