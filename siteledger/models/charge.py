"""Charge models - entries, per-site allocations and payments.

An Entry is a dated charge (a tea-shop bill, a material usage charge) billed
under a ledger account. A group entry is split across member sites through
Allocations. Payments are consumed oldest-charge-first by the allocator.

The ``amount_paid`` and ``fully_paid`` fields on Entry and Allocation are a
materialized cache written by the allocator; between rebuilds they are not
authoritative.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4
from datetime import date, datetime, UTC
from pydantic import BaseModel, Field, field_validator, model_validator

from siteledger.models.money import to_decimal


class PaidState(str, Enum):
    """Derived payment state of an entry or allocation.

    Attributes:
        PENDING (str): Nothing applied yet
        PARTIAL (str): Some capacity applied, not yet fully paid
        PAID (str): Fully paid within tolerance
    """
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


def _paid_state(amount_paid: Decimal, fully_paid: bool) -> PaidState:
    if fully_paid:
        return PaidState.PAID
    if amount_paid > 0:
        return PaidState.PARTIAL
    return PaidState.PENDING


class Entry(BaseModel):
    """A dated charge attributable to one site or shared by a site group.

    Direct entries carry a ``site_id`` (or none, for a charge owed by the
    group as a whole). Group entries have ``is_group_entry=True`` and are
    paid through their per-site Allocations; their cached paid fields are a
    roll-up of those allocations.

    Attributes:
        entry_id (str): Unique entry ID
        account_id (str): Ledger account (vendor) the charge is billed under
        group_id (str): Owning site group
        site_id (Optional[str]): Charged site for direct entries
        entry_date (date): Occurrence date, the primary FIFO key
        total_amount (Decimal): Charge amount (>= 0)
        amount_paid (Decimal): Cached paid amount
        fully_paid (bool): Cached fully-paid flag
        is_group_entry (bool): Split across sites through allocations
        voided (bool): Voided entries are ignored by the allocator
        sequence (int): Creation order, the FIFO tie-break
        created_at (datetime): UTC creation timestamp
    """

    entry_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique entry ID"
    )
    account_id: str = Field(description="Ledger account the charge is billed under")
    group_id: str = Field(description="Owning site group ID")
    site_id: Optional[str] = Field(default=None, description="Charged site (direct entries)")
    entry_date: date = Field(description="Occurrence date")
    total_amount: Decimal = Field(ge=0, description="Charge amount")
    amount_paid: Decimal = Field(default=Decimal("0"), ge=0, description="Cached paid amount")
    fully_paid: bool = Field(default=False, description="Cached fully-paid flag")
    is_group_entry: bool = Field(default=False, description="Split across sites")
    voided: bool = Field(default=False, description="Voided entries are ignored")
    sequence: int = Field(default=0, description="Creation order")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Creation timestamp"
    )

    @field_validator("total_amount", "amount_paid", mode="before")
    @classmethod
    def _coerce_decimal(cls, value):
        return to_decimal(value)

    @model_validator(mode="after")
    def _group_entries_have_no_site(self) -> "Entry":
        if self.is_group_entry and self.site_id is not None:
            raise ValueError("Group entries are charged through allocations, not a site_id")
        return self

    @property
    def status(self) -> PaidState:
        return _paid_state(self.amount_paid, self.fully_paid)

    @property
    def outstanding(self) -> Decimal:
        return max(self.total_amount - self.amount_paid, Decimal("0"))


class Allocation(BaseModel):
    """One site's share of a group entry.

    Attributes:
        allocation_id (str): Unique allocation ID
        entry_id (str): Group entry this share belongs to
        site_id (str): Site carrying this share
        allocated_amount (Decimal): This site's portion of the entry total
        amount_paid (Decimal): Cached paid amount
        fully_paid (bool): Cached fully-paid flag
        group_paid (Decimal): Part of amount_paid covered by group-level payments
        weight (Optional[Decimal]): Weight used to compute the split, if any
        sequence (int): Creation order within the entry
    """

    allocation_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique allocation ID"
    )
    entry_id: str = Field(description="Group entry ID")
    site_id: str = Field(description="Site carrying this share")
    allocated_amount: Decimal = Field(ge=0, description="Site's portion of the entry")
    amount_paid: Decimal = Field(default=Decimal("0"), ge=0, description="Cached paid amount")
    fully_paid: bool = Field(default=False, description="Cached fully-paid flag")
    group_paid: Decimal = Field(default=Decimal("0"), ge=0, description="Paid by group-level payments")
    weight: Optional[Decimal] = Field(default=None, ge=0, description="Split weight")
    sequence: int = Field(default=0, description="Creation order")

    @field_validator("allocated_amount", "amount_paid", "group_paid", "weight", mode="before")
    @classmethod
    def _coerce_decimal(cls, value):
        return to_decimal(value)

    @property
    def status(self) -> PaidState:
        return _paid_state(self.amount_paid, self.fully_paid)


class Payment(BaseModel):
    """A payment made by a site (or by the group) toward a vendor account.

    The engine never mutates payments; how much of each payment was absorbed
    by which charge is recomputed on every allocator run.

    Attributes:
        payment_id (str): Unique payment ID
        account_id (str): Ledger account (vendor) being paid
        group_id (str): Site group the payment belongs to
        site_id (Optional[str]): Paying site, None for a group-level payment
        payment_date (date): Payment date, the FIFO key for payments
        amount (Decimal): Amount paid (> 0)
        cancelled (bool): Cancelled payments are ignored
        sequence (int): Creation order
        created_at (datetime): UTC creation timestamp
    """

    payment_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique payment ID"
    )
    account_id: str = Field(description="Ledger account being paid")
    group_id: str = Field(description="Site group ID")
    site_id: Optional[str] = Field(default=None, description="Paying site, None for group level")
    payment_date: date = Field(description="Payment date")
    amount: Decimal = Field(gt=0, description="Amount paid")
    cancelled: bool = Field(default=False, description="Cancelled payments are ignored")
    sequence: int = Field(default=0, description="Creation order")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Creation timestamp"
    )

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_decimal(cls, value):
        return to_decimal(value)

    @property
    def is_active(self) -> bool:
        return not self.cancelled
