"""Inventory models - ledger accounts, stock transactions and site groups.

A LedgerAccount tracks one shared resource (a material held by a site group,
or a vendor billed jointly by the group). Its balance is never edited
directly: it is derived from the append-only Transaction log.
"""

from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import uuid4
from datetime import date, datetime, UTC
from pydantic import BaseModel, Field, field_validator, model_validator

from siteledger.models.money import to_decimal, COST_TOLERANCE
from siteledger.models.reconciliation import GROUP_SCOPE


class TransactionType(str, Enum):
    """Kinds of stock movement recorded against a ledger account.

    Attributes:
        PURCHASE (str): Stock received. Quantity is positive and the unit cost
            feeds the account's weighted average cost.
        USAGE (str): Stock consumed by a site. Quantity is stored negative and
            does not change the average cost.
        ADJUSTMENT (str): Manual correction (stock count, damage, returns).
            Quantity may be either sign; average cost is unchanged.
    """
    PURCHASE = "purchase"
    USAGE = "usage"
    ADJUSTMENT = "adjustment"


class SiteGroup(BaseModel):
    """A set of construction sites that share stock and vendors.

    Attributes:
        group_id (str): Unique group identifier
        name (Optional[str]): Display name
        site_ids (List[str]): Member sites, in registration order
    """

    group_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique site group ID"
    )
    name: Optional[str] = Field(default=None, description="Display name")
    site_ids: List[str] = Field(default_factory=list, description="Member site IDs")

    @field_validator("site_ids")
    @classmethod
    def _site_ids_fit_scope_keys(cls, site_ids: List[str]) -> List[str]:
        # Scope keys are "<account>:<site>" with GROUP_SCOPE standing in for the group
        for site_id in site_ids:
            if not site_id or ":" in site_id or site_id == GROUP_SCOPE:
                raise ValueError(f"Site ID {site_id!r} cannot be used in a scope key")
        return site_ids

    def has_site(self, site_id: str) -> bool:
        return site_id in self.site_ids


class LedgerAccount(BaseModel):
    """One (resource, owning group) pair with a derived running balance.

    Invariants:
    - balance == Σ quantity over non-voided transactions of this account
    - avg_unit_cost is the moving weighted average of non-voided purchases,
      replayed in creation order; usage never changes it
    - a superseded account keeps its identity and points at the canonical one

    Attributes:
        account_id (str): Unique account ID. Auto-generated UUID if not provided.
        resource_id (str): Material or vendor this account tracks
        group_id (str): Owning site group
        balance (Decimal): Cached quantity on hand (derived, see recompute_balance)
        avg_unit_cost (Decimal): Cached weighted average purchase cost
        superseded_by (Optional[str]): Canonical account after a merge, else None
        created_at (datetime): UTC creation timestamp
    """

    account_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique ledger account ID"
    )
    resource_id: str = Field(description="Material or vendor ID")
    group_id: str = Field(description="Owning site group ID")
    balance: Decimal = Field(default=Decimal("0"), description="Cached balance")
    avg_unit_cost: Decimal = Field(default=Decimal("0"), description="Cached average unit cost")
    superseded_by: Optional[str] = Field(
        default=None,
        description="Canonical account ID if this account was merged away"
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Creation timestamp"
    )

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by is not None

    @property
    def total_value(self) -> Decimal:
        """Stock value at average cost."""
        return self.balance * self.avg_unit_cost

    def same_identity(self, other: "LedgerAccount") -> bool:
        """True if both accounts track the same resource for the same group."""
        return self.resource_id == other.resource_id and self.group_id == other.group_id


class Transaction(BaseModel):
    """An append-only movement on a ledger account.

    Quantity is signed: purchases are positive, usage is negative and
    adjustments carry whatever sign the correction needs. ``total_cost`` is
    derived from ``|quantity| × unit_cost`` when not supplied and validated
    against it (within 0.01) when it is.

    Transactions are immutable once recorded except for the ``voided`` flag;
    voided transactions are excluded from every balance computation.

    Attributes:
        transaction_id (str): Unique transaction ID
        account_id (str): Ledger account this movement belongs to
        transaction_type (TransactionType): purchase, usage or adjustment
        quantity (Decimal): Signed quantity
        unit_cost (Decimal): Cost per unit (>= 0)
        total_cost (Decimal): |quantity| × unit_cost
        transaction_date (date): Date the movement happened
        reference_id (Optional[str]): Originating document (purchase, usage record)
        site_id (Optional[str]): Site that received or consumed the stock
        paid_by_site_id (Optional[str]): Site that paid for the stock
        voided (bool): Excluded from balances when True
        sequence (int): Creation order, assigned by the store
        created_at (datetime): UTC creation timestamp
    """

    transaction_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique transaction ID"
    )
    account_id: str = Field(description="Ledger account ID")
    transaction_type: TransactionType = Field(description="Type of movement")
    quantity: Decimal = Field(description="Signed quantity")
    unit_cost: Decimal = Field(default=Decimal("0"), ge=0, description="Cost per unit")
    total_cost: Optional[Decimal] = Field(default=None, description="Total cost")
    transaction_date: date = Field(description="Date of the movement")
    reference_id: Optional[str] = Field(default=None, description="Originating document ID")
    site_id: Optional[str] = Field(default=None, description="Receiving or consuming site")
    paid_by_site_id: Optional[str] = Field(default=None, description="Site that paid for the stock")
    voided: bool = Field(default=False, description="Voided transactions do not count")
    sequence: int = Field(default=0, description="Creation order")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Creation timestamp"
    )

    @field_validator("quantity", "unit_cost", "total_cost", mode="before")
    @classmethod
    def _coerce_decimal(cls, value):
        return to_decimal(value)

    @model_validator(mode="after")
    def _check_total_cost(self) -> "Transaction":
        expected = abs(self.quantity) * self.unit_cost
        if self.total_cost is None:
            self.total_cost = expected
        elif abs(self.total_cost - expected) > COST_TOLERANCE:
            raise ValueError(
                f"total_cost {self.total_cost} does not match "
                f"quantity x unit_cost ({expected})"
            )
        return self

    @property
    def is_active(self) -> bool:
        return not self.voided
