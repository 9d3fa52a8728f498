"""Reconciliation models - scopes, charge lines and allocator diagnostics."""

from decimal import Decimal
from enum import Enum
from typing import List, Optional
from datetime import date
from pydantic import BaseModel, Field

GROUP_SCOPE = "group"


class ChargeKind(str, Enum):
    ENTRY = "entry"
    ALLOCATION = "allocation"
    SHARED = "shared"


class Scope(BaseModel):
    """The unit the allocator reconciles: one vendor account seen from one payer.

    A site scope (``site_id`` set) covers the site's direct entries plus its
    allocations of group entries, and is paid by that site's payments. The
    group scope (``site_id=None``) covers every group-level charge: unsplit
    shared entries and, as whole entries, group entries that were split.
    Group-level payments are applied first; the site scopes then pay what
    the group left open on their allocations.

    Attributes:
        account_id (str): Ledger account (vendor) being reconciled
        site_id (Optional[str]): Paying site, None for the group scope
    """

    account_id: str = Field(description="Ledger account ID")
    site_id: Optional[str] = Field(default=None, description="Site ID, None for group scope")

    @property
    def key(self) -> str:
        return f"{self.account_id}:{self.site_id or GROUP_SCOPE}"

    @property
    def is_group_scope(self) -> bool:
        return self.site_id is None

    @classmethod
    def parse(cls, key: str) -> "Scope":
        """Inverse of ``key``: ``"acct:site"`` or ``"acct:group"``."""
        account_id, _, site = key.rpartition(":")
        if not account_id:
            return cls(account_id=site)
        return cls(account_id=account_id, site_id=None if site == GROUP_SCOPE else site)


class ChargeLine(BaseModel):
    """A chargeable item as the allocator sees it.

    Entries and allocations are flattened into lines so that one FIFO walk
    can handle both. Allocation lines inherit their entry's date and
    sequence; ``sub_sequence`` orders allocations within an entry.

    Attributes:
        item_id (str): Entry ID or allocation ID
        kind (ChargeKind): Entry, site allocation, or a split entry paid as a whole
        entry_id (str): Owning entry (same as item_id for entry lines)
        site_id (Optional[str]): Charged site
        charge_date (date): Entry date
        amount (Decimal): Amount to be paid
        amount_paid (Decimal): Paid so far
        fully_paid (bool): Paid within tolerance
        sequence (int): Entry creation order
        sub_sequence (int): Allocation creation order
    """

    item_id: str
    kind: ChargeKind
    entry_id: str
    site_id: Optional[str] = None
    charge_date: date
    amount: Decimal = Field(ge=0)
    amount_paid: Decimal = Decimal("0")
    fully_paid: bool = False
    sequence: int = 0
    sub_sequence: int = 0

    @property
    def sort_key(self):
        return (self.charge_date, self.sequence, self.sub_sequence)

    @property
    def outstanding(self) -> Decimal:
        return max(self.amount - self.amount_paid, Decimal("0"))


class PaymentApplication(BaseModel):
    """How much of one payment was applied to one charge line in a run."""

    payment_id: str
    item_id: str
    kind: ChargeKind
    amount: Decimal


class FifoViolation(BaseModel):
    """A later charge marked fully paid while an earlier one is not.

    Attributes:
        scope_key (Optional[str]): Scope the lines belong to, when known
        paid_item_id (str): Later line marked fully paid
        paid_date (date): Its charge date
        unpaid_item_id (str): Earlier line still not fully paid
        unpaid_date (date): Its charge date
    """

    scope_key: Optional[str] = None
    paid_item_id: str
    paid_date: date
    unpaid_item_id: str
    unpaid_date: date


class InterSiteBalance(BaseModel):
    """What one site owes another for shared stock it consumed.

    Attributes:
        creditor_site_id (str): Site that paid for the stock
        debtor_site_id (str): Site that used it
        amount (Decimal): Total cost of the usage
        quantity (Decimal): Total quantity used
        transaction_count (int): Number of usage transactions aggregated
    """

    creditor_site_id: str
    debtor_site_id: str
    amount: Decimal = Decimal("0")
    quantity: Decimal = Decimal("0")
    transaction_count: int = 0


class MergeReport(BaseModel):
    """Summary of folding duplicate ledger accounts into a canonical one.

    Attributes:
        primary_id (str): Canonical account that received the records
        merged_ids (List[str]): Duplicates now superseded by the primary
        transactions_moved (int): Transactions reassigned to the primary
        entries_moved (int): Entries reassigned to the primary
        payments_moved (int): Payments reassigned to the primary
        balance_before (Decimal): Primary balance before the merge
        balance_after (Decimal): Primary balance after the recompute
    """

    primary_id: str
    merged_ids: List[str] = Field(default_factory=list)
    transactions_moved: int = 0
    entries_moved: int = 0
    payments_moved: int = 0
    balance_before: Decimal = Decimal("0")
    balance_after: Decimal = Decimal("0")

    @property
    def affected_count(self) -> int:
        return self.transactions_moved + self.entries_moved + self.payments_moved
