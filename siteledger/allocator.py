"""Charge Allocator - oldest-charge-first matching of payments to charges.

The ChargeAllocator is pure computation: it takes the charge lines and
payments of one scope and returns how much of each charge is paid. It never
touches storage; the WaterfallRebuilder persists what it computes.

Ordering is fully deterministic. Charges are ordered by (date, creation
sequence, allocation sequence) and payments by (date, creation sequence), so
the same inputs always yield the same paid amounts.

This module also carries the splitting helpers used when a group charge is
shared across sites.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from siteledger.config import get_settings
from siteledger.errors import InvalidQuantity
from siteledger.models import ChargeLine, FifoViolation, Payment, PaymentApplication
from siteledger.models.money import CENT, quantize_money, to_decimal

logger = logging.getLogger(__name__)


class AllocationOutcome:
    """Result of one allocator run.

    Attributes:
        items (List[ChargeLine]): Charge lines with recomputed paid amounts,
            in consumption order
        applications (List[PaymentApplication]): Which payment paid which line
        surplus (Decimal): Payment capacity left after every line is paid
        total_charged (Decimal): Sum of line amounts
        total_paid (Decimal): Sum of active payment amounts
    """

    def __init__(self, items: List[ChargeLine], applications: List[PaymentApplication],
                 surplus: Decimal, total_charged: Decimal, total_paid: Decimal):
        self.items = items
        self.applications = applications
        self.surplus = surplus
        self.total_charged = total_charged
        self.total_paid = total_paid

    @property
    def outstanding(self) -> Decimal:
        return sum((line.outstanding for line in self.items), Decimal("0"))

    def item(self, item_id: str) -> Optional[ChargeLine]:
        for line in self.items:
            if line.item_id == item_id:
                return line
        return None

    def __repr__(self) -> str:
        return (
            f"AllocationOutcome(items={len(self.items)}, paid={self.total_paid}, "
            f"charged={self.total_charged}, surplus={self.surplus})"
        )


class ChargeAllocator:
    """Applies payments to charges in strict date order.

    Algorithm:
    1. Sort charge lines by (date, sequence, sub_sequence)
    2. Drop cancelled payments; sort the rest by (date, sequence)
    3. Walk both lists once: each payment pays the earliest line that still
       has something outstanding, and whatever is left carries on to the next
    4. A line is fully paid once ``amount_paid >= amount - tolerance``
    5. Capacity left when every line is paid is reported as surplus

    A payment dated before the charge it ends up paying is fine; dates only
    decide consumption priority.

    Usage Example:
        ```python
        allocator = ChargeAllocator()
        outcome = allocator.allocate(lines, payments)
        for line in outcome.items:
            print(line.item_id, line.amount_paid, line.fully_paid)

        violations = allocator.find_fifo_violations(outcome.items)
        assert violations == []
        ```
    """

    def __init__(self, tolerance: Optional[Decimal] = None):
        """Initialize the allocator.

        Args:
            tolerance (Optional[Decimal]): Fully-paid tolerance; defaults to
                ``Settings.fully_paid_tolerance``
        """
        if tolerance is None:
            tolerance = get_settings().fully_paid_tolerance
        self.tolerance = tolerance

    def is_fully_paid(self, amount: Decimal, amount_paid: Decimal) -> bool:
        return amount_paid >= amount - self.tolerance

    def allocate(self, items: List[ChargeLine], payments: List[Payment]) -> AllocationOutcome:
        """Recompute paid amounts for a scope from scratch.

        Incoming ``amount_paid`` / ``fully_paid`` values are ignored; the
        inputs are not mutated.

        Args:
            items (List[ChargeLine]): Active charge lines of one scope
            payments (List[Payment]): Payments of the same scope

        Returns:
            AllocationOutcome: Updated copies of the lines and the applications

        Example:
            ```python
            # E1 2025-12-01 for 1000, E2 2025-12-10 for 500, P1 2025-12-05 for 1200
            outcome = allocator.allocate([e1, e2], [p1])
            outcome.item("E1").fully_paid   # True
            outcome.item("E2").amount_paid  # Decimal("200")
            ```
        """
        lines = sorted(
            (item.model_copy(update={"amount_paid": Decimal("0"), "fully_paid": False}) for item in items),
            key=lambda line: line.sort_key,
        )
        active = sorted(
            (p for p in payments if not p.cancelled),
            key=lambda p: (p.payment_date, p.sequence),
        )

        applications: List[PaymentApplication] = []
        surplus = Decimal("0")
        cursor = 0
        for payment in active:
            remaining = payment.amount
            while remaining > 0 and cursor < len(lines):
                line = lines[cursor]
                need = line.amount - line.amount_paid
                if need <= 0:
                    cursor += 1
                    continue
                applied = min(need, remaining)
                line.amount_paid += applied
                remaining -= applied
                applications.append(PaymentApplication(
                    payment_id=payment.payment_id,
                    item_id=line.item_id,
                    kind=line.kind,
                    amount=applied,
                ))
                if line.amount_paid >= line.amount:
                    cursor += 1
            surplus += remaining

        for line in lines:
            line.fully_paid = self.is_fully_paid(line.amount, line.amount_paid)

        outcome = AllocationOutcome(
            items=lines,
            applications=applications,
            surplus=surplus,
            total_charged=sum((line.amount for line in lines), Decimal("0")),
            total_paid=sum((p.amount for p in active), Decimal("0")),
        )
        logger.debug(
            "Allocation computed",
            extra={
                "items": len(lines),
                "payments": len(active),
                "surplus": str(surplus),
            },
        )
        return outcome

    def find_fifo_violations(self, items: List[ChargeLine],
                             scope_key: Optional[str] = None) -> List[FifoViolation]:
        """Report every later line marked fully paid while an earlier one is not.

        Lines are compared in consumption order. An earlier line only counts
        as unpaid when it has a positive amount; zero-amount lines never
        appear on either side. This is a read-only diagnostic.

        Args:
            items (List[ChargeLine]): Lines of one scope with their cached flags
            scope_key (Optional[str]): Scope label copied onto each violation

        Returns:
            List[FifoViolation]: One entry per (unpaid earlier, paid later) pair
        """
        lines = sorted(items, key=lambda line: line.sort_key)
        violations: List[FifoViolation] = []
        unpaid: List[ChargeLine] = []
        for line in lines:
            if line.amount <= 0:
                continue
            if line.fully_paid:
                for earlier in unpaid:
                    violations.append(FifoViolation(
                        scope_key=scope_key,
                        paid_item_id=line.item_id,
                        paid_date=line.charge_date,
                        unpaid_item_id=earlier.item_id,
                        unpaid_date=earlier.charge_date,
                    ))
            else:
                unpaid.append(line)
        return violations


def split_amount(total, weights: Dict[str, Decimal]) -> Dict[str, Decimal]:
    """Split a total across sites in proportion to their weights.

    Parts are rounded to whole cents with the largest-remainder method, so
    they always add up to the (cent-rounded) total exactly. When every weight
    is zero the total is split equally.

    Args:
        total: Amount to split (>= 0)
        weights (Dict[str, Decimal]): Site ID -> non-negative weight

    Returns:
        Dict[str, Decimal]: Site ID -> share, in the order of ``weights``

    Raises:
        InvalidQuantity: If there are no sites, a weight is negative, or the
            total is negative

    Example:
        ```python
        split_amount(Decimal("100"), {"a": 1, "b": 1, "c": 1})
        # {"a": Decimal("33.34"), "b": Decimal("33.33"), "c": Decimal("33.33")}
        ```
    """
    total = quantize_money(to_decimal(total))
    if total < 0:
        raise InvalidQuantity("Cannot split a negative amount", details={"total": str(total)})
    if not weights:
        raise InvalidQuantity("A split needs at least one site")

    weights = {site: to_decimal(weight) for site, weight in weights.items()}
    negative = [site for site, weight in weights.items() if weight < 0]
    if negative:
        raise InvalidQuantity("Split weights must be non-negative", details={"sites": negative})

    weight_sum = sum(weights.values(), Decimal("0"))
    if weight_sum == 0:
        weights = {site: Decimal("1") for site in weights}
        weight_sum = Decimal(len(weights))

    total_cents = int(total / CENT)
    raw = {site: Decimal(total_cents) * weight / weight_sum for site, weight in weights.items()}
    cents = {site: int(share) for site, share in raw.items()}

    leftover = total_cents - sum(cents.values())
    order = list(weights)
    by_remainder = sorted(order, key=lambda site: (-(raw[site] - cents[site]), order.index(site)))
    for site in by_remainder[:leftover]:
        cents[site] += 1

    return {site: Decimal(cents[site]) * CENT for site in order}


def percentages_from_counts(counts: Dict[str, int]) -> Dict[str, int]:
    """Turn per-site activity counts (e.g. laborer attendance) into percentages.

    Each site gets its share rounded half-up to a whole percent and any
    rounding difference goes to the most active site, so the result sums to
    100. With no activity at all, the split is equal and the first site takes
    the remainder.

    Args:
        counts (Dict[str, int]): Site ID -> non-negative count

    Returns:
        Dict[str, int]: Site ID -> whole percentage

    Example:
        ```python
        percentages_from_counts({"a": 1, "b": 1, "c": 1})  # {"a": 34, "b": 33, "c": 33}
        percentages_from_counts({"a": 0, "b": 0, "c": 0})  # {"a": 34, "b": 33, "c": 33}
        ```
    """
    if not counts:
        return {}
    sites = list(counts)
    total = sum(counts.values())

    if total <= 0:
        equal = 100 // len(sites)
        result = {site: equal for site in sites}
        result[sites[0]] = 100 - equal * (len(sites) - 1)
        return result

    result = {
        site: int((Decimal(count) * 100 / Decimal(total)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        for site, count in counts.items()
    }
    difference = 100 - sum(result.values())
    if difference:
        busiest = sites[0]
        for site in sites[1:]:
            if counts[site] > counts[busiest]:
                busiest = site
        result[busiest] += difference
    return result
