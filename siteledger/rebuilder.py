"""Waterfall Rebuilder - reset-and-replay of the allocator over a scope.

The cached ``amount_paid`` / ``fully_paid`` values on entries and allocations
drift whenever history is corrected (accounts merged, entries voided,
payments re-attributed). ``rebuild`` is the read-repair path: it throws the
cache away, replays every active payment of the scope through the
ChargeAllocator and persists the result in one unit of work.

Post-conditions (FIFO violations, allocation split mismatches) are reported
on the result, never rolled back: the rebuilt state is still the best one
available, the findings just point at upstream data that needs attention.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from siteledger.allocator import AllocationOutcome, ChargeAllocator, split_amount
from siteledger.config import get_settings
from siteledger.errors import AllocationMismatch, SiteLedgerError, UnknownScope
from siteledger.locking import ScopeLockManager, scope_key
from siteledger.models import (
    ChargeKind,
    ChargeLine,
    FifoViolation,
    LedgerAccount,
    Payment,
    PaymentApplication,
    Scope,
)
from siteledger.models.money import COST_TOLERANCE, amounts_match
from siteledger.store import SettlementStore

logger = logging.getLogger(__name__)


def scope_lines(view, scope: Scope, include_voided: bool = False,
                tolerance: Decimal = COST_TOLERANCE) -> List[ChargeLine]:
    """Flatten the entries and allocations a scope owns into charge lines.

    A site scope owns the site's direct entries and the site's allocations of
    split group entries; an allocation line only carries what group-level
    payments left open (``allocated_amount - group_paid``). The group scope
    owns entries without a site that were never split, plus every split
    group entry as a single SHARED line whose paid value is the group-level
    part of its allocations.

    Args:
        view: SettlementStore or UnitOfWork to read from
        scope (Scope): Scope to collect
        include_voided (bool): Also return lines of voided entries
        tolerance (Decimal): Fully-paid tolerance for SHARED lines

    Returns:
        List[ChargeLine]: Lines carrying the current cached paid values
    """
    lines: List[ChargeLine] = []
    for entry in view.entries_for(scope.account_id):
        if entry.voided and not include_voided:
            continue
        allocations = view.allocations_for(entry.entry_id) if entry.is_group_entry else []

        if allocations and scope.is_group_scope:
            group_paid = sum((a.group_paid for a in allocations), Decimal("0"))
            lines.append(ChargeLine(
                item_id=entry.entry_id,
                kind=ChargeKind.SHARED,
                entry_id=entry.entry_id,
                charge_date=entry.entry_date,
                amount=entry.total_amount,
                amount_paid=group_paid,
                fully_paid=group_paid >= entry.total_amount - tolerance,
                sequence=entry.sequence,
            ))
        elif allocations:
            for allocation in allocations:
                if allocation.site_id != scope.site_id:
                    continue
                lines.append(ChargeLine(
                    item_id=allocation.allocation_id,
                    kind=ChargeKind.ALLOCATION,
                    entry_id=entry.entry_id,
                    site_id=allocation.site_id,
                    charge_date=entry.entry_date,
                    amount=max(allocation.allocated_amount - allocation.group_paid, Decimal("0")),
                    amount_paid=max(allocation.amount_paid - allocation.group_paid, Decimal("0")),
                    fully_paid=allocation.fully_paid,
                    sequence=entry.sequence,
                    sub_sequence=allocation.sequence,
                ))
        elif entry.site_id == scope.site_id:
            lines.append(ChargeLine(
                item_id=entry.entry_id,
                kind=ChargeKind.ENTRY,
                entry_id=entry.entry_id,
                site_id=entry.site_id,
                charge_date=entry.entry_date,
                amount=entry.total_amount,
                amount_paid=entry.amount_paid,
                fully_paid=entry.fully_paid,
                sequence=entry.sequence,
            ))
    return lines


def scope_payments(view, scope: Scope) -> List[Payment]:
    """Active payments made by the scope's payer toward its account."""
    return [
        p for p in view.payments_for(scope.account_id)
        if p.site_id == scope.site_id and not p.cancelled
    ]


class RebuildResult:
    """Result of rebuilding one scope.

    Attributes:
        success (bool): True if the rebuild committed
        scope (Scope): The scope that was rebuilt
        affected_count (int): Entries and allocations written
        surplus (Decimal): Payment capacity left after every charge is paid
        violations (List[FifoViolation]): FIFO breaches found afterwards
        mismatches (List[AllocationMismatch]): Split mismatches found afterwards
        applications (List[PaymentApplication]): Payment-to-charge matches
        error_code (Optional[str]): Error code if the rebuild failed
        error_message (Optional[str]): Human-readable error description
    """

    def __init__(self, success: bool, scope: Scope, affected_count: int = 0,
                 surplus: Decimal = Decimal("0"),
                 violations: Optional[List[FifoViolation]] = None,
                 mismatches: Optional[List[AllocationMismatch]] = None,
                 applications: Optional[List[PaymentApplication]] = None,
                 error_code: Optional[str] = None, error_message: Optional[str] = None):
        self.success = success
        self.scope = scope
        self.affected_count = affected_count
        self.surplus = surplus
        self.violations = violations or []
        self.mismatches = mismatches or []
        self.applications = applications or []
        self.error_code = error_code
        self.error_message = error_message

    @property
    def clean(self) -> bool:
        """True when the rebuild succeeded with no post-condition findings."""
        return self.success and not self.violations and not self.mismatches

    def __repr__(self) -> str:
        if self.success:
            return (
                f"RebuildResult(success=True, scope={self.scope.key}, "
                f"affected={self.affected_count}, violations={len(self.violations)})"
            )
        return f"RebuildResult(success=False, scope={self.scope.key}, error={self.error_code})"


class WaterfallRebuilder:
    """Recomputes paid/unpaid state for a scope from scratch.

    Workflow of ``rebuild(scope)``:
    1. Validate the scope (account exists, site belongs to its group)
    2. Hold the scope lock so same-scope rebuilds serialize
    3. Reset every entry/allocation of the scope and replay the allocator
       over active charges and payments
    4. Persist all paid values in one unit of work (group entries roll up
       from their allocations on commit)
    5. Check FIFO order and allocation splits under the same lock; report,
       don't roll back

    Running it twice with no writes in between yields identical state.

    Usage Example:
        ```python
        rebuilder = WaterfallRebuilder(store, locks, ChargeAllocator())
        result = rebuilder.rebuild(Scope(account_id="shop-1", site_id="site-a"))

        if result.success and result.clean:
            print(f"Rebuilt {result.affected_count} records")
        elif result.success:
            print(f"Rebuilt with findings: {result.violations} {result.mismatches}")
        else:
            print(f"Rebuild failed: {result.error_message}")
        ```
    """

    def __init__(self, store: SettlementStore, locks: ScopeLockManager,
                 allocator: ChargeAllocator, cost_tolerance: Optional[Decimal] = None):
        """Initialize the rebuilder.

        Args:
            store (SettlementStore): Record storage
            locks (ScopeLockManager): Per-scope locks
            allocator (ChargeAllocator): Allocator used for the replay
            cost_tolerance (Optional[Decimal]): Split check tolerance; defaults
                to ``Settings.cost_tolerance``
        """
        self.store = store
        self.locks = locks
        self.allocator = allocator
        if cost_tolerance is None:
            cost_tolerance = get_settings().cost_tolerance
        self.cost_tolerance = cost_tolerance

    def rebuild(self, scope: Scope) -> RebuildResult:
        """Rebuild one scope.

        Args:
            scope (Scope): Account and paying site (None for the group scope)

        Returns:
            RebuildResult: Success with findings, or failure with an error code
                (UNKNOWN_SCOPE, CONCURRENCY_CONFLICT)
        """
        logger.info("Rebuild started", extra={"scope": scope.key})
        try:
            account = self._validate(scope)
            scope = Scope(account_id=account.account_id, site_id=scope.site_id)
            with self.locks.hold(scope_key(scope)):
                outcome, affected = self._replay(scope)
                violations = self.allocator.find_fifo_violations(
                    scope_lines(self.store, scope, tolerance=self.allocator.tolerance),
                    scope_key=scope.key,
                )
                split_kinds = (ChargeKind.ALLOCATION, ChargeKind.SHARED)
                entry_ids = {line.entry_id for line in outcome.items if line.kind in split_kinds}
                mismatches = [m for m in self.check_allocation_splits(scope.account_id)
                              if m.details["entry_id"] in entry_ids]
        except SiteLedgerError as exc:
            logger.warning(
                "Rebuild rejected",
                extra={"scope": scope.key, "error_code": exc.error_code, "reason": exc.message},
            )
            return RebuildResult(success=False, scope=scope,
                                 error_code=exc.error_code, error_message=exc.message)

        if violations:
            logger.warning(
                "FIFO violations remain after rebuild",
                extra={"scope": scope.key, "violations": len(violations)},
            )
        for mismatch in mismatches:
            logger.warning("Allocation split mismatch", extra={"scope": scope.key, **mismatch.details})

        logger.info(
            "Rebuild complete",
            extra={"scope": scope.key, "affected": affected, "surplus": str(outcome.surplus)},
        )
        return RebuildResult(
            success=True,
            scope=scope,
            affected_count=affected,
            surplus=outcome.surplus,
            violations=violations,
            mismatches=mismatches,
            applications=outcome.applications,
        )

    def rebuild_account(self, account_id: str) -> List[RebuildResult]:
        """Rebuild the group scope and every member-site scope of an account.

        Used after consolidating duplicate accounts, where every site's
        waterfall may have shifted.

        Args:
            account_id (str): Account (or a superseded alias of it)

        Returns:
            List[RebuildResult]: Group scope first, then sites in group order
        """
        try:
            account = self._resolve(account_id)
        except SiteLedgerError as exc:
            return [RebuildResult(success=False, scope=Scope(account_id=account_id),
                                  error_code=exc.error_code, error_message=exc.message)]

        group = self.store.get_group(account.group_id)
        site_ids = group.site_ids if group else []
        scopes = [Scope(account_id=account.account_id)]
        scopes += [Scope(account_id=account.account_id, site_id=site) for site in site_ids]
        return [self.rebuild(scope) for scope in scopes]

    def check_allocation_splits(self, account_id: str) -> List[AllocationMismatch]:
        """Find split group entries whose allocations don't add up to the total.

        Args:
            account_id (str): Account whose group entries are checked

        Returns:
            List[AllocationMismatch]: One finding per mismatched entry
        """
        mismatches: List[AllocationMismatch] = []
        for entry in self.store.entries_for(account_id):
            if entry.voided or not entry.is_group_entry:
                continue
            allocations = self.store.allocations_for(entry.entry_id)
            if not allocations:
                continue
            allocated = sum((a.allocated_amount for a in allocations), Decimal("0"))
            if not amounts_match(allocated, entry.total_amount, self.cost_tolerance):
                mismatches.append(AllocationMismatch(entry.entry_id, entry.total_amount, allocated))
        return mismatches

    # ========== Internals ==========

    def _resolve(self, account_id: str) -> LedgerAccount:
        seen = set()
        current = account_id
        while True:
            account = self.store.get_account(current)
            if account is None:
                raise UnknownScope(account_id, "ledger account not found")
            if account.superseded_by is None or account.superseded_by in seen:
                return account
            seen.add(current)
            current = account.superseded_by

    def _validate(self, scope: Scope) -> LedgerAccount:
        account = self._resolve(scope.account_id)
        if scope.site_id is not None:
            group = self.store.get_group(account.group_id)
            if group is None or not group.has_site(scope.site_id):
                raise UnknownScope(scope.key, f"site is not a member of group {account.group_id}")
        return account

    def _replay(self, scope: Scope) -> Tuple[AllocationOutcome, int]:
        with self.store.unit_of_work() as uow:
            lines = scope_lines(uow, scope, include_voided=True, tolerance=self.allocator.tolerance)
            voided_entries = {e.entry_id for e in uow.entries_for(scope.account_id) if e.voided}
            active = [line for line in lines if line.entry_id not in voided_entries]

            outcome = self.allocator.allocate(active, scope_payments(uow, scope))
            paid = {line.item_id: line for line in outcome.items}

            affected = 0
            for line in lines:
                result = paid.get(line.item_id)
                amount_paid = result.amount_paid if result else Decimal("0")
                fully_paid = result.fully_paid if result else False
                self._write_line(uow, line, amount_paid, fully_paid)
                affected += 1
        return outcome, affected

    def _write_line(self, uow, line: ChargeLine, amount_paid: Decimal, fully_paid: bool) -> None:
        if line.kind == ChargeKind.SHARED:
            self._write_group_share(uow, line.entry_id, amount_paid)
            return
        if line.kind == ChargeKind.ALLOCATION:
            record = uow.get_allocation(line.item_id)
            amount_paid += record.group_paid
            fully_paid = self.allocator.is_fully_paid(record.allocated_amount, amount_paid)
        else:
            record = uow.get_entry(line.item_id)
        record.amount_paid = amount_paid
        record.fully_paid = fully_paid
        uow.put(record)

    def _write_group_share(self, uow, entry_id: str, group_paid: Decimal) -> None:
        """Spread what group payments covered of a split entry over its allocations.

        Shares are pro rata to ``allocated_amount``. Each allocation keeps the
        part its own site had paid, capped at what the group share leaves
        open; the next rebuild of that site places it again.
        """
        allocations = uow.allocations_for(entry_id)
        shares = {}
        if group_paid > 0:
            shares = split_amount(group_paid, {a.allocation_id: a.allocated_amount for a in allocations})
        for allocation in allocations:
            share = min(shares.get(allocation.allocation_id, Decimal("0")), allocation.allocated_amount)
            site_paid = max(allocation.amount_paid - allocation.group_paid, Decimal("0"))
            allocation.group_paid = share
            allocation.amount_paid = share + min(site_paid, allocation.allocated_amount - share)
            allocation.fully_paid = self.allocator.is_fully_paid(
                allocation.allocated_amount, allocation.amount_paid)
            uow.put(allocation)
