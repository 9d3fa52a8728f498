"""SiteLedger SDK - High-level API for site-group settlement reconciliation.

This module provides the main SDK interface that wires the store, locks,
inventory ledger, charge allocator and waterfall rebuilder into one
easy-to-use API.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from siteledger.allocator import ChargeAllocator, split_amount
from siteledger.errors import (
    AllocationMismatch,
    InvalidQuantity,
    SiteLedgerError,
    UnknownRecord,
    UnknownScope,
)
from siteledger.http_client import HTTPClient
from siteledger.inventory_ledger import InventoryLedger
from siteledger.locking import ScopeLockManager, account_scope_keys, scope_key
from siteledger.models import (
    Allocation,
    Entry,
    FifoViolation,
    InterSiteBalance,
    LedgerAccount,
    MergeReport,
    Payment,
    PaymentApplication,
    Scope,
    SiteGroup,
    Transaction,
    TransactionType,
)
from siteledger.models.money import to_decimal
from siteledger.rebuilder import RebuildResult, WaterfallRebuilder, scope_lines
from siteledger.store import SettlementStore

logger = logging.getLogger(__name__)


class OperationResult:
    """Result of a core ledger operation.

    Attributes:
        success (bool): True if the operation committed
        operation (str): Operation name (e.g. "record_transaction")
        affected_count (int): Records written
        record (Any): The primary record produced (Transaction, LedgerAccount,
            MergeReport), None on failure
        rebuilds (List[RebuildResult]): Scope rebuilds run as part of the
            operation (consolidate only)
        error_code (Optional[str]): Error code if failed (e.g. "INVALID_QUANTITY")
        error_message (Optional[str]): Human-readable error description
    """

    def __init__(self, success: bool, operation: str, affected_count: int = 0,
                 record: Any = None, rebuilds: Optional[List[RebuildResult]] = None,
                 error_code: Optional[str] = None, error_message: Optional[str] = None):
        self.success = success
        self.operation = operation
        self.affected_count = affected_count
        self.record = record
        self.rebuilds = rebuilds or []
        self.error_code = error_code
        self.error_message = error_message

    @classmethod
    def failed(cls, operation: str, error: SiteLedgerError) -> "OperationResult":
        return cls(success=False, operation=operation,
                   error_code=error.error_code, error_message=error.message)

    def __repr__(self) -> str:
        if self.success:
            return f"OperationResult(success=True, operation={self.operation}, affected={self.affected_count})"
        return f"OperationResult(success=False, operation={self.operation}, error={self.error_code})"


class SiteLedgerSDK:
    """High-level SDK for settlement and inventory reconciliation.

    Key Features:
    - **Site groups & accounts**: Register groups of sites and the shared
      material/vendor accounts they hold
    - **Inventory ledger**: Record purchases, usage and adjustments with a
      derived balance and average unit cost
    - **Charges & payments**: Record site and group charges, split group
      charges across sites, record site or group payments
    - **Waterfall**: Rebuild paid/unpaid state oldest-charge-first and audit
      it for FIFO violations
    - **Consolidation**: Fold duplicate accounts together and rebuild every
      affected scope

    Usage Example:
        ```python
        # Local Mode (in-memory, for testing)
        sdk = SiteLedgerSDK()

        # Remote Mode (connected to a SiteLedger API)
        sdk = SiteLedgerSDK(api_key="sk_test_abc123", base_url="http://localhost:8000")

        sdk.register_group(["site-a", "site-b"], group_id="g1")
        sdk.open_account("tea-shop-1", group_id="g1", account_id="shop-1")

        sdk.add_entry("shop-1", date(2025, 12, 1), 1000, site_id="site-a")
        sdk.add_entry("shop-1", date(2025, 12, 10), 500, site_id="site-a")
        sdk.add_payment("shop-1", date(2025, 12, 5), 1200, site_id="site-a")

        result = sdk.rebuild("shop-1", site_id="site-a")
        if result.success:
            print(f"Rebuilt {result.affected_count} charges, surplus {result.surplus}")
        ```

    Attributes:
        mode (str): 'local' or 'remote'
        http_client (HTTPClient): HTTP client for remote API calls (remote mode only)
        store (SettlementStore): Record storage (local mode only)
        locks (ScopeLockManager): Per-scope locks (local mode only)
        ledger (InventoryLedger): Inventory ledger (local mode only)
        allocator (ChargeAllocator): FIFO allocator (local mode only)
        rebuilder (WaterfallRebuilder): Waterfall rebuilder (local mode only)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        tolerance: Optional[Decimal] = None
    ):
        """Initialize the SiteLedger SDK.

        Args:
            api_key: API key for the remote API. If provided, the SDK runs in
                remote mode; otherwise in local (in-memory) mode.
            base_url: Base URL of the API (remote mode only)
            tolerance: Fully-paid tolerance override (local mode only)

        Raises:
            ConnectionError: If remote mode cannot reach the API
        """
        if api_key:
            # Remote mode - forward operations to the API
            self.mode = 'remote'
            self.http_client = HTTPClient(api_key, base_url)

            try:
                status = self.http_client.ping()
            except (TimeoutError, ConnectionError, SiteLedgerError) as e:
                raise ConnectionError(f"Failed to connect to SiteLedger API: {e}") from e
            logger.info("Connected to SiteLedger API",
                        extra={"base_url": self.http_client.base_url, "version": status.get("version")})

            self.store = None
            self.locks = None
            self.ledger = None
            self.allocator = None
            self.rebuilder = None
        else:
            # Local mode - in-memory operations
            self.mode = 'local'
            self.http_client = None

            self.store = SettlementStore()
            self.locks = ScopeLockManager()
            self.ledger = InventoryLedger(self.store, self.locks)
            self.allocator = ChargeAllocator(tolerance)
            self.rebuilder = WaterfallRebuilder(self.store, self.locks, self.allocator)

    @property
    def is_remote(self) -> bool:
        return self.mode == 'remote'

    # ========== Site Groups & Accounts ==========

    def register_group(
        self,
        site_ids: List[str],
        group_id: Optional[str] = None,
        name: Optional[str] = None
    ) -> SiteGroup:
        """Register a site group.

        Args:
            site_ids (List[str]): Member sites
            group_id (Optional[str]): Explicit ID, generated when omitted
            name (Optional[str]): Display name

        Returns:
            SiteGroup: The registered group

        Raises:
            ValueError: If a group with this ID already exists
        """
        if self.is_remote:
            return SiteGroup.model_validate(self.http_client.register_group(site_ids, group_id, name))

        fields: Dict[str, Any] = {"site_ids": list(site_ids), "name": name}
        if group_id:
            fields["group_id"] = group_id
        group = SiteGroup(**fields)
        with self.store.unit_of_work() as uow:
            uow.add(group)
        logger.info("Site group registered", extra={"group_id": group.group_id, "sites": len(group.site_ids)})
        return group

    def get_group(self, group_id: str) -> Optional[SiteGroup]:
        self._local_only("get_group")
        return self.store.get_group(group_id)

    def open_account(
        self,
        resource_id: str,
        group_id: str,
        account_id: Optional[str] = None
    ) -> LedgerAccount:
        """Open a ledger account for a material or vendor shared by a group.

        Args:
            resource_id (str): Material or vendor ID
            group_id (str): Registered site group
            account_id (Optional[str]): Explicit ID, generated when omitted

        Returns:
            LedgerAccount: The new account

        Raises:
            UnknownScope: If the group is not registered
        """
        if self.is_remote:
            return LedgerAccount.model_validate(self.http_client.open_account(resource_id, group_id, account_id))
        return self.ledger.open_account(resource_id, group_id, account_id)

    def get_account(self, account_id: str) -> Optional[LedgerAccount]:
        """Get the canonical account for an ID (superseded IDs resolve).

        Example:
            ```python
            sdk.consolidate("shop-1", ["shop-1-dup"])
            sdk.get_account("shop-1-dup").account_id  # "shop-1"
            ```
        """
        if self.is_remote:
            try:
                return LedgerAccount.model_validate(self.http_client.get_account(account_id))
            except SiteLedgerError:
                return None
        return self.ledger.get_account(account_id)

    def list_accounts(self, group_id: Optional[str] = None) -> List[LedgerAccount]:
        self._local_only("list_accounts")
        return self.store.list_accounts(group_id)

    # ========== Inventory Ledger ==========

    def record_transaction(
        self,
        account_id: str,
        transaction_type: TransactionType,
        quantity,
        transaction_date: date,
        unit_cost=None,
        reference_id: Optional[str] = None,
        site_id: Optional[str] = None,
        paid_by_site_id: Optional[str] = None
    ) -> OperationResult:
        """Record a purchase, usage or adjustment.

        Args:
            account_id (str): Ledger account (superseded IDs resolve)
            transaction_type (TransactionType): Kind of movement
            quantity: Quantity moved; usage may be given as a positive magnitude
            transaction_date (date): When it happened
            unit_cost: Cost per unit; usage defaults to the current average
            reference_id (Optional[str]): Originating document
            site_id (Optional[str]): Receiving or consuming site
            paid_by_site_id (Optional[str]): Site that paid for the stock

        Returns:
            OperationResult: ``record`` is the Transaction on success

        Example:
            ```python
            result = sdk.record_transaction("cement-g1", TransactionType.USAGE, 40,
                                            date(2025, 12, 3), site_id="site-b")
            if not result.success:
                print(result.error_code)  # e.g. "INVALID_QUANTITY"
            ```
        """
        operation = "record_transaction"
        if self.is_remote:
            return self._remote_operation(operation, Transaction, self.http_client.record_transaction, account_id, {
                "transaction_type": TransactionType(transaction_type).value,
                "quantity": quantity,
                "unit_cost": unit_cost,
                "transaction_date": transaction_date,
                "reference_id": reference_id,
                "site_id": site_id,
                "paid_by_site_id": paid_by_site_id,
            })
        try:
            txn = self.ledger.record_transaction(
                account_id, transaction_type, quantity, unit_cost, transaction_date,
                reference_id=reference_id, site_id=site_id, paid_by_site_id=paid_by_site_id,
            )
        except SiteLedgerError as e:
            return OperationResult.failed(operation, e)
        return OperationResult(success=True, operation=operation, affected_count=2, record=txn)

    def void_transaction(self, transaction_id: str) -> OperationResult:
        """Void a transaction and recompute its account."""
        operation = "void_transaction"
        if self.is_remote:
            return self._remote_operation(operation, Transaction, self.http_client.void_transaction, transaction_id)
        try:
            txn = self.ledger.void_transaction(transaction_id)
        except SiteLedgerError as e:
            return OperationResult.failed(operation, e)
        return OperationResult(success=True, operation=operation, affected_count=2, record=txn)

    def recompute_balance(self, account_id: str) -> OperationResult:
        """Recompute an account's cached balance and average cost from its log.

        Returns:
            OperationResult: ``record`` is the refreshed LedgerAccount
        """
        operation = "recompute_balance"
        if self.is_remote:
            return self._remote_operation(operation, LedgerAccount, self.http_client.recompute_balance, account_id)
        try:
            account = self.ledger.recompute_balance(account_id)
        except SiteLedgerError as e:
            return OperationResult.failed(operation, e)
        return OperationResult(success=True, operation=operation, affected_count=1, record=account)

    def merge_accounts(self, primary_id: str, duplicate_ids: List[str]) -> OperationResult:
        """Fold duplicate accounts into a primary one (no rebuild).

        Returns:
            OperationResult: ``record`` is the MergeReport
        """
        operation = "merge_accounts"
        if self.is_remote:
            return self._remote_operation(operation, MergeReport, self.http_client.merge_accounts,
                                          primary_id, duplicate_ids)
        try:
            report = self.ledger.merge_accounts(primary_id, duplicate_ids)
        except SiteLedgerError as e:
            return OperationResult.failed(operation, e)
        return OperationResult(success=True, operation=operation,
                               affected_count=report.affected_count, record=report)

    def get_transactions(self, account_id: str, include_voided: bool = True) -> List[Transaction]:
        self._local_only("get_transactions")
        return self.ledger.get_transactions(account_id, include_voided=include_voided)

    def inter_site_balances(self, account_id: str) -> List[InterSiteBalance]:
        """Who owes whom for shared stock used by a site that did not pay for it."""
        if self.is_remote:
            return [InterSiteBalance.model_validate(row)
                    for row in self.http_client.inter_site_balances(account_id)]
        return self.ledger.inter_site_balances(account_id)

    # ========== Charges & Payments ==========

    def add_entry(
        self,
        account_id: str,
        entry_date: date,
        amount,
        site_id: Optional[str] = None,
        entry_id: Optional[str] = None
    ) -> Entry:
        """Record a charge for one site, or for the group when ``site_id`` is None.

        Cached paid values start at zero; run ``rebuild`` to apply payments.

        Raises:
            UnknownAccount: If the account does not exist
            UnknownScope: If the site is not in the account's group
            InvalidQuantity: If the amount is negative
            DuplicateRecord: If ``entry_id`` is already taken
        """
        if self.is_remote:
            return Entry.model_validate(self.http_client.add_entry(account_id, {
                "entry_date": entry_date, "amount": amount, "site_id": site_id, "entry_id": entry_id,
            }))

        account = self._account_in_scope(account_id, site_id)
        entry = self._build(Entry, entry_id=entry_id, account_id=account.account_id,
                            group_id=account.group_id, site_id=site_id,
                            entry_date=entry_date, total_amount=amount)
        with self.locks.hold(scope_key(Scope(account_id=account.account_id, site_id=site_id))):
            with self.store.unit_of_work() as uow:
                uow.add(entry)
        logger.info("Entry added", extra={"entry_id": entry.entry_id, "account_id": account.account_id})
        return self.store.get_entry(entry.entry_id)

    def add_group_entry(
        self,
        account_id: str,
        entry_date: date,
        amount,
        weights: Optional[Dict[str, Any]] = None,
        allocations: Optional[Dict[str, Any]] = None,
        entry_id: Optional[str] = None
    ) -> Entry:
        """Record a charge shared by the group.

        Pass ``weights`` to split the total across sites proportionally (parts
        rounded to cents and summing exactly to the total), or ``allocations``
        to give each site's share explicitly. With neither, the charge stays
        unsplit and is paid from group-level payments.

        Args:
            account_id (str): Ledger account the charge is billed under
            entry_date (date): Charge date
            amount: Charge total
            weights (Optional[Dict[str, Any]]): Site ID -> split weight
            allocations (Optional[Dict[str, Any]]): Site ID -> explicit share
            entry_id (Optional[str]): Explicit ID, generated when omitted

        Returns:
            Entry: The stored group entry

        Raises:
            DuplicateRecord: If ``entry_id`` is already taken

        Example:
            ```python
            # Tea shop bill split by attendance
            counts = {"site-a": 12, "site-b": 6}
            entry = sdk.add_group_entry("shop-1", date(2025, 12, 1), 900, weights=counts)
            sdk.get_allocations(entry.entry_id)  # site-a 600.00, site-b 300.00
            ```
        """
        if weights is not None and allocations is not None:
            raise InvalidQuantity("Pass either weights or allocations, not both")
        if self.is_remote:
            return Entry.model_validate(self.http_client.add_group_entry(account_id, {
                "entry_date": entry_date, "amount": amount, "weights": weights,
                "allocations": allocations, "entry_id": entry_id,
            })["entry"])

        account = self._account_in_scope(account_id, None)
        entry = self._build(Entry, entry_id=entry_id, account_id=account.account_id,
                            group_id=account.group_id, entry_date=entry_date,
                            total_amount=amount, is_group_entry=True)

        shares: Dict[str, Decimal] = {}
        if weights is not None:
            shares = split_amount(entry.total_amount, weights)
        elif allocations is not None:
            shares = {site: to_decimal(share) for site, share in allocations.items()}
        for site_id in shares:
            self._account_in_scope(account.account_id, site_id)

        group = self.store.get_group(account.group_id)
        with self.locks.hold_all(account_scope_keys(account.account_id, group.site_ids if group else [])):
            with self.store.unit_of_work() as uow:
                uow.add(entry)
                for site_id, share in shares.items():
                    uow.add(self._build(
                        Allocation, entry_id=entry.entry_id, site_id=site_id,
                        allocated_amount=share,
                        weight=to_decimal(weights[site_id]) if weights is not None else None,
                    ))

        logger.info(
            "Group entry added",
            extra={"entry_id": entry.entry_id, "account_id": account.account_id, "sites": len(shares)},
        )
        return self.store.get_entry(entry.entry_id)

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        self._local_only("get_entry")
        return self.store.get_entry(entry_id)

    def get_allocations(self, entry_id: str) -> List[Allocation]:
        self._local_only("get_allocations")
        return self.store.allocations_for(entry_id)

    def list_entries(self, account_id: str) -> List[Entry]:
        self._local_only("list_entries")
        return self.store.entries_for(self.ledger.resolve_account_id(account_id))

    def void_entry(self, entry_id: str) -> Entry:
        """Void a charge. Cached paid values are left for the next rebuild.

        Raises:
            UnknownRecord: If the entry does not exist
        """
        if self.is_remote:
            return Entry.model_validate(self.http_client.void_entry(entry_id))

        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise UnknownRecord("Entry", entry_id)
        group = self.store.get_group(entry.group_id)
        with self.locks.hold_all(account_scope_keys(entry.account_id, group.site_ids if group else [])):
            with self.store.unit_of_work() as uow:
                entry = uow.get_entry(entry_id)
                entry.voided = True
                uow.put(entry)
        logger.info("Entry voided", extra={"entry_id": entry_id})
        return self.store.get_entry(entry_id)

    def add_payment(
        self,
        account_id: str,
        payment_date: date,
        amount,
        site_id: Optional[str] = None,
        payment_id: Optional[str] = None
    ) -> Payment:
        """Record a payment by a site, or by the group when ``site_id`` is None.

        Raises:
            UnknownAccount: If the account does not exist
            UnknownScope: If the site is not in the account's group
            InvalidQuantity: If the amount is not positive
            DuplicateRecord: If ``payment_id`` is already taken
        """
        if self.is_remote:
            return Payment.model_validate(self.http_client.add_payment(account_id, {
                "payment_date": payment_date, "amount": amount, "site_id": site_id, "payment_id": payment_id,
            }))

        account = self._account_in_scope(account_id, site_id)
        payment = self._build(Payment, payment_id=payment_id, account_id=account.account_id,
                              group_id=account.group_id, site_id=site_id,
                              payment_date=payment_date, amount=amount)
        with self.locks.hold(scope_key(Scope(account_id=account.account_id, site_id=site_id))):
            with self.store.unit_of_work() as uow:
                uow.add(payment)
        logger.info("Payment added", extra={"payment_id": payment.payment_id, "account_id": account.account_id})
        return self.store.get_payment(payment.payment_id)

    def cancel_payment(self, payment_id: str) -> Payment:
        """Cancel a payment so the next rebuild ignores it.

        Raises:
            UnknownRecord: If the payment does not exist
        """
        if self.is_remote:
            return Payment.model_validate(self.http_client.cancel_payment(payment_id))

        payment = self.store.get_payment(payment_id)
        if payment is None:
            raise UnknownRecord("Payment", payment_id)
        with self.locks.hold(scope_key(Scope(account_id=payment.account_id, site_id=payment.site_id))):
            with self.store.unit_of_work() as uow:
                payment = uow.get_payment(payment_id)
                payment.cancelled = True
                uow.put(payment)
        logger.info("Payment cancelled", extra={"payment_id": payment_id})
        return self.store.get_payment(payment_id)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        self._local_only("get_payment")
        return self.store.get_payment(payment_id)

    def list_payments(self, account_id: str) -> List[Payment]:
        self._local_only("list_payments")
        return self.store.payments_for(self.ledger.resolve_account_id(account_id))

    # ========== Waterfall ==========

    def rebuild(self, account_id: str, site_id: Optional[str] = None) -> RebuildResult:
        """Recompute paid/unpaid state of one scope from scratch.

        Args:
            account_id (str): Ledger account
            site_id (Optional[str]): Paying site, or None for the group scope

        Returns:
            RebuildResult: Success with post-condition findings, or failure

        Example:
            ```python
            result = sdk.rebuild("shop-1", site_id="site-a")
            for violation in result.violations:
                print(violation.paid_item_id, "paid before", violation.unpaid_item_id)
            ```
        """
        scope = Scope(account_id=account_id, site_id=site_id)
        if self.is_remote:
            try:
                return self._rebuild_result(self.http_client.rebuild(account_id, site_id))
            except SiteLedgerError as e:
                return RebuildResult(success=False, scope=scope,
                                     error_code=e.error_code, error_message=e.message)
        return self.rebuilder.rebuild(scope)

    def rebuild_account(self, account_id: str) -> List[RebuildResult]:
        """Rebuild the group scope and every site scope of an account."""
        self._local_only("rebuild_account")
        return self.rebuilder.rebuild_account(account_id)

    def find_fifo_violations(self, account_id: str, site_id: Optional[str] = None) -> List[FifoViolation]:
        """Audit the cached paid flags of a scope without changing anything.

        Raises:
            UnknownAccount: If the account does not exist
        """
        if self.is_remote:
            return [FifoViolation.model_validate(v)
                    for v in self.http_client.fifo_violations(account_id, site_id)]
        canonical = self.ledger.resolve_account_id(account_id)
        scope = Scope(account_id=canonical, site_id=site_id)
        lines = scope_lines(self.store, scope, tolerance=self.allocator.tolerance)
        return self.allocator.find_fifo_violations(lines, scope_key=scope.key)

    def check_allocation_splits(self, account_id: str) -> List[AllocationMismatch]:
        """Find group entries whose allocations don't add up to their total."""
        self._local_only("check_allocation_splits")
        return self.rebuilder.check_allocation_splits(self.ledger.resolve_account_id(account_id))

    def consolidate(self, primary_id: str, duplicate_ids: List[str]) -> OperationResult:
        """Merge duplicate accounts, then rebuild every scope of the survivor.

        Returns:
            OperationResult: ``record`` is the MergeReport, ``rebuilds`` the
                per-scope rebuild results. A failed rebuild does not undo the
                merge; it shows up in ``rebuilds``.
        """
        operation = "consolidate"
        if self.is_remote:
            try:
                data = self.http_client.consolidate(primary_id, duplicate_ids)
            except SiteLedgerError as e:
                return OperationResult.failed(operation, e)
            result = self._operation_result(data, MergeReport)
            result.rebuilds = [self._rebuild_result(r) for r in data.get("rebuilds", [])]
            return result

        merged = self.merge_accounts(primary_id, duplicate_ids)
        if not merged.success:
            merged.operation = operation
            return merged
        rebuilds = self.rebuilder.rebuild_account(merged.record.primary_id)
        affected = merged.affected_count + sum(r.affected_count for r in rebuilds)
        logger.info(
            "Accounts consolidated",
            extra={
                "primary_id": merged.record.primary_id,
                "scopes": len(rebuilds),
                "failed_scopes": sum(1 for r in rebuilds if not r.success),
            },
        )
        return OperationResult(success=True, operation=operation, affected_count=affected,
                               record=merged.record, rebuilds=rebuilds)

    # ========== Utility ==========

    def clear_all(self) -> None:
        """Clear all data (useful for testing).

        Warning: This deletes all groups, accounts, charges and payments!
        """
        self._local_only("clear_all")
        self.store.clear()

    # ========== Internals ==========

    def _local_only(self, method: str) -> None:
        if self.is_remote:
            raise NotImplementedError(f"{method}() is only available in local mode currently")

    def _account_in_scope(self, account_id: str, site_id: Optional[str]) -> LedgerAccount:
        account = self.ledger.resolve_account(account_id)
        if site_id is not None:
            group = self.store.get_group(account.group_id)
            if group is None or not group.has_site(site_id):
                raise UnknownScope(f"{account.account_id}:{site_id}",
                                   f"site is not a member of group {account.group_id}")
        return account

    @staticmethod
    def _build(model, **fields):
        fields = {k: v for k, v in fields.items() if v is not None or not k.endswith("_id")}
        try:
            return model(**fields)
        except ValidationError as e:
            raise InvalidQuantity(
                f"Invalid {model.__name__.lower()}",
                details={"errors": [error["msg"] for error in e.errors()]},
            ) from e

    def _remote_operation(self, operation: str, record_model, call, *args) -> OperationResult:
        try:
            data = call(*args)
        except SiteLedgerError as e:
            return OperationResult.failed(operation, e)
        return self._operation_result(data, record_model)

    @staticmethod
    def _operation_result(data: Dict[str, Any], record_model) -> OperationResult:
        record = data.get("record")
        return OperationResult(
            success=data["success"],
            operation=data["operation"],
            affected_count=data.get("affected_count", 0),
            record=record_model.model_validate(record) if record is not None else None,
            error_code=data.get("error_code"),
            error_message=data.get("error_message"),
        )

    @staticmethod
    def _rebuild_result(data: Dict[str, Any]) -> RebuildResult:
        return RebuildResult(
            success=data["success"],
            scope=Scope(account_id=data["account_id"], site_id=data.get("site_id")),
            affected_count=data.get("affected_count", 0),
            surplus=to_decimal(data.get("surplus", "0")),
            violations=[FifoViolation.model_validate(v) for v in data.get("violations", [])],
            mismatches=[
                AllocationMismatch(m["details"]["entry_id"], m["details"]["expected"], m["details"]["actual"])
                for m in data.get("mismatches", [])
            ],
            applications=[PaymentApplication.model_validate(a) for a in data.get("applications", [])],
            error_code=data.get("error_code"),
            error_message=data.get("error_message"),
        )
