"""Inventory Ledger - append-only stock movements with derived balances.

The InventoryLedger is responsible for:
- Opening ledger accounts for (resource, site group) pairs
- Recording purchase, usage and adjustment transactions
- Keeping the cached balance and average unit cost in step with the log
- Repairing cached values by replaying the log (recompute_balance)
- Folding duplicate accounts into a canonical one (merge_accounts)
- Reporting which site owes which for shared stock (inter_site_balances)

Key Principle: the balance is never edited directly. Every write replays the
account's non-voided transactions, so the cached value always equals the sum
of the log.
"""

import logging
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from siteledger.config import get_settings
from siteledger.errors import CrossGroupMerge, InvalidQuantity, UnknownAccount, UnknownRecord, UnknownScope
from siteledger.locking import ScopeLockManager, account_key, account_scope_keys
from siteledger.models import (
    InterSiteBalance,
    LedgerAccount,
    MergeReport,
    Transaction,
    TransactionType,
)
from siteledger.models.money import to_decimal
from siteledger.store import SettlementStore, UnitOfWork

logger = logging.getLogger(__name__)


def replay_transactions(transactions: List[Transaction]) -> Tuple[Decimal, Decimal]:
    """Derive (balance, average unit cost) from a transaction log.

    Voided transactions are skipped; the rest are applied in creation order.
    Purchases move the average toward their unit cost weighted by quantity;
    usage and adjustments only move the balance.

    Args:
        transactions: Transactions of a single account, any order

    Returns:
        Tuple of (balance, avg_unit_cost)

    Example:
        ```python
        balance, avg = replay_transactions([
            Transaction(account_id="a", transaction_type="purchase",
                        quantity=10, unit_cost=100, transaction_date=date(2025, 12, 1)),
        ])
        # balance == Decimal("10"), avg == Decimal("100")
        ```
    """
    balance = Decimal("0")
    avg_cost = Decimal("0")
    for txn in sorted(transactions, key=lambda t: (t.sequence, t.created_at)):
        if txn.voided:
            continue
        if txn.transaction_type == TransactionType.PURCHASE:
            held = max(balance, Decimal("0"))
            new_qty = held + txn.quantity
            if new_qty > 0:
                avg_cost = (held * avg_cost + txn.quantity * txn.unit_cost) / new_qty
        balance += txn.quantity
    return balance, avg_cost


class InventoryLedger:
    """Ledger of shared stock movements per site group.

    Every mutating method holds the account's lock and writes through a single
    unit of work, so concurrent writers to the same account are serialized
    and a failed operation leaves nothing behind.

    Usage Example:
        ```python
        store = SettlementStore()
        ledger = InventoryLedger(store, ScopeLockManager())

        account = ledger.open_account("cement", group_id="g1")
        ledger.record_transaction(account.account_id, TransactionType.PURCHASE,
                                  quantity=100, unit_cost=350,
                                  transaction_date=date(2025, 12, 1),
                                  paid_by_site_id="site-a")
        ledger.record_transaction(account.account_id, TransactionType.USAGE,
                                  quantity=40, unit_cost=None,
                                  transaction_date=date(2025, 12, 3),
                                  site_id="site-b")

        ledger.get_account(account.account_id).balance  # Decimal("60")
        ledger.inter_site_balances(account.account_id)  # site-b owes site-a 14000
        ```
    """

    def __init__(
        self,
        store: SettlementStore,
        locks: ScopeLockManager,
        negative_balance_tolerance: Optional[Decimal] = None
    ):
        """Initialize the inventory ledger.

        Args:
            store (SettlementStore): Record storage
            locks (ScopeLockManager): Per-account locks
            negative_balance_tolerance (Optional[Decimal]): How far below zero a
                balance may go; defaults to ``Settings.negative_balance_tolerance``
        """
        self.store = store
        self.locks = locks
        if negative_balance_tolerance is None:
            negative_balance_tolerance = get_settings().negative_balance_tolerance
        self.negative_balance_tolerance = negative_balance_tolerance

    # ========== Accounts ==========

    def open_account(
        self,
        resource_id: str,
        group_id: str,
        account_id: Optional[str] = None
    ) -> LedgerAccount:
        """Create a ledger account for a resource held by a site group.

        Args:
            resource_id (str): Material or vendor tracked by the account
            group_id (str): Registered site group owning the account
            account_id (Optional[str]): Explicit ID, generated when omitted

        Returns:
            LedgerAccount: The new account with a zero balance

        Raises:
            UnknownScope: If the site group is not registered
            ValueError: If an account with this ID already exists
        """
        if self.store.get_group(group_id) is None:
            raise UnknownScope(group_id, "site group not registered")

        fields = {"resource_id": resource_id, "group_id": group_id}
        if account_id:
            fields["account_id"] = account_id
        account = LedgerAccount(**fields)

        with self.store.unit_of_work() as uow:
            uow.add(account)

        logger.info(
            "Ledger account opened",
            extra={"account_id": account.account_id, "resource_id": resource_id, "group_id": group_id},
        )
        return account

    def resolve_account_id(self, account_id: str) -> str:
        """Follow superseded pointers to the canonical account ID.

        Raises:
            UnknownAccount: If the ID (or any hop of the chain) does not exist
        """
        return self._resolve(self.store, account_id).account_id

    def resolve_account(self, account_id: str) -> LedgerAccount:
        """Return the canonical account for an ID.

        Raises:
            UnknownAccount: If the ID does not exist
        """
        return self._resolve(self.store, account_id)

    def get_account(self, account_id: str) -> Optional[LedgerAccount]:
        """Return the canonical account for an ID, or None if unknown."""
        try:
            return self._resolve(self.store, account_id)
        except UnknownAccount:
            return None

    def get_transactions(self, account_id: str, include_voided: bool = True) -> List[Transaction]:
        """Transactions of the canonical account in creation order."""
        canonical = self.resolve_account_id(account_id)
        return self.store.transactions_for(canonical, include_voided=include_voided)

    # ========== Transactions ==========

    def record_transaction(
        self,
        account_id: str,
        transaction_type: TransactionType,
        quantity,
        unit_cost,
        transaction_date: date,
        reference_id: Optional[str] = None,
        site_id: Optional[str] = None,
        paid_by_site_id: Optional[str] = None,
        total_cost=None
    ) -> Transaction:
        """Append a stock movement and refresh the account's cached values.

        Sign rules:
        - purchase: quantity must be positive
        - usage: any non-zero quantity; stored as a negative quantity
        - adjustment: any non-zero quantity, applied as given

        A usage without a unit cost is costed at the account's current
        average unit cost.

        Args:
            account_id (str): Account (or a superseded alias of it)
            transaction_type (TransactionType): Kind of movement
            quantity: Quantity moved (Decimal, int, str or float)
            unit_cost: Cost per unit, or None to use the current average
            transaction_date (date): When the movement happened
            reference_id (Optional[str]): Originating purchase/usage document
            site_id (Optional[str]): Receiving or consuming site
            paid_by_site_id (Optional[str]): Site that paid for the stock
            total_cost: Optional total, validated against quantity x unit cost

        Returns:
            Transaction: The recorded transaction

        Raises:
            UnknownAccount: If the account does not exist
            UnknownScope: If a site is not a member of the account's group
            InvalidQuantity: If the quantity is zero, has the wrong sign, or a
                withdrawal would drive the balance below the tolerance
        """
        transaction_type = TransactionType(transaction_type)
        quantity = self._signed_quantity(transaction_type, to_decimal(quantity))

        with self._hold_account(account_id) as canonical_id:
            with self.store.unit_of_work() as uow:
                account = self._resolve(uow, canonical_id)
                self._check_sites(uow, account, site_id, paid_by_site_id)

                if unit_cost is None:
                    unit_cost = account.avg_unit_cost if transaction_type == TransactionType.USAGE else Decimal("0")

                try:
                    txn = Transaction(
                        account_id=account.account_id,
                        transaction_type=transaction_type,
                        quantity=quantity,
                        unit_cost=unit_cost,
                        total_cost=total_cost,
                        transaction_date=transaction_date,
                        reference_id=reference_id,
                        site_id=site_id,
                        paid_by_site_id=paid_by_site_id,
                    )
                except ValidationError as exc:
                    raise InvalidQuantity(
                        f"Invalid transaction for account {account.account_id}",
                        details={"errors": [error["msg"] for error in exc.errors()]},
                    ) from exc

                uow.add(txn)
                balance, avg_cost = replay_transactions(
                    uow.transactions_for(account.account_id, include_voided=False)
                )
                if txn.quantity < 0 and balance < -self.negative_balance_tolerance:
                    logger.warning(
                        "Transaction rejected: balance would go negative",
                        extra={
                            "account_id": account.account_id,
                            "quantity": str(txn.quantity),
                            "balance": str(account.balance),
                        },
                    )
                    raise InvalidQuantity(
                        f"{transaction_type.value} of {abs(txn.quantity)} exceeds available "
                        f"balance {account.balance} on account {account.account_id}",
                        details={
                            "account_id": account.account_id,
                            "quantity": str(txn.quantity),
                            "balance": str(account.balance),
                        },
                    )

                account.balance = balance
                account.avg_unit_cost = avg_cost
                uow.put(account)

        logger.info(
            "Transaction recorded",
            extra={
                "account_id": txn.account_id,
                "transaction_id": txn.transaction_id,
                "type": txn.transaction_type.value,
                "quantity": str(txn.quantity),
                "balance": str(balance),
            },
        )
        return txn

    def void_transaction(self, transaction_id: str) -> Transaction:
        """Mark a transaction voided and recompute its account.

        Voiding is idempotent; voiding an already voided transaction changes
        nothing.

        Raises:
            UnknownRecord: If the transaction does not exist
        """
        txn = self.store.get_transaction(transaction_id)
        if txn is None:
            raise UnknownRecord("Transaction", transaction_id)
        if txn.voided:
            return txn

        with self._hold_account(txn.account_id):
            with self.store.unit_of_work() as uow:
                txn = uow.get_transaction(transaction_id)
                txn.voided = True
                uow.put(txn)
                account = self._replay_into(uow, txn.account_id)

        if account.balance < -self.negative_balance_tolerance:
            logger.warning(
                "Voiding left a negative balance",
                extra={"account_id": account.account_id, "balance": str(account.balance)},
            )
        logger.info(
            "Transaction voided",
            extra={"transaction_id": transaction_id, "account_id": account.account_id},
        )
        return txn

    def recompute_balance(self, account_id: str) -> LedgerAccount:
        """Rebuild the cached balance and average cost from the log.

        Idempotent: two calls with no writes in between give the same values.

        Args:
            account_id (str): Account (or a superseded alias of it)

        Returns:
            LedgerAccount: The account with refreshed cached values

        Raises:
            UnknownAccount: If the account does not exist
        """
        with self._hold_account(account_id) as canonical_id:
            with self.store.unit_of_work() as uow:
                before = uow.get_account(canonical_id)
                account = self._replay_into(uow, canonical_id)

        if before.balance != account.balance:
            logger.warning(
                "Cached balance drifted from transaction log",
                extra={
                    "account_id": canonical_id,
                    "cached": str(before.balance),
                    "derived": str(account.balance),
                },
            )
        logger.info(
            "Balance recomputed",
            extra={"account_id": canonical_id, "balance": str(account.balance)},
        )
        return account

    # ========== Merging ==========

    def merge_accounts(self, primary_id: str, duplicate_ids: List[str]) -> MergeReport:
        """Fold duplicate accounts into a canonical one.

        Transactions, entries and payments of every duplicate are reassigned
        to the primary, the primary is recomputed, and each duplicate is kept
        as a superseded pointer to the primary. Either all of that commits or
        none of it does.

        Args:
            primary_id (str): Account that survives
            duplicate_ids (List[str]): Accounts to fold into it; IDs already
                merged into the primary are skipped

        Returns:
            MergeReport: Counts of moved records and the balance change

        Raises:
            UnknownAccount: If any account does not exist
            CrossGroupMerge: If a duplicate tracks a different resource or group

        Example:
            ```python
            report = ledger.merge_accounts("shop-1", ["shop-1-dup"])
            print(report.transactions_moved, report.balance_after)
            ```
        """
        primary = self._resolve(self.store, primary_id)
        duplicates: Dict[str, LedgerAccount] = {}
        for duplicate_id in duplicate_ids:
            duplicate = self._resolve(self.store, duplicate_id)
            if duplicate.account_id == primary.account_id:
                continue
            if not primary.same_identity(duplicate):
                logger.warning(
                    "Merge rejected: identity differs",
                    extra={"primary_id": primary.account_id, "duplicate_id": duplicate.account_id},
                )
                raise CrossGroupMerge(primary.account_id, duplicate.account_id)
            duplicates[duplicate.account_id] = duplicate

        report = MergeReport(primary_id=primary.account_id, balance_before=primary.balance)
        if not duplicates:
            report.balance_after = primary.balance
            return report

        group = self.store.get_group(primary.group_id)
        site_ids = group.site_ids if group else []
        keys = []
        for held_id in [primary.account_id] + list(duplicates):
            keys.append(account_key(held_id))
            keys += account_scope_keys(held_id, site_ids)
        with self.locks.hold_all(keys):
            with self.store.unit_of_work() as uow:
                for duplicate_id in duplicates:
                    report.transactions_moved += self._reassign(
                        uow, uow.transactions_for(duplicate_id), primary.account_id)
                    report.entries_moved += self._reassign(
                        uow, uow.entries_for(duplicate_id), primary.account_id)
                    report.payments_moved += self._reassign(
                        uow, uow.payments_for(duplicate_id), primary.account_id)

                    duplicate = uow.get_account(duplicate_id)
                    duplicate.superseded_by = primary.account_id
                    duplicate.balance = Decimal("0")
                    duplicate.avg_unit_cost = Decimal("0")
                    uow.put(duplicate)

                    # Flatten chains that pointed at the duplicate
                    for alias in uow.find("accounts", lambda a, d=duplicate_id: a.superseded_by == d):
                        alias.superseded_by = primary.account_id
                        uow.put(alias)

                merged = self._replay_into(uow, primary.account_id)

        report.merged_ids = list(duplicates)
        report.balance_after = merged.balance
        logger.info(
            "Accounts merged",
            extra={
                "primary_id": primary.account_id,
                "merged_ids": report.merged_ids,
                "records_moved": report.affected_count,
                "balance_after": str(merged.balance),
            },
        )
        return report

    # ========== Inter-site balances ==========

    def inter_site_balances(self, account_id: str) -> List[InterSiteBalance]:
        """Aggregate usage of stock paid for by a different site.

        Each non-voided usage transaction whose consuming site differs from the
        paying site adds its cost to what the consuming site owes the payer.

        Args:
            account_id (str): Account (or a superseded alias of it)

        Returns:
            List[InterSiteBalance]: One row per (creditor, debtor) pair, sorted

        Raises:
            UnknownAccount: If the account does not exist
        """
        balances: Dict[Tuple[str, str], InterSiteBalance] = {}
        for txn in self.get_transactions(account_id, include_voided=False):
            if txn.transaction_type != TransactionType.USAGE:
                continue
            if not txn.site_id or not txn.paid_by_site_id or txn.site_id == txn.paid_by_site_id:
                continue
            pair = (txn.paid_by_site_id, txn.site_id)
            row = balances.get(pair)
            if row is None:
                row = InterSiteBalance(creditor_site_id=pair[0], debtor_site_id=pair[1])
                balances[pair] = row
            row.amount += txn.total_cost
            row.quantity += abs(txn.quantity)
            row.transaction_count += 1
        return [balances[pair] for pair in sorted(balances)]

    # ========== Internals ==========

    @staticmethod
    def _signed_quantity(transaction_type: TransactionType, quantity: Optional[Decimal]) -> Decimal:
        if quantity is None or quantity == 0:
            raise InvalidQuantity("Quantity must be non-zero", details={"quantity": str(quantity)})
        if transaction_type == TransactionType.PURCHASE and quantity < 0:
            raise InvalidQuantity(
                "Purchase quantity must be positive",
                details={"quantity": str(quantity)},
            )
        if transaction_type == TransactionType.USAGE:
            return -abs(quantity)
        return quantity

    @contextmanager
    def _hold_account(self, account_id: str):
        """Hold the lock of an account's canonical ID and yield that ID.

        A merge can supersede the account between resolving the ID and
        acquiring its lock, so the ID is resolved again under the lock until
        it stops moving.
        """
        canonical_id = self.resolve_account_id(account_id)
        while True:
            with self.locks.hold(account_key(canonical_id)):
                current = self.resolve_account_id(canonical_id)
                if current == canonical_id:
                    yield canonical_id
                    return
            canonical_id = current

    @staticmethod
    def _resolve(view, account_id: str) -> LedgerAccount:
        seen = set()
        current = account_id
        while True:
            account = view.get_account(current)
            if account is None:
                raise UnknownAccount(account_id)
            if account.superseded_by is None or account.superseded_by in seen:
                return account
            seen.add(current)
            current = account.superseded_by

    @staticmethod
    def _check_sites(uow: UnitOfWork, account: LedgerAccount, *site_ids: Optional[str]) -> None:
        group = uow.get_group(account.group_id)
        for site_id in site_ids:
            if site_id is not None and (group is None or not group.has_site(site_id)):
                raise UnknownScope(
                    f"{account.account_id}:{site_id}",
                    f"site is not a member of group {account.group_id}",
                )

    @staticmethod
    def _reassign(uow: UnitOfWork, records, account_id: str) -> int:
        for record in records:
            record.account_id = account_id
            uow.put(record)
        return len(records)

    @staticmethod
    def _replay_into(uow: UnitOfWork, account_id: str) -> LedgerAccount:
        account = uow.get_account(account_id)
        account.balance, account.avg_unit_cost = replay_transactions(
            uow.transactions_for(account_id, include_voided=False)
        )
        uow.put(account)
        return account
