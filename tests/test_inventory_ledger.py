"""Tests for the inventory ledger: balances, voids, merges, inter-site balances."""

import threading
from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest

from siteledger.errors import (
    ConcurrencyConflict,
    CrossGroupMerge,
    InvalidQuantity,
    UnknownAccount,
    UnknownRecord,
    UnknownScope,
)
from siteledger.inventory_ledger import InventoryLedger, replay_transactions
from siteledger.locking import ScopeLockManager, account_key
from siteledger.models import Entry, Payment, SiteGroup, TransactionType
from siteledger.store import SettlementStore

DAY = date(2025, 12, 1)


@pytest.fixture
def store():
    store = SettlementStore()
    with store.unit_of_work() as uow:
        uow.add(SiteGroup(group_id="g1", site_ids=["site-a", "site-b"]))
        uow.add(SiteGroup(group_id="g2", site_ids=["site-c"]))
    return store


@pytest.fixture
def locks():
    return ScopeLockManager(timeout_seconds=0)


@pytest.fixture
def ledger(store, locks):
    return InventoryLedger(store, locks, negative_balance_tolerance=Decimal("0"))


@pytest.fixture
def account(ledger):
    return ledger.open_account("cement", "g1", account_id="cement-g1")


def purchase(ledger, account_id, quantity, unit_cost, **fields):
    return ledger.record_transaction(account_id, TransactionType.PURCHASE, quantity, unit_cost, DAY, **fields)


def usage(ledger, account_id, quantity, unit_cost=None, **fields):
    return ledger.record_transaction(account_id, TransactionType.USAGE, quantity, unit_cost, DAY, **fields)


class TestAccounts:
    def test_open_account(self, ledger, account):
        assert account.account_id == "cement-g1"
        assert ledger.get_account("cement-g1").balance == Decimal("0")

    def test_open_account_unknown_group(self, ledger):
        with pytest.raises(UnknownScope):
            ledger.open_account("cement", "missing")

    def test_open_account_duplicate_id(self, ledger, account):
        with pytest.raises(ValueError):
            ledger.open_account("cement", "g1", account_id="cement-g1")

    def test_get_unknown_account(self, ledger):
        assert ledger.get_account("nope") is None
        with pytest.raises(UnknownAccount):
            ledger.resolve_account_id("nope")


class TestRecordTransaction:
    """Balance and average cost derivation."""

    def test_purchase_sets_balance_and_average(self, ledger, account):
        txn = purchase(ledger, account.account_id, 10, 100)

        refreshed = ledger.get_account(account.account_id)
        assert refreshed.balance == Decimal("10")
        assert refreshed.avg_unit_cost == Decimal("100")
        assert txn.total_cost == Decimal("1000")
        assert txn.sequence > 0

    def test_moving_average(self, ledger, account):
        """Usage changes the balance but not the average."""
        purchase(ledger, account.account_id, 10, 100)
        usage(ledger, account.account_id, 4)
        purchase(ledger, account.account_id, 10, 200)

        refreshed = ledger.get_account(account.account_id)
        assert refreshed.balance == Decimal("16")
        assert refreshed.avg_unit_cost == Decimal("162.5")

    def test_usage_stored_negative_and_costed_at_average(self, ledger, account):
        purchase(ledger, account.account_id, 10, 100)
        txn = usage(ledger, account.account_id, 4)

        assert txn.quantity == Decimal("-4")
        assert txn.unit_cost == Decimal("100")
        assert txn.total_cost == Decimal("400")

    def test_usage_with_negative_quantity_is_accepted(self, ledger, account):
        purchase(ledger, account.account_id, 10, 100)
        usage(ledger, account.account_id, -3)

        assert ledger.get_account(account.account_id).balance == Decimal("7")

    def test_adjustment_applied_as_given(self, ledger, account):
        purchase(ledger, account.account_id, 10, 100)
        ledger.record_transaction(account.account_id, TransactionType.ADJUSTMENT, -2, None, DAY)

        refreshed = ledger.get_account(account.account_id)
        assert refreshed.balance == Decimal("8")
        assert refreshed.avg_unit_cost == Decimal("100")

    def test_overdraw_rejected_and_nothing_recorded(self, ledger, account):
        purchase(ledger, account.account_id, 5, 100)

        with pytest.raises(InvalidQuantity):
            usage(ledger, account.account_id, 6)

        assert ledger.get_account(account.account_id).balance == Decimal("5")
        assert len(ledger.get_transactions(account.account_id)) == 1

    def test_negative_balance_tolerance(self, store, locks):
        lenient = InventoryLedger(store, locks, negative_balance_tolerance=Decimal("2"))
        lenient.open_account("sand", "g1", account_id="sand-g1")
        purchase(lenient, "sand-g1", 5, 10)

        usage(lenient, "sand-g1", 7)

        assert lenient.get_account("sand-g1").balance == Decimal("-2")

    def test_zero_quantity_rejected(self, ledger, account):
        with pytest.raises(InvalidQuantity):
            purchase(ledger, account.account_id, 0, 100)

    def test_negative_purchase_rejected(self, ledger, account):
        with pytest.raises(InvalidQuantity):
            purchase(ledger, account.account_id, -5, 100)

    def test_total_cost_mismatch_rejected(self, ledger, account):
        with pytest.raises(InvalidQuantity):
            purchase(ledger, account.account_id, 10, 100, total_cost=Decimal("999"))

    def test_unknown_account(self, ledger):
        with pytest.raises(UnknownAccount):
            purchase(ledger, "nope", 10, 100)

    def test_site_outside_group(self, ledger, account):
        with pytest.raises(UnknownScope):
            purchase(ledger, account.account_id, 10, 100, site_id="site-c")

    def test_cached_balance_equals_log(self, ledger, account):
        purchase(ledger, account.account_id, "12.5", 100)
        usage(ledger, account.account_id, "2.25")
        ledger.record_transaction(account.account_id, TransactionType.ADJUSTMENT, "0.75", None, DAY)

        active = ledger.get_transactions(account.account_id, include_voided=False)
        assert ledger.get_account(account.account_id).balance == sum(t.quantity for t in active)

    def test_busy_account_conflicts(self, ledger, locks, account):
        held = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(account_key(account.account_id)):
                held.set()
                release.wait(5)

        worker = threading.Thread(target=holder)
        worker.start()
        assert held.wait(5)
        try:
            with pytest.raises(ConcurrencyConflict):
                purchase(ledger, account.account_id, 1, 1)
        finally:
            release.set()
            worker.join()

        purchase(ledger, account.account_id, 1, 1)
        assert ledger.get_account(account.account_id).balance == Decimal("1")


class TestVoidAndRecompute:
    def test_void_removes_from_balance(self, ledger, account):
        purchase(ledger, account.account_id, 10, 100)
        second = purchase(ledger, account.account_id, 5, 200)

        voided = ledger.void_transaction(second.transaction_id)

        assert voided.voided is True
        refreshed = ledger.get_account(account.account_id)
        assert refreshed.balance == Decimal("10")
        assert refreshed.avg_unit_cost == Decimal("100")

    def test_void_is_idempotent(self, ledger, account):
        txn = purchase(ledger, account.account_id, 10, 100)
        ledger.void_transaction(txn.transaction_id)
        ledger.void_transaction(txn.transaction_id)

        assert ledger.get_account(account.account_id).balance == Decimal("0")
        assert ledger.get_transactions(account.account_id, include_voided=False) == []

    def test_void_unknown(self, ledger):
        with pytest.raises(UnknownRecord):
            ledger.void_transaction("missing")

    def test_recompute_repairs_drift(self, ledger, store, account):
        purchase(ledger, account.account_id, 10, 100)
        with store.unit_of_work() as uow:
            stale = uow.get_account(account.account_id)
            stale.balance = Decimal("999")
            uow.put(stale)

        repaired = ledger.recompute_balance(account.account_id)

        assert repaired.balance == Decimal("10")
        assert store.get_account(account.account_id).balance == Decimal("10")

    def test_recompute_is_idempotent(self, ledger, account):
        purchase(ledger, account.account_id, 10, 100)
        usage(ledger, account.account_id, 3)

        first = ledger.recompute_balance(account.account_id)
        second = ledger.recompute_balance(account.account_id)

        assert (first.balance, first.avg_unit_cost) == (second.balance, second.avg_unit_cost)


class TestMerge:
    """Folding duplicate accounts into a canonical one."""

    @pytest.fixture
    def duplicate(self, ledger):
        return ledger.open_account("cement", "g1", account_id="cement-g1-dup")

    def test_merge_conserves_quantity(self, ledger, account, duplicate):
        purchase(ledger, account.account_id, 10, 100)
        purchase(ledger, duplicate.account_id, 5, 100)
        usage(ledger, duplicate.account_id, 2)

        report = ledger.merge_accounts(account.account_id, [duplicate.account_id])

        assert report.merged_ids == ["cement-g1-dup"]
        assert report.transactions_moved == 2
        assert report.balance_before == Decimal("10")
        assert report.balance_after == Decimal("13")
        assert len(ledger.get_transactions(account.account_id)) == 3

    def test_duplicate_becomes_pointer(self, ledger, store, account, duplicate):
        ledger.merge_accounts(account.account_id, [duplicate.account_id])

        raw = store.get_account(duplicate.account_id)
        assert raw.superseded_by == account.account_id
        assert raw.balance == Decimal("0")
        assert ledger.resolve_account_id(duplicate.account_id) == account.account_id

    def test_writes_through_superseded_id_land_on_primary(self, ledger, account, duplicate):
        ledger.merge_accounts(account.account_id, [duplicate.account_id])

        txn = purchase(ledger, duplicate.account_id, 4, 50)

        assert txn.account_id == account.account_id
        assert ledger.get_account(account.account_id).balance == Decimal("4")

    def test_write_locks_the_account_a_merge_moved_it_to(self, ledger, locks, account, duplicate):
        ledger.merge_accounts(account.account_id, [duplicate.account_id])
        resolve = ledger.resolve_account_id
        # First lookup answers as it would have just before the merge committed
        stale = iter([duplicate.account_id])
        hold = locks.hold
        held = []

        def resolve_first_stale(account_id):
            return next(stale, None) or resolve(account_id)

        def recording_hold(key):
            held.append(key)
            return hold(key)

        with patch.object(ledger, "resolve_account_id", side_effect=resolve_first_stale), \
                patch.object(locks, "hold", side_effect=recording_hold):
            txn = purchase(ledger, duplicate.account_id, 4, 50)

        assert held == [account_key(duplicate.account_id), account_key(account.account_id)]
        assert txn.account_id == account.account_id
        assert ledger.get_account(account.account_id).balance == Decimal("4")

    def test_void_locks_the_primary_after_merge(self, ledger, store, locks, account, duplicate):
        # Read before the merge moved the transaction to the primary
        stale_txn = purchase(ledger, duplicate.account_id, 4, 50)
        ledger.merge_accounts(account.account_id, [duplicate.account_id])
        hold = locks.hold
        held = []

        def recording_hold(key):
            held.append(key)
            return hold(key)

        with patch.object(store, "get_transaction", return_value=stale_txn), \
                patch.object(locks, "hold", side_effect=recording_hold):
            ledger.void_transaction(stale_txn.transaction_id)

        assert held == [account_key(account.account_id)]
        assert ledger.get_account(account.account_id).balance == Decimal("0")

    def test_merge_moves_entries_and_payments(self, ledger, store, account, duplicate):
        with store.unit_of_work() as uow:
            uow.add(Entry(entry_id="e-dup", account_id=duplicate.account_id, group_id="g1",
                          site_id="site-a", entry_date=DAY, total_amount=100))
            uow.add(Payment(payment_id="p-dup", account_id=duplicate.account_id, group_id="g1",
                            site_id="site-a", payment_date=DAY, amount=40))

        report = ledger.merge_accounts(account.account_id, [duplicate.account_id])

        assert report.entries_moved == 1
        assert report.payments_moved == 1
        assert report.affected_count == 2
        assert [e.entry_id for e in store.entries_for(account.account_id)] == ["e-dup"]
        assert [p.payment_id for p in store.payments_for(account.account_id)] == ["p-dup"]

    def test_cross_group_merge_rejected(self, ledger, store, account):
        other = ledger.open_account("cement", "g2", account_id="cement-g2")
        purchase(ledger, other.account_id, 3, 10)

        with pytest.raises(CrossGroupMerge):
            ledger.merge_accounts(account.account_id, [other.account_id])

        assert store.get_account(other.account_id).superseded_by is None
        assert len(store.transactions_for(other.account_id)) == 1

    def test_different_resource_rejected(self, ledger, account):
        sand = ledger.open_account("sand", "g1")

        with pytest.raises(CrossGroupMerge):
            ledger.merge_accounts(account.account_id, [sand.account_id])

    def test_merge_is_all_or_nothing(self, ledger, store, account, duplicate):
        purchase(ledger, duplicate.account_id, 5, 100)

        with patch.object(InventoryLedger, "_replay_into", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                ledger.merge_accounts(account.account_id, [duplicate.account_id])

        assert store.get_account(duplicate.account_id).superseded_by is None
        assert len(store.transactions_for(duplicate.account_id)) == 1
        assert store.transactions_for(account.account_id) == []

    def test_repeat_merge_is_a_no_op(self, ledger, account, duplicate):
        ledger.merge_accounts(account.account_id, [duplicate.account_id])

        report = ledger.merge_accounts(account.account_id, [duplicate.account_id])

        assert report.merged_ids == []
        assert report.affected_count == 0

    def test_alias_chains_are_flattened(self, ledger, store, account, duplicate):
        third = ledger.open_account("cement", "g1", account_id="cement-g1-old")
        ledger.merge_accounts(duplicate.account_id, [third.account_id])

        ledger.merge_accounts(account.account_id, [duplicate.account_id])

        assert store.get_account(third.account_id).superseded_by == account.account_id

    def test_unknown_duplicate(self, ledger, account):
        with pytest.raises(UnknownAccount):
            ledger.merge_accounts(account.account_id, ["missing"])


class TestInterSiteBalances:
    def test_usage_of_stock_paid_by_other_site(self, ledger, account):
        purchase(ledger, account.account_id, 100, 350, site_id="site-a", paid_by_site_id="site-a")
        usage(ledger, account.account_id, 40, site_id="site-b", paid_by_site_id="site-a")
        usage(ledger, account.account_id, 10, site_id="site-a", paid_by_site_id="site-a")

        balances = ledger.inter_site_balances(account.account_id)

        assert len(balances) == 1
        row = balances[0]
        assert (row.creditor_site_id, row.debtor_site_id) == ("site-a", "site-b")
        assert row.amount == Decimal("14000")
        assert row.quantity == Decimal("40")
        assert row.transaction_count == 1

    def test_voided_usage_excluded(self, ledger, account):
        purchase(ledger, account.account_id, 100, 350, paid_by_site_id="site-a")
        txn = usage(ledger, account.account_id, 40, site_id="site-b", paid_by_site_id="site-a")
        ledger.void_transaction(txn.transaction_id)

        assert ledger.inter_site_balances(account.account_id) == []


class TestReplay:
    def test_empty_log(self):
        assert replay_transactions([]) == (Decimal("0"), Decimal("0"))
