"""Tests for the high-level SiteLedgerSDK."""

from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest

from siteledger import SiteLedgerSDK, TransactionType
from siteledger.errors import InvalidQuantity, UnknownAccount, UnknownRecord, UnknownScope
from siteledger.http_client import HTTPClient, RemoteError


@pytest.fixture
def sdk():
    """Create a fresh SDK with one two-site group and a shared account."""
    sdk = SiteLedgerSDK()
    sdk.register_group(["site-a", "site-b"], group_id="g1", name="North block")
    sdk.open_account("cement", "g1", account_id="cement-g1")
    sdk.open_account("tea-shop", "g1", account_id="shop-1")
    return sdk


class TestGroupsAndAccounts:
    """Tests for site group and account management."""

    def test_register_group(self, sdk):
        group = sdk.get_group("g1")

        assert group.name == "North block"
        assert group.site_ids == ["site-a", "site-b"]

    def test_duplicate_group_fails(self, sdk):
        with pytest.raises(ValueError, match="already exists"):
            sdk.register_group(["site-x"], group_id="g1")

    def test_open_account_in_unknown_group(self, sdk):
        with pytest.raises(UnknownScope):
            sdk.open_account("steel", "missing")

    def test_list_accounts(self, sdk):
        sdk.register_group(["site-c"], group_id="g2")
        sdk.open_account("steel", "g2", account_id="steel-g2")

        assert {a.account_id for a in sdk.list_accounts()} == {"cement-g1", "shop-1", "steel-g2"}
        assert [a.account_id for a in sdk.list_accounts("g2")] == ["steel-g2"]

    def test_get_account(self, sdk):
        assert sdk.get_account("cement-g1").resource_id == "cement"
        assert sdk.get_account("nonexistent") is None


class TestInventoryOperations:
    """Tests for ledger operations exposed as OperationResults."""

    def test_record_transaction(self, sdk):
        """Successful writes carry the recorded transaction."""
        result = sdk.record_transaction("cement-g1", TransactionType.PURCHASE, 100,
                                        date(2025, 12, 1), unit_cost=350, paid_by_site_id="site-a")

        assert result.success is True
        assert result.operation == "record_transaction"
        assert result.record.quantity == Decimal("100")
        assert sdk.get_account("cement-g1").balance == Decimal("100")

    def test_record_transaction_failure_is_a_result(self, sdk):
        result = sdk.record_transaction("cement-g1", "usage", 5, date(2025, 12, 1))

        assert result.success is False
        assert result.error_code == "INVALID_QUANTITY"
        assert result.record is None
        assert "INVALID_QUANTITY" in repr(result)

    def test_unknown_account_result(self, sdk):
        result = sdk.record_transaction("missing", "purchase", 5, date(2025, 12, 1), unit_cost=1)

        assert result.error_code == "UNKNOWN_ACCOUNT"

    def test_void_and_recompute(self, sdk):
        txn = sdk.record_transaction("cement-g1", "purchase", 10, date(2025, 12, 1), unit_cost=100).record

        voided = sdk.void_transaction(txn.transaction_id)
        recomputed = sdk.recompute_balance("cement-g1")

        assert voided.success is True
        assert voided.record.voided is True
        assert recomputed.record.balance == Decimal("0")

    def test_void_unknown_transaction(self, sdk):
        result = sdk.void_transaction("missing")

        assert result.success is False
        assert result.error_code == "UNKNOWN_RECORD"

    def test_get_transactions(self, sdk):
        sdk.record_transaction("cement-g1", "purchase", 10, date(2025, 12, 1), unit_cost=100)
        sdk.record_transaction("cement-g1", "usage", 4, date(2025, 12, 2), site_id="site-b")

        txns = sdk.get_transactions("cement-g1")

        assert [t.transaction_type for t in txns] == [TransactionType.PURCHASE, TransactionType.USAGE]

    def test_inter_site_balances(self, sdk):
        sdk.record_transaction("cement-g1", "purchase", 100, date(2025, 12, 1),
                               unit_cost=350, paid_by_site_id="site-a")
        sdk.record_transaction("cement-g1", "usage", 40, date(2025, 12, 3),
                               site_id="site-b", paid_by_site_id="site-a")

        [row] = sdk.inter_site_balances("cement-g1")

        assert row.debtor_site_id == "site-b"
        assert row.amount == Decimal("14000")

    def test_merge_cross_group_result(self, sdk):
        sdk.register_group(["site-c"], group_id="g2")
        sdk.open_account("cement", "g2", account_id="cement-g2")

        result = sdk.merge_accounts("cement-g1", ["cement-g2"])

        assert result.success is False
        assert result.error_code == "CROSS_GROUP_MERGE"


class TestChargesAndPayments:
    def test_add_entry(self, sdk):
        entry = sdk.add_entry("shop-1", date(2025, 12, 1), "120.50", site_id="site-a")

        assert entry.total_amount == Decimal("120.50")
        assert entry.group_id == "g1"
        assert entry.sequence > 0
        assert [e.entry_id for e in sdk.list_entries("shop-1")] == [entry.entry_id]

    def test_add_entry_validation(self, sdk):
        with pytest.raises(InvalidQuantity):
            sdk.add_entry("shop-1", date(2025, 12, 1), -1, site_id="site-a")
        with pytest.raises(UnknownScope):
            sdk.add_entry("shop-1", date(2025, 12, 1), 10, site_id="site-z")
        with pytest.raises(UnknownAccount):
            sdk.add_entry("missing", date(2025, 12, 1), 10)

    def test_group_entry_by_weights(self, sdk):
        """Attendance-style weights split the bill to the cent."""
        entry = sdk.add_group_entry("shop-1", date(2025, 12, 1), 900,
                                    weights={"site-a": 12, "site-b": 6})

        shares = {a.site_id: a.allocated_amount for a in sdk.get_allocations(entry.entry_id)}
        assert entry.is_group_entry is True
        assert entry.site_id is None
        assert shares == {"site-a": Decimal("600.00"), "site-b": Decimal("300.00")}

    def test_group_entry_by_explicit_allocations(self, sdk):
        entry = sdk.add_group_entry("shop-1", date(2025, 12, 1), 100,
                                    allocations={"site-a": "70", "site-b": "30"})

        allocations = sdk.get_allocations(entry.entry_id)
        assert [a.allocated_amount for a in allocations] == [Decimal("70"), Decimal("30")]
        assert all(a.weight is None for a in allocations)

    def test_group_entry_rejects_both_split_modes(self, sdk):
        with pytest.raises(InvalidQuantity):
            sdk.add_group_entry("shop-1", date(2025, 12, 1), 100,
                                weights={"site-a": 1}, allocations={"site-a": 100})

    def test_group_entry_rejects_foreign_site(self, sdk):
        with pytest.raises(UnknownScope):
            sdk.add_group_entry("shop-1", date(2025, 12, 1), 100, weights={"site-z": 1})
        assert sdk.list_entries("shop-1") == []

    def test_void_entry(self, sdk):
        entry = sdk.add_entry("shop-1", date(2025, 12, 1), 10, site_id="site-a")

        assert sdk.void_entry(entry.entry_id).voided is True
        with pytest.raises(UnknownRecord):
            sdk.void_entry("missing")

    def test_payments(self, sdk):
        payment = sdk.add_payment("shop-1", date(2025, 12, 5), 1200, site_id="site-a", payment_id="P1")

        assert sdk.get_payment("P1").amount == Decimal("1200")
        assert sdk.cancel_payment(payment.payment_id).cancelled is True
        assert [p.payment_id for p in sdk.list_payments("shop-1")] == ["P1"]
        with pytest.raises(InvalidQuantity):
            sdk.add_payment("shop-1", date(2025, 12, 5), 0, site_id="site-a")
        with pytest.raises(UnknownRecord):
            sdk.cancel_payment("missing")


class TestWaterfall:
    def test_rebuild_and_audit(self, sdk):
        sdk.add_entry("shop-1", date(2025, 12, 1), 1000, site_id="site-a", entry_id="E1")
        sdk.add_entry("shop-1", date(2025, 12, 10), 500, site_id="site-a", entry_id="E2")
        sdk.add_payment("shop-1", date(2025, 12, 5), 1200, site_id="site-a")

        result = sdk.rebuild("shop-1", site_id="site-a")

        assert result.success is True
        assert sdk.get_entry("E2").amount_paid == Decimal("200")
        assert sdk.find_fifo_violations("shop-1", site_id="site-a") == []

    def test_rebuild_unknown_site(self, sdk):
        result = sdk.rebuild("shop-1", site_id="site-z")

        assert result.success is False
        assert result.error_code == "UNKNOWN_SCOPE"

    def test_check_allocation_splits(self, sdk):
        sdk.add_group_entry("shop-1", date(2025, 12, 1), 100,
                            allocations={"site-a": 50, "site-b": 40}, entry_id="G1")

        [mismatch] = sdk.check_allocation_splits("shop-1")

        assert mismatch.error_code == "ALLOCATION_MISMATCH"
        assert mismatch.details["entry_id"] == "G1"


class TestConsolidate:
    """Duplicate vendor accounts folded together and rebuilt."""

    def test_consolidate_rebuilds_combined_waterfall(self, sdk):
        sdk.open_account("tea-shop", "g1", account_id="shop-1-dup")
        sdk.add_entry("shop-1", date(2025, 12, 1), 1000, site_id="site-a", entry_id="E1")
        sdk.add_entry("shop-1-dup", date(2025, 12, 10), 500, site_id="site-a", entry_id="E2")
        sdk.add_payment("shop-1-dup", date(2025, 12, 5), 1200, site_id="site-a")
        sdk.add_payment("shop-1", date(2025, 12, 15), 300, site_id="site-a")

        # Before consolidation the duplicate pays its own, newer charge first
        sdk.rebuild("shop-1-dup", site_id="site-a")
        assert sdk.get_entry("E2").fully_paid is True

        result = sdk.consolidate("shop-1", ["shop-1-dup"])

        assert result.success is True
        assert result.record.merged_ids == ["shop-1-dup"]
        assert result.record.entries_moved == 1
        assert result.record.payments_moved == 1
        assert len(result.rebuilds) == 3
        assert all(r.success for r in result.rebuilds)
        assert result.affected_count >= result.record.affected_count

        assert sdk.get_entry("E1").fully_paid is True
        assert sdk.get_entry("E2").fully_paid is True
        assert sdk.get_account("shop-1-dup").account_id == "shop-1"
        assert sdk.find_fifo_violations("shop-1", site_id="site-a") == []

    def test_consolidate_failure(self, sdk):
        result = sdk.consolidate("shop-1", ["cement-g1"])

        assert result.success is False
        assert result.operation == "consolidate"
        assert result.error_code == "CROSS_GROUP_MERGE"
        assert result.rebuilds == []


class TestRemoteMode:
    """SDK behaviour when pointed at a SiteLedger API."""

    @pytest.fixture
    def remote(self):
        with patch.object(HTTPClient, "ping", return_value={"status": "ok", "version": "0.1.0"}):
            return SiteLedgerSDK(api_key="sk_test_abc123", base_url="http://api.test")

    def test_remote_mode(self, remote):
        assert remote.is_remote is True
        assert remote.store is None
        assert remote.http_client.base_url == "http://api.test"

    def test_unreachable_api(self):
        with patch.object(HTTPClient, "ping", side_effect=ConnectionError("refused")):
            with pytest.raises(ConnectionError, match="Failed to connect"):
                SiteLedgerSDK(api_key="sk_test_abc123")

    def test_local_only_methods(self, remote):
        with pytest.raises(NotImplementedError):
            remote.list_entries("shop-1")
        with pytest.raises(NotImplementedError):
            remote.clear_all()

    def test_remote_operation_result(self, remote):
        response = {
            "success": True,
            "operation": "recompute_balance",
            "affected_count": 1,
            "record": {"account_id": "shop-1", "resource_id": "tea-shop", "group_id": "g1", "balance": "16"},
        }
        with patch.object(HTTPClient, "recompute_balance", return_value=response) as call:
            result = remote.recompute_balance("shop-1")

        call.assert_called_once_with("shop-1")
        assert result.success is True
        assert result.record.balance == Decimal("16")

    def test_remote_error_becomes_failed_result(self, remote):
        error = RemoteError("UNKNOWN_ACCOUNT", "Ledger account x not found", status_code=404)
        with patch.object(HTTPClient, "recompute_balance", side_effect=error):
            result = remote.recompute_balance("x")

        assert result.success is False
        assert result.error_code == "UNKNOWN_ACCOUNT"

    def test_remote_rebuild(self, remote):
        response = {
            "success": True,
            "scope_key": "shop-1:site-a",
            "account_id": "shop-1",
            "site_id": "site-a",
            "affected_count": 2,
            "surplus": "0",
            "violations": [],
            "mismatches": [{
                "error_code": "ALLOCATION_MISMATCH",
                "message": "Allocations of entry G1 sum to 800, expected 900",
                "details": {"entry_id": "G1", "expected": "900", "actual": "800"},
            }],
            "applications": [{"payment_id": "P1", "item_id": "E1", "kind": "entry", "amount": "1000"}],
        }
        with patch.object(HTTPClient, "rebuild", return_value=response):
            result = remote.rebuild("shop-1", site_id="site-a")

        assert result.success is True
        assert result.scope.key == "shop-1:site-a"
        assert result.mismatches[0].details["entry_id"] == "G1"
        assert result.applications[0].amount == Decimal("1000")

    def test_remote_rebuild_error(self, remote):
        with patch.object(HTTPClient, "rebuild", side_effect=RemoteError("UNKNOWN_SCOPE", "Scope x: not found")):
            result = remote.rebuild("x")

        assert result.success is False
        assert result.error_code == "UNKNOWN_SCOPE"
