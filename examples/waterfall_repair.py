"""
Walkthrough of a tea shop account shared by two sites.
Shows duplicate accounts being consolidated and the payment waterfall rebuilt.
"""
import sys
import os
from datetime import date

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from siteledger import SiteLedgerSDK, TransactionType
from siteledger.observability import configure_logging


def print_header(title):
    """Print a formatted header."""
    print(f"\n{'='*70}")
    print(f"{title:^70}")
    print(f"{'='*70}\n")


def print_section(title):
    """Print a section divider."""
    print(f"\n{'-'*70}")
    print(f"  {title}")
    print(f"{'-'*70}\n")


def show_entries(sdk, account_id):
    for entry in sdk.list_entries(account_id):
        print(f"  {entry.entry_id:<4} {entry.entry_date}  {entry.total_amount:>8}  "
              f"paid {entry.amount_paid:>8}  {entry.status.value}")


def main():
    configure_logging(level="WARNING")
    print_header("SITELEDGER - WATERFALL REPAIR DEMO")

    sdk = SiteLedgerSDK()

    # ========== SETUP ==========
    print_section("1. SETUP: one group, two sites, a tea shop entered twice")
    sdk.register_group(["site-a", "site-b"], group_id="north", name="North block")
    sdk.open_account("tea-shop", "north", account_id="tea")
    sdk.open_account("tea-shop", "north", account_id="tea-dup")
    print("✅ Group 'north' with site-a and site-b")
    print("✅ Accounts 'tea' and 'tea-dup' for the same vendor")

    # ========== CHARGES ==========
    print_section("2. CHARGES & PAYMENTS recorded against both accounts")
    sdk.add_entry("tea", date(2025, 12, 1), 1000, site_id="site-a", entry_id="E1")
    sdk.add_entry("tea-dup", date(2025, 12, 10), 500, site_id="site-a", entry_id="E2")
    sdk.add_payment("tea-dup", date(2025, 12, 5), 1200, site_id="site-a")
    sdk.rebuild("tea-dup", site_id="site-a")
    print("Duplicate account paid its own newer bill first:")
    show_entries(sdk, "tea")
    show_entries(sdk, "tea-dup")

    # ========== CONSOLIDATE ==========
    print_section("3. CONSOLIDATE: merge and rebuild every scope")
    result = sdk.consolidate("tea", ["tea-dup"])
    print(f"Merge report: {result.record.entries_moved} entries, "
          f"{result.record.payments_moved} payments moved")
    for rebuild in result.rebuilds:
        print(f"  {rebuild}")
    show_entries(sdk, "tea")

    violations = sdk.find_fifo_violations("tea", site_id="site-a")
    print(f"\nFIFO violations after rebuild: {len(violations)}")

    # ========== SPLIT BILL ==========
    print_section("4. GROUP BILL split by attendance")
    entry = sdk.add_group_entry("tea", date(2025, 12, 20), 900, weights={"site-a": 12, "site-b": 6})
    for allocation in sdk.get_allocations(entry.entry_id):
        print(f"  {allocation.site_id}: {allocation.allocated_amount}")

    # ========== SHARED STOCK ==========
    print_section("5. SHARED STOCK: cement bought by site-a, used by site-b")
    sdk.open_account("cement", "north", account_id="cement")
    sdk.record_transaction("cement", TransactionType.PURCHASE, 100, date(2025, 12, 1),
                           unit_cost=350, paid_by_site_id="site-a")
    sdk.record_transaction("cement", TransactionType.USAGE, 40, date(2025, 12, 3),
                           site_id="site-b", paid_by_site_id="site-a")
    for row in sdk.inter_site_balances("cement"):
        print(f"  {row.debtor_site_id} owes {row.creditor_site_id} {row.amount} "
              f"for {row.quantity} units")

    print_header("DONE")


if __name__ == "__main__":
    main()
