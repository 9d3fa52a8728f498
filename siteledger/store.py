"""Settlement Store - in-memory storage with an all-or-nothing unit of work.

The SettlementStore is responsible for:
- Storing site groups, ledger accounts, transactions, entries, allocations
  and payments keyed by their IDs
- Handing out monotonic creation sequences (the FIFO tie-break)
- Committing a batch of writes atomically through ``unit_of_work()``
- Rolling group entries up from their allocations on every commit

Readers always receive copies, so a caller can never observe (or cause) a
half-applied change. In production this could be backed by a database where
``unit_of_work()`` maps onto a transaction.
"""

import logging
import threading
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from siteledger.errors import DuplicateRecord
from siteledger.models import Allocation, Entry, LedgerAccount, Payment, SiteGroup, Transaction

logger = logging.getLogger(__name__)

# table name -> (model class, id field)
TABLES = {
    "groups": (SiteGroup, "group_id"),
    "accounts": (LedgerAccount, "account_id"),
    "transactions": (Transaction, "transaction_id"),
    "entries": (Entry, "entry_id"),
    "allocations": (Allocation, "allocation_id"),
    "payments": (Payment, "payment_id"),
}

_TABLE_FOR_MODEL = {model: name for name, (model, _) in TABLES.items()}


def _table_of(record: BaseModel) -> str:
    try:
        return _TABLE_FOR_MODEL[type(record)]
    except KeyError:
        raise TypeError(f"{type(record).__name__} is not a stored record type") from None


def _record_id(record: BaseModel) -> str:
    return getattr(record, TABLES[_table_of(record)][1])


def _ordered(records: Iterable[BaseModel]) -> List[BaseModel]:
    return sorted(records, key=lambda r: (getattr(r, "sequence", 0), _record_id(r)))


class _StoreView:
    """Typed queries shared by the committed store and an open unit of work.

    Subclasses provide ``_get_raw`` and ``_iter_raw``; everything returned
    from here is a deep copy.
    """

    def _get_raw(self, table: str, record_id: str) -> Optional[BaseModel]:
        raise NotImplementedError

    def _iter_raw(self, table: str) -> List[BaseModel]:
        raise NotImplementedError

    def get(self, table: str, record_id: str) -> Optional[BaseModel]:
        record = self._get_raw(table, record_id)
        return record.model_copy(deep=True) if record is not None else None

    def find(self, table: str, predicate: Optional[Callable[[BaseModel], bool]] = None) -> List[BaseModel]:
        records = [r for r in self._iter_raw(table) if predicate is None or predicate(r)]
        return [r.model_copy(deep=True) for r in _ordered(records)]

    # ========== Lookups ==========

    def get_group(self, group_id: str) -> Optional[SiteGroup]:
        return self.get("groups", group_id)

    def get_account(self, account_id: str) -> Optional[LedgerAccount]:
        return self.get("accounts", account_id)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self.get("transactions", transaction_id)

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        return self.get("entries", entry_id)

    def get_allocation(self, allocation_id: str) -> Optional[Allocation]:
        return self.get("allocations", allocation_id)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.get("payments", payment_id)

    # ========== Queries ==========

    def list_groups(self) -> List[SiteGroup]:
        return sorted(self.find("groups"), key=lambda g: g.group_id)

    def list_accounts(self, group_id: Optional[str] = None) -> List[LedgerAccount]:
        accounts = self.find("accounts", lambda a: group_id is None or a.group_id == group_id)
        return sorted(accounts, key=lambda a: (a.created_at, a.account_id))

    def transactions_for(self, account_id: str, include_voided: bool = True) -> List[Transaction]:
        """Transactions of one account in creation order."""
        return self.find(
            "transactions",
            lambda t: t.account_id == account_id and (include_voided or not t.voided),
        )

    def entries_for(self, account_id: str) -> List[Entry]:
        return self.find("entries", lambda e: e.account_id == account_id)

    def allocations_for(self, entry_id: str) -> List[Allocation]:
        return self.find("allocations", lambda a: a.entry_id == entry_id)

    def payments_for(self, account_id: str) -> List[Payment]:
        return self.find("payments", lambda p: p.account_id == account_id)


class SettlementStore(_StoreView):
    """In-memory store for every record the engine reconciles.

    Storage:
        One dictionary per table, keyed by record ID. All access goes through
        a re-entrant lock so a commit is never observed half-way.

    Usage Example:
        ```python
        store = SettlementStore()

        with store.unit_of_work() as uow:
            uow.add(SiteGroup(group_id="g1", site_ids=["a", "b"]))
            uow.add(LedgerAccount(account_id="shop-1", resource_id="tea", group_id="g1"))

        store.get_account("shop-1").balance  # Decimal("0")
        ```
    """

    def __init__(self):
        """Initialize the store with empty tables."""
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[str, BaseModel]] = {name: {} for name in TABLES}
        self._sequence = 0

    def _get_raw(self, table: str, record_id: str) -> Optional[BaseModel]:
        with self._lock:
            return self._tables[table].get(record_id)

    def _iter_raw(self, table: str) -> List[BaseModel]:
        with self._lock:
            return list(self._tables[table].values())

    def next_sequence(self) -> int:
        """Return the next creation sequence number."""
        with self._lock:
            self._sequence += 1
            return self._sequence

    def unit_of_work(self) -> "UnitOfWork":
        """Open a unit of work; use it as a context manager.

        Writes staged inside the ``with`` block are committed together when it
        exits cleanly and discarded when it raises.
        """
        return UnitOfWork(self)

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._tables[table])

    def clear(self) -> None:
        """Drop every record (test helper)."""
        with self._lock:
            for records in self._tables.values():
                records.clear()
            self._sequence = 0

    def _commit(self, staged: Dict[str, Dict[str, BaseModel]]) -> int:
        with self._lock:
            written = 0
            for table, records in staged.items():
                self._tables[table].update(records)
                written += len(records)

            touched = set(staged["entries"])
            touched.update(a.entry_id for a in staged["allocations"].values())
            for entry_id in touched:
                self._roll_up(entry_id)
            return written

    def _roll_up(self, entry_id: str) -> None:
        entry = self._tables["entries"].get(entry_id)
        if entry is None or not entry.is_group_entry:
            return
        allocations = [a for a in self._tables["allocations"].values() if a.entry_id == entry_id]
        if not allocations:
            return
        entry.amount_paid = sum((a.amount_paid for a in allocations), Decimal("0"))
        entry.fully_paid = all(a.fully_paid for a in allocations)


class UnitOfWork(_StoreView):
    """A batch of staged writes against a SettlementStore.

    Reads see committed state overlaid with whatever this unit has staged.
    Records returned from reads are copies: change them, then ``put`` them
    back to stage the change.

    Example:
        ```python
        with store.unit_of_work() as uow:
            entry = uow.get_entry("e1")
            entry.voided = True
            uow.put(entry)
        # committed here; an exception inside the block would discard it
        ```
    """

    def __init__(self, store: SettlementStore):
        self._store = store
        self._staged: Dict[str, Dict[str, BaseModel]] = {name: {} for name in TABLES}
        self.committed = False

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            written = self._store._commit(self._staged)
            self.committed = True
            logger.debug("Unit of work committed", extra={"records": written})
        else:
            logger.debug(
                "Unit of work discarded",
                extra={"records": self.staged_count, "error": exc_type.__name__},
            )
        self._staged = {name: {} for name in TABLES}
        return False

    @property
    def staged_count(self) -> int:
        return sum(len(records) for records in self._staged.values())

    def _get_raw(self, table: str, record_id: str) -> Optional[BaseModel]:
        staged = self._staged[table].get(record_id)
        if staged is not None:
            return staged
        return self._store._get_raw(table, record_id)

    def _iter_raw(self, table: str) -> List[BaseModel]:
        merged = {_record_id(r): r for r in self._store._iter_raw(table)}
        merged.update(self._staged[table])
        return list(merged.values())

    def add(self, record: BaseModel) -> BaseModel:
        """Stage a new record, assigning its creation sequence.

        Raises:
            DuplicateRecord: If a record with the same ID already exists
        """
        table = _table_of(record)
        record_id = _record_id(record)
        if self._get_raw(table, record_id) is not None:
            raise DuplicateRecord(TABLES[table][0].__name__, record_id)
        if "sequence" in type(record).model_fields and record.sequence == 0:
            record.sequence = self._store.next_sequence()
        self._staged[table][record_id] = record.model_copy(deep=True)
        return record

    def put(self, record: BaseModel) -> BaseModel:
        """Stage an update to an existing record."""
        table = _table_of(record)
        self._staged[table][_record_id(record)] = record.model_copy(deep=True)
        return record
