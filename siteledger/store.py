import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID, uuid4

from .config import settings
from .models import CarryforwardRecord, Transaction, TransactionType


DateRange = tuple[Optional[date], Optional[date]]
BudgetWrite = tuple[Transaction, Optional[Transaction], Optional[CarryforwardRecord]]


class StoreError(Exception):
    pass


class StoreUnavailable(StoreError):
    pass


class CarryforwardConflictError(StoreError):
    pass


class BudgetConflictError(StoreError):
    pass


def _in_range(value: date, date_range: Optional[DateRange]) -> bool:
    if not date_range:
        return True
    start, end = date_range
    if start and value < start:
        return False
    if end and value > end:
        return False
    return True


class LedgerStore(ABC):
    """Storage contract the carryforward engine runs against.

    Implementations must reject a second carryforward for the same
    (site_id, from_date) with CarryforwardConflictError, a second budget for
    the same (site_id, date) with BudgetConflictError, and surface any I/O
    failure or timeout as StoreUnavailable.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = settings.store_timeout_seconds if timeout is None else timeout
        self._locks: dict[tuple[UUID, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def locked(self, site_id: UUID, operation: str) -> Iterator[None]:
        """Advisory lock scoped to one check-and-write on a site."""
        key = (site_id, operation)
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
        if not lock.acquire(timeout=self.timeout):
            raise StoreUnavailable(f"Timed out waiting for {operation} lock on site {site_id}")
        try:
            yield
        finally:
            lock.release()

    @abstractmethod
    def site_exists(self, site_id: UUID) -> bool: ...

    @abstractmethod
    def insert_transaction(self, fields: dict) -> Transaction: ...

    @abstractmethod
    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]: ...

    @abstractmethod
    def delete_transaction(self, transaction_id: UUID) -> bool:
        """Delete a transaction, releasing its budget slot and detaching it
        from any carryforward that points at it."""

    @abstractmethod
    def query_transactions(
        self,
        site_id: UUID,
        date: Optional[date] = None,
        date_range: Optional[DateRange] = None,
        type: Optional[TransactionType] = None,
        category: Optional[str] = None,
    ) -> list[Transaction]: ...

    @abstractmethod
    def insert_carryforward(self, fields: dict) -> CarryforwardRecord: ...

    @abstractmethod
    def find_carryforward(self, site_id: UUID, from_date: date) -> Optional[CarryforwardRecord]: ...

    @abstractmethod
    def query_carryforwards(
        self,
        site_id: Optional[UUID] = None,
        date_range: Optional[DateRange] = None,
    ) -> list[CarryforwardRecord]: ...

    @abstractmethod
    def record_budget(
        self,
        budget_fields: dict,
        adjustment_fields: Optional[dict] = None,
        carryforward_id: Optional[UUID] = None,
        applied_at: Optional[datetime] = None,
    ) -> BudgetWrite:
        """Write a base budget, its adjustment and the carryforward's applied
        stamp as one unit.

        Claims the (site_id, date) budget slot or raises BudgetConflictError.
        When carryforward_id is given the record is stamped applied to the
        budget date; if it was already applied, CarryforwardConflictError is
        raised. Nothing is persisted when any step fails.
        """


class InMemoryLedgerStore(LedgerStore):
    def __init__(self, timeout: Optional[float] = None, seed: bool = True):
        super().__init__(timeout)
        self.sites: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.carryforwards: dict[UUID, dict] = {}
        self.carryforward_index: dict[tuple[UUID, date], UUID] = {}
        self.budget_index: dict[tuple[UUID, date], UUID] = {}
        self._write_lock = threading.RLock()
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.add_site(UUID("a1b2c3d4-0000-4000-8000-000000000001"), "Riverside Towers", "Pune")
        self.add_site(UUID("a1b2c3d4-0000-4000-8000-000000000002"), "Hillview Villas", "Nashik")

    def add_site(self, site_id: UUID, name: str, location: str = "") -> dict:
        site = {"id": site_id, "name": name, "location": location, "status": "ACTIVE"}
        self.sites[site_id] = site
        return site

    def site_exists(self, site_id: UUID) -> bool:
        return site_id in self.sites

    @staticmethod
    def _transaction_data(fields: dict) -> dict:
        data = {
            "id": uuid4(),
            "created_at": datetime.now().astimezone(),
            "laborer_id": None,
            "description": "",
            **fields,
        }
        data["amount"] = Decimal(str(data["amount"]))
        return data

    def insert_transaction(self, fields: dict) -> Transaction:
        data = self._transaction_data(fields)
        with self._write_lock:
            self.transactions[data["id"]] = data
        return Transaction(**data)

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        data = self.transactions.get(transaction_id)
        return Transaction(**data) if data else None

    def delete_transaction(self, transaction_id: UUID) -> bool:
        with self._write_lock:
            if self.transactions.pop(transaction_id, None) is None:
                return False
            for key, budget_tx_id in list(self.budget_index.items()):
                if budget_tx_id == transaction_id:
                    del self.budget_index[key]
            for record in self.carryforwards.values():
                if record["adjustment_transaction_id"] == transaction_id:
                    record["adjustment_transaction_id"] = None
            return True

    def query_transactions(self, site_id, date=None, date_range=None, type=None, category=None):
        with self._write_lock:
            rows = list(self.transactions.values())
        return [
            Transaction(**t) for t in rows
            if t["site_id"] == site_id
            and (date is None or t["date"] == date)
            and _in_range(t["date"], date_range)
            and (type is None or t["type"] == type)
            and (category is None or t["category"] == category)
        ]

    def insert_carryforward(self, fields: dict) -> CarryforwardRecord:
        key = (fields["site_id"], fields["from_date"])
        with self._write_lock:
            if key in self.carryforward_index:
                raise CarryforwardConflictError(
                    f"Carryforward already exists for site {key[0]} on {key[1]}"
                )
            data = {
                "id": uuid4(),
                "created_at": datetime.now().astimezone(),
                "applied_at": None,
                "adjustment_transaction_id": None,
                **fields,
            }
            self.carryforwards[data["id"]] = data
            self.carryforward_index[key] = data["id"]
        return CarryforwardRecord(**data)

    def find_carryforward(self, site_id, from_date):
        record_id = self.carryforward_index.get((site_id, from_date))
        if record_id:
            data = self.carryforwards.get(record_id)
            if data:
                return CarryforwardRecord(**data)
        return None

    def query_carryforwards(self, site_id=None, date_range=None):
        with self._write_lock:
            rows = list(self.carryforwards.values())
        records = [
            CarryforwardRecord(**r) for r in rows
            if (site_id is None or r["site_id"] == site_id)
            and _in_range(r["from_date"], date_range)
        ]
        records.sort(key=lambda r: r.from_date, reverse=True)
        return records

    def record_budget(self, budget_fields, adjustment_fields=None, carryforward_id=None, applied_at=None):
        budget = self._transaction_data(budget_fields)
        adjustment = self._transaction_data(adjustment_fields) if adjustment_fields else None
        key = (budget["site_id"], budget["date"])

        with self._write_lock:
            # every check runs before the first mutation
            if key in self.budget_index:
                raise BudgetConflictError(f"Site {key[0]} already has a budget for {key[1]}")
            record = None
            if carryforward_id is not None:
                record = self.carryforwards.get(carryforward_id)
                if record is None:
                    raise StoreError(f"Carryforward {carryforward_id} not found")
                if record["applied_at"] is not None:
                    raise CarryforwardConflictError(f"Carryforward {carryforward_id} is already applied")

            self.transactions[budget["id"]] = budget
            self.budget_index[key] = budget["id"]
            if adjustment:
                self.transactions[adjustment["id"]] = adjustment
            if record is not None:
                record["to_date"] = budget["date"]
                record["applied_at"] = applied_at or datetime.now().astimezone()
                record["adjustment_transaction_id"] = adjustment["id"] if adjustment else None

            return (
                Transaction(**budget),
                Transaction(**adjustment) if adjustment else None,
                CarryforwardRecord(**record) if record is not None else None,
            )
