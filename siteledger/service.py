import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

from .config import Settings, settings as default_settings
from .format import format_inr
from .models import (
    CARRYFORWARD_CATEGORY,
    ApplyResult,
    CarryforwardRecord,
    CarryforwardSummary,
    DailyTotals,
    MonthlyCarryforward,
    RecordTransactionRequest,
    Transaction,
    TransactionType,
)
from .store import BudgetConflictError, CarryforwardConflictError, InMemoryLedgerStore, LedgerStore


logger = logging.getLogger(__name__)


class LedgerServiceError(Exception):
    pass


class NotFoundError(LedgerServiceError):
    pass


class SiteNotFoundError(NotFoundError):
    pass


class TransactionNotFoundError(NotFoundError):
    pass


class DuplicateBudgetError(LedgerServiceError):
    pass


class InvalidAmountError(LedgerServiceError):
    pass


class ReservedCategoryError(LedgerServiceError):
    pass


class CarryforwardService:
    """Daily aggregation, reconciliation and carryforward application for sites.

    The store handle is injected; the service keeps no state of its own, so
    every call reads fresh from the store.
    """

    def __init__(self, storage: Optional[LedgerStore] = None, config: Optional[Settings] = None):
        self.storage = storage or InMemoryLedgerStore()
        self.config = config or default_settings

    def aggregate(self, site_id: UUID, day: date) -> DailyTotals:
        self._require_site(site_id)
        return self._aggregate(site_id, day)

    def reconcile(self, site_id: UUID, day: date) -> Optional[CarryforwardRecord]:
        self._require_site(site_id)

        with self.storage.locked(site_id, "reconcile"):
            existing = self.storage.find_carryforward(site_id, day)
            if existing:
                return existing

            totals = self._aggregate(site_id, day)
            net = totals.net

            if totals.inward_total == 0 and not self.storage.query_transactions(
                site_id, date=day, type=TransactionType.INWARD
            ):
                logger.info("reconcile site=%s date=%s skipped: no budget recorded", site_id, day)
                return None

            if net == 0:
                logger.info("reconcile site=%s date=%s skipped: balanced day", site_id, day)
                return None

            try:
                record = self.storage.insert_carryforward({
                    "site_id": site_id,
                    "from_date": day,
                    "to_date": day + timedelta(days=1),
                    "income_amount": totals.inward_total,
                    "expense_amount": totals.outward_total,
                    "amount": net,
                })
            except CarryforwardConflictError:
                logger.warning("reconcile site=%s date=%s lost race, returning existing record", site_id, day)
                return self.storage.find_carryforward(site_id, day)

        logger.info(
            "reconcile site=%s date=%s created carryforward %s (income=%s expense=%s)",
            site_id, day, format_inr(record.amount), record.income_amount, record.expense_amount,
        )
        return record

    def pending_carryforward(self, site_id: UUID, budget_date: date) -> Optional[CarryforwardRecord]:
        self._require_site(site_id)
        return self._pending_carryforward(site_id, budget_date)

    def apply_pending(
        self,
        site_id: UUID,
        budget_date: date,
        base_amount: Union[Decimal, int, str],
        description: str = "",
        *,
        manager_id: UUID,
        category: Optional[str] = None,
    ) -> ApplyResult:
        self._require_site(site_id)
        base_amount = self._validate_amount(base_amount)
        category = category or self.config.budget_category
        if category == CARRYFORWARD_CATEGORY:
            raise ReservedCategoryError(f"Category '{CARRYFORWARD_CATEGORY}' is reserved for adjustments")

        with self.storage.locked(site_id, "budget"):
            existing_budget = [
                t for t in self.storage.query_transactions(site_id, date=budget_date, type=TransactionType.INWARD)
                if not t.is_carryforward
            ]
            if existing_budget:
                raise DuplicateBudgetError(f"Site {site_id} already has a budget for {budget_date}")

            pending = self._pending_carryforward(site_id, budget_date)
            if pending and pending.amount == 0:
                pending = None

            budget_fields = {
                "amount": base_amount,
                "type": TransactionType.INWARD,
                "category": category,
                "description": description or f"Daily budget for {budget_date}",
                "date": budget_date,
                "site_id": site_id,
                "manager_id": manager_id,
            }
            adjustment_fields = self._adjustment_fields(pending, budget_date, manager_id) if pending else None

            try:
                try:
                    inward_tx, adjustment_tx, applied = self.storage.record_budget(
                        budget_fields,
                        adjustment_fields,
                        carryforward_id=pending.id if pending else None,
                        applied_at=datetime.now().astimezone(),
                    )
                except CarryforwardConflictError:
                    # another writer consumed the record first; the budget still goes in alone
                    logger.warning(
                        "apply_pending site=%s date=%s carryforward %s applied concurrently, recording budget only",
                        site_id, budget_date, pending.id,
                    )
                    inward_tx, adjustment_tx, applied = self.storage.record_budget(budget_fields)
            except BudgetConflictError as e:
                raise DuplicateBudgetError(f"Site {site_id} already has a budget for {budget_date}") from e

        effective_total = base_amount + (applied.amount if applied else Decimal("0"))
        message = f"Budget of {format_inr(base_amount)} recorded for {budget_date}"
        if applied:
            kind = "surplus" if applied.is_surplus else "deficit"
            message += f"; carryforward {kind} of {format_inr(abs(applied.amount))} from {applied.from_date}"
            if adjustment_tx is None:
                message += " was already adjusted on this day, existing adjustment kept"
            else:
                message += " applied"
        logger.info("apply_pending site=%s date=%s effective=%s", site_id, budget_date, effective_total)

        return ApplyResult(
            inward_tx=inward_tx,
            adjustment_tx=adjustment_tx,
            carryforward=applied,
            effective_total=effective_total,
            message=message,
        )

    def record_transaction(self, request: RecordTransactionRequest) -> Transaction:
        self._require_site(request.site_id)
        amount = self._validate_amount(request.amount)
        if request.category == CARRYFORWARD_CATEGORY:
            raise ReservedCategoryError(f"Category '{CARRYFORWARD_CATEGORY}' is reserved for adjustments")

        return self.storage.insert_transaction({
            "amount": amount,
            "type": request.type,
            "category": request.category,
            "description": request.description,
            "date": request.date,
            "site_id": request.site_id,
            "manager_id": request.manager_id,
            "laborer_id": request.laborer_id,
        })

    def delete_transaction(self, transaction_id: UUID) -> None:
        if not self.storage.delete_transaction(transaction_id):
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

    def list_transactions(
        self,
        site_id: UUID,
        day: Optional[date] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[Transaction]:
        self._require_site(site_id)
        date_range = (start_date, end_date) if start_date or end_date else None
        transactions = self.storage.query_transactions(site_id, date=day, date_range=date_range)
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions

    def carryforward_history(
        self,
        site_id: Optional[UUID] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[CarryforwardRecord]:
        if site_id is not None:
            self._require_site(site_id)
        date_range = (start_date, end_date) if start_date or end_date else None
        return self.storage.query_carryforwards(site_id=site_id, date_range=date_range)

    def carryforward_summary(
        self,
        site_id: Optional[UUID] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> CarryforwardSummary:
        records = self.carryforward_history(site_id, start_date, end_date)
        total = sum((r.amount for r in records), Decimal("0"))

        months: dict[str, MonthlyCarryforward] = {}
        for record in records:
            key = record.from_date.strftime("%Y-%m")
            bucket = months.setdefault(key, MonthlyCarryforward(month=key, count=0, total=Decimal("0")))
            bucket.count += 1
            bucket.total += record.amount

        return CarryforwardSummary(
            total=total,
            record_count=len(records),
            site_count=len({r.site_id for r in records}),
            is_surplus=total >= 0,
            monthly=list(months.values()),
        )

    def _aggregate(self, site_id: UUID, day: date) -> DailyTotals:
        totals = DailyTotals(site_id=site_id, date=day)
        for t in self.storage.query_transactions(site_id, date=day):
            if t.type == TransactionType.OUTWARD:
                totals.outward_total += t.amount
            elif t.is_carryforward:
                totals.carryforward_inward += t.amount
            else:
                totals.inward_total += t.amount
        return totals

    def _pending_carryforward(self, site_id: UUID, budget_date: date) -> Optional[CarryforwardRecord]:
        earlier = [r for r in self.storage.query_carryforwards(site_id=site_id) if r.from_date < budget_date]
        if not earlier:
            return None
        latest = max(earlier, key=lambda r: r.from_date)
        return None if latest.is_applied else latest

    def _adjustment_fields(
        self, record: CarryforwardRecord, budget_date: date, manager_id: UUID
    ) -> Optional[dict]:
        if record.is_surplus:
            tx_type = TransactionType.INWARD
            description = f"Carryforward surplus from {record.from_date}"
        else:
            tx_type = TransactionType.OUTWARD
            description = f"Carryforward deficit from {record.from_date}"

        already_applied = self.storage.query_transactions(
            record.site_id, date=budget_date, type=tx_type, category=CARRYFORWARD_CATEGORY
        )
        if already_applied:
            logger.warning(
                "carryforward %s already has a %s adjustment on %s, skipping",
                record.id, tx_type.value, budget_date,
            )
            return None

        return {
            "amount": abs(record.amount),
            "type": tx_type,
            "category": CARRYFORWARD_CATEGORY,
            "description": description,
            "date": budget_date,
            "site_id": record.site_id,
            "manager_id": manager_id,
        }

    def _require_site(self, site_id: UUID) -> None:
        if not self.storage.site_exists(site_id):
            raise SiteNotFoundError(f"Site {site_id} not found")

    @staticmethod
    def _validate_amount(amount) -> Decimal:
        try:
            value = Decimal(str(amount))
        except ArithmeticError:
            raise InvalidAmountError(f"Invalid amount: {amount!r}")
        if not value.is_finite() or value <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {amount}")
        return value
