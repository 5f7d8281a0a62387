import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Column, Date, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint, Uuid,
    create_engine,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings
from .models import CarryforwardRecord, Transaction, TransactionType
from .store import BudgetConflictError, CarryforwardConflictError, LedgerStore, StoreError, StoreUnavailable


logger = logging.getLogger(__name__)

Base = declarative_base()


class SiteRow(Base):
    __tablename__ = "sites"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    location = Column(String(255), nullable=False, default="")
    status = Column(String(20), nullable=False, default="ACTIVE")


class TransactionRow(Base):
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    amount = Column(Numeric(14, 2), nullable=False)
    type = Column(String(10), nullable=False)
    category = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    date = Column(Date, nullable=False, index=True)
    site_id = Column(Uuid, ForeignKey("sites.id"), nullable=False, index=True)
    manager_id = Column(Uuid, nullable=False, index=True)
    laborer_id = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class CarryforwardRow(Base):
    __tablename__ = "carryforwards"
    __table_args__ = (
        UniqueConstraint("site_id", "from_date", name="uq_carryforward_site_from_date"),
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    site_id = Column(Uuid, ForeignKey("sites.id"), nullable=False, index=True)
    from_date = Column(Date, nullable=False, index=True)
    to_date = Column(Date, nullable=False)
    income_amount = Column(Numeric(14, 2), nullable=False)
    expense_amount = Column(Numeric(14, 2), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    applied_at = Column(DateTime(timezone=True), nullable=True)
    adjustment_transaction_id = Column(Uuid, ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True)


class DailyBudgetRow(Base):
    __tablename__ = "daily_budgets"
    __table_args__ = (
        UniqueConstraint("site_id", "date", name="uq_daily_budget_site_date"),
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    site_id = Column(Uuid, ForeignKey("sites.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    transaction_id = Column(Uuid, ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True)


def _to_transaction(row: TransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        amount=Decimal(row.amount),
        type=TransactionType(row.type),
        category=row.category,
        description=row.description,
        date=row.date,
        site_id=row.site_id,
        manager_id=row.manager_id,
        laborer_id=row.laborer_id,
        created_at=row.created_at,
    )


class SqlLedgerStore(LedgerStore):
    """SQLAlchemy-backed store; carryforward and daily budget uniqueness are table constraints."""

    def __init__(self, database_url: Optional[str] = None, timeout: Optional[float] = None, create_tables: bool = True):
        super().__init__(timeout)
        url = database_url or settings.database_url
        if url.startswith("sqlite"):
            self.engine = create_engine(url, connect_args={"timeout": self.timeout, "check_same_thread": False})
        else:
            self.engine = create_engine(url, pool_pre_ping=True, pool_timeout=self.timeout)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        if create_tables:
            Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("ledger store failure: %s", e)
            raise StoreUnavailable(str(e)) from e
        finally:
            db.close()

    def add_site(self, site_id: UUID, name: str, location: str = "") -> None:
        with self._session() as db:
            db.add(SiteRow(id=site_id, name=name, location=location))

    def site_exists(self, site_id: UUID) -> bool:
        with self._session() as db:
            return db.get(SiteRow, site_id) is not None

    @staticmethod
    def _transaction_data(fields: dict) -> dict:
        data = {"id": uuid4(), "created_at": datetime.now().astimezone(), "description": "", **fields}
        data["type"] = TransactionType(data["type"]).value
        return data

    def insert_transaction(self, fields: dict) -> Transaction:
        row = TransactionRow(**self._transaction_data(fields))
        try:
            with self._session() as db:
                db.add(row)
                db.flush()
                return _to_transaction(row)
        except IntegrityError as e:
            raise StoreError(f"Transaction rejected by store: {e.orig}") from e

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        with self._session() as db:
            row = db.get(TransactionRow, transaction_id)
            return _to_transaction(row) if row else None

    def delete_transaction(self, transaction_id: UUID) -> bool:
        with self._session() as db:
            row = db.get(TransactionRow, transaction_id)
            if not row:
                return False
            db.query(CarryforwardRow).filter(
                CarryforwardRow.adjustment_transaction_id == transaction_id
            ).update({CarryforwardRow.adjustment_transaction_id: None}, synchronize_session=False)
            db.query(DailyBudgetRow).filter(
                DailyBudgetRow.transaction_id == transaction_id
            ).delete(synchronize_session=False)
            db.delete(row)
            return True

    def query_transactions(self, site_id, date=None, date_range=None, type=None, category=None):
        with self._session() as db:
            query = db.query(TransactionRow).filter(TransactionRow.site_id == site_id)
            if date is not None:
                query = query.filter(TransactionRow.date == date)
            if date_range:
                start, end = date_range
                if start:
                    query = query.filter(TransactionRow.date >= start)
                if end:
                    query = query.filter(TransactionRow.date <= end)
            if type is not None:
                query = query.filter(TransactionRow.type == TransactionType(type).value)
            if category is not None:
                query = query.filter(TransactionRow.category == category)
            return [_to_transaction(row) for row in query.all()]

    def insert_carryforward(self, fields: dict) -> CarryforwardRecord:
        row = CarryforwardRow(**{
            "id": uuid4(),
            "created_at": datetime.now().astimezone(),
            "applied_at": None,
            "adjustment_transaction_id": None,
            **fields,
        })
        try:
            with self._session() as db:
                db.add(row)
                db.flush()
                return CarryforwardRecord.model_validate(row)
        except IntegrityError as e:
            raise CarryforwardConflictError(
                f"Carryforward already exists for site {fields['site_id']} on {fields['from_date']}"
            ) from e

    def find_carryforward(self, site_id, from_date):
        with self._session() as db:
            row = db.query(CarryforwardRow).filter(
                CarryforwardRow.site_id == site_id,
                CarryforwardRow.from_date == from_date,
            ).first()
            return CarryforwardRecord.model_validate(row) if row else None

    def query_carryforwards(self, site_id=None, date_range=None):
        with self._session() as db:
            query = db.query(CarryforwardRow)
            if site_id is not None:
                query = query.filter(CarryforwardRow.site_id == site_id)
            if date_range:
                start, end = date_range
                if start:
                    query = query.filter(CarryforwardRow.from_date >= start)
                if end:
                    query = query.filter(CarryforwardRow.from_date <= end)
            rows = query.order_by(CarryforwardRow.from_date.desc()).all()
            return [CarryforwardRecord.model_validate(row) for row in rows]

    def _claim_carryforward(
        self, db: Session, record_id: UUID, to_date, applied_at: datetime, adjustment_id: Optional[UUID]
    ) -> bool:
        # conditional update: only an unapplied record can be claimed
        updated = db.query(CarryforwardRow).filter(
            CarryforwardRow.id == record_id,
            CarryforwardRow.applied_at.is_(None),
        ).update({
            CarryforwardRow.to_date: to_date,
            CarryforwardRow.applied_at: applied_at,
            CarryforwardRow.adjustment_transaction_id: adjustment_id,
        }, synchronize_session=False)
        return updated == 1

    def record_budget(self, budget_fields, adjustment_fields=None, carryforward_id=None, applied_at=None):
        budget_row = TransactionRow(**self._transaction_data(budget_fields))
        adjustment_row = TransactionRow(**self._transaction_data(adjustment_fields)) if adjustment_fields else None
        try:
            with self._session() as db:
                db.add(budget_row)
                if adjustment_row is not None:
                    db.add(adjustment_row)
                db.flush()
                db.add(DailyBudgetRow(site_id=budget_row.site_id, date=budget_row.date, transaction_id=budget_row.id))
                db.flush()

                record = None
                if carryforward_id is not None:
                    claimed = self._claim_carryforward(
                        db,
                        carryforward_id,
                        budget_row.date,
                        applied_at or datetime.now().astimezone(),
                        adjustment_row.id if adjustment_row is not None else None,
                    )
                    if not claimed:
                        # leaving the session without commit discards the writes above
                        raise CarryforwardConflictError(f"Carryforward {carryforward_id} is already applied")
                    record = CarryforwardRecord.model_validate(db.get(CarryforwardRow, carryforward_id))

                return (
                    _to_transaction(budget_row),
                    _to_transaction(adjustment_row) if adjustment_row is not None else None,
                    record,
                )
        except IntegrityError as e:
            raise BudgetConflictError(
                f"Site {budget_fields['site_id']} already has a budget for {budget_fields['date']}"
            ) from e
