from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, computed_field


CARRYFORWARD_CATEGORY = "Carryforward"


class TransactionType(str, Enum):
    INWARD = "INWARD"
    OUTWARD = "OUTWARD"


class RecordTransactionRequest(BaseModel):
    site_id: UUID
    manager_id: UUID
    type: TransactionType
    amount: Decimal = Field(..., description="Positive amount in currency units")
    category: str
    description: str = ""
    date: date
    laborer_id: Optional[UUID] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "site_id": "a1b2c3d4-0000-4000-8000-000000000001",
            "manager_id": "550e8400-e29b-41d4-a716-446655440000",
            "type": "OUTWARD",
            "amount": 1200.00,
            "category": "Materials",
            "description": "Cement bags",
            "date": "2024-03-01"
        }
    })


class ApplyBudgetRequest(BaseModel):
    budget_date: date
    base_amount: Decimal = Field(..., description="Admin-entered daily budget, excluding carryforward")
    manager_id: UUID
    description: str = ""
    category: Optional[str] = None


class Transaction(BaseModel):
    id: UUID
    amount: Decimal
    type: TransactionType
    category: str
    description: str = ""
    date: date
    site_id: UUID
    manager_id: UUID
    laborer_id: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def is_carryforward(self) -> bool:
        return self.category == CARRYFORWARD_CATEGORY


class CarryforwardRecord(BaseModel):
    id: UUID
    site_id: UUID
    from_date: date
    to_date: date
    income_amount: Decimal
    expense_amount: Decimal
    amount: Decimal
    created_at: datetime
    applied_at: Optional[datetime] = None
    adjustment_transaction_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_surplus(self) -> bool:
        return self.amount > 0

    @property
    def is_deficit(self) -> bool:
        return self.amount < 0

    @property
    def is_applied(self) -> bool:
        return self.applied_at is not None


class DailyTotals(BaseModel):
    site_id: UUID
    date: date
    inward_total: Decimal = Decimal("0")
    outward_total: Decimal = Decimal("0")
    carryforward_inward: Decimal = Decimal("0")

    @computed_field
    @property
    def net(self) -> Decimal:
        return self.inward_total - self.outward_total


class ApplyResult(BaseModel):
    inward_tx: Transaction
    adjustment_tx: Optional[Transaction] = None
    carryforward: Optional[CarryforwardRecord] = None
    effective_total: Decimal
    message: str


class ReconcileResponse(BaseModel):
    carryforward: Optional[CarryforwardRecord] = None
    message: str


class MonthlyCarryforward(BaseModel):
    month: str
    count: int
    total: Decimal


class CarryforwardSummary(BaseModel):
    total: Decimal
    record_count: int
    site_count: int
    is_surplus: bool
    monthly: list[MonthlyCarryforward] = Field(default_factory=list)
