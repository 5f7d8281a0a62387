from datetime import date
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .models import (
    ApplyBudgetRequest, ApplyResult, CarryforwardRecord, CarryforwardSummary,
    DailyTotals, ReconcileResponse, RecordTransactionRequest, Transaction,
)
from .service import (
    CarryforwardService, DuplicateBudgetError, LedgerServiceError, NotFoundError,
)
from .store import InMemoryLedgerStore, LedgerStore, StoreUnavailable


def build_store() -> LedgerStore:
    if settings.store_backend == "sql":
        from .sql_store import SqlLedgerStore
        return SqlLedgerStore(settings.database_url)
    return InMemoryLedgerStore()


def create_app(service: Optional[CarryforwardService] = None, root_path: str = "") -> FastAPI:
    app = FastAPI(
        title="Site Ledger API",
        description="Daily site budgets with idempotent carryforward reconciliation",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.service = service or CarryforwardService(build_store())
    app.include_router(router)
    return app


def get_service(request: Request) -> CarryforwardService:
    return request.app.state.service


router = APIRouter()


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "site-ledger"}


@router.post("/transactions", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def record_transaction(
    request: RecordTransactionRequest, service: CarryforwardService = Depends(get_service)
) -> Transaction:
    try:
        return service.record_transaction(request)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.delete("/transactions/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Transactions"])
def delete_transaction(transaction_id: UUID, service: CarryforwardService = Depends(get_service)):
    try:
        service.delete_transaction(transaction_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/sites/{site_id}/transactions", response_model=list[Transaction], tags=["Transactions"])
def list_transactions(
    site_id: UUID,
    day: Optional[date] = Query(None, alias="date"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    service: CarryforwardService = Depends(get_service),
) -> list[Transaction]:
    try:
        return service.list_transactions(site_id, day, start_date, end_date)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/sites/{site_id}/totals/{day}", response_model=DailyTotals, tags=["Carryforward"])
def daily_totals(site_id: UUID, day: date, service: CarryforwardService = Depends(get_service)) -> DailyTotals:
    try:
        return service.aggregate(site_id, day)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/sites/{site_id}/reconcile/{day}", response_model=ReconcileResponse, tags=["Carryforward"])
def reconcile(site_id: UUID, day: date, service: CarryforwardService = Depends(get_service)) -> ReconcileResponse:
    try:
        record = service.reconcile(site_id, day)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if record is None:
        return ReconcileResponse(carryforward=None, message="Nothing to carry forward")
    return ReconcileResponse(carryforward=record, message="Carryforward recorded")


@router.post("/sites/{site_id}/budget", response_model=ApplyResult, status_code=status.HTTP_201_CREATED, tags=["Carryforward"])
def add_budget(
    site_id: UUID, request: ApplyBudgetRequest, service: CarryforwardService = Depends(get_service)
) -> ApplyResult:
    try:
        return service.apply_pending(
            site_id,
            request.budget_date,
            request.base_amount,
            request.description,
            manager_id=request.manager_id,
            category=request.category,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DuplicateBudgetError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/sites/{site_id}/carryforwards/pending", response_model=Optional[CarryforwardRecord], tags=["Carryforward"])
def pending_carryforward(
    site_id: UUID,
    day: date = Query(..., alias="date"),
    service: CarryforwardService = Depends(get_service),
) -> Optional[CarryforwardRecord]:
    try:
        return service.pending_carryforward(site_id, day)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/carryforwards", response_model=list[CarryforwardRecord], tags=["History"])
def carryforward_history(
    site_id: Optional[UUID] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    service: CarryforwardService = Depends(get_service),
) -> list[CarryforwardRecord]:
    try:
        return service.carryforward_history(site_id, start_date, end_date)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/carryforwards/summary", response_model=CarryforwardSummary, tags=["History"])
def carryforward_summary(
    site_id: Optional[UUID] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    service: CarryforwardService = Depends(get_service),
) -> CarryforwardSummary:
    try:
        return service.carryforward_summary(site_id, start_date, end_date)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
