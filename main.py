import logging
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import resolve_user_id
from config import get_settings
from database import SessionLocal
from models import TransactionType
from money import cents_to_decimal
from periods import Period, resolve_period
from schemas import (
    CategoryBreakdownOut,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    SummaryOut,
    TransactionIn,
    TransactionOut,
    TransactionPageOut,
    TransactionUpdate,
)
from services import (
    CategoryService,
    DuplicateName,
    HasReferences,
    LedgerError,
    NotFound,
    SummaryService,
    TransactionFilters,
    TransactionService,
    TypeMismatch,
    local_now,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.client_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS: dict[type[LedgerError], int] = {
    NotFound: 404,
    DuplicateName: 400,
    TypeMismatch: 400,
    HasReferences: 400,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(request: Request) -> int:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=401,
            detail="Not authorized, no token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = resolve_user_id(token.strip())
    if user_id is None:
        raise HTTPException(
            status_code=401,
            detail="Not authorized, token failed",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


def period_from_query(
    period: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> Period:
    try:
        return resolve_period(period, date_from, date_to, today=local_now().date())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = 400
    for error_cls, code in ERROR_STATUS.items():
        if isinstance(exc, error_cls):
            status_code = code
            break
    return JSONResponse(
        status_code=status_code, content={"detail": exc.message, "kind": exc.kind}
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Invalid request",
            "kind": "validation_error",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logging.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "kind": "internal_error"},
    )


@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return CategoryService(db, user_id).list_all()


@app.get("/api/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).get(category_id)


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).create(data)


@app.api_route(
    "/api/categories/{category_id}",
    methods=["PUT", "PATCH"],
    response_model=CategoryOut,
)
def update_category(
    category_id: int,
    data: CategoryUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).update(category_id, data)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    CategoryService(db, user_id).delete(category_id)
    return Response(status_code=204)


@app.get("/api/transactions/summary", response_model=SummaryOut)
def get_summary(
    period: Period = Depends(period_from_query),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    date_from, date_to = period.bounds()
    summary = SummaryService(db, user_id).summarize(date_from, date_to)
    return SummaryOut(
        date_from=period.start,
        date_to=period.end,
        total_income=cents_to_decimal(summary.total_income_cents),
        total_expenses=cents_to_decimal(summary.total_expenses_cents),
        balance=cents_to_decimal(summary.balance_cents),
        category_breakdown={
            name: CategoryBreakdownOut(
                amount=cents_to_decimal(entry.amount_cents),
                type=entry.type,
                color=entry.color,
            )
            for name, entry in summary.category_breakdown.items()
        },
        transaction_count=summary.transaction_count,
    )


@app.get("/api/transactions", response_model=TransactionPageOut)
def list_transactions(
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    period: Period = Depends(period_from_query),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    size = page_size or settings.default_page_size
    size = min(max(size, 1), settings.max_page_size)
    date_from, date_to = period.bounds()
    result = TransactionService(db, user_id).list(
        TransactionFilters(
            type=type,
            category_id=category_id,
            date_from=date_from,
            date_to=date_to,
            page=page,
            page_size=size,
        )
    )
    return TransactionPageOut(
        items=[TransactionOut.from_model(txn) for txn in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        page_count=result.page_count,
    )


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).get(transaction_id)
    return TransactionOut.from_model(txn)


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).create(data)
    return TransactionOut.from_model(txn)


@app.api_route(
    "/api/transactions/{transaction_id}",
    methods=["PUT", "PATCH"],
    response_model=TransactionOut,
)
def update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).update(transaction_id, data)
    return TransactionOut.from_model(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    TransactionService(db, user_id).delete(transaction_id)
    return Response(status_code=204)
