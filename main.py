import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import (
    NotFoundError,
    ReconciliationConflictError,
    StorageError,
    ValidationError,
)
from ledger import ExpenseFilters
from periods import resolve_range
from schemas import (
    CashBookOut,
    CashBookPayload,
    DatasetSnapshot,
    ExpenseGroupOut,
    ExpenseGroupPayload,
    ExpenseOut,
    ExpensePayload,
    ExpenseUpdatePayload,
    ImportResult,
    MonthlyPlanOut,
    MonthlyPlanPayload,
    PlannedVsActualOut,
    SummaryOut,
)
from services import (
    CashBookService,
    DataTransferService,
    ExpenseGroupService,
    ExpenseService,
    MonthlyPlanService,
    SummaryService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Ledger")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(ValidationError)
def handle_validation_error(_request: Request, exc: ValidationError):
    return _error(400, str(exc))


@app.exception_handler(PydanticValidationError)
def handle_payload_error(_request: Request, exc: PydanticValidationError):
    messages = [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        if err["loc"]
        else err["msg"]
        for err in exc.errors()
    ]
    return _error(400, "; ".join(messages))


@app.exception_handler(NotFoundError)
def handle_not_found(_request: Request, exc: NotFoundError):
    return _error(404, str(exc))


@app.exception_handler(ReconciliationConflictError)
def handle_conflict(_request: Request, exc: ReconciliationConflictError):
    return _error(409, "The request conflicted with a concurrent change, retry it")


@app.exception_handler(StorageError)
def handle_storage_error(request: Request, exc: StorageError):
    logger.error(f"storage_unavailable: path={request.url.path} error={exc}")
    return _error(503, "Storage is unavailable")


def filters_from_request(request: Request) -> ExpenseFilters:
    start_date, end_date = resolve_range(
        request.query_params.get("startDate"), request.query_params.get("endDate")
    )
    return ExpenseFilters(
        start_date=start_date,
        end_date=end_date,
        group_id=request.query_params.get("groupId") or None,
        cash_book_id=request.query_params.get("cashBookId") or None,
        search=request.query_params.get("search") or None,
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/api/summary", response_model=SummaryOut)
def api_summary(db: Session = Depends(get_db)):
    return SummaryOut.from_summary(SummaryService(db).summary())


@app.get("/api/reports/planned-vs-actual", response_model=list[PlannedVsActualOut])
def api_planned_vs_actual(db: Session = Depends(get_db)):
    rows = SummaryService(db).planned_vs_actual()
    return [PlannedVsActualOut.from_row(row) for row in rows]


@app.get("/api/cash-books", response_model=list[CashBookOut])
def api_cash_books(db: Session = Depends(get_db)):
    return [CashBookOut.from_model(book) for book in CashBookService(db).list_all()]


@app.post("/api/cash-books", response_model=CashBookOut)
def api_save_cash_book(payload: CashBookPayload, db: Session = Depends(get_db)):
    book = CashBookService(db).save(payload.to_input())
    return CashBookOut.from_model(book)


@app.get("/api/expense-groups", response_model=list[ExpenseGroupOut])
def api_expense_groups(db: Session = Depends(get_db)):
    groups = ExpenseGroupService(db).list_all()
    return [ExpenseGroupOut.from_model(group) for group in groups]


@app.get("/api/expense-groups/{group_id}", response_model=ExpenseGroupOut)
def api_expense_group(group_id: str, db: Session = Depends(get_db)):
    return ExpenseGroupOut.from_model(ExpenseGroupService(db).get(group_id))


@app.post("/api/expense-groups", response_model=ExpenseGroupOut)
def api_save_expense_group(
    payload: ExpenseGroupPayload, db: Session = Depends(get_db)
):
    group = ExpenseGroupService(db).save(payload.to_input())
    return ExpenseGroupOut.from_model(group)


@app.get("/api/monthly-plans", response_model=list[MonthlyPlanOut])
def api_monthly_plans(db: Session = Depends(get_db)):
    plans = MonthlyPlanService(db).list_all()
    return [MonthlyPlanOut.from_model(plan) for plan in plans]


@app.get("/api/monthly-plans/current", response_model=Optional[MonthlyPlanOut])
def api_current_plan(db: Session = Depends(get_db)):
    plan = MonthlyPlanService(db).current()
    return MonthlyPlanOut.from_model(plan) if plan else None


@app.get("/api/monthly-plans/history", response_model=list[MonthlyPlanOut])
def api_plan_history(db: Session = Depends(get_db)):
    plans = MonthlyPlanService(db).history()
    return [MonthlyPlanOut.from_model(plan) for plan in plans]


@app.get("/api/monthly-plans/{plan_id}", response_model=MonthlyPlanOut)
def api_monthly_plan(plan_id: str, db: Session = Depends(get_db)):
    return MonthlyPlanOut.from_model(MonthlyPlanService(db).get(plan_id))


@app.post("/api/monthly-plans", response_model=MonthlyPlanOut)
def api_save_monthly_plan(payload: MonthlyPlanPayload, db: Session = Depends(get_db)):
    plan = MonthlyPlanService(db).save(payload.to_input())
    return MonthlyPlanOut.from_model(plan)


@app.put("/api/monthly-plans/{plan_id}", response_model=MonthlyPlanOut)
def api_update_monthly_plan(
    plan_id: str, payload: MonthlyPlanPayload, db: Session = Depends(get_db)
):
    data = payload.to_input().model_copy(update={"id": plan_id})
    return MonthlyPlanOut.from_model(MonthlyPlanService(db).save(data))


@app.get("/api/expenses", response_model=list[ExpenseOut])
def api_expenses(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    return [ExpenseOut.from_model(e) for e in ExpenseService(db).list(filters)]


@app.get("/api/expenses/export.csv")
def api_export_expenses_csv(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    csv_text = DataTransferService(db).export_csv(filters)
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="expenses.csv"'},
    )


@app.get("/api/expenses/{expense_id}", response_model=ExpenseOut)
def api_expense(expense_id: str, db: Session = Depends(get_db)):
    return ExpenseOut.from_model(ExpenseService(db).get(expense_id))


@app.post("/api/expenses", response_model=ExpenseOut, status_code=201)
def api_create_expense(payload: ExpensePayload, db: Session = Depends(get_db)):
    expense = ExpenseService(db).create(payload.to_input())
    return ExpenseOut.from_model(expense)


@app.put("/api/expenses/{expense_id}", response_model=ExpenseOut)
def api_update_expense(
    expense_id: str, payload: ExpenseUpdatePayload, db: Session = Depends(get_db)
):
    expense = ExpenseService(db).update(expense_id, payload.to_patch())
    return ExpenseOut.from_model(expense)


@app.delete("/api/expenses/{expense_id}", status_code=204)
def api_delete_expense(expense_id: str, db: Session = Depends(get_db)):
    ExpenseService(db).delete(expense_id)
    return Response(status_code=204)


@app.get("/api/export", response_model=DatasetSnapshot)
def api_export(db: Session = Depends(get_db)):
    return DataTransferService(db).export_snapshot()


@app.post("/api/import", response_model=ImportResult)
def api_import(snapshot: DatasetSnapshot, db: Session = Depends(get_db)):
    return DataTransferService(db).import_snapshot(snapshot)


@app.post("/api/reset", status_code=204)
def api_reset(db: Session = Depends(get_db)):
    DataTransferService(db).reset()
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
