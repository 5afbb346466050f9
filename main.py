import argparse
import logging
from datetime import date
from typing import Any, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_expenses
from database import SessionLocal, session_scope
from models import Category, Expense, Income, PaymentMethod, UserSettings
from schemas import (
    BulkDeleteIn,
    CategoryIn,
    CategoryUpdate,
    ExpenseIn,
    ExpenseQuery,
    ExpenseUpdate,
    IncomeIn,
    IncomeUpdate,
    PaymentMethodIn,
    PaymentMethodUpdate,
    SettingsUpdate,
    SummaryQuery,
    ValidationResult,
    validate,
)
from services import (
    CategoryService,
    ConflictError,
    DashboardService,
    ExpenseService,
    ImportService,
    IncomeService,
    NotFoundError,
    PaymentMethodService,
    SettingsService,
    UserService,
)
from tokens import generate_access_token, read_access_token

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Family Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(request: Request) -> int:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user_id = read_access_token(token.strip())
    if user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(
        status_code=409,
        content={"error": str(exc), "expense_count": exc.expense_count},
    )


def validation_failed(result: ValidationResult) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Validation failed", "details": result.errors},
    )


async def json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc


def not_found(exc: NotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


def serialize_expense(expense: Expense) -> dict[str, object]:
    return {
        "id": expense.id,
        "date": expense.date.isoformat(),
        "merchant": expense.merchant,
        "amount": expense.amount,
        "cashback_amount": expense.cashback_amount,
        "amount_net": expense.amount_net,
        "category_id": expense.category_id,
        "category": expense.category.name if expense.category else None,
        "payment_method_id": expense.payment_method_id,
        "payment_method": expense.payment_method.name
        if expense.payment_method
        else None,
        "created_at": expense.created_at.isoformat(),
        "updated_at": expense.updated_at.isoformat(),
    }


def serialize_category(
    category: Category, expense_count: Optional[int] = None
) -> dict[str, object]:
    data: dict[str, object] = {
        "id": category.id,
        "name": category.name,
        "monthly_budget": category.monthly_budget,
        "is_default": category.is_default,
    }
    if expense_count is not None:
        data["expense_count"] = expense_count
    return data


def serialize_payment_method(method: PaymentMethod) -> dict[str, object]:
    return {
        "id": method.id,
        "name": method.name,
        "type": method.type.value,
        "cashback_percentage": str(method.cashback_percentage)
        if method.cashback_percentage is not None
        else None,
        "is_default": method.is_default,
    }


def serialize_income(income: Income) -> dict[str, object]:
    return {
        "id": income.id,
        "month": income.month.strftime("%Y-%m"),
        "amount": income.amount,
        "source": income.source,
    }


def serialize_settings(user_settings: UserSettings) -> dict[str, object]:
    return {
        "billing_cycle_start_day": user_settings.billing_cycle_start_day,
        "billing_cycle_end_day": user_settings.billing_cycle_end_day,
    }


@app.get("/health")
def health():
    return {"status": "ok"}


# Expenses


@app.get("/api/expenses")
def list_expenses(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(ExpenseQuery, dict(request.query_params))
    if not result.ok:
        return validation_failed(result)
    query = result.value
    items, total = ExpenseService(db, user_id).list(query)
    return {
        "items": [serialize_expense(expense) for expense in items],
        "page": query.page,
        "limit": query.limit,
        "total": total,
        "total_pages": (total + query.limit - 1) // query.limit,
    }


@app.post("/api/expenses", status_code=201)
async def create_expense(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(ExpenseIn, await json_body(request))
    if not result.ok:
        return validation_failed(result)
    try:
        expense = ExpenseService(db, user_id).create(result.value)
    except NotFoundError as exc:
        raise not_found(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_expense(expense)


@app.post("/api/expenses/bulk-delete")
async def bulk_delete_expenses(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(BulkDeleteIn, await json_body(request))
    if not result.ok:
        return validation_failed(result)
    try:
        deleted = ExpenseService(db, user_id).bulk_delete(result.value.ids)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"deleted": deleted}


@app.get("/api/expenses/export.csv")
def export_expenses_csv(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(ExpenseQuery, dict(request.query_params))
    if not result.ok:
        return validation_failed(result)
    expenses = ExpenseService(db, user_id).all_matching(result.value)
    content = export_expenses(expenses)
    filename = f"expenses_{date.today().isoformat()}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/expenses/{expense_id}")
def get_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        expense = ExpenseService(db, user_id).get(expense_id)
    except NotFoundError as exc:
        raise not_found(exc) from exc
    return serialize_expense(expense)


@app.patch("/api/expenses/{expense_id}")
async def update_expense(
    expense_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(ExpenseUpdate, await json_body(request))
    if not result.ok:
        return validation_failed(result)
    try:
        expense = ExpenseService(db, user_id).update(expense_id, result.value)
    except NotFoundError as exc:
        raise not_found(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_expense(expense)


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        ExpenseService(db, user_id).delete(expense_id)
    except NotFoundError as exc:
        raise not_found(exc) from exc
    return {"success": True}


# Categories


@app.get("/api/categories")
def list_categories(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    rows = CategoryService(db, user_id).list_with_counts()
    return [serialize_category(category, count) for category, count in rows]


@app.post("/api/categories", status_code=201)
async def create_category(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(CategoryIn, await json_body(request))
    if not result.ok:
        return validation_failed(result)
    try:
        category = CategoryService(db, user_id).create(result.value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_category(category, 0)


@app.patch("/api/categories/{category_id}")
async def update_category(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(CategoryUpdate, await json_body(request))
    if not result.ok:
        return validation_failed(result)
    service = CategoryService(db, user_id)
    try:
        category = service.update(category_id, result.value)
    except NotFoundError as exc:
        raise not_found(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_category(category, service.expense_count(category.id))


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    reassign_to: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        reassigned = CategoryService(db, user_id).delete(category_id, reassign_to)
    except NotFoundError as exc:
        raise not_found(exc) from exc
    except ConflictError:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "reassigned": reassigned}


# Payment methods


@app.get("/api/payment-methods")
def list_payment_methods(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    methods = PaymentMethodService(db, user_id).list_all()
    return [serialize_payment_method(method) for method in methods]


@app.post("/api/payment-methods", status_code=201)
async def create_payment_method(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(PaymentMethodIn, await json_body(request))
    if not result.ok:
        return validation_failed(result)
    try:
        method = PaymentMethodService(db, user_id).create(result.value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_payment_method(method)


@app.patch("/api/payment-methods/{payment_method_id}")
async def update_payment_method(
    payment_method_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(PaymentMethodUpdate, await json_body(request))
    if not result.ok:
        return validation_failed(result)
    try:
        method = PaymentMethodService(db, user_id).update(
            payment_method_id, result.value
        )
    except NotFoundError as exc:
        raise not_found(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_payment_method(method)


@app.delete("/api/payment-methods/{payment_method_id}")
def delete_payment_method(
    payment_method_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        PaymentMethodService(db, user_id).delete(payment_method_id)
    except NotFoundError as exc:
        raise not_found(exc) from exc
    return {"success": True}


# Income


@app.get("/api/income")
def list_income(db: Session = Depends(get_db), user_id: int = Depends(current_user_id)):
    return [serialize_income(income) for income in IncomeService(db, user_id).list_all()]


@app.post("/api/income")
async def upsert_income(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(IncomeIn, await json_body(request))
    if not result.ok:
        return validation_failed(result)
    try:
        income = IncomeService(db, user_id).upsert(result.value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_income(income)


@app.patch("/api/income/{income_id}")
async def update_income(
    income_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(IncomeUpdate, await json_body(request))
    if not result.ok:
        return validation_failed(result)
    try:
        income = IncomeService(db, user_id).update(income_id, result.value)
    except NotFoundError as exc:
        raise not_found(exc) from exc
    return serialize_income(income)


@app.delete("/api/income/{income_id}")
def delete_income(
    income_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        IncomeService(db, user_id).delete(income_id)
    except NotFoundError as exc:
        raise not_found(exc) from exc
    return {"success": True}


# Settings


@app.get("/api/settings")
def get_user_settings(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return serialize_settings(SettingsService(db, user_id).get())


@app.patch("/api/settings")
async def update_user_settings(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(SettingsUpdate, await json_body(request))
    if not result.ok:
        return validation_failed(result)
    return serialize_settings(SettingsService(db, user_id).update(result.value))


# Dashboard


@app.get("/api/dashboard/summary")
def dashboard_summary(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = validate(SummaryQuery, dict(request.query_params))
    if not result.ok:
        return validation_failed(result)
    query = result.value
    service = DashboardService(db, user_id)
    try:
        window = service.resolve_window(query.month, query.start_date, query.end_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return service.summary(window)


@app.get("/api/dashboard/trends")
def dashboard_trends(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return DashboardService(db, user_id).trends()


# Import


async def _read_upload(file: UploadFile) -> str:
    raw = await file.read()
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 encoded CSV") from exc


@app.post("/api/import/csv/preview")
async def preview_import(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    content = await _read_upload(file)
    preview = ImportService(db, user_id).preview(content)
    preview["rows"] = [
        {**row, "date": row["date"].isoformat()} for row in preview["rows"]
    ]
    return preview


@app.post("/api/import/csv")
async def import_csv(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    content = await _read_upload(file)
    try:
        return ImportService(db, user_id).commit(content)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def create_user(email: str) -> None:
    with session_scope() as session:
        # Login is handled outside this service; the hash is never matched.
        user = UserService(session).create(email, password_hash="!")
        token = generate_access_token(user.id)
    print(f"user_id={user.id}")
    print(f"token={token}")


def main():
    parser = argparse.ArgumentParser(prog="family-ledger")
    sub = parser.add_subparsers(dest="command")
    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    new_user = sub.add_parser("create-user", help="Create a user and print a token")
    new_user.add_argument("email")
    args = parser.parse_args()

    if args.command == "create-user":
        try:
            create_user(args.email)
        except ValueError as exc:
            parser.exit(1, f"error: {exc}\n")
        return

    import uvicorn

    uvicorn.run(
        "main:app",
        host=getattr(args, "host", "0.0.0.0"),
        port=getattr(args, "port", 8000),
        reload=False,
    )


if __name__ == "__main__":
    main()
