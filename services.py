from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, TypeVar

from rapidfuzz.distance import Levenshtein
from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, contains_eager, joinedload

from cashback import (
    CashbackInvariantError,
    CashbackResult,
    ensure_expense_invariants,
    payment_method_cashback,
)
from csv_utils import parse_import_csv
from models import (
    END_OF_MONTH,
    Category,
    Expense,
    Income,
    PaymentMethod,
    PaymentType,
    User,
    UserSettings,
)
from periods import (
    BillingWindow,
    add_months,
    calendar_month_window,
    local_today,
    month_label,
    month_start,
    parse_month,
    resolve_summary_window,
)
from schemas import (
    BULK_DELETE_LIMIT,
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
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = (
    "Food",
    "Baby",
    "Groceries",
    "Utilities",
    "Household",
    "Transport",
    "Others",
    "Subscription",
    "Insurance",
    "Monthly Rent",
    "Instalment",
)

DEFAULT_PAYMENT_METHODS = (
    ("Cash", PaymentType.cash, None, False),
    ("Bank Transfer", PaymentType.bank_transfer, None, False),
    ("Debit Card", PaymentType.debit_card, None, False),
    ("Credit Card", PaymentType.credit_card, Decimal("1.20"), True),
)

TOP_MERCHANT_LIMIT = 5
TREND_MONTHS = 6
IMPORT_ERROR_LIMIT = 50

BUDGET_WARNING_PERCENT = 80
BUDGET_OVER_PERCENT = 100


class NotFoundError(ValueError):
    """Entity is missing or owned by another user."""


class ConflictError(ValueError):
    def __init__(self, message: str, expense_count: int) -> None:
        super().__init__(message)
        self.expense_count = expense_count


def percent_of(part: int, whole: int, places: int = 1) -> float:
    """``part / whole`` as a percentage rounded half-up to ``places`` decimals."""
    if whole <= 0:
        return 0.0
    exponent = Decimal(1).scaleb(-places)
    value = (Decimal(part) * 100 / Decimal(whole)).quantize(
        exponent, rounding=ROUND_HALF_UP
    )
    return float(value)


def budget_percentage(spent: int, budget: int) -> int:
    return int(
        (Decimal(spent) * 100 / Decimal(budget)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )


def classify_budget(spent: int, budget: int) -> str:
    percentage = budget_percentage(spent, budget)
    if percentage >= BUDGET_OVER_PERCENT:
        return "over_budget"
    if percentage >= BUDGET_WARNING_PERCENT:
        return "warning"
    return "on_track"


@dataclass(frozen=True)
class CategoryRollup:
    category_id: int
    category_name: str
    budget: Optional[int]
    spent: int
    cashback: int
    transaction_count: int


@dataclass(frozen=True)
class MerchantRollup:
    merchant: str
    total_spent: int
    cashback_earned: int
    transaction_count: int


Owned = TypeVar("Owned", Category, PaymentMethod, Expense, Income)


class _UserScoped:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _owned(self, model: type[Owned], entity_id: int, label: str) -> Owned:
        obj = self.session.get(model, entity_id)
        if not obj or obj.user_id != self.user_id:
            raise NotFoundError(f"{label} not found")
        return obj


def seed_user_defaults(session: Session, user_id: int) -> None:
    session.add_all(
        Category(user_id=user_id, name=name, is_default=True, monthly_budget=None)
        for name in DEFAULT_CATEGORIES
    )
    session.add_all(
        PaymentMethod(
            user_id=user_id,
            name=name,
            type=method_type,
            cashback_percentage=percentage,
            is_default=is_default,
        )
        for name, method_type, percentage, is_default in DEFAULT_PAYMENT_METHODS
    )


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()

    def get_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.email == self.normalize_email(email))
        )

    def create(self, email: str, password_hash: str, *, seed: bool = True) -> User:
        clean_email = self.normalize_email(email)
        if not clean_email or "@" not in clean_email:
            raise ValueError("Invalid email format")
        if self.get_by_email(clean_email):
            raise ValueError("User already exists")

        user = User(email=clean_email, password_hash=password_hash)
        self.session.add(user)
        self.session.flush()
        if seed:
            seed_user_defaults(self.session, user.id)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_created: user_id={user.id} seeded={seed}")
        return user

    def delete(self, user_id: int) -> None:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        self.session.delete(user)
        self.session.commit()
        logger.info(f"user_deleted: user_id={user_id}")


class SettingsService(_UserScoped):
    def get(self) -> UserSettings:
        settings = self.session.scalar(
            select(UserSettings).where(UserSettings.user_id == self.user_id)
        )
        if settings:
            return settings

        settings = UserSettings(
            user_id=self.user_id,
            billing_cycle_start_day=1,
            billing_cycle_end_day=END_OF_MONTH,
        )
        self.session.add(settings)
        try:
            self.session.commit()
        except IntegrityError:
            # Created concurrently by another request.
            self.session.rollback()
            return self.session.scalars(
                select(UserSettings).where(UserSettings.user_id == self.user_id)
            ).one()
        self.session.refresh(settings)
        return settings

    def update(self, data: SettingsUpdate) -> UserSettings:
        settings = self.get()
        if data.billing_cycle_start_day is not None:
            settings.billing_cycle_start_day = data.billing_cycle_start_day
        if data.billing_cycle_end_day is not None:
            settings.billing_cycle_end_day = data.billing_cycle_end_day
        self.session.commit()
        self.session.refresh(settings)
        logger.info(
            f"settings_updated: user_id={self.user_id} "
            f"start_day={settings.billing_cycle_start_day} "
            f"end_day={settings.billing_cycle_end_day}"
        )
        return settings


class CategoryService(_UserScoped):
    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        return self.session.scalars(stmt).all()

    def list_with_counts(self) -> list[tuple[Category, int]]:
        stmt = (
            select(Category, func.count(Expense.id).label("expense_count"))
            .outerjoin(Expense, Expense.category_id == Category.id)
            .where(Category.user_id == self.user_id)
            .group_by(Category.id)
            .order_by(Category.name)
        )
        return [(row[0], int(row[1] or 0)) for row in self.session.execute(stmt)]

    def get(self, category_id: int) -> Category:
        return self._owned(Category, category_id, "Category")

    def _name_taken(self, name: str, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        if self._name_taken(name):
            raise ValueError("A category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            monthly_budget=data.monthly_budget,
            is_default=False,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        if data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValueError("Category name cannot be empty")
            if self._name_taken(name, exclude_id=category.id):
                raise ValueError("A category with this name already exists")
            category.name = name
        # An explicit null clears the budget.
        if "monthly_budget" in data.model_fields_set:
            category.monthly_budget = data.monthly_budget
        self.session.commit()
        self.session.refresh(category)
        return category

    def expense_count(self, category_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(Expense.id)).where(
                    Expense.user_id == self.user_id,
                    Expense.category_id == category_id,
                )
            ).scalar_one()
            or 0
        )

    def delete(self, category_id: int, reassign_to: Optional[int] = None) -> int:
        """
        Delete a category, moving its expenses to ``reassign_to`` first.

        A category that still has expenses cannot be removed without a
        reassignment target. Returns the number of reassigned expenses.
        """
        category = self.get(category_id)
        count = self.expense_count(category.id)

        if count > 0:
            if reassign_to is None:
                logger.warning(
                    f"category_delete_blocked: user_id={self.user_id} "
                    f"category_id={category.id} expense_count={count}"
                )
                raise ConflictError(
                    "Cannot delete category with existing expenses. "
                    "Provide a category to reassign them to.",
                    expense_count=count,
                )
            try:
                target = self.get(reassign_to)
            except NotFoundError as exc:
                raise NotFoundError("Reassignment category not found") from exc
            if target.id == category.id:
                raise ValueError("Cannot reassign expenses to the category being deleted")

            self.session.execute(
                update(Expense)
                .where(
                    Expense.user_id == self.user_id,
                    Expense.category_id == category.id,
                )
                .values(category_id=target.id, updated_at=datetime.utcnow())
            )

        self.session.delete(category)
        self.session.commit()
        logger.info(
            f"category_deleted: user_id={self.user_id} category_id={category_id} "
            f"reassigned={count} reassign_to={reassign_to}"
        )
        return count


class PaymentMethodService(_UserScoped):
    def list_all(self) -> list[PaymentMethod]:
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.user_id == self.user_id)
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.name.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, payment_method_id: int) -> PaymentMethod:
        return self._owned(PaymentMethod, payment_method_id, "Payment method")

    def _name_taken(self, name: str, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(PaymentMethod.id).where(
            PaymentMethod.user_id == self.user_id,
            func.lower(PaymentMethod.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(PaymentMethod.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _clear_default(self) -> None:
        self.session.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == self.user_id)
            .values(is_default=False, updated_at=datetime.utcnow())
        )

    def create(self, data: PaymentMethodIn) -> PaymentMethod:
        name = data.name.strip()
        if not name:
            raise ValueError("Payment method name cannot be empty")
        if self._name_taken(name):
            raise ValueError("A payment method with this name already exists")
        if data.is_default:
            self._clear_default()

        method = PaymentMethod(
            user_id=self.user_id,
            name=name,
            type=data.type,
            cashback_percentage=data.cashback_percentage
            if data.type == PaymentType.credit_card
            else None,
            is_default=data.is_default,
        )
        self.session.add(method)
        self.session.commit()
        self.session.refresh(method)
        return method

    def update(self, payment_method_id: int, data: PaymentMethodUpdate) -> PaymentMethod:
        method = self.get(payment_method_id)

        if data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValueError("Payment method name cannot be empty")
            if self._name_taken(name, exclude_id=method.id):
                raise ValueError("A payment method with this name already exists")
            method.name = name

        if "cashback_percentage" in data.model_fields_set:
            if method.type != PaymentType.credit_card:
                raise ValueError("Only credit cards can have a cashback percentage")
            if data.cashback_percentage is None:
                raise ValueError("Credit cards require a cashback percentage")
            # Existing expenses keep their stored cashback until edited.
            method.cashback_percentage = data.cashback_percentage

        if data.is_default is not None:
            if data.is_default:
                self._clear_default()
            method.is_default = data.is_default

        self.session.commit()
        self.session.refresh(method)
        return method

    def delete(self, payment_method_id: int) -> None:
        method = self.get(payment_method_id)
        count = int(
            self.session.execute(
                select(func.count(Expense.id)).where(
                    Expense.user_id == self.user_id,
                    Expense.payment_method_id == method.id,
                )
            ).scalar_one()
            or 0
        )
        if count > 0:
            logger.warning(
                f"payment_method_delete_blocked: user_id={self.user_id} "
                f"payment_method_id={method.id} expense_count={count}"
            )
            raise ConflictError(
                "Cannot delete payment method with existing expenses",
                expense_count=count,
            )
        self.session.delete(method)
        self.session.commit()


class ExpenseService(_UserScoped):
    def _category(self, category_id: int) -> Category:
        return self._owned(Category, category_id, "Category")

    def _payment_method(self, payment_method_id: int) -> PaymentMethod:
        return self._owned(PaymentMethod, payment_method_id, "Payment method")

    def _apply_money(self, expense: Expense, amount: int, result: CashbackResult) -> None:
        expense.amount = amount
        expense.cashback_amount = result.cashback_amount
        expense.amount_net = result.amount_net

    def _commit_write(self, event: str, expense: Expense) -> None:
        context = (
            f"user_id={self.user_id} amount={expense.amount} "
            f"cashback={expense.cashback_amount} net={expense.amount_net}"
        )
        try:
            ensure_expense_invariants(
                expense.amount, expense.cashback_amount, expense.amount_net
            )
            self.session.commit()
        except (CashbackInvariantError, IntegrityError):
            self.session.rollback()
            logger.exception(f"{event}_failed: {context}")
            raise
        logger.info(f"{event}: expense_id={expense.id} {context}")

    def create(self, data: ExpenseIn) -> Expense:
        category = self._category(data.category_id)
        payment_method = self._payment_method(data.payment_method_id)
        result = payment_method_cashback(data.amount, payment_method)

        expense = Expense(
            user_id=self.user_id,
            date=data.date,
            merchant=data.merchant.strip(),
            category=category,
            payment_method=payment_method,
        )
        self._apply_money(expense, data.amount, result)
        self.session.add(expense)
        self._commit_write("expense_created", expense)
        self.session.refresh(expense)
        return expense

    def get(self, expense_id: int) -> Expense:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category), joinedload(Expense.payment_method))
            .where(Expense.user_id == self.user_id, Expense.id == expense_id)
        )
        expense = self.session.scalar(stmt)
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        """
        Apply a partial update.

        Cashback is always recomputed from the payment method row as it is
        stored now, so a changed card rate reaches an expense only when the
        expense itself is edited.
        """
        expense = self.get(expense_id)

        category = (
            self._category(data.category_id) if data.category_id is not None else None
        )
        payment_method = self._payment_method(
            data.payment_method_id
            if data.payment_method_id is not None
            else expense.payment_method_id
        )
        merchant = data.merchant.strip() if data.merchant is not None else None
        if merchant == "":
            raise ValueError("Merchant is required")
        amount = data.amount if data.amount is not None else expense.amount
        result = payment_method_cashback(amount, payment_method)

        if category is not None:
            expense.category = category
        if data.date is not None:
            expense.date = data.date
        if merchant is not None:
            expense.merchant = merchant
        expense.payment_method = payment_method
        self._apply_money(expense, amount, result)

        self._commit_write("expense_updated", expense)
        self.session.refresh(expense)
        return expense

    def _conditions(self, query: ExpenseQuery) -> list:
        conditions = [Expense.user_id == self.user_id]
        if query.category_id:
            conditions.append(Expense.category_id == query.category_id)
        if query.payment_method_id:
            conditions.append(Expense.payment_method_id == query.payment_method_id)
        if query.start_date:
            conditions.append(Expense.date >= query.start_date)
        if query.end_date:
            conditions.append(Expense.date <= query.end_date)
        return conditions

    def _filtered(self, query: ExpenseQuery):
        return (
            select(Expense)
            .join(Category, Category.id == Expense.category_id)
            .join(PaymentMethod, PaymentMethod.id == Expense.payment_method_id)
            .options(contains_eager(Expense.category), contains_eager(Expense.payment_method))
            .where(*self._conditions(query))
        )

    @staticmethod
    def _ordering(query: ExpenseQuery) -> list:
        column = {
            "date": Expense.date,
            "merchant": Expense.merchant,
            "category": Category.name,
            "payment": PaymentMethod.name,
            "amount": Expense.amount,
        }[query.sort_by]
        primary = column.asc() if query.sort_order == "asc" else column.desc()
        return [primary, Expense.created_at.desc(), Expense.id.desc()]

    def list(self, query: ExpenseQuery) -> tuple[list[Expense], int]:
        stmt = (
            self._filtered(query)
            .order_by(*self._ordering(query))
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        )
        items = self.session.scalars(stmt).unique().all()

        count_stmt = select(func.count(Expense.id)).where(*self._conditions(query))
        total = int(self.session.execute(count_stmt).scalar_one() or 0)
        return items, total

    def all_matching(self, query: ExpenseQuery) -> list[Expense]:
        stmt = self._filtered(query).order_by(*self._ordering(query))
        return self.session.scalars(stmt).unique().all()

    def delete(self, expense_id: int) -> None:
        result = self.session.execute(
            delete(Expense).where(
                Expense.user_id == self.user_id, Expense.id == expense_id
            )
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFoundError("Expense not found")
        self.session.commit()
        logger.info(f"expense_deleted: user_id={self.user_id} expense_id={expense_id}")

    def bulk_delete(self, ids: list[int]) -> int:
        unique_ids = sorted(set(ids))
        if not unique_ids:
            raise ValueError("No expense ids given")
        if len(unique_ids) > BULK_DELETE_LIMIT:
            raise ValueError(f"At most {BULK_DELETE_LIMIT} expenses can be deleted at once")
        # The user_id predicate keeps foreign ids untouched.
        result = self.session.execute(
            delete(Expense).where(
                Expense.user_id == self.user_id, Expense.id.in_(unique_ids)
            )
        )
        deleted = int(result.rowcount or 0)
        self.session.commit()
        logger.info(
            f"expenses_bulk_deleted: user_id={self.user_id} "
            f"requested={len(unique_ids)} deleted={deleted}"
        )
        return deleted


class IncomeService(_UserScoped):
    def list_all(self) -> list[Income]:
        stmt = (
            select(Income)
            .where(Income.user_id == self.user_id)
            .order_by(Income.month.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, income_id: int) -> Income:
        return self._owned(Income, income_id, "Income entry")

    def _insert(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite.insert
        if dialect == "postgresql":
            return postgresql.insert
        raise RuntimeError(f"Income upsert is not supported on {dialect}")

    def upsert(self, data: IncomeIn) -> Income:
        """Insert the month's income or update it in place; one row per month."""
        year, month = parse_month(data.month)
        month_date = date(year, month, 1)
        now = datetime.utcnow()

        stmt = self._insert()(Income).values(
            user_id=self.user_id,
            month=month_date,
            amount=data.amount,
            source=data.source,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "month"],
            set_={
                "amount": stmt.excluded.amount,
                "source": func.coalesce(stmt.excluded.source, Income.source),
                "updated_at": now,
            },
        )
        self.session.execute(stmt)
        self.session.commit()

        income = self.session.scalars(
            select(Income)
            .where(Income.user_id == self.user_id, Income.month == month_date)
            .execution_options(populate_existing=True)
        ).one()
        logger.info(
            f"income_upserted: user_id={self.user_id} month={month_label(year, month)} "
            f"amount={income.amount}"
        )
        return income

    def update(self, income_id: int, data: IncomeUpdate) -> Income:
        income = self.get(income_id)
        if data.amount is not None:
            income.amount = data.amount
        if "source" in data.model_fields_set:
            income.source = data.source
        self.session.commit()
        self.session.refresh(income)
        return income

    def delete(self, income_id: int) -> None:
        income = self.get(income_id)
        self.session.delete(income)
        self.session.commit()

    def amount_for_month(self, month_date: date) -> int:
        return int(
            self.session.scalar(
                select(Income.amount).where(
                    Income.user_id == self.user_id,
                    Income.month == month_start(month_date),
                )
            )
            or 0
        )


class DashboardService(_UserScoped):
    def __init__(self, session: Session, user_id: int) -> None:
        super().__init__(session, user_id)
        self.income = IncomeService(session, user_id)

    def resolve_window(
        self,
        month: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        *,
        today: Optional[date] = None,
    ) -> BillingWindow:
        if start is not None or end is not None:
            return resolve_summary_window(None, start, end)
        settings = SettingsService(self.session, self.user_id).get()
        return resolve_summary_window(
            month,
            None,
            None,
            start_day=settings.billing_cycle_start_day,
            end_day=settings.billing_cycle_end_day,
            today=today,
        )

    def category_rollup(self, window: BillingWindow) -> list[CategoryRollup]:
        stmt = (
            select(
                Category.id.label("category_id"),
                Category.name.label("category_name"),
                Category.monthly_budget.label("budget"),
                func.coalesce(func.sum(Expense.amount_net), 0).label("spent"),
                func.coalesce(func.sum(Expense.cashback_amount), 0).label("cashback"),
                func.count(Expense.id).label("transaction_count"),
            )
            .select_from(Category)
            .outerjoin(
                Expense,
                and_(
                    Expense.category_id == Category.id,
                    Expense.user_id == self.user_id,
                    Expense.date.between(window.start, window.end),
                ),
            )
            .where(Category.user_id == self.user_id)
            .group_by(Category.id, Category.name, Category.monthly_budget)
            .order_by(Category.name)
        )
        return [
            CategoryRollup(
                category_id=row.category_id,
                category_name=row.category_name,
                budget=row.budget,
                spent=int(row.spent or 0),
                cashback=int(row.cashback or 0),
                transaction_count=int(row.transaction_count or 0),
            )
            for row in self.session.execute(stmt)
        ]

    def top_merchants(
        self, window: BillingWindow, limit: int = TOP_MERCHANT_LIMIT
    ) -> list[MerchantRollup]:
        total_spent = func.sum(Expense.amount_net)
        stmt = (
            select(
                Expense.merchant.label("merchant"),
                total_spent.label("total_spent"),
                func.sum(Expense.cashback_amount).label("cashback_earned"),
                func.count(Expense.id).label("transaction_count"),
            )
            .where(
                Expense.user_id == self.user_id,
                Expense.date.between(window.start, window.end),
            )
            .group_by(Expense.merchant)
            .order_by(total_spent.desc(), Expense.merchant.asc())
            .limit(limit)
        )
        return [
            MerchantRollup(
                merchant=row.merchant,
                total_spent=int(row.total_spent or 0),
                cashback_earned=int(row.cashback_earned or 0),
                transaction_count=int(row.transaction_count or 0),
            )
            for row in self.session.execute(stmt)
        ]

    def summary(self, window: BillingWindow) -> dict[str, object]:
        rollup = self.category_rollup(window)

        # Headline totals come from the same rows as the breakdown.
        total_spent = sum(c.spent for c in rollup)
        total_cashback = sum(c.cashback for c in rollup)
        total_expenses = sum(c.transaction_count for c in rollup)
        total_budget = sum(c.budget or 0 for c in rollup)
        budget_progress = percent_of(total_spent, total_budget)

        breakdown = [
            {
                "category_id": c.category_id,
                "category": c.category_name,
                "spent": c.spent,
                "cashback": c.cashback,
                "transaction_count": c.transaction_count,
                "percentage": percent_of(c.spent, total_spent),
            }
            for c in rollup
            if c.spent > 0
        ]
        breakdown.sort(key=lambda item: int(item["spent"]), reverse=True)

        budget_status = []
        for c in rollup:
            if not c.budget or c.budget <= 0:
                continue
            percentage = budget_percentage(c.spent, c.budget)
            budget_status.append(
                {
                    "category_id": c.category_id,
                    "category_name": c.category_name,
                    "budget": c.budget,
                    "spent": c.spent,
                    "remaining": c.budget - c.spent,
                    "percentage": percentage,
                    "status": classify_budget(c.spent, c.budget),
                }
            )
        budget_status.sort(key=lambda item: int(item["percentage"]), reverse=True)

        income = self.income.amount_for_month(window.start)

        return {
            "period": window.label,
            "start_date": window.start.isoformat(),
            "end_date": window.end.isoformat(),
            "total_spent": total_spent,
            "total_cashback": total_cashback,
            "total_expenses": total_expenses,
            "total_budget": total_budget,
            "budget_progress": budget_progress,
            "income": income,
            "net_savings": income - total_spent,
            "category_breakdown": breakdown,
            "budget_status": budget_status,
            "top_merchants": [
                {
                    "merchant": m.merchant,
                    "total_spent": m.total_spent,
                    "cashback_earned": m.cashback_earned,
                    "transaction_count": m.transaction_count,
                }
                for m in self.top_merchants(window)
            ],
        }

    def _month_totals(self, window: BillingWindow) -> tuple[int, int, int]:
        row = self.session.execute(
            select(
                func.coalesce(func.sum(Expense.amount_net), 0).label("spent"),
                func.coalesce(func.sum(Expense.cashback_amount), 0).label("cashback"),
                func.count(Expense.id).label("count"),
            ).where(
                Expense.user_id == self.user_id,
                Expense.date.between(window.start, window.end),
            )
        ).one()
        return int(row.spent or 0), int(row.cashback or 0), int(row.count or 0)

    def trends(
        self, today: Optional[date] = None, months: int = TREND_MONTHS
    ) -> list[dict[str, object]]:
        """Calendar-month series ending at the current month, oldest first."""
        current = month_start(today or local_today())
        out: list[dict[str, object]] = []
        for offset in range(months - 1, -1, -1):
            first = add_months(current, -offset)
            window = calendar_month_window(first.year, first.month)
            spent, cashback, count = self._month_totals(window)
            out.append(
                {
                    "month": window.label,
                    "total_spent": spent,
                    "total_cashback": cashback,
                    "transaction_count": count,
                    "income": self.income.amount_for_month(first),
                }
            )
        return out


class ImportService(_UserScoped):
    @staticmethod
    def _match(name: str, options: dict[str, Owned], label: str) -> Owned:
        """Case-insensitive exact match, else a unique match within one edit."""
        wanted = name.strip().lower()
        if wanted in options:
            return options[wanted]

        best_distance: Optional[int] = None
        best: list[str] = []
        for candidate in options:
            dist = int(Levenshtein.distance(wanted, candidate))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [candidate]
            elif dist == best_distance:
                best.append(candidate)

        if best_distance is None or best_distance > 1:
            raise ValueError(f"{label} not found: {name}")
        if len(best) > 1:
            matches = ", ".join(sorted(options[key].name for key in best))
            raise ValueError(f"{label} '{name}' is ambiguous; matches: {matches}")
        return options[best[0]]

    def _lookups(self) -> tuple[dict[str, Category], dict[str, PaymentMethod]]:
        categories = {
            c.name.strip().lower(): c
            for c in CategoryService(self.session, self.user_id).list_all()
        }
        methods = {
            m.name.strip().lower(): m
            for m in PaymentMethodService(self.session, self.user_id).list_all()
        }
        return categories, methods

    def preview(self, content: str) -> dict[str, object]:
        parsed, errors, total = parse_import_csv(content)
        categories, methods = self._lookups()

        rows: list[dict[str, object]] = []
        for idx, row in parsed:
            try:
                category = self._match(row.category, categories, "Category")
                method = self._match(row.payment, methods, "Payment method")
            except ValueError as exc:
                errors.append(f"Row {idx}: {exc}")
                continue
            result = payment_method_cashback(row.amount, method)
            rows.append(
                {
                    "row": idx,
                    "date": row.date,
                    "merchant": row.merchant,
                    "amount": row.amount,
                    "cashback_amount": result.cashback_amount,
                    "amount_net": result.amount_net,
                    "category_id": category.id,
                    "category": category.name,
                    "payment_method_id": method.id,
                    "payment_method": method.name,
                }
            )
        errors.sort(key=_row_number)
        return {"rows": rows, "errors": errors, "total_rows": total}

    def commit(self, content: str) -> dict[str, object]:
        preview = self.preview(content)
        rows: list[dict[str, object]] = preview["rows"]
        errors: list[str] = preview["errors"]
        total = int(preview["total_rows"])
        if total == 0:
            raise ValueError("Import file is empty")

        values = []
        for row in rows:
            ensure_expense_invariants(
                int(row["amount"]), int(row["cashback_amount"]), int(row["amount_net"])
            )
            values.append(
                {
                    "user_id": self.user_id,
                    "date": row["date"],
                    "merchant": row["merchant"],
                    "amount": row["amount"],
                    "cashback_amount": row["cashback_amount"],
                    "amount_net": row["amount_net"],
                    "category_id": row["category_id"],
                    "payment_method_id": row["payment_method_id"],
                }
            )

        if values:
            try:
                self.session.execute(insert(Expense), values)
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                logger.exception(
                    f"expense_import_failed: user_id={self.user_id} rows={len(values)}"
                )
                raise

        logger.info(
            f"expenses_imported: user_id={self.user_id} imported={len(values)} "
            f"skipped={len(errors)} total={total}"
        )
        return {
            "imported": len(values),
            "skipped": len(errors),
            "total_rows": total,
            "errors": errors[:IMPORT_ERROR_LIMIT],
        }


def _row_number(message: str) -> int:
    head = message.split(":", 1)[0]
    try:
        return int(head.replace("Row", "").strip())
    except ValueError:
        return 0
