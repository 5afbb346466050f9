from datetime import date

import pytest
from sqlalchemy import func, select

from database import Base, build_engine, make_sessionmaker
from models import Category, Expense, PaymentMethod
from schemas import CategoryIn, CategoryUpdate, ExpenseIn, PaymentMethodIn
from services import (
    DEFAULT_CATEGORIES,
    CategoryService,
    ConflictError,
    ExpenseService,
    NotFoundError,
    PaymentMethodService,
    UserService,
)


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)()


def add_expenses(session, user_id, category_id, payment_method_id, count):
    service = ExpenseService(session, user_id)
    for i in range(count):
        service.create(
            ExpenseIn(
                date=date(2025, 4, i + 1),
                merchant=f"Shop {i}",
                amount=1000,
                category_id=category_id,
                payment_method_id=payment_method_id,
            )
        )


def test_new_user_gets_default_categories_and_methods() -> None:
    session = make_session()
    user = UserService(session).create("Owner@Example.com ", password_hash="!")
    assert user.email == "owner@example.com"

    names = {c.name for c in CategoryService(session, user.id).list_all()}
    assert names == set(DEFAULT_CATEGORIES)

    methods = PaymentMethodService(session, user.id).list_all()
    assert methods[0].name == "Credit Card"
    assert methods[0].is_default
    assert sum(1 for m in methods if m.is_default) == 1

    with pytest.raises(ValueError):
        UserService(session).create("owner@example.com", password_hash="!")


def test_delete_with_expenses_requires_reassignment() -> None:
    session = make_session()
    user = UserService(session).create("a@example.com", password_hash="!")
    categories = CategoryService(session, user.id)
    food = categories.create(CategoryIn(name="Dining Out"))
    target = categories.create(CategoryIn(name="Eating"))
    cash = next(
        m for m in PaymentMethodService(session, user.id).list_all() if m.name == "Cash"
    )
    add_expenses(session, user.id, food.id, cash.id, 3)

    with pytest.raises(ConflictError) as excinfo:
        categories.delete(food.id)
    assert excinfo.value.expense_count == 3
    assert session.get(Category, food.id) is not None

    reassigned = categories.delete(food.id, reassign_to=target.id)
    assert reassigned == 3
    assert session.get(Category, food.id) is None

    moved = session.scalar(
        select(func.count(Expense.id)).where(Expense.category_id == target.id)
    )
    assert moved == 3


def test_delete_rejects_bad_reassignment_targets() -> None:
    session = make_session()
    user = UserService(session).create("a@example.com", password_hash="!")
    other = UserService(session).create("b@example.com", password_hash="!")
    categories = CategoryService(session, user.id)
    source = categories.create(CategoryIn(name="Source"))
    foreign = CategoryService(session, other.id).create(CategoryIn(name="Foreign"))
    cash = next(
        m for m in PaymentMethodService(session, user.id).list_all() if m.name == "Cash"
    )
    add_expenses(session, user.id, source.id, cash.id, 1)

    with pytest.raises(NotFoundError):
        categories.delete(source.id, reassign_to=foreign.id)
    with pytest.raises(ValueError):
        categories.delete(source.id, reassign_to=source.id)
    assert session.get(Category, source.id) is not None


def test_empty_category_deletes_without_target() -> None:
    session = make_session()
    user = UserService(session).create("a@example.com", password_hash="!")
    categories = CategoryService(session, user.id)
    spare = categories.create(CategoryIn(name="Spare"))
    assert categories.delete(spare.id) == 0
    with pytest.raises(NotFoundError):
        categories.get(spare.id)


def test_names_are_unique_per_user_case_insensitively() -> None:
    session = make_session()
    user = UserService(session).create("a@example.com", password_hash="!")
    other = UserService(session).create("b@example.com", password_hash="!")
    categories = CategoryService(session, user.id)

    with pytest.raises(ValueError):
        categories.create(CategoryIn(name="food"))
    # Another user may reuse the name.
    CategoryService(session, other.id).create(CategoryIn(name="Pets"))
    categories.create(CategoryIn(name="Pets"))


def test_update_sets_and_clears_budget() -> None:
    session = make_session()
    user = UserService(session).create("a@example.com", password_hash="!")
    categories = CategoryService(session, user.id)
    pets = categories.create(CategoryIn(name="Pets", monthly_budget=50_000))

    renamed = categories.update(pets.id, CategoryUpdate(name="Pet Care"))
    assert renamed.name == "Pet Care"
    assert renamed.monthly_budget == 50_000

    cleared = categories.update(pets.id, CategoryUpdate(monthly_budget=None))
    assert cleared.monthly_budget is None


def test_list_with_counts_includes_empty_categories() -> None:
    session = make_session()
    user = UserService(session).create("a@example.com", password_hash="!")
    categories = CategoryService(session, user.id)
    food = next(c for c in categories.list_all() if c.name == "Food")
    cash = next(
        m for m in PaymentMethodService(session, user.id).list_all() if m.name == "Cash"
    )
    add_expenses(session, user.id, food.id, cash.id, 2)

    counts = {c.name: n for c, n in categories.list_with_counts()}
    assert counts["Food"] == 2
    assert counts["Baby"] == 0
    assert len(counts) == len(DEFAULT_CATEGORIES)


def test_payment_method_with_expenses_cannot_be_deleted() -> None:
    session = make_session()
    user = UserService(session).create("a@example.com", password_hash="!")
    methods = PaymentMethodService(session, user.id)
    food = next(
        c for c in CategoryService(session, user.id).list_all() if c.name == "Food"
    )
    cash = next(m for m in methods.list_all() if m.name == "Cash")
    add_expenses(session, user.id, food.id, cash.id, 2)

    with pytest.raises(ConflictError) as excinfo:
        methods.delete(cash.id)
    assert excinfo.value.expense_count == 2
    assert session.get(PaymentMethod, cash.id) is not None

    spare = methods.create(PaymentMethodIn(name="Gift Card", type="Debit Card"))
    methods.delete(spare.id)
    assert session.get(PaymentMethod, spare.id) is None


def test_setting_default_clears_previous_default() -> None:
    session = make_session()
    user = UserService(session).create("a@example.com", password_hash="!")
    methods = PaymentMethodService(session, user.id)

    visa = methods.create(
        PaymentMethodIn(
            name="Visa", type="Credit Card", cashback_percentage="1.50", is_default=True
        )
    )
    listed = methods.list_all()
    assert listed[0].id == visa.id
    assert [m.name for m in listed if m.is_default] == ["Visa"]
