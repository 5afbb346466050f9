from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select, text

from database import SQLITE_BUSY_TIMEOUT_MS, Base, build_engine, make_sessionmaker
from models import Expense, PaymentType
from schemas import (
    ExpenseIn,
    ExpenseQuery,
    ExpenseUpdate,
    PaymentMethodIn,
    PaymentMethodUpdate,
)
from services import (
    CategoryService,
    ExpenseService,
    NotFoundError,
    PaymentMethodService,
    UserService,
)


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)()


def setup_user(session, email="a@example.com"):
    user = UserService(session).create(email, password_hash="!")
    categories = {c.name: c for c in CategoryService(session, user.id).list_all()}
    methods = {m.name: m for m in PaymentMethodService(session, user.id).list_all()}
    return user.id, categories, methods


def test_create_computes_cashback_for_credit_card() -> None:
    session = make_session()
    user_id, categories, methods = setup_user(session)

    expense = ExpenseService(session, user_id).create(
        ExpenseIn(
            date=date(2025, 3, 4),
            merchant="  Emart  ",
            amount=4500,
            category_id=categories["Groceries"].id,
            payment_method_id=methods["Credit Card"].id,
        )
    )
    assert expense.merchant == "Emart"
    assert expense.cashback_amount == 54
    assert expense.amount_net == 4446
    assert expense.amount_net + expense.cashback_amount == expense.amount


def test_create_with_cash_has_no_cashback() -> None:
    session = make_session()
    user_id, categories, methods = setup_user(session)

    expense = ExpenseService(session, user_id).create(
        ExpenseIn(
            date=date(2025, 3, 4),
            merchant="Bakery",
            amount=3000,
            category_id=categories["Food"].id,
            payment_method_id=methods["Cash"].id,
        )
    )
    assert expense.cashback_amount == 0
    assert expense.amount_net == 3000


def test_update_recomputes_cashback_with_current_rate() -> None:
    session = make_session()
    user_id, categories, methods = setup_user(session)
    service = ExpenseService(session, user_id)
    card = methods["Credit Card"]

    expense = service.create(
        ExpenseIn(
            date=date(2025, 3, 4),
            merchant="Coupang",
            amount=10_000,
            category_id=categories["Household"].id,
            payment_method_id=card.id,
        )
    )
    assert expense.cashback_amount == 120

    PaymentMethodService(session, user_id).update(
        card.id, PaymentMethodUpdate(cashback_percentage=Decimal("2.50"))
    )
    # Stored cashback is unchanged until the expense itself is edited.
    assert service.get(expense.id).cashback_amount == 120

    updated = service.update(expense.id, ExpenseUpdate(merchant="Coupang Eats"))
    assert updated.cashback_amount == 250
    assert updated.amount_net == 9750

    updated = service.update(expense.id, ExpenseUpdate(amount=2000))
    assert updated.cashback_amount == 50
    assert updated.amount_net == 1950

    updated = service.update(
        expense.id, ExpenseUpdate(payment_method_id=methods["Debit Card"].id)
    )
    assert updated.cashback_amount == 0
    assert updated.amount_net == 2000
    assert updated.payment_method.name == "Debit Card"


def test_foreign_references_are_not_found() -> None:
    session = make_session()
    user_id, categories, methods = setup_user(session, "a@example.com")
    other_id, other_categories, other_methods = setup_user(session, "b@example.com")

    with pytest.raises(NotFoundError):
        ExpenseService(session, user_id).create(
            ExpenseIn(
                date=date(2025, 3, 4),
                merchant="Shop",
                amount=100,
                category_id=other_categories["Food"].id,
                payment_method_id=methods["Cash"].id,
            )
        )

    mine = ExpenseService(session, user_id).create(
        ExpenseIn(
            date=date(2025, 3, 4),
            merchant="Shop",
            amount=100,
            category_id=categories["Food"].id,
            payment_method_id=methods["Cash"].id,
        )
    )
    other_service = ExpenseService(session, other_id)
    with pytest.raises(NotFoundError):
        other_service.get(mine.id)
    with pytest.raises(NotFoundError):
        other_service.update(mine.id, ExpenseUpdate(amount=1))
    with pytest.raises(NotFoundError):
        other_service.delete(mine.id)
    with pytest.raises(NotFoundError):
        ExpenseService(session, user_id).update(
            mine.id, ExpenseUpdate(payment_method_id=other_methods["Cash"].id)
        )

    assert session.get(Expense, mine.id).amount == 100


def test_list_filters_sorts_and_paginates() -> None:
    session = make_session()
    user_id, categories, methods = setup_user(session)
    service = ExpenseService(session, user_id)

    for day, merchant, amount, category in [
        (1, "Alpha", 300, "Food"),
        (2, "Bravo", 100, "Food"),
        (3, "Charlie", 200, "Transport"),
        (4, "Delta", 400, "Food"),
    ]:
        service.create(
            ExpenseIn(
                date=date(2025, 5, day),
                merchant=merchant,
                amount=amount,
                category_id=categories[category].id,
                payment_method_id=methods["Cash"].id,
            )
        )

    items, total = service.list(ExpenseQuery())
    assert total == 4
    assert [e.merchant for e in items] == ["Delta", "Charlie", "Bravo", "Alpha"]

    items, total = service.list(
        ExpenseQuery(sort_by="amount", sort_order="asc", page=2, limit=2)
    )
    assert total == 4
    assert [e.amount for e in items] == [300, 400]

    items, total = service.list(
        ExpenseQuery(category_id=categories["Food"].id, start_date=date(2025, 5, 2))
    )
    assert total == 2
    assert {e.merchant for e in items} == {"Bravo", "Delta"}

    items, _ = service.list(ExpenseQuery(sort_by="category", sort_order="desc"))
    assert items[0].category.name == "Transport"


def test_bulk_delete_only_touches_owned_rows() -> None:
    session = make_session()
    user_id, categories, methods = setup_user(session, "a@example.com")
    other_id, other_categories, other_methods = setup_user(session, "b@example.com")

    def add(uid, cats, pms):
        return ExpenseService(session, uid).create(
            ExpenseIn(
                date=date(2025, 5, 1),
                merchant="Shop",
                amount=100,
                category_id=cats["Food"].id,
                payment_method_id=pms["Cash"].id,
            )
        )

    mine = [add(user_id, categories, methods) for _ in range(3)]
    theirs = add(other_id, other_categories, other_methods)

    deleted = ExpenseService(session, user_id).bulk_delete(
        [mine[0].id, mine[1].id, theirs.id, 999_999]
    )
    assert deleted == 2

    remaining = session.scalars(select(Expense.id).order_by(Expense.id)).all()
    assert remaining == [mine[2].id, theirs.id]


def test_bulk_delete_rejects_oversized_batches() -> None:
    session = make_session()
    user_id, _, _ = setup_user(session)
    with pytest.raises(ValueError):
        ExpenseService(session, user_id).bulk_delete(list(range(1, 102)))


def test_payment_method_rate_only_for_credit_cards() -> None:
    session = make_session()
    user_id, _, methods = setup_user(session)
    service = PaymentMethodService(session, user_id)

    with pytest.raises(ValueError):
        service.update(
            methods["Cash"].id, PaymentMethodUpdate(cashback_percentage=Decimal("1.00"))
        )
    with pytest.raises(ValueError):
        PaymentMethodIn(name="Visa", type=PaymentType.credit_card)
    with pytest.raises(ValueError):
        PaymentMethodIn(
            name="Pocket", type=PaymentType.cash, cashback_percentage=Decimal("1.00")
        )


def test_sqlite_connections_enforce_foreign_keys() -> None:
    engine = build_engine("sqlite+pysqlite:///:memory:")
    with engine.connect() as conn:
        assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
        assert conn.execute(text("PRAGMA busy_timeout")).scalar() == SQLITE_BUSY_TIMEOUT_MS
