from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class PaymentType(str, Enum):
    cash = "Cash"
    credit_card = "Credit Card"
    debit_card = "Debit Card"
    bank_transfer = "Bank Transfer"


PAYMENT_TYPE_ENUM = SAEnum(
    PaymentType,
    name="payment_type",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

# 0 stands for "last day of the month" in billing_cycle_end_day.
END_OF_MONTH = 0


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    payment_methods: Mapped[list["PaymentMethod"]] = relationship(
        "PaymentMethod", back_populates="user", cascade="all, delete-orphan"
    )
    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="user", cascade="all, delete-orphan"
    )
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="user", cascade="all, delete-orphan"
    )
    income: Mapped[list["Income"]] = relationship(
        "Income", back_populates="user", cascade="all, delete-orphan"
    )
    settings: Mapped[Optional["UserSettings"]] = relationship(
        "UserSettings", back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_users_email", "email"),)


class PaymentMethod(Base, TimestampMixin):
    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[PaymentType] = mapped_column(PAYMENT_TYPE_ENUM, nullable=False)
    cashback_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(4, 2))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="payment_methods")
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="payment_method", passive_deletes="all"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_payment_method_user_name"),
        Index("ix_payment_methods_user", "user_id"),
        CheckConstraint(
            "cashback_percentage IS NULL OR "
            "(cashback_percentage >= 0 AND cashback_percentage <= 10)",
            name="ck_payment_methods_cashback_range",
        ),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    monthly_budget: Mapped[Optional[int]] = mapped_column(Integer)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="categories")
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category", passive_deletes="all"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
        Index("ix_categories_user", "user_id"),
        CheckConstraint(
            "monthly_budget IS NULL OR monthly_budget >= 0",
            name="ck_categories_budget_positive",
        ),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    merchant: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    cashback_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    amount_net: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False
    )
    payment_method_id: Mapped[int] = mapped_column(
        ForeignKey("payment_methods.id", ondelete="RESTRICT"), nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="expenses")
    category: Mapped["Category"] = relationship("Category", back_populates="expenses")
    payment_method: Mapped["PaymentMethod"] = relationship(
        "PaymentMethod", back_populates="expenses"
    )

    __table_args__ = (
        Index("ix_expenses_user_date", "user_id", "date"),
        Index("ix_expenses_user_category", "user_id", "category_id"),
        Index("ix_expenses_user_payment", "user_id", "payment_method_id"),
        Index("ix_expenses_updated", "updated_at"),
        CheckConstraint("amount >= 0", name="ck_expenses_amount_positive"),
        CheckConstraint("cashback_amount >= 0", name="ck_expenses_cashback_positive"),
        CheckConstraint("amount_net >= 0", name="ck_expenses_amount_net_positive"),
        CheckConstraint(
            "amount_net = amount - cashback_amount",
            name="ck_expenses_net_calculation",
        ),
        # Same as cashback_amount <= amount * 0.1, kept in integer arithmetic.
        CheckConstraint(
            "cashback_amount * 10 <= amount", name="ck_expenses_cashback_max"
        ),
    )


class Income(Base, TimestampMixin):
    __tablename__ = "income"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    month: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(255))

    user: Mapped["User"] = relationship("User", back_populates="income")

    __table_args__ = (
        UniqueConstraint("user_id", "month", name="uq_income_user_month"),
        Index("ix_income_user_month", "user_id", "month"),
        CheckConstraint("amount >= 0", name="ck_income_amount_positive"),
    )


class UserSettings(Base, TimestampMixin):
    __tablename__ = "user_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    billing_cycle_start_day: Mapped[int] = mapped_column(
        Integer, default=1, nullable=False
    )
    billing_cycle_end_day: Mapped[int] = mapped_column(
        Integer, default=END_OF_MONTH, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="settings")

    __table_args__ = (
        CheckConstraint(
            "billing_cycle_start_day >= 1 AND billing_cycle_start_day <= 31",
            name="ck_user_settings_start_day_range",
        ),
        CheckConstraint(
            "billing_cycle_end_day >= 0 AND billing_cycle_end_day <= 31",
            name="ck_user_settings_end_day_range",
        ),
    )
