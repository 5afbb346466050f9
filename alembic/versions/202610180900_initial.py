"""initial ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


PAYMENT_TYPES = ("Cash", "Credit Card", "Debit Card", "Bank Transfer")


def _timestamps():
    return (
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", sa.Enum(*PAYMENT_TYPES, name="payment_type"), nullable=False),
        sa.Column("cashback_percentage", sa.Numeric(4, 2)),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_payment_method_user_name"),
        sa.CheckConstraint(
            "cashback_percentage IS NULL OR "
            "(cashback_percentage >= 0 AND cashback_percentage <= 10)",
            name="ck_payment_methods_cashback_range",
        ),
    )
    op.create_index("ix_payment_methods_user", "payment_methods", ["user_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("monthly_budget", sa.Integer()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
        sa.CheckConstraint(
            "monthly_budget IS NULL OR monthly_budget >= 0",
            name="ck_categories_budget_positive",
        ),
    )
    op.create_index("ix_categories_user", "categories", ["user_id"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("merchant", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("cashback_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_net", sa.Integer(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "payment_method_id",
            sa.Integer(),
            sa.ForeignKey("payment_methods.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_expenses_amount_positive"),
        sa.CheckConstraint("cashback_amount >= 0", name="ck_expenses_cashback_positive"),
        sa.CheckConstraint("amount_net >= 0", name="ck_expenses_amount_net_positive"),
        sa.CheckConstraint(
            "amount_net = amount - cashback_amount",
            name="ck_expenses_net_calculation",
        ),
        # Same as cashback_amount <= amount * 0.1, kept in integer arithmetic.
        sa.CheckConstraint(
            "cashback_amount * 10 <= amount", name="ck_expenses_cashback_max"
        ),
    )
    op.create_index("ix_expenses_user_date", "expenses", ["user_id", "date"])
    op.create_index("ix_expenses_user_category", "expenses", ["user_id", "category_id"])
    op.create_index(
        "ix_expenses_user_payment", "expenses", ["user_id", "payment_method_id"]
    )
    op.create_index("ix_expenses_updated", "expenses", ["updated_at"])

    op.create_table(
        "income",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=255)),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "month", name="uq_income_user_month"),
        sa.CheckConstraint("amount >= 0", name="ck_income_amount_positive"),
    )
    op.create_index("ix_income_user_month", "income", ["user_id", "month"])

    op.create_table(
        "user_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "billing_cycle_start_day", sa.Integer(), nullable=False, server_default="1"
        ),
        sa.Column(
            "billing_cycle_end_day", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
        sa.UniqueConstraint("user_id", name="uq_user_settings_user"),
        sa.CheckConstraint(
            "billing_cycle_start_day >= 1 AND billing_cycle_start_day <= 31",
            name="ck_user_settings_start_day_range",
        ),
        sa.CheckConstraint(
            "billing_cycle_end_day >= 0 AND billing_cycle_end_day <= 31",
            name="ck_user_settings_end_day_range",
        ),
    )


def downgrade():
    op.drop_table("user_settings")
    op.drop_index("ix_income_user_month", table_name="income")
    op.drop_table("income")
    op.drop_index("ix_expenses_updated", table_name="expenses")
    op.drop_index("ix_expenses_user_payment", table_name="expenses")
    op.drop_index("ix_expenses_user_category", table_name="expenses")
    op.drop_index("ix_expenses_user_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_categories_user", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_payment_methods_user", table_name="payment_methods")
    op.drop_table("payment_methods")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    sa.Enum(name="payment_type").drop(op.get_bind(), checkfirst=True)
