"""initial budget ledger schema

Revision ID: 202610011200
Revises:
Create Date: 2026-10-01 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610011200"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "cash_books",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "type",
            sa.Enum("bank", "cash", "wallet", "digital", name="accounttype"),
            nullable=False,
        ),
        sa.Column("account_number", sa.String(length=64), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "opening_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("last_activity_date", sa.Date()),
        sa.Column("last_activity_label", sa.String(length=200)),
        sa.Column("last_activity_amount_cents", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "expense_groups",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("color", sa.String(length=9), nullable=False),
        sa.Column(
            "default_monthly_budget_cents",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "default_monthly_budget_cents >= 0",
            name="ck_expense_group_default_budget_positive",
        ),
    )

    op.create_table(
        "monthly_plans",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("month_key", sa.String(length=7), nullable=False, unique=True),
        sa.Column("cycle_start", sa.Date()),
        sa.Column("cycle_end", sa.Date()),
        sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "savings_target_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "monthly_plan_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "plan_id",
            sa.String(length=36),
            sa.ForeignKey("monthly_plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "group_id",
            sa.String(length=36),
            sa.ForeignKey("expense_groups.id"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("planned_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actual_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("plan_id", "group_id", name="uq_plan_budget_plan_group"),
        sa.CheckConstraint("planned_cents >= 0", name="ck_plan_budget_planned_positive"),
        sa.CheckConstraint("actual_cents >= 0", name="ck_plan_budget_actual_positive"),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=50), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("label", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "entry_type",
            sa.Enum("expense", "income", name="entrytype"),
            nullable=False,
        ),
        sa.Column(
            "group_id",
            sa.String(length=36),
            sa.ForeignKey("expense_groups.id"),
            nullable=False,
        ),
        sa.Column(
            "cash_book_id",
            sa.String(length=36),
            sa.ForeignKey("cash_books.id"),
            nullable=False,
        ),
        sa.Column("txn_date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("plan_month_key", sa.String(length=7)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )
    op.create_index("ix_expenses_txn_date", "expenses", ["txn_date", "created_at"])
    op.create_index(
        "ix_expenses_cash_book_date",
        "expenses",
        ["cash_book_id", "txn_date", "created_at"],
    )
    op.create_index(
        "ix_expenses_plan_group", "expenses", ["plan_month_key", "group_id"]
    )

    op.create_table(
        "expense_tags",
        sa.Column(
            "expense_id",
            sa.String(length=36),
            sa.ForeignKey("expenses.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )


def downgrade():
    op.drop_table("expense_tags")
    op.drop_index("ix_expenses_plan_group", table_name="expenses")
    op.drop_index("ix_expenses_cash_book_date", table_name="expenses")
    op.drop_index("ix_expenses_txn_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("tags")
    op.drop_table("monthly_plan_budgets")
    op.drop_table("monthly_plans")
    op.drop_table("expense_groups")
    op.drop_table("cash_books")
    sa.Enum(name="entrytype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="accounttype").drop(op.get_bind(), checkfirst=True)
