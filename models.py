import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AccountType(str, Enum):
    bank = "bank"
    cash = "cash"
    wallet = "wallet"
    digital = "digital"


class EntryType(str, Enum):
    expense = "expense"
    income = "income"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class CashBook(Base, TimestampMixin):
    __tablename__ = "cash_books"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.bank
    )
    account_number: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opening_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    last_activity_date: Mapped[Optional[date]] = mapped_column(Date)
    last_activity_label: Mapped[Optional[str]] = mapped_column(String(200))
    last_activity_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="cash_book"
    )


class ExpenseGroup(Base, TimestampMixin):
    __tablename__ = "expense_groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    color: Mapped[str] = mapped_column(String(9), nullable=False)
    default_monthly_budget_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="group"
    )

    __table_args__ = (
        CheckConstraint(
            "default_monthly_budget_cents >= 0",
            name="ck_expense_group_default_budget_positive",
        ),
    )


class MonthlyPlan(Base, TimestampMixin):
    __tablename__ = "monthly_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    month_key: Mapped[str] = mapped_column(String(7), nullable=False, unique=True)
    cycle_start: Mapped[Optional[date]] = mapped_column(Date)
    cycle_end: Mapped[Optional[date]] = mapped_column(Date)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    savings_target_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    budgets: Mapped[list["PlanBudget"]] = relationship(
        "PlanBudget",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="PlanBudget.position",
    )


class PlanBudget(Base):
    __tablename__ = "monthly_plan_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[str] = mapped_column(
        ForeignKey("monthly_plans.id", ondelete="CASCADE"), nullable=False
    )
    group_id: Mapped[str] = mapped_column(
        ForeignKey("expense_groups.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    planned_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    plan: Mapped["MonthlyPlan"] = relationship("MonthlyPlan", back_populates="budgets")
    group: Mapped["ExpenseGroup"] = relationship("ExpenseGroup")

    __table_args__ = (
        UniqueConstraint("plan_id", "group_id", name="uq_plan_budget_plan_group"),
        CheckConstraint("planned_cents >= 0", name="ck_plan_budget_planned_positive"),
        CheckConstraint("actual_cents >= 0", name="ck_plan_budget_actual_positive"),
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", secondary="expense_tags", back_populates="tags"
    )


expense_tags = Table(
    "expense_tags",
    Base.metadata,
    Column(
        "expense_id",
        String(36),
        ForeignKey("expenses.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    label: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[EntryType] = mapped_column(
        SAEnum(EntryType), nullable=False, default=EntryType.expense
    )
    group_id: Mapped[str] = mapped_column(
        ForeignKey("expense_groups.id"), nullable=False
    )
    cash_book_id: Mapped[str] = mapped_column(
        ForeignKey("cash_books.id"), nullable=False
    )
    txn_date: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Month key of the plan this expense was attributed to when last reconciled.
    plan_month_key: Mapped[Optional[str]] = mapped_column(String(7))

    group: Mapped["ExpenseGroup"] = relationship(
        "ExpenseGroup", back_populates="expenses"
    )
    cash_book: Mapped["CashBook"] = relationship(
        "CashBook", back_populates="expenses"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag",
        secondary="expense_tags",
        back_populates="expenses",
        order_by="Tag.name",
    )

    @property
    def tag_names(self) -> list[str]:
        return sorted((tag.name for tag in self.tags), key=str.lower)

    @property
    def actual_effect(self) -> int:
        """Contribution to the owning plan's per-group actual spend."""
        return self.amount_cents if self.entry_type == EntryType.expense else 0

    @property
    def balance_effect(self) -> int:
        """Contribution to the owning cash book's balance."""
        if self.entry_type == EntryType.expense:
            return -self.amount_cents
        return self.amount_cents

    __table_args__ = (
        Index("ix_expenses_txn_date", "txn_date", "created_at"),
        Index("ix_expenses_cash_book_date", "cash_book_id", "txn_date", "created_at"),
        Index("ix_expenses_plan_group", "plan_month_key", "group_id"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )
