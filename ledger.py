"""Ledger store: durable record sets and the row-level primitives reconciliation uses.

The store never commits. Callers open a unit of work with :meth:`LedgerStore.atomic`
and every read-modify-write inside it lands or vanishes together.

Balance and actual adjustments are issued as single ``UPDATE ... SET col = col + :delta``
statements so concurrent writers to the same cash book or (plan, group) pair
serialize on the row instead of losing an update.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from database import atomic
from errors import NotFoundError, ValidationError
from models import (
    CashBook,
    EntryType,
    Expense,
    ExpenseGroup,
    MonthlyPlan,
    PlanBudget,
    Tag,
    expense_tags,
)


@dataclass
class ExpenseFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    group_id: Optional[str] = None
    cash_book_id: Optional[str] = None
    search: Optional[str] = None


class LedgerStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    @contextmanager
    def atomic(self) -> Iterator[Session]:
        with atomic(self.session) as session:
            yield session

    # Cash books

    def list_cash_books(self) -> list[CashBook]:
        stmt = select(CashBook).order_by(CashBook.created_at.desc(), CashBook.id)
        return self.session.scalars(stmt).all()

    def get_cash_book(
        self, cash_book_id: Optional[str], *, for_update: bool = False
    ) -> Optional[CashBook]:
        if not cash_book_id:
            return None
        stmt = select(CashBook).where(CashBook.id == cash_book_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def require_cash_book(
        self, cash_book_id: Optional[str], *, for_update: bool = False
    ) -> CashBook:
        book = self.get_cash_book(cash_book_id, for_update=for_update)
        if not book:
            raise NotFoundError("Cash book", cash_book_id)
        return book

    # Expense groups

    def list_groups(self) -> list[ExpenseGroup]:
        stmt = select(ExpenseGroup).order_by(
            ExpenseGroup.created_at.desc(), ExpenseGroup.id
        )
        return self.session.scalars(stmt).all()

    def get_group(self, group_id: Optional[str]) -> Optional[ExpenseGroup]:
        if not group_id:
            return None
        return self.session.get(ExpenseGroup, group_id)

    def require_group(self, group_id: Optional[str]) -> ExpenseGroup:
        group = self.get_group(group_id)
        if not group:
            raise NotFoundError("Expense group", group_id)
        return group

    # Monthly plans

    def list_plans(self) -> list[MonthlyPlan]:
        """All plans in stored order: month key, most recent first."""
        stmt = (
            select(MonthlyPlan)
            .options(selectinload(MonthlyPlan.budgets))
            .order_by(MonthlyPlan.month_key.desc())
        )
        return self.session.scalars(stmt).all()

    def get_plan(
        self, plan_id: Optional[str], *, for_update: bool = False
    ) -> Optional[MonthlyPlan]:
        if not plan_id:
            return None
        stmt = (
            select(MonthlyPlan)
            .options(selectinload(MonthlyPlan.budgets))
            .where(MonthlyPlan.id == plan_id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def get_plan_by_month(self, month_key: Optional[str]) -> Optional[MonthlyPlan]:
        if not month_key:
            return None
        stmt = (
            select(MonthlyPlan)
            .options(selectinload(MonthlyPlan.budgets))
            .where(MonthlyPlan.month_key == month_key)
        )
        return self.session.scalar(stmt)

    def require_plan(
        self, plan_id: Optional[str], *, for_update: bool = False
    ) -> MonthlyPlan:
        plan = self.get_plan(plan_id, for_update=for_update)
        if not plan:
            raise NotFoundError("Monthly plan", plan_id)
        return plan

    # Expenses

    def get_expense(
        self, expense_id: Optional[str], *, for_update: bool = False
    ) -> Optional[Expense]:
        if not expense_id:
            return None
        stmt = (
            select(Expense)
            .options(selectinload(Expense.tags))
            .where(Expense.id == expense_id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def require_expense(
        self, expense_id: Optional[str], *, for_update: bool = False
    ) -> Expense:
        expense = self.get_expense(expense_id, for_update=for_update)
        if not expense:
            raise NotFoundError("Expense", expense_id)
        return expense

    def list_expenses(self, filters: Optional[ExpenseFilters] = None) -> list[Expense]:
        filters = filters or ExpenseFilters()
        stmt = (
            select(Expense)
            .options(selectinload(Expense.tags))
            .order_by(Expense.txn_date.desc(), Expense.created_at.desc(), Expense.id)
        )
        if filters.start_date:
            stmt = stmt.where(Expense.txn_date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Expense.txn_date <= filters.end_date)
        if filters.group_id:
            stmt = stmt.where(Expense.group_id == filters.group_id)
        if filters.cash_book_id:
            stmt = stmt.where(Expense.cash_book_id == filters.cash_book_id)
        if filters.search and filters.search.strip():
            like = f"%{filters.search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Expense.label).like(like),
                    func.lower(func.coalesce(Expense.note, "")).like(like),
                    Expense.tags.any(func.lower(Tag.name).like(like)),
                )
            )
        return self.session.scalars(stmt).all()

    def latest_expense_for_cash_book(self, cash_book_id: str) -> Optional[Expense]:
        stmt = (
            select(Expense)
            .where(Expense.cash_book_id == cash_book_id)
            .order_by(Expense.txn_date.desc(), Expense.created_at.desc(), Expense.id)
            .limit(1)
        )
        return self.session.scalar(stmt)

    # Tags

    def get_or_create_tag(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Tag name cannot be empty")

        stmt = select(Tag).where(func.lower(Tag.name) == clean_name.lower())
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def tags_for(self, names: list[str]) -> list[Tag]:
        tags: list[Tag] = []
        tag_ids: set[int] = set()
        for name in names:
            if not name or not name.strip():
                continue
            tag = self.get_or_create_tag(name)
            if tag.id not in tag_ids:
                tags.append(tag)
                tag_ids.add(tag.id)
        return tags

    # Aggregate primitives

    def adjust_balance(self, cash_book_id: str, delta_cents: int) -> None:
        if not delta_cents:
            return
        result = self.session.execute(
            update(CashBook)
            .where(CashBook.id == cash_book_id)
            .values(balance_cents=CashBook.balance_cents + delta_cents)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise NotFoundError("Cash book", cash_book_id)

    def adjust_actual(
        self, month_key: Optional[str], group_id: str, delta_cents: int
    ) -> None:
        """Add ``delta_cents`` to the actual spend of (plan for ``month_key``, group).

        The result is clamped at zero. Nothing is recorded when there is no plan
        for the month. A missing budget row is created with ``planned = 0`` only
        for a positive delta, and its actual is taken from the ledger since the
        delta may be the net of a reversal that never had a row to land on.
        """
        if not delta_cents or not month_key:
            return
        plan = self.get_plan_by_month(month_key)
        if plan is None:
            return

        adjusted = PlanBudget.actual_cents + delta_cents
        result = self.session.execute(
            update(PlanBudget)
            .where(PlanBudget.plan_id == plan.id, PlanBudget.group_id == group_id)
            .values(actual_cents=case((adjusted < 0, 0), else_=adjusted))
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount or delta_cents < 0:
            return

        self.session.flush()
        next_position = max((b.position for b in plan.budgets), default=-1) + 1
        plan.budgets.append(
            PlanBudget(
                group_id=group_id,
                position=next_position,
                planned_cents=0,
                actual_cents=self.ledger_actual(month_key, group_id),
            )
        )
        self.session.flush()

    def refresh_last_activity(self, cash_book_id: str) -> None:
        self.session.flush()
        book = self.session.get(CashBook, cash_book_id)
        if book is None:
            return
        latest = self.latest_expense_for_cash_book(cash_book_id)
        if latest is None:
            book.last_activity_date = None
            book.last_activity_label = None
            book.last_activity_amount_cents = None
        else:
            book.last_activity_date = latest.txn_date
            book.last_activity_label = latest.label
            book.last_activity_amount_cents = latest.balance_effect
        self.session.flush()

    def ledger_actual(self, month_key: str, group_id: str) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.plan_month_key == month_key,
                Expense.group_id == group_id,
                Expense.entry_type == EntryType.expense,
            )
        ).scalar_one()
        return max(0, int(total or 0))

    def spend_by_group(self) -> dict[str, int]:
        """All-time expense totals per group, income excluded."""
        stmt = (
            select(Expense.group_id, func.sum(Expense.amount_cents))
            .where(Expense.entry_type == EntryType.expense)
            .group_by(Expense.group_id)
        )
        return {
            group_id: int(total or 0)
            for group_id, total in self.session.execute(stmt).all()
        }

    def ledger_balance_effect(self, cash_book_id: str) -> int:
        """Net effect of every expense on the cash book (outflows negative)."""
        row = self.session.execute(
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Expense.entry_type == EntryType.expense,
                                -Expense.amount_cents,
                            ),
                            else_=Expense.amount_cents,
                        )
                    ),
                    0,
                ).label("effect")
            ).where(Expense.cash_book_id == cash_book_id)
        ).one()
        return int(row.effect or 0)

    def repoint_plan_month(self, old_key: str, new_key: str) -> int:
        result = self.session.execute(
            update(Expense)
            .where(Expense.plan_month_key == old_key)
            .values(plan_month_key=new_key)
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    def clear(self) -> None:
        self.session.execute(delete(expense_tags))
        self.session.execute(delete(Expense))
        self.session.execute(delete(PlanBudget))
        self.session.execute(delete(MonthlyPlan))
        self.session.execute(delete(ExpenseGroup))
        self.session.execute(delete(CashBook))
        self.session.execute(delete(Tag))
        self.session.flush()
        self.session.expunge_all()

