from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Optional, TypeVar

from sqlalchemy.orm import Session
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from config import get_settings
from csv_utils import export_expenses
from cycles import CycleResolver, plan_window, select_current_plan
from errors import ReconciliationConflictError, ValidationError
from ledger import ExpenseFilters, LedgerStore
from models import CashBook, Expense, ExpenseGroup, MonthlyPlan, PlanBudget
from money import to_minor_units
from schemas import (
    CashBookIn,
    CashBookOut,
    DatasetSnapshot,
    ExpenseGroupIn,
    ExpenseGroupOut,
    ExpenseIn,
    ExpenseOut,
    ExpensePatch,
    ImportResult,
    MonthlyPlanIn,
    MonthlyPlanOut,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_reconciled(operation: str, action: Callable[[], T]) -> T:
    """Run ``action`` as a whole, re-running it when it aborts on a write conflict.

    ``action`` must open and close its own transaction; nothing it wrote survives
    a conflict, so every attempt starts from committed state.
    """
    attempts = get_settings().reconcile_attempts

    def log_retry(state: RetryCallState) -> None:
        logger.warning(
            f"reconcile_retry: operation={operation} "
            f"attempt={state.attempt_number} error={state.outcome.exception()}"
        )

    retrying = Retrying(
        retry=retry_if_exception_type(ReconciliationConflictError),
        stop=stop_after_attempt(attempts),
        wait=wait_random_exponential(multiplier=0.05, max=1),
        before_sleep=log_retry,
        reraise=True,
    )
    try:
        return retrying(action)
    except ReconciliationConflictError as exc:
        logger.warning(
            f"reconcile_failed: operation={operation} attempts={attempts} error={exc}"
        )
        raise


@dataclass(frozen=True)
class LedgerEffect:
    """What one expense contributes to the aggregates it is attributed to."""

    cash_book_id: str
    month_key: Optional[str]
    group_id: str
    actual_cents: int
    balance_cents: int

    @classmethod
    def of(cls, expense: Expense) -> LedgerEffect:
        return cls(
            cash_book_id=expense.cash_book_id,
            month_key=expense.plan_month_key,
            group_id=expense.group_id,
            actual_cents=expense.actual_effect,
            balance_cents=expense.balance_effect,
        )


@dataclass
class LedgerDeltas:
    """Net balance and actual changes of one reconciliation.

    Reversals and applications are summed per cash book and per (month, group)
    before anything is written, so moving an expense within the same pair only
    writes the difference and the zero clamp never sees an intermediate value.
    """

    balances: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    actuals: dict[tuple[str, str], int] = field(
        default_factory=lambda: defaultdict(int)
    )
    touched_books: set[str] = field(default_factory=set)

    def apply(self, effect: LedgerEffect) -> None:
        self._add(effect, 1)

    def reverse(self, effect: LedgerEffect) -> None:
        self._add(effect, -1)

    def _add(self, effect: LedgerEffect, sign: int) -> None:
        self.touched_books.add(effect.cash_book_id)
        self.balances[effect.cash_book_id] += sign * effect.balance_cents
        if effect.month_key:
            key = (effect.month_key, effect.group_id)
            self.actuals[key] += sign * effect.actual_cents

    def write(self, store: LedgerStore) -> None:
        # Sorted so concurrent writers take row locks in the same order.
        for cash_book_id in sorted(self.balances):
            store.adjust_balance(cash_book_id, self.balances[cash_book_id])
        for month_key, group_id in sorted(self.actuals):
            delta = self.actuals[(month_key, group_id)]
            store.adjust_actual(month_key, group_id, delta)
        for cash_book_id in sorted(self.touched_books):
            store.refresh_last_activity(cash_book_id)


class CashBookService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = LedgerStore(session)

    def list_all(self) -> list[CashBook]:
        return self.store.list_cash_books()

    def get(self, cash_book_id: str) -> CashBook:
        return self.store.require_cash_book(cash_book_id)

    def save(self, data: CashBookIn) -> CashBook:
        """Create or update a cash book.

        A supplied balance becomes the account's current balance. The opening
        value is re-based underneath it so the ledger still adds up; no
        transaction is recorded for the difference.
        """
        book = run_reconciled("save_cash_book", lambda: self._save(data))
        self.session.refresh(book)
        logger.info(
            f"cash_book_saved: id={book.id} balance_cents={book.balance_cents} "
            f"opening_balance_cents={book.opening_balance_cents}"
        )
        return book

    def _save(self, data: CashBookIn) -> CashBook:
        with self.store.atomic():
            if data.id:
                book = self.store.require_cash_book(data.id, for_update=True)
                if data.balance_cents is not None:
                    ledger_effect = self.store.ledger_balance_effect(book.id)
                    book.opening_balance_cents = data.balance_cents - ledger_effect
                    book.balance_cents = data.balance_cents
                if data.currency:
                    book.currency = data.currency
            else:
                opening = data.balance_cents or 0
                book = CashBook(
                    balance_cents=opening,
                    opening_balance_cents=opening,
                    currency=data.currency or get_settings().default_currency,
                )
                self.session.add(book)
            book.name = data.name
            book.type = data.type
            book.account_number = data.account_number
            book.notes = data.notes
            self.session.flush()
        return book


class ExpenseGroupService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = LedgerStore(session)

    def list_all(self) -> list[ExpenseGroup]:
        return self.store.list_groups()

    def get(self, group_id: str) -> ExpenseGroup:
        return self.store.require_group(group_id)

    def save(self, data: ExpenseGroupIn) -> ExpenseGroup:
        with self.store.atomic():
            if data.id:
                group = self.store.require_group(data.id)
            else:
                group = ExpenseGroup()
                self.session.add(group)
            group.name = data.name
            group.description = data.description
            group.color = data.color or get_settings().default_group_color
            group.default_monthly_budget_cents = data.default_monthly_budget_cents
            self.session.flush()
        self.session.refresh(group)
        return group


class MonthlyPlanService:
    def __init__(self, session: Session, today: Optional[date] = None) -> None:
        self.session = session
        self.store = LedgerStore(session)
        self.cycles = CycleResolver(self.store, today)

    def list_all(self) -> list[MonthlyPlan]:
        return self.store.list_plans()

    def get(self, plan_id: str) -> MonthlyPlan:
        return self.store.require_plan(plan_id)

    def current(self) -> Optional[MonthlyPlan]:
        return self.cycles.current_plan()

    def history(self) -> list[MonthlyPlan]:
        """Every plan except the current one, month key descending."""
        plans = self.store.list_plans()
        current = select_current_plan(plans, self.cycles.today())
        if current is None:
            return plans
        return [plan for plan in plans if plan.id != current.id]

    def save(self, data: MonthlyPlanIn) -> MonthlyPlan:
        plan = run_reconciled("save_plan", lambda: self._save(data))
        self.session.refresh(plan)
        logger.info(
            f"plan_saved: id={plan.id} month={plan.month_key} "
            f"budgets={len(plan.budgets)}"
        )
        return plan

    def _save(self, data: MonthlyPlanIn) -> MonthlyPlan:
        group_ids = [budget.group_id for budget in data.budgets]
        if len(set(group_ids)) != len(group_ids):
            raise ValidationError("Each expense group may appear only once in a plan")

        with self.store.atomic():
            for group_id in group_ids:
                if self.store.get_group(group_id) is None:
                    raise ValidationError(f"Expense group {group_id} does not exist")

            same_month = self.store.get_plan_by_month(data.month)
            if data.id:
                plan = self.store.require_plan(data.id, for_update=True)
                if same_month is not None and same_month.id != plan.id:
                    raise ValidationError(f"A plan for {data.month} already exists")
            else:
                plan = same_month

            renamed = False
            if plan is None:
                plan = MonthlyPlan(month_key=data.month)
                self.session.add(plan)
            elif plan.month_key != data.month:
                self.store.repoint_plan_month(plan.month_key, data.month)
                plan.month_key = data.month
                renamed = True

            plan.cycle_start = data.cycle_start
            plan.cycle_end = data.cycle_end
            plan.locked = data.locked
            plan.currency = (
                data.currency or plan.currency or get_settings().default_currency
            )
            plan.savings_target_cents = data.savings_target_cents

            existing = {budget.group_id: budget for budget in plan.budgets}
            budgets: list[PlanBudget] = []
            for position, item in enumerate(data.budgets):
                budget = existing.get(item.group_id)
                if budget is None:
                    budget = PlanBudget(
                        group_id=item.group_id,
                        actual_cents=self.store.ledger_actual(
                            data.month, item.group_id
                        ),
                    )
                elif renamed:
                    # Expenses already filed under the new key now count too.
                    budget.actual_cents = self.store.ledger_actual(
                        data.month, item.group_id
                    )
                budget.position = position
                budget.planned_cents = item.planned_cents
                budgets.append(budget)
            plan.budgets = budgets
            self.session.flush()
        return plan


class ExpenseService:
    """Reconciliation engine for expense writes.

    Every create, update and delete changes three things in one transaction:
    the expense row, the actual spend of the (plan month, group) it is
    attributed to, and the balance of its cash book. A write conflict aborts
    the transaction and the whole operation is run again from the start.
    """

    def __init__(self, session: Session, today: Optional[date] = None) -> None:
        self.session = session
        self.store = LedgerStore(session)
        self.cycles = CycleResolver(self.store, today)

    def list(self, filters: Optional[ExpenseFilters] = None) -> list[Expense]:
        return self.store.list_expenses(filters)

    def get(self, expense_id: str) -> Expense:
        return self.store.require_expense(expense_id)

    def create(self, data: ExpenseIn) -> Expense:
        expense = run_reconciled("create_expense", lambda: self._create(data))
        self.session.refresh(expense)
        logger.info(
            f"expense_created: id={expense.id} amount_cents={expense.amount_cents} "
            f"cash_book_id={expense.cash_book_id} plan_month={expense.plan_month_key}"
        )
        return expense

    def update(self, expense_id: str, patch: ExpensePatch) -> Expense:
        expense = run_reconciled(
            "update_expense", lambda: self._update(expense_id, patch)
        )
        self.session.refresh(expense)
        logger.info(
            f"expense_updated: id={expense.id} amount_cents={expense.amount_cents} "
            f"cash_book_id={expense.cash_book_id} plan_month={expense.plan_month_key}"
        )
        return expense

    def delete(self, expense_id: str) -> None:
        effect = run_reconciled("delete_expense", lambda: self._delete(expense_id))
        logger.info(
            f"expense_deleted: id={expense_id} cash_book_id={effect.cash_book_id} "
            f"plan_month={effect.month_key}"
        )

    def _create(self, data: ExpenseIn) -> Expense:
        with self.store.atomic():
            self._check_references(data)
            resolution = self.cycles.resolve(
                data.date, data.plan_month, hint_current=True
            )
            expense = Expense(
                label=data.label,
                amount_cents=data.amount_cents,
                entry_type=data.entry_type,
                group_id=data.group_id,
                cash_book_id=data.cash_book_id,
                txn_date=data.date,
                note=data.note,
                plan_month_key=resolution.month_key,
            )
            expense.tags = self.store.tags_for(data.tags)
            self.session.add(expense)
            self.session.flush()

            deltas = LedgerDeltas()
            deltas.apply(LedgerEffect.of(expense))
            deltas.write(self.store)
        return expense

    def _update(self, expense_id: str, patch: ExpensePatch) -> Expense:
        with self.store.atomic():
            expense = self.store.require_expense(expense_id, for_update=True)
            previous = LedgerEffect.of(expense)
            data = patch.merge_over(expense)
            self._check_references(data)
            resolution = self.cycles.resolve(
                data.date, data.plan_month, hint_current=True
            )

            expense.label = data.label
            expense.amount_cents = data.amount_cents
            expense.entry_type = data.entry_type
            expense.group_id = data.group_id
            expense.cash_book_id = data.cash_book_id
            expense.txn_date = data.date
            expense.note = data.note
            expense.plan_month_key = resolution.month_key
            expense.tags = self.store.tags_for(data.tags)
            self.session.flush()

            deltas = LedgerDeltas()
            deltas.reverse(previous)
            deltas.apply(LedgerEffect.of(expense))
            deltas.write(self.store)
        return expense

    def _delete(self, expense_id: str) -> LedgerEffect:
        with self.store.atomic():
            expense = self.store.require_expense(expense_id, for_update=True)
            effect = LedgerEffect.of(expense)
            self.session.delete(expense)
            self.session.flush()

            deltas = LedgerDeltas()
            deltas.reverse(effect)
            deltas.write(self.store)
        return effect

    def _check_references(self, data: ExpenseIn) -> None:
        if self.store.get_group(data.group_id) is None:
            raise ValidationError(f"Expense group {data.group_id} does not exist")
        if self.store.get_cash_book(data.cash_book_id) is None:
            raise ValidationError(f"Cash book {data.cash_book_id} does not exist")


@dataclass(frozen=True)
class CycleSummary:
    month: Optional[str]
    start: Optional[date]
    end: Optional[date]
    locked: bool
    savings_target_cents: int


@dataclass(frozen=True)
class SummaryTotals:
    planned_cents: int
    actual_cents: int
    expenses_cents: int
    cash_on_hand_cents: int


@dataclass(frozen=True)
class GroupSpend:
    group_id: str
    name: str
    amount_cents: int


@dataclass(frozen=True)
class QuickLink:
    id: str
    label: str
    href: str


QUICK_LINKS = (
    QuickLink("quick-add-expense", "Add Expense", "/add-expense"),
    QuickLink("quick-plan-budget", "Plan Budget", "/monthly-planner"),
    QuickLink("quick-reports", "View Reports", "/reports"),
)


@dataclass(frozen=True)
class DashboardSummary:
    cycle: CycleSummary
    totals: SummaryTotals
    top_expense_groups: list[GroupSpend]
    quick_links: tuple[QuickLink, ...] = QUICK_LINKS


@dataclass(frozen=True)
class PlannedVsActualRow:
    group_id: str
    planned_cents: int
    actual_cents: int


class SummaryService:
    """Read-only views over reconciled state. Nothing here writes."""

    def __init__(self, session: Session, today: Optional[date] = None) -> None:
        self.session = session
        self.store = LedgerStore(session)
        self.cycles = CycleResolver(self.store, today)

    def summary(self) -> DashboardSummary:
        current = self.cycles.current_plan()
        budgets = current.budgets if current else []

        if current is None:
            cycle = CycleSummary(None, None, None, False, 0)
        else:
            window = plan_window(current)
            cycle = CycleSummary(
                month=current.month_key,
                start=window.start,
                end=window.end,
                locked=current.locked,
                savings_target_cents=current.savings_target_cents,
            )

        spend = self.store.spend_by_group()
        ranked = sorted(
            (
                GroupSpend(group.id, group.name, spend.get(group.id, 0))
                for group in self.store.list_groups()
            ),
            key=lambda item: -item.amount_cents,
        )
        totals = SummaryTotals(
            planned_cents=sum(budget.planned_cents for budget in budgets),
            actual_cents=sum(budget.actual_cents for budget in budgets),
            expenses_cents=sum(spend.values()),
            cash_on_hand_cents=sum(
                book.balance_cents for book in self.store.list_cash_books()
            ),
        )
        return DashboardSummary(
            cycle=cycle, totals=totals, top_expense_groups=ranked[:3]
        )

    def planned_vs_actual(self) -> list[PlannedVsActualRow]:
        current = self.cycles.current_plan()
        if current is None:
            return []
        return [
            PlannedVsActualRow(
                group_id=budget.group_id,
                planned_cents=budget.planned_cents,
                actual_cents=budget.actual_cents,
            )
            for budget in current.budgets
        ]


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _require_unique(values: list[str], what: str) -> None:
    seen: set[str] = set()
    for value in values:
        if value in seen:
            raise ValidationError(f"Duplicate {what}: {value}")
        seen.add(value)


class DataTransferService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = LedgerStore(session)

    def export_snapshot(self) -> DatasetSnapshot:
        return DatasetSnapshot(
            cash_books=[
                CashBookOut.from_model(b) for b in self.store.list_cash_books()
            ],
            expense_groups=[
                ExpenseGroupOut.from_model(g) for g in self.store.list_groups()
            ],
            monthly_plans=[
                MonthlyPlanOut.from_model(p) for p in self.store.list_plans()
            ],
            expenses=[ExpenseOut.from_model(e) for e in self.store.list_expenses()],
        )

    def export_csv(self, filters: Optional[ExpenseFilters] = None) -> str:
        group_names = {group.id: group.name for group in self.store.list_groups()}
        book_names = {book.id: book.name for book in self.store.list_cash_books()}
        return export_expenses(
            self.store.list_expenses(filters), group_names, book_names
        )

    def import_snapshot(self, snapshot: DatasetSnapshot) -> ImportResult:
        """Replace the whole dataset with ``snapshot`` in one transaction.

        Ids, balances, actuals, resolved plan months and creation times are
        taken as given. Last activity is recomputed from the imported expenses.
        """
        self._check_snapshot(snapshot)
        run_reconciled("import", lambda: self._import(snapshot))
        result = ImportResult(
            cash_books=len(snapshot.cash_books),
            expense_groups=len(snapshot.expense_groups),
            monthly_plans=len(snapshot.monthly_plans),
            expenses=len(snapshot.expenses),
        )
        logger.info(
            f"dataset_imported: cash_books={result.cash_books} "
            f"expense_groups={result.expense_groups} "
            f"monthly_plans={result.monthly_plans} expenses={result.expenses}"
        )
        return result

    def reset(self) -> None:
        def _reset() -> None:
            with self.store.atomic():
                self.store.clear()

        run_reconciled("reset", _reset)
        logger.info("dataset_reset")

    def _check_snapshot(self, snapshot: DatasetSnapshot) -> None:
        book_ids = [book.id for book in snapshot.cash_books]
        group_ids = [group.id for group in snapshot.expense_groups]
        _require_unique(book_ids, "cash book id")
        _require_unique(group_ids, "expense group id")
        _require_unique([plan.id for plan in snapshot.monthly_plans], "plan id")
        _require_unique([plan.month for plan in snapshot.monthly_plans], "plan month")
        _require_unique([expense.id for expense in snapshot.expenses], "expense id")

        known_books, known_groups = set(book_ids), set(group_ids)
        for group in snapshot.expense_groups:
            if to_minor_units(group.default_monthly_budget) < 0:
                raise ValidationError(
                    f"Expense group {group.id} default monthly budget "
                    "cannot be negative"
                )
        for plan in snapshot.monthly_plans:
            if to_minor_units(plan.savings_target) < 0:
                raise ValidationError(
                    f"Plan {plan.month} savings target cannot be negative"
                )
            if any(to_minor_units(budget.planned) < 0 for budget in plan.budgets):
                raise ValidationError(
                    f"Plan {plan.month} planned amounts cannot be negative"
                )
            plan_groups = [budget.group_id for budget in plan.budgets]
            _require_unique(plan_groups, f"expense group in plan {plan.month}")
            missing = set(plan_groups) - known_groups
            if missing:
                raise ValidationError(
                    f"Plan {plan.month} references unknown expense group "
                    f"{sorted(missing)[0]}"
                )
        for expense in snapshot.expenses:
            if expense.group_id not in known_groups:
                raise ValidationError(
                    f"Expense {expense.id} references unknown expense group"
                )
            if expense.cash_book_id not in known_books:
                raise ValidationError(
                    f"Expense {expense.id} references unknown cash book"
                )
            if to_minor_units(expense.amount) <= 0:
                raise ValidationError(
                    f"Expense {expense.id} must have a positive amount"
                )

    def _import(self, snapshot: DatasetSnapshot) -> None:
        settings = get_settings()
        with self.store.atomic():
            self.store.clear()

            rebase: list[CashBook] = []
            for item in snapshot.cash_books:
                balance = to_minor_units(item.balance)
                book = CashBook(
                    id=item.id,
                    name=item.name,
                    type=item.type,
                    account_number=item.account_number,
                    currency=item.currency or settings.default_currency,
                    notes=item.notes,
                    balance_cents=balance,
                    opening_balance_cents=balance,
                )
                if item.opening_balance is None:
                    rebase.append(book)
                else:
                    book.opening_balance_cents = to_minor_units(item.opening_balance)
                self.session.add(book)

            for item in snapshot.expense_groups:
                self.session.add(
                    ExpenseGroup(
                        id=item.id,
                        name=item.name,
                        description=item.description,
                        color=item.color or settings.default_group_color,
                        default_monthly_budget_cents=to_minor_units(
                            item.default_monthly_budget
                        ),
                    )
                )

            for item in snapshot.monthly_plans:
                self.session.add(
                    MonthlyPlan(
                        id=item.id,
                        month_key=item.month,
                        cycle_start=item.cycle_start,
                        cycle_end=item.cycle_end,
                        locked=item.locked,
                        currency=item.currency or settings.default_currency,
                        savings_target_cents=to_minor_units(item.savings_target),
                        budgets=[
                            PlanBudget(
                                group_id=budget.group_id,
                                position=position,
                                planned_cents=to_minor_units(budget.planned),
                                actual_cents=max(0, to_minor_units(budget.actual)),
                            )
                            for position, budget in enumerate(item.budgets)
                        ],
                    )
                )
            self.session.flush()

            for item in snapshot.expenses:
                created_at = _naive_utc(item.created_at)
                expense = Expense(
                    id=item.id,
                    label=item.label,
                    amount_cents=to_minor_units(item.amount),
                    entry_type=item.type,
                    group_id=item.group_id,
                    cash_book_id=item.cash_book_id,
                    txn_date=item.date,
                    note=item.note,
                    plan_month_key=item.plan_month,
                )
                if created_at is not None:
                    expense.created_at = created_at
                    expense.updated_at = created_at
                expense.tags = self.store.tags_for(item.tags)
                self.session.add(expense)
            self.session.flush()

            for book in rebase:
                book.opening_balance_cents = (
                    book.balance_cents - self.store.ledger_balance_effect(book.id)
                )
            for item in snapshot.cash_books:
                self.store.refresh_last_activity(item.id)
