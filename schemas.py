import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models import (
    AccountType,
    CashBook,
    EntryType,
    Expense,
    ExpenseGroup,
    MonthlyPlan,
    PlanBudget,
)
from money import cents_to_float, to_minor_units
from periods import MONTH_KEY_PATTERN

CURRENCY_PATTERN = r"^[A-Z]{3}$"


def _upper(value: Optional[str]) -> Optional[str]:
    return value.strip().upper() if isinstance(value, str) else value


def _blank_to_none(value: object) -> object:
    if isinstance(value, str) and not value.strip():
        return None
    return value


# Core inputs: minor units, snake_case. These are what the services consume.


class CashBookIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType = AccountType.bank
    account_number: str = Field(default="", max_length=64)
    # None on update keeps the current balance; on create it means zero.
    balance_cents: Optional[int] = None
    currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    notes: str = ""

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value: Optional[str]) -> Optional[str]:
        return _upper(value)


class ExpenseGroupIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    color: Optional[str] = Field(default=None, max_length=9)
    default_monthly_budget_cents: int = Field(default=0, ge=0)


class PlanBudgetIn(BaseModel):
    group_id: str = Field(..., min_length=1)
    planned_cents: int = Field(default=0, ge=0)


class MonthlyPlanIn(BaseModel):
    id: Optional[str] = None
    month: str = Field(..., pattern=MONTH_KEY_PATTERN)
    cycle_start: Optional[dt.date] = None
    cycle_end: Optional[dt.date] = None
    locked: bool = False
    currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    savings_target_cents: int = Field(default=0, ge=0)
    budgets: list[PlanBudgetIn] = Field(default_factory=list)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value: Optional[str]) -> Optional[str]:
        return _upper(value)

    @model_validator(mode="after")
    def check_cycle(self) -> "MonthlyPlanIn":
        if self.cycle_start and self.cycle_end and self.cycle_start > self.cycle_end:
            raise ValueError("Cycle start must be on or before cycle end")
        return self


class ExpenseIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    label: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0)
    entry_type: EntryType = EntryType.expense
    group_id: str = Field(..., min_length=1)
    cash_book_id: str = Field(..., min_length=1)
    date: dt.date
    note: str = ""
    tags: list[str] = Field(default_factory=list)
    plan_month: Optional[str] = Field(default=None, pattern=MONTH_KEY_PATTERN)


class ExpensePatch(BaseModel):
    """Partial update of an expense. Every field is optional.

    Merge rule, per field: the patch value when it is not None, otherwise the
    value already stored on the expense.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    label: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    entry_type: Optional[EntryType] = None
    group_id: Optional[str] = Field(default=None, min_length=1)
    cash_book_id: Optional[str] = Field(default=None, min_length=1)
    date: Optional[dt.date] = None
    note: Optional[str] = None
    tags: Optional[list[str]] = None
    plan_month: Optional[str] = Field(default=None, pattern=MONTH_KEY_PATTERN)

    @classmethod
    def of(cls, expense: Expense) -> "ExpensePatch":
        """A patch that re-submits every field the expense already has."""
        return cls(
            label=expense.label,
            amount_cents=expense.amount_cents,
            entry_type=expense.entry_type,
            group_id=expense.group_id,
            cash_book_id=expense.cash_book_id,
            date=expense.txn_date,
            note=expense.note,
            tags=expense.tag_names,
            plan_month=expense.plan_month_key,
        )

    def merge_over(self, expense: Expense) -> ExpenseIn:
        return ExpenseIn(
            label=self.label if self.label is not None else expense.label,
            amount_cents=(
                self.amount_cents
                if self.amount_cents is not None
                else expense.amount_cents
            ),
            entry_type=(
                self.entry_type if self.entry_type is not None else expense.entry_type
            ),
            group_id=self.group_id if self.group_id is not None else expense.group_id,
            cash_book_id=(
                self.cash_book_id
                if self.cash_book_id is not None
                else expense.cash_book_id
            ),
            date=self.date if self.date is not None else expense.txn_date,
            note=self.note if self.note is not None else expense.note,
            tags=self.tags if self.tags is not None else expense.tag_names,
            plan_month=(
                self.plan_month
                if self.plan_month is not None
                else expense.plan_month_key
            ),
        )


# Wire shapes: camelCase keys, major-unit amounts. Used for HTTP responses and
# for the export/import snapshot, so both speak the same entity layout.


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LastActivityOut(WireModel):
    date: dt.date
    label: str
    amount: float


class CashBookOut(WireModel):
    id: str
    name: str
    type: AccountType = AccountType.bank
    account_number: str = ""
    balance: float = 0
    opening_balance: Optional[float] = None
    currency: Optional[str] = None
    notes: str = ""
    last_activity: Optional[LastActivityOut] = None

    @classmethod
    def from_model(cls, book: CashBook) -> "CashBookOut":
        last_activity = None
        if book.last_activity_date is not None:
            last_activity = LastActivityOut(
                date=book.last_activity_date,
                label=book.last_activity_label or "",
                amount=cents_to_float(book.last_activity_amount_cents or 0),
            )
        return cls(
            id=book.id,
            name=book.name,
            type=book.type,
            account_number=book.account_number,
            balance=cents_to_float(book.balance_cents),
            opening_balance=cents_to_float(book.opening_balance_cents),
            currency=book.currency,
            notes=book.notes,
            last_activity=last_activity,
        )


class ExpenseGroupOut(WireModel):
    id: str
    name: str
    description: str = ""
    color: Optional[str] = None
    default_monthly_budget: float = 0

    @classmethod
    def from_model(cls, group: ExpenseGroup) -> "ExpenseGroupOut":
        return cls(
            id=group.id,
            name=group.name,
            description=group.description,
            color=group.color,
            default_monthly_budget=cents_to_float(group.default_monthly_budget_cents),
        )


class PlanBudgetOut(WireModel):
    group_id: str
    planned: float = 0
    actual: float = 0

    @classmethod
    def from_model(cls, budget: PlanBudget) -> "PlanBudgetOut":
        return cls(
            group_id=budget.group_id,
            planned=cents_to_float(budget.planned_cents),
            actual=cents_to_float(budget.actual_cents),
        )


class MonthlyPlanOut(WireModel):
    id: str
    month: str = Field(..., pattern=MONTH_KEY_PATTERN)
    cycle_start: Optional[dt.date] = None
    cycle_end: Optional[dt.date] = None
    locked: bool = False
    currency: Optional[str] = None
    savings_target: float = 0
    budgets: list[PlanBudgetOut] = Field(default_factory=list)

    @field_validator("cycle_start", "cycle_end", mode="before")
    @classmethod
    def blank_dates(cls, value: object) -> object:
        return _blank_to_none(value)

    @classmethod
    def from_model(cls, plan: MonthlyPlan) -> "MonthlyPlanOut":
        return cls(
            id=plan.id,
            month=plan.month_key,
            cycle_start=plan.cycle_start,
            cycle_end=plan.cycle_end,
            locked=plan.locked,
            currency=plan.currency,
            savings_target=cents_to_float(plan.savings_target_cents),
            budgets=[PlanBudgetOut.from_model(b) for b in plan.budgets],
        )


class ExpenseOut(WireModel):
    id: str
    label: str
    amount: float
    type: EntryType = EntryType.expense
    group_id: str
    cash_book_id: str
    date: dt.date
    note: str = ""
    tags: list[str] = Field(default_factory=list)
    created_at: Optional[dt.datetime] = None
    plan_month: Optional[str] = Field(default=None, pattern=MONTH_KEY_PATTERN)

    @classmethod
    def from_model(cls, expense: Expense) -> "ExpenseOut":
        return cls(
            id=expense.id,
            label=expense.label,
            amount=cents_to_float(expense.amount_cents),
            type=expense.entry_type,
            group_id=expense.group_id,
            cash_book_id=expense.cash_book_id,
            date=expense.txn_date,
            note=expense.note,
            tags=expense.tag_names,
            created_at=expense.created_at,
            plan_month=expense.plan_month_key,
        )


class DatasetSnapshot(WireModel):
    cash_books: list[CashBookOut] = Field(default_factory=list)
    expense_groups: list[ExpenseGroupOut] = Field(default_factory=list)
    monthly_plans: list[MonthlyPlanOut] = Field(default_factory=list)
    expenses: list[ExpenseOut] = Field(default_factory=list)


# Request payloads in the wire shape, converted to core inputs at the edge.


class ExpensePayload(WireModel):
    label: str
    amount: Decimal
    type: EntryType = EntryType.expense
    group_id: str
    cash_book_id: str
    date: dt.date
    note: Optional[str] = None
    tags: Optional[list[str]] = None
    plan_month: Optional[str] = None

    @field_validator("plan_month", mode="before")
    @classmethod
    def blank_plan(cls, value: object) -> object:
        return _blank_to_none(value)

    def to_input(self) -> ExpenseIn:
        return ExpenseIn(
            label=self.label,
            amount_cents=to_minor_units(self.amount),
            entry_type=self.type,
            group_id=self.group_id,
            cash_book_id=self.cash_book_id,
            date=self.date,
            note=self.note or "",
            tags=self.tags or [],
            plan_month=self.plan_month,
        )


class ExpenseUpdatePayload(WireModel):
    label: Optional[str] = None
    amount: Optional[Decimal] = None
    type: Optional[EntryType] = None
    group_id: Optional[str] = None
    cash_book_id: Optional[str] = None
    date: Optional[dt.date] = None
    note: Optional[str] = None
    tags: Optional[list[str]] = None
    plan_month: Optional[str] = None

    @field_validator("plan_month", mode="before")
    @classmethod
    def blank_plan(cls, value: object) -> object:
        return _blank_to_none(value)

    def to_patch(self) -> ExpensePatch:
        return ExpensePatch(
            label=self.label,
            amount_cents=(
                to_minor_units(self.amount) if self.amount is not None else None
            ),
            entry_type=self.type,
            group_id=self.group_id,
            cash_book_id=self.cash_book_id,
            date=self.date,
            note=self.note,
            tags=self.tags,
            plan_month=self.plan_month,
        )


class CashBookPayload(WireModel):
    id: Optional[str] = None
    name: str
    type: AccountType = AccountType.bank
    account_number: str = ""
    balance: Optional[Decimal] = None
    currency: Optional[str] = None
    notes: str = ""

    def to_input(self) -> CashBookIn:
        return CashBookIn(
            id=self.id,
            name=self.name,
            type=self.type,
            account_number=self.account_number,
            balance_cents=(
                to_minor_units(self.balance) if self.balance is not None else None
            ),
            currency=self.currency,
            notes=self.notes,
        )


class ExpenseGroupPayload(WireModel):
    id: Optional[str] = None
    name: str
    description: str = ""
    color: Optional[str] = None
    default_monthly_budget: Decimal = Decimal("0")

    def to_input(self) -> ExpenseGroupIn:
        return ExpenseGroupIn(
            id=self.id,
            name=self.name,
            description=self.description,
            color=self.color,
            default_monthly_budget_cents=to_minor_units(self.default_monthly_budget),
        )


class PlanBudgetPayload(WireModel):
    group_id: str
    planned: Decimal = Decimal("0")
    # Accepted for shape compatibility; actual spend is never taken from a payload.
    actual: Optional[Decimal] = None


class MonthlyPlanPayload(WireModel):
    id: Optional[str] = None
    month: str
    cycle_start: Optional[dt.date] = None
    cycle_end: Optional[dt.date] = None
    locked: bool = False
    currency: Optional[str] = None
    savings_target: Decimal = Decimal("0")
    budgets: list[PlanBudgetPayload] = Field(default_factory=list)

    @field_validator("cycle_start", "cycle_end", mode="before")
    @classmethod
    def blank_dates(cls, value: object) -> object:
        return _blank_to_none(value)

    def to_input(self) -> MonthlyPlanIn:
        return MonthlyPlanIn(
            id=self.id,
            month=self.month,
            cycle_start=self.cycle_start,
            cycle_end=self.cycle_end,
            locked=self.locked,
            currency=self.currency,
            savings_target_cents=to_minor_units(self.savings_target),
            budgets=[
                PlanBudgetIn(
                    group_id=budget.group_id,
                    planned_cents=to_minor_units(budget.planned),
                )
                for budget in self.budgets
            ],
        )


class ImportResult(WireModel):
    cash_books: int = 0
    expense_groups: int = 0
    monthly_plans: int = 0
    expenses: int = 0


class CycleRangeOut(WireModel):
    start: Optional[dt.date] = None
    end: Optional[dt.date] = None


class CycleOut(WireModel):
    month: Optional[str] = None
    range: CycleRangeOut = Field(default_factory=CycleRangeOut)
    locked: bool = False
    savings_target: float = 0


class SummaryTotalsOut(WireModel):
    planned: float = 0
    actual: float = 0
    expenses: float = 0
    cash_on_hand: float = 0


class GroupSpendOut(WireModel):
    group_id: str
    name: str
    amount: float = 0


class QuickLinkOut(WireModel):
    id: str
    label: str
    href: str


class SummaryOut(WireModel):
    cycle: CycleOut
    totals: SummaryTotalsOut
    top_expense_groups: list[GroupSpendOut] = Field(default_factory=list)
    quick_links: list[QuickLinkOut] = Field(default_factory=list)

    @classmethod
    def from_summary(cls, summary) -> "SummaryOut":
        cycle, totals = summary.cycle, summary.totals
        return cls(
            cycle=CycleOut(
                month=cycle.month,
                range=CycleRangeOut(start=cycle.start, end=cycle.end),
                locked=cycle.locked,
                savings_target=cents_to_float(cycle.savings_target_cents),
            ),
            totals=SummaryTotalsOut(
                planned=cents_to_float(totals.planned_cents),
                actual=cents_to_float(totals.actual_cents),
                expenses=cents_to_float(totals.expenses_cents),
                cash_on_hand=cents_to_float(totals.cash_on_hand_cents),
            ),
            top_expense_groups=[
                GroupSpendOut(
                    group_id=item.group_id,
                    name=item.name,
                    amount=cents_to_float(item.amount_cents),
                )
                for item in summary.top_expense_groups
            ],
            quick_links=[
                QuickLinkOut(id=link.id, label=link.label, href=link.href)
                for link in summary.quick_links
            ],
        )


class PlannedVsActualOut(WireModel):
    group_id: str
    planned: float = 0
    actual: float = 0

    @classmethod
    def from_row(cls, row) -> "PlannedVsActualOut":
        return cls(
            group_id=row.group_id,
            planned=cents_to_float(row.planned_cents),
            actual=cents_to_float(row.actual_cents),
        )
