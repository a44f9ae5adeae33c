from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import EntryType
from schemas import (
    CashBookIn,
    ExpenseGroupIn,
    ExpenseIn,
    MonthlyPlanIn,
    PlanBudgetIn,
    SummaryOut,
)
from services import (
    QUICK_LINKS,
    CashBookService,
    ExpenseGroupService,
    ExpenseService,
    MonthlyPlanService,
    SummaryService,
)

TODAY = date(2026, 10, 16)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_groups(session, *names):
    groups = []
    for offset, name in enumerate(names):
        group = ExpenseGroupService(session).save(ExpenseGroupIn(name=name))
        # Later names are newer, so the listing order is the reverse of ``names``.
        group.created_at = datetime(2026, 1, 1, 0, 0, offset)
        groups.append(group)
    session.commit()
    return groups


def spend(session, group, book, amount_cents, **extra):
    values = {
        "label": f"{group.name} spend",
        "amount_cents": amount_cents,
        "group_id": group.id,
        "cash_book_id": book.id,
        "date": date(2026, 10, 2),
    }
    values.update(extra)
    return ExpenseService(session, today=TODAY).create(ExpenseIn(**values))


def test_summary_totals_and_top_groups() -> None:
    session = make_session()
    books = CashBookService(session)
    main = books.save(CashBookIn(name="Main", balance_cents=100_000))
    books.save(CashBookIn(name="Wallet", type="cash", balance_cents=2_500))
    rent, food, fuel, fun = make_groups(session, "Rent", "Food", "Fuel", "Fun")
    MonthlyPlanService(session, today=TODAY).save(
        MonthlyPlanIn(
            month="2026-10",
            savings_target_cents=15_000,
            budgets=[
                PlanBudgetIn(group_id=rent.id, planned_cents=50_000),
                PlanBudgetIn(group_id=food.id, planned_cents=20_000),
            ],
        )
    )
    spend(session, rent, main, 45_000)
    spend(session, food, main, 5_000)
    spend(session, fuel, main, 5_000)
    spend(session, fun, main, 1_000)
    spend(session, fun, main, 9_999, entry_type=EntryType.income)

    summary = SummaryService(session, today=TODAY).summary()

    assert summary.cycle.month == "2026-10"
    assert summary.cycle.start == date(2026, 10, 1)
    assert summary.cycle.end == date(2026, 10, 31)
    assert summary.cycle.savings_target_cents == 15_000
    assert summary.totals.planned_cents == 70_000
    assert summary.totals.actual_cents == 56_000
    assert summary.totals.expenses_cents == 56_000
    assert summary.totals.cash_on_hand_cents == 100_000 - 56_000 + 9_999 + 2_500
    # Food and Fuel tie; Fuel is newer so it is listed first.
    assert [g.name for g in summary.top_expense_groups] == ["Rent", "Fuel", "Food"]
    assert summary.quick_links == QUICK_LINKS


def test_summary_without_plans_is_empty_but_valid() -> None:
    session = make_session()

    service = SummaryService(session, today=TODAY)
    summary = service.summary()

    assert summary.cycle.month is None
    assert summary.totals.planned_cents == 0
    assert summary.top_expense_groups == []
    assert service.planned_vs_actual() == []

    wire = SummaryOut.from_summary(summary).model_dump(by_alias=True)
    assert wire["cycle"]["range"] == {"start": None, "end": None}
    assert wire["totals"]["cashOnHand"] == 0
    assert [link["href"] for link in wire["quickLinks"]] == [
        "/add-expense",
        "/monthly-planner",
        "/reports",
    ]


def test_planned_vs_actual_follows_budget_order() -> None:
    session = make_session()
    book = CashBookService(session).save(CashBookIn(name="Main", balance_cents=10_000))
    food, fuel = make_groups(session, "Food", "Fuel")
    MonthlyPlanService(session, today=TODAY).save(
        MonthlyPlanIn(
            month="2026-10",
            budgets=[
                PlanBudgetIn(group_id=fuel.id, planned_cents=3_000),
                PlanBudgetIn(group_id=food.id, planned_cents=4_000),
            ],
        )
    )
    spend(session, food, book, 1_250)

    rows = SummaryService(session, today=TODAY).planned_vs_actual()

    assert [(r.group_id, r.planned_cents, r.actual_cents) for r in rows] == [
        (fuel.id, 3_000, 0),
        (food.id, 4_000, 1_250),
    ]
