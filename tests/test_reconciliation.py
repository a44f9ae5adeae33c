from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import sessionmaker

from database import Base, configure_sqlite
from errors import (
    NotFoundError,
    ReconciliationConflictError,
    StorageError,
    ValidationError,
)
from ledger import LedgerStore
from models import CashBook, EntryType, Expense, MonthlyPlan, PlanBudget
from schemas import (
    CashBookIn,
    ExpenseGroupIn,
    ExpenseIn,
    ExpensePatch,
    MonthlyPlanIn,
    PlanBudgetIn,
)
from services import (
    CashBookService,
    ExpenseGroupService,
    ExpenseService,
    MonthlyPlanService,
)

TODAY = date(2026, 10, 16)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session):
    books = CashBookService(session)
    book_a = books.save(CashBookIn(name="Main account", balance_cents=10_000))
    book_b = books.save(CashBookIn(name="Wallet", type="cash", balance_cents=5_000))
    groups = ExpenseGroupService(session)
    food = groups.save(ExpenseGroupIn(name="Food"))
    travel = groups.save(ExpenseGroupIn(name="Travel"))
    plans = MonthlyPlanService(session, today=TODAY)
    plans.save(
        MonthlyPlanIn(
            month="2026-09",
            budgets=[PlanBudgetIn(group_id=food.id, planned_cents=40_000)],
        )
    )
    plans.save(
        MonthlyPlanIn(
            month="2026-10",
            budgets=[PlanBudgetIn(group_id=food.id, planned_cents=50_000)],
        )
    )
    return book_a, book_b, food, travel


def balance_of(session, cash_book_id: str) -> int:
    return session.scalar(
        select(CashBook.balance_cents).where(CashBook.id == cash_book_id)
    )


def actual_of(session, month_key: str, group_id: str):
    return session.scalar(
        select(PlanBudget.actual_cents)
        .join(MonthlyPlan, MonthlyPlan.id == PlanBudget.plan_id)
        .where(MonthlyPlan.month_key == month_key, PlanBudget.group_id == group_id)
    )


def expense_in(group_id, cash_book_id, **overrides) -> ExpenseIn:
    values = {
        "label": "Groceries",
        "amount_cents": 2_550,
        "group_id": group_id,
        "cash_book_id": cash_book_id,
        "date": date(2026, 10, 5),
    }
    values.update(overrides)
    return ExpenseIn(**values)


def assert_ledger_consistent(session) -> None:
    store = LedgerStore(session)
    for book in session.scalars(select(CashBook)).all():
        session.refresh(book)
        expected = book.opening_balance_cents + store.ledger_balance_effect(book.id)
        assert book.balance_cents == expected
    rows = session.execute(
        select(MonthlyPlan.month_key, PlanBudget.group_id, PlanBudget.actual_cents)
        .join(PlanBudget, PlanBudget.plan_id == MonthlyPlan.id)
    ).all()
    for month_key, group_id, actual in rows:
        assert actual == store.ledger_actual(month_key, group_id)


def test_create_moves_balance_and_actual_together() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)

    expense = ExpenseService(session, today=TODAY).create(
        expense_in(food.id, book_a.id)
    )

    assert expense.plan_month_key == "2026-10"
    assert balance_of(session, book_a.id) == 7_450
    assert actual_of(session, "2026-10", food.id) == 2_550
    assert actual_of(session, "2026-09", food.id) == 0


def test_create_without_budget_row_adds_one_with_zero_planned() -> None:
    session = make_session()
    book_a, _, _, travel = seed(session)

    ExpenseService(session, today=TODAY).create(
        expense_in(travel.id, book_a.id, amount_cents=12_000)
    )

    budget = session.scalar(
        select(PlanBudget)
        .join(MonthlyPlan, MonthlyPlan.id == PlanBudget.plan_id)
        .where(MonthlyPlan.month_key == "2026-10", PlanBudget.group_id == travel.id)
    )
    assert budget.planned_cents == 0
    assert budget.actual_cents == 12_000
    assert budget.position == 1


def test_update_moves_amount_between_cash_books() -> None:
    session = make_session()
    book_a, book_b, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)
    expense = service.create(expense_in(food.id, book_a.id))

    updated = service.update(
        expense.id, ExpensePatch(amount_cents=3_000, cash_book_id=book_b.id)
    )

    assert updated.cash_book_id == book_b.id
    assert updated.label == "Groceries"
    assert balance_of(session, book_a.id) == 10_000
    assert balance_of(session, book_b.id) == 2_000
    assert actual_of(session, "2026-10", food.id) == 3_000
    assert_ledger_consistent(session)


def test_delete_restores_everything_bit_exact() -> None:
    session = make_session()
    book_a, book_b, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)
    expense = service.create(expense_in(food.id, book_a.id))
    service.update(expense.id, ExpensePatch(amount_cents=3_000, cash_book_id=book_b.id))

    service.delete(expense.id)

    assert balance_of(session, book_a.id) == 10_000
    assert balance_of(session, book_b.id) == 5_000
    assert actual_of(session, "2026-10", food.id) == 0
    assert session.scalar(select(func.count(Expense.id))) == 0


def test_resubmitting_unchanged_fields_is_neutral() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)
    expense = service.create(expense_in(food.id, book_a.id, tags=["weekly"]))

    again = service.update(expense.id, ExpensePatch.of(expense))

    assert again.plan_month_key == "2026-10"
    assert again.tag_names == ["weekly"]
    assert balance_of(session, book_a.id) == 7_450
    assert actual_of(session, "2026-10", food.id) == 2_550


def test_explicit_hint_attributes_expense_outside_window() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)

    expense = service.create(expense_in(food.id, book_a.id, plan_month="2026-09"))

    assert expense.plan_month_key == "2026-09"
    assert actual_of(session, "2026-09", food.id) == 2_550
    assert actual_of(session, "2026-10", food.id) == 0


def test_changing_hint_moves_actual_between_plans() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)
    expense = service.create(expense_in(food.id, book_a.id))

    moved = service.update(
        expense.id, ExpensePatch(plan_month="2026-09", date=date(2026, 9, 28))
    )

    assert moved.plan_month_key == "2026-09"
    assert actual_of(session, "2026-10", food.id) == 0
    assert actual_of(session, "2026-09", food.id) == 2_550
    assert balance_of(session, book_a.id) == 7_450


def test_same_pair_update_applies_net_difference() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)
    expense = service.create(expense_in(food.id, book_a.id))

    service.update(expense.id, ExpensePatch(amount_cents=3_000))
    assert actual_of(session, "2026-10", food.id) == 3_000

    service.update(expense.id, ExpensePatch(amount_cents=100))
    assert actual_of(session, "2026-10", food.id) == 100
    assert balance_of(session, book_a.id) == 9_900


def test_recreated_budget_row_takes_actual_from_ledger() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)
    expense = service.create(expense_in(food.id, book_a.id))
    MonthlyPlanService(session, today=TODAY).save(
        MonthlyPlanIn(month="2026-10", budgets=[])
    )
    assert actual_of(session, "2026-10", food.id) is None

    service.update(expense.id, ExpensePatch(amount_cents=3_000))

    assert actual_of(session, "2026-10", food.id) == 3_000
    assert balance_of(session, book_a.id) == 7_000
    assert_ledger_consistent(session)


def test_reversal_is_clamped_at_zero() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)
    expense = service.create(expense_in(food.id, book_a.id))
    session.execute(update(PlanBudget).values(actual_cents=1_000))
    session.commit()

    service.delete(expense.id)

    assert actual_of(session, "2026-10", food.id) == 0
    assert balance_of(session, book_a.id) == 10_000


def test_income_raises_balance_but_not_actual() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)

    service.create(
        expense_in(food.id, book_a.id, entry_type=EntryType.income, amount_cents=1_000)
    )

    assert balance_of(session, book_a.id) == 11_000
    assert actual_of(session, "2026-10", food.id) == 0
    book = CashBookService(session).get(book_a.id)
    assert book.last_activity_amount_cents == 1_000


def test_switching_entry_type_rebalances() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)
    expense = service.create(expense_in(food.id, book_a.id))

    service.update(expense.id, ExpensePatch(entry_type=EntryType.income))

    assert balance_of(session, book_a.id) == 12_550
    assert actual_of(session, "2026-10", food.id) == 0
    assert_ledger_consistent(session)


def test_last_activity_tracks_latest_expense() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)
    older = service.create(
        expense_in(food.id, book_a.id, label="Bakery", date=date(2026, 10, 2))
    )
    newer = service.create(
        expense_in(food.id, book_a.id, label="Market", date=date(2026, 10, 9))
    )

    book = CashBookService(session).get(book_a.id)
    assert book.last_activity_label == "Market"
    assert book.last_activity_date == date(2026, 10, 9)
    assert book.last_activity_amount_cents == -2_550

    service.delete(newer.id)
    book = CashBookService(session).get(book_a.id)
    assert book.last_activity_label == "Bakery"

    service.delete(older.id)
    book = CashBookService(session).get(book_a.id)
    assert book.last_activity_date is None
    assert book.last_activity_label is None


def test_unknown_expense_is_not_found_and_changes_nothing() -> None:
    session = make_session()
    book_a, _, _, _ = seed(session)
    service = ExpenseService(session, today=TODAY)

    with pytest.raises(NotFoundError):
        service.update("missing", ExpensePatch(amount_cents=100))
    with pytest.raises(NotFoundError):
        service.delete("missing")
    assert balance_of(session, book_a.id) == 10_000


def test_unknown_references_are_validation_errors() -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)

    with pytest.raises(ValidationError):
        service.create(expense_in("no-such-group", book_a.id))
    with pytest.raises(ValidationError):
        service.create(expense_in(food.id, "no-such-book"))

    expense = service.create(expense_in(food.id, book_a.id))
    with pytest.raises(ValidationError):
        service.update(expense.id, ExpensePatch(cash_book_id="no-such-book"))

    assert session.scalar(select(func.count(Expense.id))) == 1
    assert balance_of(session, book_a.id) == 7_450


def test_failure_mid_reconciliation_rolls_back_every_write(monkeypatch) -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)

    def broken(self, month_key, group_id, delta_cents):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(LedgerStore, "adjust_actual", broken)
    with pytest.raises(RuntimeError):
        service.create(expense_in(food.id, book_a.id))

    assert session.scalar(select(func.count(Expense.id))) == 0
    assert balance_of(session, book_a.id) == 10_000
    assert actual_of(session, "2026-10", food.id) == 0


def test_conflict_reruns_whole_operation_once(monkeypatch) -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)
    original = LedgerStore.adjust_balance
    calls = {"count": 0}

    def flaky(self, cash_book_id, delta_cents):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ReconciliationConflictError("database is locked")
        return original(self, cash_book_id, delta_cents)

    monkeypatch.setattr(LedgerStore, "adjust_balance", flaky)
    service.create(expense_in(food.id, book_a.id))

    assert calls["count"] == 2
    assert session.scalar(select(func.count(Expense.id))) == 1
    assert balance_of(session, book_a.id) == 7_450
    assert actual_of(session, "2026-10", food.id) == 2_550


def test_persistent_conflict_is_surfaced(monkeypatch) -> None:
    session = make_session()
    book_a, _, food, _ = seed(session)
    service = ExpenseService(session, today=TODAY)

    def always_locked(self, cash_book_id, delta_cents):
        raise ReconciliationConflictError("database is locked")

    monkeypatch.setattr(LedgerStore, "adjust_balance", always_locked)
    with pytest.raises(ReconciliationConflictError):
        service.create(expense_in(food.id, book_a.id))
    assert session.scalar(select(func.count(Expense.id))) == 0


def test_invariants_hold_after_mixed_sequence() -> None:
    session = make_session()
    book_a, book_b, food, travel = seed(session)
    service = ExpenseService(session, today=TODAY)

    first = service.create(expense_in(food.id, book_a.id, amount_cents=1_234))
    second = service.create(
        expense_in(travel.id, book_b.id, amount_cents=4_321, date=date(2026, 9, 3))
    )
    third = service.create(
        expense_in(food.id, book_b.id, amount_cents=999, plan_month="2026-09")
    )
    service.update(first.id, ExpensePatch(group_id=travel.id, amount_cents=2_000))
    service.update(second.id, ExpensePatch(cash_book_id=book_a.id))
    service.update(third.id, ExpensePatch(plan_month="2026-10"))
    service.delete(first.id)

    assert_ledger_consistent(session)
    assert balance_of(session, book_a.id) == 10_000 - 4_321
    assert balance_of(session, book_b.id) == 5_000 - 999


def test_expense_without_any_plan_keeps_no_attribution() -> None:
    session = make_session()
    book = CashBookService(session).save(CashBookIn(name="Cash", balance_cents=500))
    group = ExpenseGroupService(session).save(ExpenseGroupIn(name="Misc"))

    expense = ExpenseService(session, today=TODAY).create(
        expense_in(group.id, book.id, amount_cents=200)
    )

    assert expense.plan_month_key is None
    assert balance_of(session, book.id) == 300


def test_concurrent_creates_on_one_book_and_group_all_land(tmp_path) -> None:
    engine = configure_sqlite(
        create_engine(
            f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
            connect_args={"check_same_thread": False},
        )
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with SessionLocal() as session:
        book_a, _, food, _ = seed(session)

    def create_many(count: int) -> list[Exception]:
        failures = []
        for _ in range(count):
            with SessionLocal() as session:
                try:
                    ExpenseService(session, today=TODAY).create(
                        expense_in(food.id, book_a.id, amount_cents=100)
                    )
                except (ReconciliationConflictError, StorageError) as exc:
                    failures.append(exc)
        return failures

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(create_many, [10] * 4))

    assert [exc for failures in results for exc in failures] == []
    with SessionLocal() as session:
        assert session.scalar(select(func.count(Expense.id))) == 40
        assert balance_of(session, book_a.id) == 10_000 - 40 * 100
        assert actual_of(session, "2026-10", food.id) == 40 * 100
        assert_ledger_consistent(session)
    engine.dispose()
