from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from config import get_settings
from ledger import LedgerStore
from models import MonthlyPlan
from periods import (
    CycleWindow,
    DateLike,
    cycle_window,
    month_index,
    month_key_for,
    to_calendar_day,
)


def plan_window(plan: MonthlyPlan) -> CycleWindow:
    return cycle_window(plan.month_key, plan.cycle_start, plan.cycle_end)


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


@dataclass(frozen=True)
class Resolution:
    plan: Optional[MonthlyPlan]
    month_key: Optional[str]


class CycleResolver:
    """Maps a transaction date (plus an optional month-key hint) to its owning plan.

    Order of precedence:

    1. no plans at all: no plan, the hint is kept as the month key;
    2. a hint naming an existing plan wins unconditionally, even when the date
       falls outside that plan's cycle window;
    3. the first plan, in stored order (month key descending), whose window
       contains the date;
    4. otherwise the plan whose month key is nearest to the date's month; on a
       tie the later month wins.
    """

    def __init__(self, store: LedgerStore, today: Optional[date] = None) -> None:
        self.store = store
        self._today = today

    def today(self) -> date:
        return self._today or local_today()

    def resolve(
        self,
        txn_date: DateLike,
        plan_hint: Optional[str] = None,
        *,
        hint_current: bool = False,
    ) -> Resolution:
        """Resolve the owning plan.

        With ``hint_current`` a missing hint is replaced by the current plan's
        month key, which is how new entries get attributed to the open cycle.
        """
        plans = self.store.list_plans()
        if not plan_hint and hint_current:
            current = select_current_plan(plans, self.today())
            plan_hint = current.month_key if current else None
        return resolve_plan(plans, txn_date, plan_hint)

    def current_plan(self) -> Optional[MonthlyPlan]:
        return select_current_plan(self.store.list_plans(), self.today())


def resolve_plan(
    plans: Sequence[MonthlyPlan], txn_date: DateLike, plan_hint: Optional[str] = None
) -> Resolution:
    if not plans:
        return Resolution(None, plan_hint or None)

    if plan_hint:
        for plan in plans:
            if plan.month_key == plan_hint:
                return Resolution(plan, plan.month_key)

    day = to_calendar_day(txn_date)
    for plan in plans:
        if plan_window(plan).contains(day):
            return Resolution(plan, plan.month_key)

    fallback = nearest_plan(plans, day)
    return Resolution(fallback, fallback.month_key)


def nearest_plan(plans: Sequence[MonthlyPlan], day: date) -> MonthlyPlan:
    target = month_index(month_key_for(day))
    return min(
        plans,
        key=lambda plan: (
            abs(month_index(plan.month_key) - target),
            -month_index(plan.month_key),
        ),
    )


def select_current_plan(
    plans: Sequence[MonthlyPlan], today: date
) -> Optional[MonthlyPlan]:
    """Plan shown on dashboards.

    The plan whose window contains today, else the plan for today's calendar
    month, else the most recent plan by month key.
    """
    if not plans:
        return None
    for plan in plans:
        if plan_window(plan).contains(today):
            return plan
    current_month = month_key_for(today)
    for plan in plans:
        if plan.month_key == current_month:
            return plan
    return max(plans, key=lambda plan: plan.month_key)
