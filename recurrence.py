import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    Expense,
    GroupMember,
    IntervalUnit,
    MonthDayPolicy,
    RecurringExpense,
)
from periods import days_in_month, local_today

logger = logging.getLogger(__name__)


def _add_months(
    base: date,
    months: int,
    *,
    desired_day: int,
    policy: MonthDayPolicy,
) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    dim = days_in_month(year, month)
    if policy == MonthDayPolicy.skip and desired_day > dim:
        max_skips = 24  # two years of short months at most
        skips = 0
        while desired_day > dim and skips < max_skips:
            total_months += 1
            year = base.year + total_months // 12
            month = total_months % 12 + 1
            dim = days_in_month(year, month)
            skips += 1

        if skips >= max_skips:
            raise ValueError(
                f"Cannot find suitable month for day {desired_day} after {max_skips} attempts"
            )

    return date(year, month, min(desired_day, dim))


def calculate_next_date(rule: RecurringExpense, from_date: date) -> date:
    if rule.interval_unit == IntervalUnit.day:
        return from_date + timedelta(days=rule.interval_count)
    if rule.interval_unit == IntervalUnit.week:
        return from_date + timedelta(weeks=rule.interval_count)
    if rule.interval_unit == IntervalUnit.month:
        anchor_day = (
            from_date.day
            if rule.month_day_policy == MonthDayPolicy.carry_forward
            else rule.anchor_date.day
        )
        return _add_months(
            from_date,
            rule.interval_count,
            desired_day=anchor_day,
            policy=rule.month_day_policy,
        )
    return _add_months(
        from_date,
        12 * rule.interval_count,
        desired_day=rule.anchor_date.day,
        policy=rule.month_day_policy,
    )


def is_exhausted(rule: RecurringExpense, occurrence_date: date) -> bool:
    if rule.end_date and occurrence_date > rule.end_date:
        return True
    if rule.end_after is not None and rule.occurrences_posted >= rule.end_after:
        return True
    return False


class RecurringEngine:
    """Posts due occurrences of recurring expenses through the ledger.

    Each occurrence is committed on its own so a failing rule never blocks
    the others, and the unique (rule, occurrence date) pair makes reruns
    harmless.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def catch_up_rule(self, rule: RecurringExpense, today: Optional[date] = None) -> int:
        today = today or local_today()
        posted_count = 0
        iterations = 0
        max_iterations = 366
        rule_id = rule.id
        while rule.next_occurrence <= today and iterations < max_iterations:
            occurrence_date = rule.next_occurrence
            if is_exhausted(rule, occurrence_date):
                self._finish(rule)
                break
            try:
                posted = self._post_occurrence(rule, occurrence_date)
                rule.next_occurrence = calculate_next_date(rule, occurrence_date)
                rule.is_finished = is_exhausted(rule, rule.next_occurrence)
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.exception(
                    "recurring_post_failed: rule=%s occurrence=%s",
                    rule_id,
                    occurrence_date,
                )
                break
            if posted:
                posted_count += 1
            iterations += 1
            if rule.is_finished:
                break
        return posted_count

    def _finish(self, rule: RecurringExpense) -> None:
        rule.is_finished = True
        self.session.commit()
        logger.info("recurring_rule_finished: rule=%s", rule.id)

    def post_due(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        # Rules of members who have left the group stay on record but no
        # longer post into the group's budgets.
        creator_is_member = exists().where(
            GroupMember.group_id == RecurringExpense.group_id,
            GroupMember.user_id == RecurringExpense.created_by,
        )
        stmt = (
            select(RecurringExpense)
            .where(
                RecurringExpense.is_paused.is_(False),
                RecurringExpense.is_finished.is_(False),
                RecurringExpense.next_occurrence <= today,
                creator_is_member,
            )
            .order_by(RecurringExpense.next_occurrence, RecurringExpense.id)
        )
        rules = self.session.scalars(stmt).all()
        count = 0
        for rule in rules:
            count += self.catch_up_rule(rule, today)
        return count

    def _post_occurrence(self, rule: RecurringExpense, occurrence_date: date) -> bool:
        from services import ExpenseLedger

        existing = self.session.execute(
            select(Expense.id)
            .where(
                Expense.recurring_expense_id == rule.id,
                Expense.occurrence_date == occurrence_date,
            )
            .limit(1)
        ).scalar_one_or_none()
        if existing:
            return False

        ledger = ExpenseLedger(self.session)
        try:
            ledger.record(
                category=rule.category,
                amount_cents=rule.amount_cents,
                description=rule.description,
                expense_date=occurrence_date,
                creator_id=rule.created_by,
                recurring_expense_id=rule.id,
            )
            self.session.flush()
        except IntegrityError:
            # Another worker posted the same occurrence first.
            self.session.rollback()
            return False
        rule.occurrences_posted += 1
        return True
