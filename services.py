from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, case, delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from database import Store, commit_or_raise, unit_of_work
from errors import (
    Conflict,
    Forbidden,
    InvalidInput,
    LedgerError,
    NotFound,
    PreconditionFailed,
)
from identity import IdentityProvider, Principal
from models import (
    Category,
    Expense,
    ExpenseShare,
    FamilyGroup,
    GroupMember,
    Income,
    MemberRole,
    MonthlyBudget,
    MonthlyPaymentTask,
    PaymentTemplate,
    PersonalScope,
    RecurringExpense,
    User,
    scope_key_for,
    utcnow,
)
from money import cents_to_decimal, non_negative_cents, positive_cents
from pacing import PocketPace, current_savings, pace_for
from periods import (
    Period,
    first_instant_of_month,
    local_today,
    month_end,
    month_start,
)
from recurrence import RecurringEngine, calculate_next_date, is_exhausted
from schemas import (
    AllocationIn,
    BudgetAssignmentIn,
    CategoryIn,
    CategoryPatch,
    ExpenseIn,
    ExpensePatch,
    ExpenseShareIn,
    IncomeIn,
    IncomePatch,
    PaymentTemplateIn,
    PaymentTemplatePatch,
    TaskCompletionIn,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocationKey:
    group_id: int
    category_id: int
    month: int
    year: int
    user_id: Optional[int]

    @property
    def scope_key(self) -> str:
        return scope_key_for(self.user_id)


def allocation_key_for(
    group_id: int, category: Category, on: date, creator_id: int
) -> AllocationKey:
    return AllocationKey(
        group_id=group_id,
        category_id=category.id,
        month=on.month,
        year=on.year,
        user_id=category.scope.allocation_user_id(creator_id),
    )


def find_allocation(session: Session, key: AllocationKey) -> Optional[MonthlyBudget]:
    return session.scalar(
        select(MonthlyBudget).where(
            MonthlyBudget.group_id == key.group_id,
            MonthlyBudget.category_id == key.category_id,
            MonthlyBudget.month == key.month,
            MonthlyBudget.year == key.year,
            MonthlyBudget.scope_key == key.scope_key,
        )
    )


def spent_from_log(session: Session, key: AllocationKey) -> int:
    stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
        Expense.group_id == key.group_id,
        Expense.category_id == key.category_id,
        Expense.date.between(
            month_start(key.year, key.month), month_end(key.year, key.month)
        ),
    )
    if key.user_id is not None:
        stmt = stmt.where(Expense.created_by == key.user_id)
    return int(session.execute(stmt).scalar_one() or 0)


def require_active_group(principal: Principal, group_id: int) -> None:
    if principal.active_group_id is None:
        raise PreconditionFailed("No active group selected", field="group_id")
    if principal.active_group_id != group_id:
        raise PreconditionFailed(
            "Active group does not match the target group", field="group_id"
        )


class CategoryService:
    def __init__(self, session: Session, principal: Principal) -> None:
        self.session = session
        self.principal = principal
        self.identity = IdentityProvider(session)

    def list_all(self, group_id: int) -> list[Category]:
        self.identity.require_member(self.principal, group_id)
        stmt = (
            select(Category)
            .where(Category.group_id == group_id)
            .order_by(Category.name, Category.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found", field="category_id")
        self.identity.require_member(self.principal, category.group_id)
        return category

    def get_for_write(self, group_id: int, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.group_id != group_id:
            raise NotFound("Category not found", field="category_id")
        if not self.can_edit(category):
            raise Forbidden("Only the owner can use a personal category")
        return category

    def can_edit(self, category: Category) -> bool:
        scope = category.scope
        if isinstance(scope, PersonalScope):
            return scope.owner_id == self.principal.id
        return self.identity.is_member(self.principal, category.group_id)

    @unit_of_work
    def create(self, group_id: int, data: CategoryIn) -> Category:
        self.identity.require_member(self.principal, group_id)
        if data.is_personal and self.principal.active_group_id != group_id:
            raise PreconditionFailed(
                "Active group does not match the target group", field="group_id"
            )
        limit_cents = (
            non_negative_cents(data.monthly_limit, field="monthly_limit")
            if data.monthly_limit is not None
            else None
        )
        extra = {
            "icon": data.icon,
            "color": data.color,
            "monthly_limit_cents": limit_cents,
        }
        if data.is_personal:
            category = Category.personal(
                group_id, self.principal.id, data.name.strip(), **extra
            )
        else:
            category = Category.shared(group_id, data.name.strip(), **extra)
        self.session.add(category)
        commit_or_raise(self.session)
        self.session.refresh(category)
        logger.info(
            "category_created: id=%s group=%s scope=%s",
            category.id,
            group_id,
            category.scope.label,
        )
        return category

    @unit_of_work
    def update(self, category_id: int, data: CategoryPatch) -> Category:
        category = self.get(category_id)
        if not self.can_edit(category):
            raise Forbidden("Only the owner can edit a personal category")
        sent = data.model_fields_set
        if "name" in sent and data.name is not None:
            category.name = data.name.strip()
        if "icon" in sent:
            category.icon = data.icon
        if "color" in sent:
            category.color = data.color
        if "monthly_limit" in sent:
            category.monthly_limit_cents = (
                non_negative_cents(data.monthly_limit, field="monthly_limit")
                if data.monthly_limit is not None
                else None
            )
        commit_or_raise(self.session)
        self.session.refresh(category)
        return category

    @unit_of_work
    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if not self.can_edit(category):
            raise Forbidden("Only the owner can delete a personal category")
        if has_dependents(self.session, category.id):
            raise Conflict("Category is still referenced by expenses or budgets")
        self.session.delete(category)
        commit_or_raise(self.session)


def has_dependents(session: Session, category_id: int) -> bool:
    checks = (
        exists().where(Expense.category_id == category_id),
        exists().where(MonthlyBudget.category_id == category_id),
        exists().where(RecurringExpense.category_id == category_id),
    )
    return any(session.scalar(select(check)) for check in checks)


def prune_personal_categories(session: Session, group_id: int, user_id: int) -> int:
    """Remove a leaving member's personal categories with everything hanging off them.

    Payment tasks keep their history: linked expenses are unlinked first and
    templates lose their default category. Does not commit.
    """
    category_ids = session.scalars(
        select(Category.id).where(
            Category.group_id == group_id,
            Category.is_personal.is_(True),
            Category.owner_id == user_id,
        )
    ).all()
    if not category_ids:
        return 0
    expense_ids = select(Expense.id).where(Expense.category_id.in_(category_ids))
    session.execute(
        update(MonthlyPaymentTask)
        .where(MonthlyPaymentTask.expense_id.in_(expense_ids))
        .values(expense_id=None)
        .execution_options(synchronize_session=False)
    )
    session.execute(
        update(PaymentTemplate)
        .where(PaymentTemplate.default_category_id.in_(category_ids))
        .values(default_category_id=None)
        .execution_options(synchronize_session=False)
    )
    session.execute(
        delete(ExpenseShare)
        .where(ExpenseShare.expense_id.in_(expense_ids))
        .execution_options(synchronize_session=False)
    )
    for model in (Expense, RecurringExpense, MonthlyBudget):
        session.execute(
            delete(model)
            .where(model.category_id.in_(category_ids))
            .execution_options(synchronize_session=False)
        )
    session.execute(
        delete(Category)
        .where(Category.id.in_(category_ids))
        .execution_options(synchronize_session=False)
    )
    return len(category_ids)


@dataclass
class Pocket:
    allocation: MonthlyBudget
    category: Category
    pace: PocketPace
    editable: bool


@dataclass
class MonthlySummary:
    month: int
    year: int
    total_allocated: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    percentage_used: int
    income: Decimal
    group_income: Decimal
    expenses: Decimal
    savings: Decimal
    days_remaining: int
    average_daily: Decimal
    recommended_daily: Decimal


@dataclass
class BudgetAssignmentResult:
    budgets: list[MonthlyBudget] = field(default_factory=list)
    failures: list[dict[str, object]] = field(default_factory=list)


class BudgetService:
    """Allocation store: one budget row per category, month and scope."""

    def __init__(self, session: Session, principal: Principal) -> None:
        self.session = session
        self.principal = principal
        self.identity = IdentityProvider(session)

    @unit_of_work
    def upsert(
        self,
        group_id: int,
        category_id: int,
        month: int,
        year: int,
        amount,
        user_id: Optional[int] = None,
    ) -> MonthlyBudget:
        self.identity.require_member(self.principal, group_id)
        if not 1 <= month <= 12:
            raise InvalidInput("Month must be between 1 and 12", field="month")
        allocated_cents = non_negative_cents(amount, field="amount")
        category = self.session.get(Category, category_id)
        if not category or category.group_id != group_id:
            raise NotFound("Category not found", field="category_id")

        scope = category.scope
        if isinstance(scope, PersonalScope):
            if user_id is not None and user_id != scope.owner_id:
                raise InvalidInput(
                    "Personal budgets belong to the category owner", field="user_id"
                )
            if scope.owner_id != self.principal.id:
                raise Forbidden("Only the owner can budget a personal category")
            user_id = scope.owner_id
        elif user_id is not None:
            raise InvalidInput("Shared budgets have no user", field="user_id")

        key = AllocationKey(group_id, category_id, month, year, user_id)
        existing = find_allocation(self.session, key)
        if existing:
            return self._overwrite_allocated(existing.id, allocated_cents)

        budget = MonthlyBudget(
            group_id=group_id,
            category_id=category_id,
            month=month,
            year=year,
            user_id=user_id,
            scope_key=key.scope_key,
            allocated_cents=allocated_cents,
            spent_cents=spent_from_log(self.session, key),
        )
        self.session.add(budget)
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent upsert inserted the row first; merge into it.
            self.session.rollback()
            existing = find_allocation(self.session, key)
            if not existing:
                raise Conflict("Budget was modified concurrently")
            return self._overwrite_allocated(existing.id, allocated_cents)
        self.session.refresh(budget)
        return budget

    def _overwrite_allocated(self, budget_id: int, allocated_cents: int) -> MonthlyBudget:
        # Only the allocated column is written; spent belongs to the ledger.
        self.session.execute(
            update(MonthlyBudget)
            .where(MonthlyBudget.id == budget_id)
            .values(allocated_cents=allocated_cents, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        commit_or_raise(self.session)
        budget = self.session.get(MonthlyBudget, budget_id)
        self.session.refresh(budget)
        return budget

    def assign(self, group_id: int, data: BudgetAssignmentIn) -> BudgetAssignmentResult:
        """Apply a batch of allocations, each in its own transaction."""
        today = local_today()
        month = data.month or today.month
        year = data.year or today.year
        result = BudgetAssignmentResult()
        for item in data.allocations:
            try:
                budget = self.upsert(
                    group_id, item.category_id, month, year, item.amount, item.user_id
                )
            except LedgerError as exc:
                self.session.rollback()
                logger.warning(
                    "budget_assign_failed: group=%s category=%s error=%s",
                    group_id,
                    item.category_id,
                    exc.message,
                )
                result.failures.append(_failure(item, exc))
                continue
            result.budgets.append(budget)
        return result

    def list_for_month(
        self,
        group_id: int,
        month: Optional[int] = None,
        year: Optional[int] = None,
    ) -> list[MonthlyBudget]:
        # Transparency: every member sees every pocket of the group,
        # shared and personal alike; nothing outside the group is reachable.
        self.identity.require_member(self.principal, group_id)
        today = local_today()
        month = month or today.month
        year = year or today.year
        stmt = (
            select(MonthlyBudget)
            .join(Category, MonthlyBudget.category_id == Category.id)
            .options(joinedload(MonthlyBudget.category))
            .where(
                MonthlyBudget.group_id == group_id,
                MonthlyBudget.month == month,
                MonthlyBudget.year == year,
                Category.group_id == group_id,
            )
            .order_by(Category.name, MonthlyBudget.id)
        )
        return self.session.scalars(stmt).all()

    def pockets_for_month(
        self,
        group_id: int,
        month: Optional[int] = None,
        year: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> list[Pocket]:
        today = today or local_today()
        month = month or today.month
        year = year or today.year
        reference = pacing_reference(month, year, today)

        pockets = []
        for budget in self.list_for_month(group_id, month, year):
            editable = budget.user_id is None or budget.user_id == self.principal.id
            pockets.append(
                Pocket(
                    allocation=budget,
                    category=budget.category,
                    pace=pace_for(budget.allocated, budget.spent, reference),
                    editable=editable,
                )
            )
        return pockets

    def monthly_summary(
        self,
        group_id: int,
        month: Optional[int] = None,
        year: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> MonthlySummary:
        """Totals across every pocket of the month plus income and savings."""
        today = today or local_today()
        month = month or today.month
        year = year or today.year
        budgets = self.list_for_month(group_id, month, year)
        allocated = cents_to_decimal(sum(b.allocated_cents for b in budgets))
        spent = cents_to_decimal(sum(b.spent_cents for b in budgets))
        pace = pace_for(allocated, spent, pacing_reference(month, year, today))

        in_month = and_(
            Income.group_id == group_id,
            Income.date.between(month_start(year, month), month_end(year, month)),
        )
        income_cents = self.session.scalar(
            select(func.coalesce(func.sum(Income.amount_cents), 0)).where(in_month)
        )
        group_income_cents = self.session.scalar(
            select(func.coalesce(func.sum(Income.amount_cents), 0)).where(
                in_month, Income.user_id.is_(None)
            )
        )
        expense_cents = self.session.scalar(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.group_id == group_id,
                Expense.date.between(month_start(year, month), month_end(year, month)),
            )
        )
        income = cents_to_decimal(income_cents or 0)
        expenses = cents_to_decimal(expense_cents or 0)
        return MonthlySummary(
            month=month,
            year=year,
            total_allocated=allocated,
            total_spent=spent,
            total_remaining=allocated - spent,
            percentage_used=pace.info.percentage,
            income=income,
            group_income=cents_to_decimal(group_income_cents or 0),
            expenses=expenses,
            savings=current_savings(income, expenses),
            days_remaining=pace.days_remaining,
            average_daily=pace.average_daily,
            recommended_daily=pace.recommended_daily,
        )


def pacing_reference(month: int, year: int, today: date) -> date:
    # Past months are read as of their last day, future ones as of their first.
    if (year, month) == (today.year, today.month):
        return today
    if (year, month) < (today.year, today.month):
        return month_end(year, month)
    return month_start(year, month)


def _failure(item: AllocationIn, exc: LedgerError) -> dict[str, object]:
    return {
        "category_id": item.category_id,
        "user_id": item.user_id,
        "error": type(exc).__name__,
        "message": exc.message,
    }


class ExpenseLedger:
    """Expense writes and the matching budget adjustments.

    Nothing here commits: the caller owns the transaction, so an expense row
    and its budget adjustment always land (or roll back) together. Budgets
    are keyed by the expense's own month.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def adjust_spent(self, budget_id: int, delta_cents: int) -> None:
        if delta_cents == 0:
            return
        if delta_cents > 0:
            new_value = MonthlyBudget.spent_cents + delta_cents
        else:
            new_value = case(
                (
                    MonthlyBudget.spent_cents >= -delta_cents,
                    MonthlyBudget.spent_cents + delta_cents,
                ),
                else_=0,
            )
        self.session.execute(
            update(MonthlyBudget)
            .where(MonthlyBudget.id == budget_id)
            .values(spent_cents=new_value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    def _apply(self, key: AllocationKey, delta_cents: int) -> Optional[int]:
        budget_id = self.session.scalar(
            select(MonthlyBudget.id).where(
                MonthlyBudget.group_id == key.group_id,
                MonthlyBudget.category_id == key.category_id,
                MonthlyBudget.month == key.month,
                MonthlyBudget.year == key.year,
                MonthlyBudget.scope_key == key.scope_key,
            )
        )
        if budget_id is not None:
            self.adjust_spent(budget_id, delta_cents)
        return budget_id

    def key_for(self, expense: Expense, category: Optional[Category] = None) -> AllocationKey:
        category = category or self.session.get(Category, expense.category_id)
        return allocation_key_for(
            expense.group_id, category, expense.date, expense.created_by
        )

    def record(
        self,
        *,
        category: Category,
        amount_cents: int,
        description: Optional[str],
        expense_date: date,
        creator_id: int,
        recurring_expense_id: Optional[int] = None,
    ) -> Expense:
        key = allocation_key_for(category.group_id, category, expense_date, creator_id)
        expense = Expense(
            group_id=category.group_id,
            category_id=category.id,
            amount_cents=amount_cents,
            description=description,
            date=expense_date,
            created_by=creator_id,
            is_recurring=recurring_expense_id is not None,
            recurring_expense_id=recurring_expense_id,
            occurrence_date=expense_date if recurring_expense_id else None,
        )
        self.session.add(expense)
        self.session.flush()
        self._apply(key, amount_cents)
        return expense

    def remove(self, expense: Expense) -> None:
        key = self.key_for(expense)
        self.session.execute(
            update(MonthlyPaymentTask)
            .where(MonthlyPaymentTask.expense_id == expense.id)
            .values(expense_id=None)
            .execution_options(synchronize_session=False)
        )
        self._apply(key, -expense.amount_cents)
        self.session.delete(expense)
        self.session.flush()

    def change(
        self,
        expense: Expense,
        *,
        category: Category,
        amount_cents: int,
        expense_date: date,
        description: Optional[str],
    ) -> Expense:
        old_key = self.key_for(expense)
        old_cents = expense.amount_cents

        expense.category_id = category.id
        expense.amount_cents = amount_cents
        expense.date = expense_date
        expense.description = description
        self.session.flush()

        new_key = self.key_for(expense, category)
        if new_key == old_key:
            self._apply(old_key, amount_cents - old_cents)
        else:
            self._apply(old_key, -old_cents)
            self._apply(new_key, amount_cents)
        return expense


class ExpenseService:
    def __init__(self, session: Session, principal: Principal) -> None:
        self.session = session
        self.principal = principal
        self.identity = IdentityProvider(session)
        self.categories = CategoryService(session, principal)
        self.ledger = ExpenseLedger(session)

    def _shares(
        self, group_id: int, amount_cents: int, shares: list[ExpenseShareIn]
    ) -> list[ExpenseShare]:
        """Validate a split of the expense between members.

        Every share names a current member once and the shares add up to the
        expense amount exactly. An empty list means no split.
        """
        if not shares:
            return []
        user_ids = [share.user_id for share in shares]
        if len(set(user_ids)) != len(user_ids):
            raise InvalidInput("Each member can only have one share", field="shares")
        members = set(
            self.session.scalars(
                select(GroupMember.user_id).where(
                    GroupMember.group_id == group_id,
                    GroupMember.user_id.in_(user_ids),
                )
            ).all()
        )
        if members != set(user_ids):
            raise InvalidInput("Shares must belong to group members", field="shares")
        rows = [
            ExpenseShare(
                user_id=share.user_id,
                amount_cents=non_negative_cents(share.amount, field="shares"),
                percentage=share.percentage,
            )
            for share in shares
        ]
        if sum(row.amount_cents for row in rows) != amount_cents:
            raise InvalidInput("Shares must add up to the amount", field="shares")
        return rows

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense:
            raise NotFound("Expense not found", field="expense_id")
        self.identity.require_member(self.principal, expense.group_id)
        return expense

    def _owned(self, expense_id: int) -> Expense:
        expense = self.get(expense_id)
        if expense.created_by != self.principal.id:
            raise Forbidden("Only the creator can change this expense")
        return expense

    @unit_of_work
    def record(self, group_id: int, data: ExpenseIn) -> Expense:
        # Expense row, rule, shares and budget delta go together or not at all.
        expense = self.stage(group_id, data)
        commit_or_raise(self.session)
        self.session.refresh(expense)
        logger.info(
            "expense_recorded: id=%s group=%s category=%s amount_cents=%s",
            expense.id,
            group_id,
            expense.category_id,
            expense.amount_cents,
        )
        return expense

    def stage(self, group_id: int, data: ExpenseIn) -> Expense:
        """Validate and write an expense plus its budget impact without committing."""
        require_active_group(self.principal, group_id)
        self.identity.require_member(self.principal, group_id)
        category = self.categories.get_for_write(group_id, data.category_id)
        amount_cents = positive_cents(data.amount)
        shares = (
            self._shares(group_id, amount_cents, data.shares)
            if data.shares is not None
            else []
        )
        expense_date = data.date or local_today()

        rule = None
        if data.recurrence:
            rule = RecurringExpense(
                group_id=group_id,
                category_id=category.id,
                created_by=self.principal.id,
                amount_cents=amount_cents,
                description=data.description,
                anchor_date=expense_date,
                interval_unit=data.recurrence.interval_unit,
                interval_count=data.recurrence.interval_count,
                next_occurrence=expense_date,
                end_date=data.recurrence.end_date,
                end_after=data.recurrence.end_after,
                month_day_policy=data.recurrence.month_day_policy,
                occurrences_posted=1,
            )
            rule.next_occurrence = calculate_next_date(rule, expense_date)
            rule.is_finished = is_exhausted(rule, rule.next_occurrence)
            self.session.add(rule)
            self.session.flush()

        expense = self.ledger.record(
            category=category,
            amount_cents=amount_cents,
            description=data.description,
            expense_date=expense_date,
            creator_id=self.principal.id,
            recurring_expense_id=rule.id if rule else None,
        )
        if shares:
            expense.shares.extend(shares)
            self.session.flush()
        return expense

    @unit_of_work
    def update(self, expense_id: int, data: ExpensePatch) -> Expense:
        expense = self._owned(expense_id)
        sent = data.model_fields_set
        if "category_id" in sent and data.category_id is not None:
            category = self.categories.get_for_write(expense.group_id, data.category_id)
        else:
            category = self.session.get(Category, expense.category_id)
        amount_cents = (
            positive_cents(data.amount)
            if "amount" in sent and data.amount is not None
            else expense.amount_cents
        )
        expense_date = data.date if "date" in sent and data.date else expense.date
        description = data.description if "description" in sent else expense.description

        if "shares" in sent:
            shares = self._shares(expense.group_id, amount_cents, data.shares or [])
            expense.shares.clear()
            self.session.flush()
            expense.shares.extend(shares)
        elif amount_cents != expense.amount_cents and expense.shares:
            raise InvalidInput(
                "Send new shares when changing a split expense's amount",
                field="shares",
            )

        self.ledger.change(
            expense,
            category=category,
            amount_cents=amount_cents,
            expense_date=expense_date,
            description=description,
        )
        commit_or_raise(self.session)
        self.session.refresh(expense)
        return expense

    @unit_of_work
    def delete(self, expense_id: int) -> None:
        expense = self._owned(expense_id)
        self.ledger.remove(expense)
        commit_or_raise(self.session)
        logger.info("expense_deleted: id=%s", expense_id)

    def list(
        self,
        group_id: int,
        period: Period,
        *,
        category_id: Optional[int] = None,
        created_by: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[Expense]:
        self.identity.require_member(self.principal, group_id)
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.group_id == group_id,
                Expense.date.between(period.start, period.end),
            )
            .order_by(Expense.date.desc(), Expense.created_at.desc(), Expense.id.desc())
        )
        if category_id:
            stmt = stmt.where(Expense.category_id == category_id)
        if created_by:
            stmt = stmt.where(Expense.created_by == created_by)
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    @unit_of_work
    def set_recurrence_paused(self, rule_id: int, paused: bool) -> RecurringExpense:
        rule = self.session.get(RecurringExpense, rule_id)
        if not rule:
            raise NotFound("Recurring expense not found")
        self.identity.require_member(self.principal, rule.group_id)
        if rule.created_by != self.principal.id:
            raise Forbidden("Only the creator can change this recurring expense")
        rule.is_paused = paused
        commit_or_raise(self.session)
        return rule


class PaymentTaskService:
    def __init__(self, session: Session, principal: Principal) -> None:
        self.session = session
        self.principal = principal
        self.identity = IdentityProvider(session)

    def _template(self, template_id: int) -> PaymentTemplate:
        template = self.session.get(PaymentTemplate, template_id)
        if not template:
            raise NotFound("Template not found", field="template_id")
        self.identity.require_member(self.principal, template.group_id)
        return template

    def _check_category(self, group_id: int, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.group_id != group_id:
            raise NotFound("Category not found", field="default_category_id")

    def list_templates(self, group_id: int) -> list[PaymentTemplate]:
        self.identity.require_member(self.principal, group_id)
        stmt = (
            select(PaymentTemplate)
            .where(PaymentTemplate.group_id == group_id, PaymentTemplate.is_active.is_(True))
            .order_by(PaymentTemplate.estimated_day, PaymentTemplate.name)
        )
        return self.session.scalars(stmt).all()

    @unit_of_work
    def create_template(self, group_id: int, data: PaymentTemplateIn) -> PaymentTemplate:
        self.identity.require_member(self.principal, group_id)
        self._check_category(group_id, data.default_category_id)
        template = PaymentTemplate(
            group_id=group_id,
            name=data.name.strip(),
            default_category_id=data.default_category_id,
            estimated_day=data.estimated_day,
            estimated_amount_cents=(
                non_negative_cents(data.estimated_amount, field="estimated_amount")
                if data.estimated_amount is not None
                else None
            ),
            is_active=True,
        )
        self.session.add(template)
        commit_or_raise(self.session)
        self.session.refresh(template)
        return template

    @unit_of_work
    def update_template(
        self, template_id: int, data: PaymentTemplatePatch
    ) -> PaymentTemplate:
        template = self._template(template_id)
        sent = data.model_fields_set
        if "default_category_id" in sent:
            self._check_category(template.group_id, data.default_category_id)
            template.default_category_id = data.default_category_id
        if "name" in sent and data.name is not None:
            template.name = data.name.strip()
        if "estimated_day" in sent:
            template.estimated_day = data.estimated_day
        if "estimated_amount" in sent:
            template.estimated_amount_cents = (
                non_negative_cents(data.estimated_amount, field="estimated_amount")
                if data.estimated_amount is not None
                else None
            )
        if "is_active" in sent and data.is_active is not None:
            template.is_active = data.is_active
        commit_or_raise(self.session)
        self.session.refresh(template)
        return template

    @unit_of_work
    def deactivate_template(self, template_id: int) -> None:
        template = self._template(template_id)
        template.is_active = False
        commit_or_raise(self.session)

    @unit_of_work
    def list_tasks(self, group_id: int) -> list[MonthlyPaymentTask]:
        self.identity.require_member(self.principal, group_id)
        RolloverService(self.session).backfill_group(group_id)
        stmt = (
            select(MonthlyPaymentTask)
            .join(PaymentTemplate, MonthlyPaymentTask.template_id == PaymentTemplate.id)
            .options(joinedload(MonthlyPaymentTask.template))
            .where(MonthlyPaymentTask.group_id == group_id)
            .order_by(
                func.coalesce(PaymentTemplate.estimated_day, 32), PaymentTemplate.name
            )
        )
        return self.session.scalars(stmt).all()

    def _task(self, task_id: int) -> MonthlyPaymentTask:
        task = self.session.get(MonthlyPaymentTask, task_id)
        if not task:
            raise NotFound("Task not found", field="task_id")
        self.identity.require_member(self.principal, task.group_id)
        return task

    @unit_of_work
    def complete(self, task_id: int, data: TaskCompletionIn) -> MonthlyPaymentTask:
        task = self._task(task_id)
        if task.is_completed:
            raise Conflict("Task is already completed")
        paid_cents = positive_cents(data.paid_amount, field="paid_amount")
        create_expense = data.create_expense
        if create_expense is None:
            create_expense = bool(
                self.session.scalar(
                    select(FamilyGroup.auto_create_expenses_from_reminders).where(
                        FamilyGroup.id == task.group_id
                    )
                )
            )

        expense_id = None
        if create_expense:
            template = task.template
            if template.default_category_id is None:
                raise InvalidInput(
                    "Template has no default category", field="default_category_id"
                )
            expense = ExpenseService(self.session, self.principal).stage(
                task.group_id,
                ExpenseIn(
                    category_id=template.default_category_id,
                    amount=data.paid_amount,
                    description=template.name,
                ),
            )
            expense_id = expense.id

        task.is_completed = True
        task.paid_amount_cents = paid_cents
        task.paid_date = local_today()
        task.completed_by = self.principal.id
        task.expense_id = expense_id
        commit_or_raise(self.session)
        self.session.refresh(task)
        logger.info(
            "payment_task_completed: id=%s group=%s expense=%s",
            task.id,
            task.group_id,
            expense_id,
        )
        return task

    @unit_of_work
    def reopen(self, task_id: int) -> MonthlyPaymentTask:
        task = self._task(task_id)
        # The linked expense stays in the ledger; only the link goes.
        task.is_completed = False
        task.paid_amount_cents = None
        task.paid_date = None
        task.completed_by = None
        task.expense_id = None
        commit_or_raise(self.session)
        self.session.refresh(task)
        return task


@dataclass
class RolloverResult:
    reset_count: int
    created_count: int
    month: int
    year: int
    errors: list[str] = field(default_factory=list)


class RolloverService:
    """Monthly reset of completed payment tasks plus backfill of missing ones.

    Safe to run any number of times per month: the reset only matches tasks
    whose last reset predates the current month, and the backfill only
    creates tasks that do not exist yet.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    @unit_of_work
    def reset_completed(self, now: datetime) -> int:
        boundary = first_instant_of_month(now)
        stale = or_(
            MonthlyPaymentTask.last_reset_at.is_(None),
            MonthlyPaymentTask.last_reset_at < boundary,
        )
        result = self.session.execute(
            update(MonthlyPaymentTask)
            .where(MonthlyPaymentTask.is_completed.is_(True), stale)
            .values(
                is_completed=False,
                paid_amount_cents=None,
                paid_date=None,
                completed_by=None,
                expense_id=None,
                last_reset_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        # Pending tasks enter the new cycle too, so completing one later this
        # month cannot make it eligible for a second reset.
        self.session.execute(
            update(MonthlyPaymentTask)
            .where(MonthlyPaymentTask.is_completed.is_(False), stale)
            .values(last_reset_at=now)
            .execution_options(synchronize_session=False)
        )
        commit_or_raise(self.session)
        return result.rowcount or 0

    def _missing_pairs(self, group_id: Optional[int] = None) -> list[tuple[int, int]]:
        stmt = (
            select(PaymentTemplate.id, PaymentTemplate.group_id)
            .outerjoin(
                MonthlyPaymentTask,
                and_(
                    MonthlyPaymentTask.template_id == PaymentTemplate.id,
                    MonthlyPaymentTask.group_id == PaymentTemplate.group_id,
                ),
            )
            .where(PaymentTemplate.is_active.is_(True), MonthlyPaymentTask.id.is_(None))
            .order_by(PaymentTemplate.group_id, PaymentTemplate.id)
        )
        if group_id is not None:
            stmt = stmt.where(PaymentTemplate.group_id == group_id)
        return [(row[0], row[1]) for row in self.session.execute(stmt).all()]

    @unit_of_work
    def _create_task(self, template_id: int, group_id: int, now: datetime) -> bool:
        self.session.add(
            MonthlyPaymentTask(
                template_id=template_id,
                group_id=group_id,
                is_completed=False,
                last_reset_at=now,
            )
        )
        try:
            self.session.commit()
        except IntegrityError:
            # Someone else backfilled this pair in the meantime.
            self.session.rollback()
            return False
        return True

    def backfill_group(self, group_id: int, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        created = 0
        for template_id, template_group_id in self._missing_pairs(group_id):
            if self._create_task(template_id, template_group_id, now):
                created += 1
        return created

    def rollover(self, now: Optional[datetime] = None) -> RolloverResult:
        now = now or utcnow()
        result = RolloverResult(
            reset_count=0, created_count=0, month=now.month, year=now.year
        )
        logger.info("rollover_start: month=%s year=%s", now.month, now.year)
        try:
            result.reset_count = self.reset_completed(now)
        except Exception as exc:
            self.session.rollback()
            logger.exception("rollover_reset_failed")
            result.errors.append(f"reset: {exc}")

        for template_id, group_id in self._missing_pairs():
            try:
                if self._create_task(template_id, group_id, now):
                    result.created_count += 1
            except Exception as exc:
                self.session.rollback()
                logger.exception(
                    "rollover_backfill_failed: template=%s group=%s",
                    template_id,
                    group_id,
                )
                result.errors.append(f"template {template_id} group {group_id}: {exc}")

        logger.info(
            "rollover_done: month=%s year=%s reset=%s created=%s errors=%s",
            result.month,
            result.year,
            result.reset_count,
            result.created_count,
            len(result.errors),
        )
        return result


def perform_monthly_rollover(store: Store, now: Optional[datetime] = None) -> RolloverResult:
    """Entry point for the scheduler trigger; harmless to call repeatedly."""
    with store.session() as session:
        return RolloverService(session).rollover(now)


def post_recurring_expenses(store: Store, today: Optional[date] = None) -> int:
    with store.session() as session:
        count = RecurringEngine(session).post_due(today)
    logger.info("recurring_expenses_posted: count=%s", count)
    return count


class GroupService:
    def __init__(self, session: Session, principal: Principal) -> None:
        self.session = session
        self.principal = principal
        self.identity = IdentityProvider(session)

    def _detach(self, group_id: int, user_id: int) -> int:
        """Drop a membership and everything personal the user kept in the group.

        Rules the user set up in shared categories are paused: their history
        stays, but nothing more is posted on behalf of a non-member.
        Does not commit.
        """
        self.session.execute(
            delete(GroupMember).where(
                GroupMember.group_id == group_id,
                GroupMember.user_id == user_id,
            )
        )
        pruned = prune_personal_categories(self.session, group_id, user_id)
        self.session.execute(
            update(RecurringExpense)
            .where(
                RecurringExpense.group_id == group_id,
                RecurringExpense.created_by == user_id,
            )
            .values(is_paused=True, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            delete(Income)
            .where(Income.group_id == group_id, Income.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            update(User)
            .where(User.id == user_id, User.active_group_id == group_id)
            .values(active_group_id=None)
            .execution_options(synchronize_session=False)
        )
        return pruned

    @unit_of_work
    def leave(self, group_id: int) -> int:
        role = self.identity.require_member(self.principal, group_id)
        if role == MemberRole.owner:
            raise Forbidden("The owner cannot leave the group")
        pruned = self._detach(group_id, self.principal.id)
        commit_or_raise(self.session)
        logger.info(
            "group_left: group=%s user=%s pruned_categories=%s",
            group_id,
            self.principal.id,
            pruned,
        )
        return pruned

    @unit_of_work
    def remove_member(self, group_id: int, user_id: int) -> int:
        role = self.identity.require_member(self.principal, group_id)
        if role != MemberRole.owner:
            raise Forbidden("Only the owner can remove members")
        member_role = self.session.scalar(
            select(GroupMember.role).where(
                GroupMember.group_id == group_id, GroupMember.user_id == user_id
            )
        )
        if member_role is None:
            raise NotFound("Member not found", field="user_id")
        if member_role == MemberRole.owner:
            raise InvalidInput("The owner cannot be removed", field="user_id")
        pruned = self._detach(group_id, user_id)
        commit_or_raise(self.session)
        logger.info(
            "group_member_removed: group=%s user=%s by=%s pruned_categories=%s",
            group_id,
            user_id,
            self.principal.id,
            pruned,
        )
        return pruned


class IncomeService:
    """Group and personal income, the other half of the monthly savings figure."""

    def __init__(self, session: Session, principal: Principal) -> None:
        self.session = session
        self.principal = principal
        self.identity = IdentityProvider(session)

    def get(self, income_id: int) -> Income:
        income = self.session.get(Income, income_id)
        if not income:
            raise NotFound("Income not found", field="income_id")
        self.identity.require_member(self.principal, income.group_id)
        return income

    def _owned(self, income_id: int) -> Income:
        income = self.get(income_id)
        if income.created_by != self.principal.id:
            raise Forbidden("Only the creator can change this income")
        return income

    @unit_of_work
    def record(self, group_id: int, data: IncomeIn) -> Income:
        require_active_group(self.principal, group_id)
        self.identity.require_member(self.principal, group_id)
        income = Income(
            group_id=group_id,
            user_id=self.principal.id if data.is_personal else None,
            amount_cents=positive_cents(data.amount),
            description=data.description,
            date=data.date or local_today(),
            created_by=self.principal.id,
        )
        self.session.add(income)
        commit_or_raise(self.session)
        self.session.refresh(income)
        logger.info(
            "income_recorded: id=%s group=%s personal=%s",
            income.id,
            group_id,
            income.is_personal,
        )
        return income

    def list_for_month(
        self,
        group_id: int,
        month: Optional[int] = None,
        year: Optional[int] = None,
    ) -> list[Income]:
        self.identity.require_member(self.principal, group_id)
        today = local_today()
        month = month or today.month
        year = year or today.year
        stmt = (
            select(Income)
            .where(
                Income.group_id == group_id,
                Income.date.between(month_start(year, month), month_end(year, month)),
            )
            .order_by(Income.date.desc(), Income.id.desc())
        )
        return self.session.scalars(stmt).all()

    @unit_of_work
    def update(self, income_id: int, data: IncomePatch) -> Income:
        income = self._owned(income_id)
        sent = data.model_fields_set
        if "amount" in sent and data.amount is not None:
            income.amount_cents = positive_cents(data.amount)
        if "description" in sent:
            income.description = data.description
        if "date" in sent and data.date:
            income.date = data.date
        commit_or_raise(self.session)
        self.session.refresh(income)
        return income

    @unit_of_work
    def delete(self, income_id: int) -> None:
        income = self._owned(income_id)
        self.session.delete(income)
        commit_or_raise(self.session)
