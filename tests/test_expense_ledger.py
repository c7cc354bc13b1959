import random
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.orm import Session

import services
from database import Base
from errors import Forbidden, InvalidInput, NotFound, PreconditionFailed
from identity import IdentityProvider
from models import (
    Expense,
    ExpenseShare,
    FamilyGroup,
    GroupMember,
    MemberRole,
    MonthlyBudget,
    MonthlyPaymentTask,
    PaymentTemplate,
    RecurringExpense,
    User,
)
from periods import resolve_period
from schemas import CategoryIn, ExpenseIn, ExpensePatch, ExpenseShareIn, RecurrenceIn
from services import BudgetService, CategoryService, ExpenseService


def _household(session: Session):
    ana = User(email="ana@example.com", name="Ana")
    ben = User(email="ben@example.com", name="Ben")
    session.add_all([ana, ben])
    session.flush()
    home = FamilyGroup(name="Home", owner_id=ana.id)
    session.add(home)
    session.flush()
    session.add_all(
        [
            GroupMember(group_id=home.id, user_id=ana.id, role=MemberRole.owner),
            GroupMember(group_id=home.id, user_id=ben.id, role=MemberRole.member),
        ]
    )
    ana.active_group_id = home.id
    ben.active_group_id = home.id
    session.commit()
    identity = IdentityProvider(session)
    return home, identity.principal_for(ana.id), identity.principal_for(ben.id)


def _spent(session: Session, budget_id: int) -> int:
    return session.scalar(
        select(MonthlyBudget.spent_cents).where(MonthlyBudget.id == budget_id)
    )


def _log_sum(session: Session, category_id: int, year: int, month: int) -> int:
    return session.scalar(
        select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
            Expense.category_id == category_id,
            Expense.date.between(date(year, month, 1), date(year, month, 28)),
        )
    )


def test_record_increments_matching_allocation():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _ = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        budget = BudgetService(session, ana).upsert(home.id, food.id, 3, 2025, Decimal("200"))

        expense = ExpenseService(session, ana).record(
            home.id,
            ExpenseIn(
                category_id=food.id,
                amount=Decimal("19.99"),
                description="Market",
                date="2025-03-14",
            ),
        )

        assert expense.amount == Decimal("19.99")
        assert expense.date == date(2025, 3, 14)
        assert expense.created_by == ana.id
        assert _spent(session, budget.id) == 1999


def test_record_without_allocation_still_succeeds():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _ = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        ExpenseService(session, ana).record(
            home.id,
            ExpenseIn(category_id=food.id, amount=Decimal("5"), date=date(2025, 3, 1)),
        )
        assert session.scalar(select(func.count(Expense.id))) == 1
        assert session.scalar(select(func.count(MonthlyBudget.id))) == 0


def test_backdated_expense_hits_its_own_month():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _ = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        budgets = BudgetService(session, ana)
        february = budgets.upsert(home.id, food.id, 2, 2025, Decimal("100"))
        march = budgets.upsert(home.id, food.id, 3, 2025, Decimal("100"))

        ExpenseService(session, ana).record(
            home.id,
            ExpenseIn(category_id=food.id, amount=Decimal("30"), date=date(2025, 2, 27)),
        )
        assert _spent(session, february.id) == 3000
        assert _spent(session, march.id) == 0


def test_personal_expense_uses_creator_scope():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, ben = _household(session)
        hobby = CategoryService(session, ben).create(
            home.id, CategoryIn(name="Climbing", is_personal=True)
        )
        budget = BudgetService(session, ben).upsert(home.id, hobby.id, 3, 2025, Decimal("60"))

        with pytest.raises(Forbidden):
            ExpenseService(session, ana).record(
                home.id,
                ExpenseIn(category_id=hobby.id, amount=Decimal("5"), date=date(2025, 3, 3)),
            )
        ExpenseService(session, ben).record(
            home.id,
            ExpenseIn(category_id=hobby.id, amount=Decimal("25"), date=date(2025, 3, 3)),
        )
        assert _spent(session, budget.id) == 2500


def test_record_requires_active_group_and_valid_input():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _ = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        session.get(User, ana.id).active_group_id = None
        session.commit()
        stale = IdentityProvider(session).principal_for(ana.id)

        with pytest.raises(PreconditionFailed):
            ExpenseService(session, stale).record(
                home.id,
                ExpenseIn(category_id=food.id, amount=Decimal("5"), date=date(2025, 3, 3)),
            )
        with pytest.raises(NotFound):
            ExpenseService(session, ana).record(
                home.id,
                ExpenseIn(category_id=999, amount=Decimal("5"), date=date(2025, 3, 3)),
            )
        with pytest.raises(InvalidInput):
            ExpenseService(session, ana).record(
                home.id,
                ExpenseIn(category_id=food.id, amount=Decimal("0.001"), date=date(2025, 3, 3)),
            )
        assert session.scalar(select(func.count(Expense.id))) == 0


def test_amount_edit_applies_single_delta():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _ = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        budget = BudgetService(session, ana).upsert(home.id, food.id, 3, 2025, Decimal("200"))
        expenses = ExpenseService(session, ana)
        expense = expenses.record(
            home.id,
            ExpenseIn(category_id=food.id, amount=Decimal("50"), date=date(2025, 3, 5)),
        )
        assert _spent(session, budget.id) == 5000

        updated = expenses.update(expense.id, ExpensePatch(amount=Decimal("30")))
        assert updated.amount == Decimal("30.00")
        assert _spent(session, budget.id) == 3000

        expenses.update(expense.id, ExpensePatch(description="Bakery"))
        assert _spent(session, budget.id) == 3000
        assert session.get(Expense, expense.id).description == "Bakery"


def test_category_or_month_change_moves_the_amount():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _ = _household(session)
        categories = CategoryService(session, ana)
        food = categories.create(home.id, CategoryIn(name="Food"))
        fuel = categories.create(home.id, CategoryIn(name="Fuel"))
        budgets = BudgetService(session, ana)
        food_march = budgets.upsert(home.id, food.id, 3, 2025, Decimal("200"))
        fuel_march = budgets.upsert(home.id, fuel.id, 3, 2025, Decimal("200"))
        fuel_april = budgets.upsert(home.id, fuel.id, 4, 2025, Decimal("200"))

        expenses = ExpenseService(session, ana)
        expense = expenses.record(
            home.id,
            ExpenseIn(category_id=food.id, amount=Decimal("40"), date=date(2025, 3, 5)),
        )

        expenses.update(expense.id, ExpensePatch(category_id=fuel.id, amount=Decimal("45")))
        assert _spent(session, food_march.id) == 0
        assert _spent(session, fuel_march.id) == 4500

        expenses.update(expense.id, ExpensePatch(date="2025-04-02"))
        assert _spent(session, fuel_march.id) == 0
        assert _spent(session, fuel_april.id) == 4500


def test_only_creator_may_change_or_delete():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, ben = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        expense = ExpenseService(session, ana).record(
            home.id,
            ExpenseIn(category_id=food.id, amount=Decimal("10"), date=date(2025, 3, 5)),
        )
        with pytest.raises(Forbidden):
            ExpenseService(session, ben).delete(expense.id)
        with pytest.raises(Forbidden):
            ExpenseService(session, ben).update(expense.id, ExpensePatch(amount=Decimal("1")))
        with pytest.raises(NotFound):
            ExpenseService(session, ana).delete(12345)


def test_delete_decrements_and_unlinks_tasks():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _ = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        budget = BudgetService(session, ana).upsert(home.id, food.id, 3, 2025, Decimal("200"))
        expense = ExpenseService(session, ana).record(
            home.id,
            ExpenseIn(category_id=food.id, amount=Decimal("70"), date=date(2025, 3, 5)),
        )
        template = PaymentTemplate(group_id=home.id, name="Groceries run")
        session.add(template)
        session.flush()
        task = MonthlyPaymentTask(
            template_id=template.id,
            group_id=home.id,
            is_completed=True,
            paid_amount_cents=7000,
            expense_id=expense.id,
        )
        session.add(task)
        session.commit()

        ExpenseService(session, ana).delete(expense.id)
        session.expire_all()

        assert _spent(session, budget.id) == 0
        assert session.get(Expense, expense.id) is None
        assert session.get(MonthlyPaymentTask, task.id).expense_id is None


def test_delete_after_allocation_removed_leaves_no_residue():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _ = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        BudgetService(session, ana).upsert(home.id, food.id, 3, 2025, Decimal("200"))
        expense = ExpenseService(session, ana).record(
            home.id,
            ExpenseIn(category_id=food.id, amount=Decimal("70"), date=date(2025, 3, 5)),
        )
        session.execute(delete(MonthlyBudget))
        session.commit()

        ExpenseService(session, ana).delete(expense.id)
        assert session.scalar(select(func.count(Expense.id))) == 0
        assert session.scalar(select(func.count(MonthlyBudget.id))) == 0


def test_list_expenses_filters_by_period_and_category():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, ben = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        fuel = CategoryService(session, ana).create(home.id, CategoryIn(name="Fuel"))
        for who, category, day in (
            (ana, food, date(2025, 3, 2)),
            (ben, food, date(2025, 3, 20)),
            (ana, fuel, date(2025, 3, 11)),
            (ana, food, date(2025, 4, 1)),
        ):
            ExpenseService(session, who).record(
                home.id, ExpenseIn(category_id=category.id, amount=Decimal("3"), date=day)
            )

        march = resolve_period("custom", "2025-03-01", "2025-03-31")
        listed = ExpenseService(session, ana).list(home.id, march)
        assert [e.date for e in listed] == [
            date(2025, 3, 20),
            date(2025, 3, 11),
            date(2025, 3, 2),
        ]
        food_only = ExpenseService(session, ana).list(home.id, march, category_id=food.id)
        assert len(food_only) == 2
        by_ben = ExpenseService(session, ana).list(home.id, march, created_by=ben.id)
        assert [e.created_by for e in by_ben] == [ben.id]


def test_spent_matches_log_after_mixed_operations():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _ = _household(session)
        categories = CategoryService(session, ana)
        food = categories.create(home.id, CategoryIn(name="Food"))
        fuel = categories.create(home.id, CategoryIn(name="Fuel"))
        budgets = BudgetService(session, ana)
        keys = [(food.id, 3), (food.id, 4), (fuel.id, 3), (fuel.id, 4)]
        budget_ids = {
            key: budgets.upsert(home.id, key[0], key[1], 2025, Decimal("1000")).id
            for key in keys
        }

        rng = random.Random(7)
        expenses = ExpenseService(session, ana)
        live: list[int] = []
        for _ in range(60):
            action = rng.choice(["add", "add", "edit", "delete"])
            if action == "add" or not live:
                category_id, month = rng.choice(keys)
                expense = expenses.record(
                    home.id,
                    ExpenseIn(
                        category_id=category_id,
                        amount=Decimal(rng.randint(1, 5000)) / 100,
                        date=date(2025, month, rng.randint(1, 28)),
                    ),
                )
                live.append(expense.id)
            elif action == "edit":
                category_id, month = rng.choice(keys)
                expenses.update(
                    rng.choice(live),
                    ExpensePatch(
                        category_id=category_id,
                        amount=Decimal(rng.randint(1, 5000)) / 100,
                        date=date(2025, month, rng.randint(1, 28)),
                    ),
                )
            else:
                victim = live.pop(rng.randrange(len(live)))
                expenses.delete(victim)

        for (category_id, month), budget_id in budget_ids.items():
            assert _spent(session, budget_id) == _log_sum(session, category_id, 2025, month)


def test_failed_budget_adjustment_leaves_no_expense(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _ = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        budget_id = BudgetService(session, ana).upsert(
            home.id, food.id, 3, 2025, Decimal("200")
        ).id

        def broken_adjust(self, budget_id, delta_cents):
            raise RuntimeError("disk full")

        monkeypatch.setattr("services.ExpenseLedger.adjust_spent", broken_adjust)
        with pytest.raises(RuntimeError):
            ExpenseService(session, ana).record(
                home.id,
                ExpenseIn(
                    category_id=food.id,
                    amount=Decimal("40"),
                    date=date(2025, 3, 2),
                    recurrence=RecurrenceIn(),
                ),
            )

    with Session(engine) as session:
        assert session.scalar(select(func.count(Expense.id))) == 0
        assert session.scalar(select(func.count(RecurringExpense.id))) == 0
        assert _spent(session, budget_id) == 0


def test_shares_split_an_expense_between_members():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, ben = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        budget = BudgetService(session, ana).upsert(home.id, food.id, 3, 2025, Decimal("200"))
        expenses = ExpenseService(session, ana)

        dinner = expenses.record(
            home.id,
            ExpenseIn(
                category_id=food.id,
                amount=Decimal("90"),
                date=date(2025, 3, 8),
                shares=[
                    ExpenseShareIn(user_id=ana.id, amount=Decimal("60"), percentage=67),
                    ExpenseShareIn(user_id=ben.id, amount=Decimal("30"), percentage=33),
                ],
            ),
        )
        assert [(s.user_id, s.amount) for s in dinner.shares] == [
            (ana.id, Decimal("60.00")),
            (ben.id, Decimal("30.00")),
        ]
        # Shares split who pays; the pocket still sees the whole amount once.
        assert _spent(session, budget.id) == 9000

        with pytest.raises(InvalidInput) as exc:
            expenses.update(dinner.id, ExpensePatch(amount=Decimal("100")))
        assert exc.value.field == "shares"

        expenses.update(
            dinner.id,
            ExpensePatch(
                amount=Decimal("100"),
                shares=[ExpenseShareIn(user_id=ben.id, amount=Decimal("100"))],
            ),
        )
        session.expire_all()
        shares = session.get(Expense, dinner.id).shares
        assert [(s.user_id, s.amount_cents) for s in shares] == [(ben.id, 10000)]
        assert _spent(session, budget.id) == 10000

        expenses.delete(dinner.id)
        assert session.scalar(select(func.count(ExpenseShare.id))) == 0


def test_invalid_shares_are_rejected():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, ben = _household(session)
        outsider = User(email="dee@example.com", name="Dee")
        session.add(outsider)
        session.commit()
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        expenses = ExpenseService(session, ana)

        bad_splits = [
            [ExpenseShareIn(user_id=ana.id, amount=Decimal("10"))],
            [
                ExpenseShareIn(user_id=ana.id, amount=Decimal("10")),
                ExpenseShareIn(user_id=ana.id, amount=Decimal("10")),
            ],
            [
                ExpenseShareIn(user_id=ana.id, amount=Decimal("10")),
                ExpenseShareIn(user_id=outsider.id, amount=Decimal("10")),
            ],
        ]
        for shares in bad_splits:
            with pytest.raises(InvalidInput):
                expenses.record(
                    home.id,
                    ExpenseIn(
                        category_id=food.id,
                        amount=Decimal("20"),
                        date=date(2025, 3, 8),
                        shares=shares,
                    ),
                )
        assert session.scalar(select(func.count(Expense.id))) == 0


def test_failed_update_keeps_previous_shares(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, ben = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        expenses = ExpenseService(session, ana)
        dinner_id = expenses.record(
            home.id,
            ExpenseIn(
                category_id=food.id,
                amount=Decimal("50"),
                date=date(2025, 3, 8),
                shares=[
                    ExpenseShareIn(user_id=ana.id, amount=Decimal("25")),
                    ExpenseShareIn(user_id=ben.id, amount=Decimal("25")),
                ],
            ),
        ).id

        real_change = services.ExpenseLedger.change

        def broken_change(self, expense, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(services.ExpenseLedger, "change", broken_change)
        with pytest.raises(RuntimeError):
            expenses.update(
                dinner_id,
                ExpensePatch(
                    amount=Decimal("80"),
                    shares=[ExpenseShareIn(user_id=ben.id, amount=Decimal("80"))],
                ),
            )

        # Nothing staged by the failed call reaches the next commit.
        monkeypatch.setattr(services.ExpenseLedger, "change", real_change)
        expenses.update(dinner_id, ExpensePatch(description="Pizza"))
        session.expire_all()
        dinner = session.get(Expense, dinner_id)
        assert dinner.amount_cents == 5000
        assert dinner.description == "Pizza"
        assert [(s.user_id, s.amount_cents) for s in dinner.shares] == [
            (ana.id, 2500),
            (ben.id, 2500),
        ]
