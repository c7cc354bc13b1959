from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import Forbidden, InvalidInput, NotFound, PreconditionFailed
from identity import IdentityProvider
from models import FamilyGroup, GroupMember, MemberRole, User
from schemas import CategoryIn, ExpenseIn, IncomeIn, IncomePatch
from services import BudgetService, CategoryService, ExpenseService, IncomeService


def _household(session: Session):
    ana = User(email="ana@example.com", name="Ana")
    ben = User(email="ben@example.com", name="Ben")
    cy = User(email="cy@example.com", name="Cy")
    session.add_all([ana, ben, cy])
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
    session.commit()
    identity = IdentityProvider(session)
    return (
        home,
        identity.principal_for(ana.id),
        identity.principal_for(ben.id),
        identity.principal_for(cy.id),
    )


def test_record_and_list_incomes_for_month():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _, _ = _household(session)
        incomes = IncomeService(session, ana)
        salary = incomes.record(
            home.id,
            IncomeIn(amount=Decimal("2500"), description="Salary", date=date(2025, 3, 1)),
        )
        bonus = incomes.record(
            home.id,
            IncomeIn(amount=Decimal("120.50"), date="2025-03-20", is_personal=True),
        )
        incomes.record(home.id, IncomeIn(amount=Decimal("10"), date=date(2025, 4, 2)))

        assert salary.user_id is None
        assert salary.is_personal is False
        assert bonus.user_id == ana.id
        assert bonus.amount == Decimal("120.50")

        march = incomes.list_for_month(home.id, 3, 2025)
        assert [i.id for i in march] == [bonus.id, salary.id]


def test_recording_income_needs_active_group_and_membership():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, _, ben, cy = _household(session)
        # Ben is a member but never selected the group.
        with pytest.raises(PreconditionFailed):
            IncomeService(session, ben).record(home.id, IncomeIn(amount=Decimal("5")))
        with pytest.raises(Forbidden):
            IncomeService(session, cy).list_for_month(home.id, 3, 2025)


def test_only_creator_changes_income():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, ben, _ = _household(session)
        salary = IncomeService(session, ana).record(
            home.id, IncomeIn(amount=Decimal("2500"), date=date(2025, 3, 1))
        )

        with pytest.raises(Forbidden):
            IncomeService(session, ben).update(salary.id, IncomePatch(amount=Decimal("1")))
        with pytest.raises(Forbidden):
            IncomeService(session, ben).delete(salary.id)

        updated = IncomeService(session, ana).update(
            salary.id, IncomePatch(amount=Decimal("2600"), description="Raise")
        )
        assert updated.amount == Decimal("2600.00")
        assert updated.description == "Raise"
        assert updated.date == date(2025, 3, 1)

        IncomeService(session, ana).delete(salary.id)
        with pytest.raises(NotFound):
            IncomeService(session, ana).get(salary.id)


def test_oversized_income_is_rejected():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _, _ = _household(session)
        salary = IncomeService(session, ana).record(
            home.id, IncomeIn(amount=Decimal("10"), date=date(2025, 3, 1))
        )
        # Skips schema validation the way an internal caller would.
        patch = IncomePatch.model_construct(amount=Decimal("1E+30"))
        with pytest.raises(InvalidInput):
            IncomeService(session, ana).update(salary.id, patch)


def test_monthly_summary_reports_savings():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        home, ana, _, _ = _household(session)
        food = CategoryService(session, ana).create(home.id, CategoryIn(name="Food"))
        fun = CategoryService(session, ana).create(
            home.id, CategoryIn(name="Fun", is_personal=True)
        )
        budgets = BudgetService(session, ana)
        budgets.upsert(home.id, food.id, 3, 2025, Decimal("300"))
        budgets.upsert(home.id, fun.id, 3, 2025, Decimal("100"))
        expenses = ExpenseService(session, ana)
        expenses.record(
            home.id,
            ExpenseIn(category_id=food.id, amount=Decimal("150"), date=date(2025, 3, 4)),
        )
        expenses.record(
            home.id,
            ExpenseIn(category_id=fun.id, amount=Decimal("50"), date=date(2025, 3, 6)),
        )
        incomes = IncomeService(session, ana)
        incomes.record(home.id, IncomeIn(amount=Decimal("1000"), date=date(2025, 3, 1)))
        incomes.record(
            home.id,
            IncomeIn(amount=Decimal("80"), date=date(2025, 3, 2), is_personal=True),
        )

        summary = budgets.monthly_summary(home.id, 3, 2025, today=date(2025, 3, 11))
        assert summary.total_allocated == Decimal("400.00")
        assert summary.total_spent == Decimal("200.00")
        assert summary.total_remaining == Decimal("200.00")
        assert summary.percentage_used == 50
        assert summary.income == Decimal("1080.00")
        assert summary.group_income == Decimal("1000.00")
        assert summary.expenses == Decimal("200.00")
        assert summary.savings == Decimal("880.00")
        assert summary.days_remaining == 20
        assert summary.recommended_daily == Decimal("10.00")
        assert summary.average_daily == Decimal("18.18")

        # A month with spending but no income shows negative savings.
        expenses.record(
            home.id,
            ExpenseIn(category_id=food.id, amount=Decimal("30"), date=date(2025, 4, 1)),
        )
        april = budgets.monthly_summary(home.id, 4, 2025, today=date(2025, 3, 11))
        assert april.savings == Decimal("-30.00")
        assert april.total_allocated == Decimal("0.00")
        assert april.percentage_used == 0
