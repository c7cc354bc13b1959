from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from money import cents_to_decimal


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MemberRole(str, Enum):
    owner = "owner"
    member = "member"


class IntervalUnit(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


class MonthDayPolicy(str, Enum):
    snap_to_end = "snap_to_end"
    skip = "skip"
    carry_forward = "carry_forward"


@dataclass(frozen=True)
class SharedScope:
    def allocation_user_id(self, creator_id: int) -> Optional[int]:
        return None

    @property
    def label(self) -> str:
        return "shared"


@dataclass(frozen=True)
class PersonalScope:
    owner_id: int

    def allocation_user_id(self, creator_id: int) -> Optional[int]:
        return creator_id

    @property
    def label(self) -> str:
        return "personal"


CategoryScope = Union[SharedScope, PersonalScope]


def scope_key_for(user_id: Optional[int]) -> str:
    # NULLs never collide in a unique index, so the shared scope gets a
    # concrete key of its own.
    return "shared" if user_id is None else f"user:{user_id}"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(120))
    active_group_id: Mapped[Optional[int]] = mapped_column(Integer)

    memberships: Mapped[list["GroupMember"]] = relationship(
        "GroupMember", back_populates="user"
    )


class FamilyGroup(Base, TimestampMixin):
    __tablename__ = "family_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    auto_create_expenses_from_reminders: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    members: Mapped[list["GroupMember"]] = relationship(
        "GroupMember", back_populates="group", cascade="all, delete-orphan"
    )


class GroupMember(Base, TimestampMixin):
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("family_groups.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    role: Mapped[MemberRole] = mapped_column(
        SAEnum(MemberRole), nullable=False, default=MemberRole.member
    )

    group: Mapped["FamilyGroup"] = relationship(
        "FamilyGroup", back_populates="members"
    )
    user: Mapped["User"] = relationship("User", back_populates="memberships")


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("family_groups.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(16))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    is_personal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    owner_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    monthly_limit_cents: Mapped[Optional[int]] = mapped_column(Integer)

    owner: Mapped[Optional["User"]] = relationship("User")

    __table_args__ = (
        CheckConstraint(
            "(is_personal AND owner_id IS NOT NULL) "
            "OR (NOT is_personal AND owner_id IS NULL)",
            name="ck_category_scope_owner",
        ),
        Index("ix_categories_group_name", "group_id", "name"),
    )

    @classmethod
    def shared(cls, group_id: int, name: str, **kwargs) -> "Category":
        return cls(
            group_id=group_id, name=name, is_personal=False, owner_id=None, **kwargs
        )

    @classmethod
    def personal(
        cls, group_id: int, owner_id: int, name: str, **kwargs
    ) -> "Category":
        return cls(
            group_id=group_id, name=name, is_personal=True, owner_id=owner_id, **kwargs
        )

    @property
    def scope(self) -> CategoryScope:
        if self.is_personal:
            return PersonalScope(owner_id=self.owner_id)
        return SharedScope()

    @property
    def monthly_limit(self) -> Optional[Decimal]:
        if self.monthly_limit_cents is None:
            return None
        return cents_to_decimal(self.monthly_limit_cents)


class MonthlyBudget(Base, TimestampMixin):
    """One allocation: the budget for a category, month and scope."""

    __tablename__ = "monthly_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("family_groups.id"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    scope_key: Mapped[str] = mapped_column(String(40), nullable=False)
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "group_id",
            "category_id",
            "month",
            "year",
            "scope_key",
            name="uq_budget_group_category_month_scope",
        ),
        CheckConstraint("month >= 1 AND month <= 12", name="ck_budget_month_range"),
        CheckConstraint("allocated_cents >= 0", name="ck_budget_allocated_positive"),
        CheckConstraint("spent_cents >= 0", name="ck_budget_spent_positive"),
        Index("ix_budget_group_month", "group_id", "year", "month"),
    )

    @property
    def allocated(self) -> Decimal:
        return cents_to_decimal(self.allocated_cents)

    @property
    def spent(self) -> Decimal:
        return cents_to_decimal(self.spent_cents)

    @property
    def remaining(self) -> Decimal:
        return cents_to_decimal(self.allocated_cents - self.spent_cents)


class RecurringExpense(Base, TimestampMixin):
    __tablename__ = "recurring_expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("family_groups.id"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    interval_unit: Mapped[IntervalUnit] = mapped_column(
        SAEnum(IntervalUnit), nullable=False
    )
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    next_occurrence: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    end_after: Mapped[Optional[int]] = mapped_column(Integer)
    occurrences_posted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_finished: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    month_day_policy: Mapped[MonthDayPolicy] = mapped_column(
        SAEnum(MonthDayPolicy),
        default=MonthDayPolicy.snap_to_end,
        nullable=False,
    )

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        CheckConstraint("interval_count > 0", name="ck_recurring_interval_positive"),
        CheckConstraint("amount_cents > 0", name="ck_recurring_amount_positive"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("family_groups.id"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_expense_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_expenses.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)

    category: Mapped["Category"] = relationship("Category")
    recurrence: Mapped[Optional["RecurringExpense"]] = relationship(
        "RecurringExpense"
    )
    shares: Mapped[list["ExpenseShare"]] = relationship(
        "ExpenseShare",
        back_populates="expense",
        cascade="all, delete-orphan",
        order_by="ExpenseShare.user_id",
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_expense_id",
            "occurrence_date",
            name="uq_expense_recurring_occurrence",
        ),
        Index("ix_expenses_group_date", "group_id", "date"),
        Index("ix_expenses_group_category_date", "group_id", "category_id", "date"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )

    @property
    def amount(self) -> Decimal:
        return cents_to_decimal(self.amount_cents)


class ExpenseShare(Base, TimestampMixin):
    """How much of an expense a member covers. Budgets never see shares."""

    __tablename__ = "expense_shares"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    expense_id: Mapped[int] = mapped_column(
        ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    percentage: Mapped[Optional[int]] = mapped_column(Integer)

    expense: Mapped["Expense"] = relationship("Expense", back_populates="shares")

    __table_args__ = (
        UniqueConstraint("expense_id", "user_id", name="uq_expense_share_user"),
        CheckConstraint("amount_cents >= 0", name="ck_expense_share_amount"),
        CheckConstraint(
            "percentage IS NULL OR (percentage >= 0 AND percentage <= 100)",
            name="ck_expense_share_percentage",
        ),
    )

    @property
    def amount(self) -> Decimal:
        return cents_to_decimal(self.amount_cents)


class Income(Base, TimestampMixin):
    """Money coming into the household; ``user_id`` is None for group income."""

    __tablename__ = "incomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("family_groups.id"), nullable=False
    )
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_incomes_amount_positive"),
        Index("ix_incomes_group_date", "group_id", "date"),
    )

    @property
    def amount(self) -> Decimal:
        return cents_to_decimal(self.amount_cents)

    @property
    def is_personal(self) -> bool:
        return self.user_id is not None


class PaymentTemplate(Base, TimestampMixin):
    __tablename__ = "payment_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("family_groups.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    default_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    estimated_day: Mapped[Optional[int]] = mapped_column(Integer)
    estimated_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    default_category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint(
            "estimated_day IS NULL OR (estimated_day >= 1 AND estimated_day <= 31)",
            name="ck_template_estimated_day_range",
        ),
        Index("ix_payment_templates_group_active", "group_id", "is_active"),
    )

    @property
    def estimated_amount(self) -> Optional[Decimal]:
        if self.estimated_amount_cents is None:
            return None
        return cents_to_decimal(self.estimated_amount_cents)


class MonthlyPaymentTask(Base, TimestampMixin):
    __tablename__ = "monthly_payment_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("payment_templates.id"), nullable=False
    )
    group_id: Mapped[int] = mapped_column(
        ForeignKey("family_groups.id"), nullable=False
    )
    is_completed: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    paid_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    paid_date: Mapped[Optional[date]] = mapped_column(Date)
    completed_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    expense_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("expenses.id", ondelete="SET NULL")
    )
    last_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    template: Mapped["PaymentTemplate"] = relationship("PaymentTemplate")

    __table_args__ = (
        UniqueConstraint("template_id", "group_id", name="uq_task_template_group"),
        Index("ix_tasks_completed_reset", "is_completed", "last_reset_at"),
    )

    @property
    def paid_amount(self) -> Optional[Decimal]:
        if self.paid_amount_cents is None:
            return None
        return cents_to_decimal(self.paid_amount_cents)
