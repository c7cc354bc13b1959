import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import IntervalUnit, MonthDayPolicy
from money import MAX_AMOUNT
from periods import parse_local_date


def _coerce_date(value):
    if value is None:
        return None
    return parse_local_date(value)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    is_personal: bool = False
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)
    monthly_limit: Optional[Decimal] = Field(default=None, ge=0, le=MAX_AMOUNT)


class CategoryPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)
    monthly_limit: Optional[Decimal] = Field(default=None, ge=0, le=MAX_AMOUNT)


class AllocationIn(BaseModel):
    category_id: int
    amount: Decimal = Field(..., ge=0, le=MAX_AMOUNT)
    user_id: Optional[int] = None


class BudgetAssignmentIn(BaseModel):
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=1970, le=3000)
    allocations: list[AllocationIn] = Field(..., min_length=1)


class RecurrenceIn(BaseModel):
    interval_unit: IntervalUnit = IntervalUnit.month
    interval_count: int = Field(default=1, gt=0)
    end_date: Optional[dt.date] = None
    end_after: Optional[int] = Field(default=None, gt=0)
    month_day_policy: MonthDayPolicy = MonthDayPolicy.snap_to_end

    @field_validator("end_date", mode="before")
    @classmethod
    def parse_end_date(cls, value):
        return _coerce_date(value)


class ExpenseShareIn(BaseModel):
    user_id: int
    amount: Decimal = Field(..., ge=0, le=MAX_AMOUNT)
    percentage: Optional[int] = Field(default=None, ge=0, le=100)


class ExpenseIn(BaseModel):
    category_id: int
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    recurrence: Optional[RecurrenceIn] = None
    shares: Optional[list[ExpenseShareIn]] = None

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, value):
        return _coerce_date(value)


class ExpensePatch(BaseModel):
    """Partial update; only fields the caller actually sent are applied."""

    amount: Optional[Decimal] = Field(default=None, gt=0, le=MAX_AMOUNT)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[int] = None
    date: Optional[dt.date] = None
    shares: Optional[list[ExpenseShareIn]] = None

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, value):
        return _coerce_date(value)


class IncomeIn(BaseModel):
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    is_personal: bool = False

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, value):
        return _coerce_date(value)


class IncomePatch(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, le=MAX_AMOUNT)
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, value):
        return _coerce_date(value)


class PaymentTemplateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    default_category_id: Optional[int] = None
    estimated_day: Optional[int] = Field(default=None, ge=1, le=31)
    estimated_amount: Optional[Decimal] = Field(default=None, ge=0, le=MAX_AMOUNT)


class PaymentTemplatePatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    default_category_id: Optional[int] = None
    estimated_day: Optional[int] = Field(default=None, ge=1, le=31)
    estimated_amount: Optional[Decimal] = Field(default=None, ge=0, le=MAX_AMOUNT)
    is_active: Optional[bool] = None


class TaskCompletionIn(BaseModel):
    paid_amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    create_expense: Optional[bool] = None


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int
    name: str
    icon: Optional[str]
    color: Optional[str]
    is_personal: bool
    owner_id: Optional[int]
    monthly_limit: Optional[Decimal]


class AllocationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int
    category_id: int
    month: int
    year: int
    user_id: Optional[int]
    allocated: Decimal
    spent: Decimal
    remaining: Decimal


class PocketOut(BaseModel):
    allocation: AllocationOut
    category_name: str
    status: str
    percentage: int
    color: str
    days_remaining: int
    recommended_daily: Decimal
    average_daily: Decimal
    over_budget: bool
    editable: bool


class ExpenseShareOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    amount: Decimal
    percentage: Optional[int]


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int
    category_id: int
    amount: Decimal
    description: Optional[str]
    date: dt.date
    created_by: int
    is_recurring: bool
    recurring_expense_id: Optional[int]
    shares: list[ExpenseShareOut] = Field(default_factory=list)


class IncomeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int
    user_id: Optional[int]
    amount: Decimal
    description: Optional[str]
    date: dt.date
    created_by: int
    is_personal: bool


class MonthlySummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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


class PaymentTemplateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int
    name: str
    default_category_id: Optional[int]
    estimated_day: Optional[int]
    estimated_amount: Optional[Decimal]
    is_active: bool


class PaymentTaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    template_id: int
    group_id: int
    is_completed: bool
    paid_amount: Optional[Decimal]
    paid_date: Optional[dt.date]
    completed_by: Optional[int]
    expense_id: Optional[int]
    last_reset_at: Optional[dt.datetime]


class RolloverOut(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reset_count: int
    created_count: int
    month: int
    year: int
    errors: list[str] = Field(default_factory=list)
