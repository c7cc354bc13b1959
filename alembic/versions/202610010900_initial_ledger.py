"""initial ledger schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(120)),
        sa.Column("active_group_id", sa.Integer()),
        *_timestamps(),
    )
    op.create_table(
        "family_groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "auto_create_expenses_from_reminders",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
    )
    op.create_table(
        "group_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id", sa.Integer(), sa.ForeignKey("family_groups.id"), nullable=False
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "role", sa.Enum("owner", "member", name="memberrole"), nullable=False
        ),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id", sa.Integer(), sa.ForeignKey("family_groups.id"), nullable=False
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("icon", sa.String(16)),
        sa.Column("color", sa.String(9)),
        sa.Column("is_personal", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("monthly_limit_cents", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint(
            "(is_personal AND owner_id IS NOT NULL) "
            "OR (NOT is_personal AND owner_id IS NULL)",
            name="ck_category_scope_owner",
        ),
    )
    op.create_index("ix_categories_group_name", "categories", ["group_id", "name"])

    op.create_table(
        "monthly_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id", sa.Integer(), sa.ForeignKey("family_groups.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("scope_key", sa.String(40), nullable=False),
        sa.Column("allocated_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "group_id",
            "category_id",
            "month",
            "year",
            "scope_key",
            name="uq_budget_group_category_month_scope",
        ),
        sa.CheckConstraint("month >= 1 AND month <= 12", name="ck_budget_month_range"),
        sa.CheckConstraint("allocated_cents >= 0", name="ck_budget_allocated_positive"),
        sa.CheckConstraint("spent_cents >= 0", name="ck_budget_spent_positive"),
    )
    op.create_index(
        "ix_budget_group_month", "monthly_budgets", ["group_id", "year", "month"]
    )

    op.create_table(
        "recurring_expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id", sa.Integer(), sa.ForeignKey("family_groups.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column(
            "interval_unit",
            sa.Enum("day", "week", "month", "year", name="intervalunit"),
            nullable=False,
        ),
        sa.Column("interval_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("next_occurrence", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("end_after", sa.Integer()),
        sa.Column(
            "occurrences_posted", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("is_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "month_day_policy",
            sa.Enum("snap_to_end", "skip", "carry_forward", name="monthdaypolicy"),
            nullable=False,
            server_default="snap_to_end",
        ),
        *_timestamps(),
        sa.CheckConstraint("interval_count > 0", name="ck_recurring_interval_positive"),
        sa.CheckConstraint("amount_cents > 0", name="ck_recurring_amount_positive"),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id", sa.Integer(), sa.ForeignKey("family_groups.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "recurring_expense_id",
            sa.Integer(),
            sa.ForeignKey("recurring_expenses.id", ondelete="SET NULL"),
        ),
        sa.Column("occurrence_date", sa.Date()),
        *_timestamps(),
        sa.UniqueConstraint(
            "recurring_expense_id",
            "occurrence_date",
            name="uq_expense_recurring_occurrence",
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )
    op.create_index("ix_expenses_group_date", "expenses", ["group_id", "date"])
    op.create_index(
        "ix_expenses_group_category_date",
        "expenses",
        ["group_id", "category_id", "date"],
    )

    op.create_table(
        "payment_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id", sa.Integer(), sa.ForeignKey("family_groups.id"), nullable=False
        ),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column(
            "default_category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("estimated_day", sa.Integer()),
        sa.Column("estimated_amount_cents", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint(
            "estimated_day IS NULL OR (estimated_day >= 1 AND estimated_day <= 31)",
            name="ck_template_estimated_day_range",
        ),
    )
    op.create_index(
        "ix_payment_templates_group_active",
        "payment_templates",
        ["group_id", "is_active"],
    )

    op.create_table(
        "monthly_payment_tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("payment_templates.id"),
            nullable=False,
        ),
        sa.Column(
            "group_id", sa.Integer(), sa.ForeignKey("family_groups.id"), nullable=False
        ),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paid_amount_cents", sa.Integer()),
        sa.Column("paid_date", sa.Date()),
        sa.Column("completed_by", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column(
            "expense_id",
            sa.Integer(),
            sa.ForeignKey("expenses.id", ondelete="SET NULL"),
        ),
        sa.Column("last_reset_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("template_id", "group_id", name="uq_task_template_group"),
    )
    op.create_index(
        "ix_tasks_completed_reset",
        "monthly_payment_tasks",
        ["is_completed", "last_reset_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_tasks_completed_reset", table_name="monthly_payment_tasks")
    op.drop_table("monthly_payment_tasks")
    op.drop_index("ix_payment_templates_group_active", table_name="payment_templates")
    op.drop_table("payment_templates")
    op.drop_index("ix_expenses_group_category_date", table_name="expenses")
    op.drop_index("ix_expenses_group_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("recurring_expenses")
    op.drop_index("ix_budget_group_month", table_name="monthly_budgets")
    op.drop_table("monthly_budgets")
    op.drop_index("ix_categories_group_name", table_name="categories")
    op.drop_table("categories")
    op.drop_table("group_members")
    op.drop_table("family_groups")
    op.drop_table("users")
