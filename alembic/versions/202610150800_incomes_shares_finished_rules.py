"""incomes, expense shares and finished recurring rules

Revision ID: 202610150800
Revises: 202610010900
Create Date: 2026-10-15 08:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610150800"
down_revision = "202610010900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("recurring_expenses") as batch_op:
        batch_op.add_column(
            sa.Column(
                "is_finished", sa.Boolean(), nullable=False, server_default=sa.false()
            )
        )

    op.create_table(
        "expense_shares",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "expense_id",
            sa.Integer(),
            sa.ForeignKey("expenses.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("percentage", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("expense_id", "user_id", name="uq_expense_share_user"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_expense_share_amount"),
        sa.CheckConstraint(
            "percentage IS NULL OR (percentage >= 0 AND percentage <= 100)",
            name="ck_expense_share_percentage",
        ),
    )

    op.create_table(
        "incomes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id", sa.Integer(), sa.ForeignKey("family_groups.id"), nullable=False
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_incomes_amount_positive"),
    )
    op.create_index("ix_incomes_group_date", "incomes", ["group_id", "date"])


def downgrade() -> None:
    op.drop_index("ix_incomes_group_date", table_name="incomes")
    op.drop_table("incomes")
    op.drop_table("expense_shares")
    with op.batch_alter_table("recurring_expenses") as batch_op:
        batch_op.drop_column("is_finished")
