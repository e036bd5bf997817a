"""initial ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None

TXN_TYPE = sa.Enum("income", "expense", name="transactiontype")
TXN_SOURCE = sa.Enum(
    "manual",
    "transfer",
    "goal_contribution",
    "loan_payment",
    "savings_contribution",
    "reconciliation",
    name="transactionsource",
)
ACCOUNT_TYPE = sa.Enum(
    "checking",
    "savings",
    "cash",
    "investment",
    "property",
    "other_asset",
    "credit_card",
    "home_loan",
    "personal_loan",
    "car_loan",
    "student_loan",
    "line_of_credit",
    "other_liability",
    name="accounttype",
)
GOAL_STATUS = sa.Enum("in_progress", "completed", name="goalstatus")
BUDGET_PERIOD = sa.Enum("monthly", "yearly", "custom", name="budgetperiod")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", TXN_TYPE, nullable=False),
        sa.Column(
            "include_in_budget", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", ACCOUNT_TYPE, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("target_date", sa.Date(), nullable=False),
        sa.Column("status", GOAL_STATUS, nullable=False),
        sa.Column(
            "linked_account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=True
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("current_amount_cents >= 0", name="ck_goal_current_floor"),
        sa.CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
    )

    op.create_table(
        "loan_trackers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "linked_account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=True
        ),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("emi_amount_cents", sa.Integer(), nullable=False),
        sa.Column("interest_rate_bps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tenure_months", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("next_due_date", sa.Date(), nullable=False),
        sa.Column("paid_installments", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_balance_cents", sa.Integer(), nullable=False),
        sa.Column(
            "principal_paid_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "remaining_balance_cents >= 0", name="ck_loan_remaining_floor"
        ),
        sa.CheckConstraint("paid_installments >= 0", name="ck_loan_paid_floor"),
        sa.CheckConstraint("tenure_months > 0", name="ck_loan_tenure_positive"),
    )

    op.create_table(
        "savings_trackers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "linked_account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column(
            "linked_goal_id", sa.Integer(), sa.ForeignKey("goals.id"), nullable=True
        ),
        sa.Column("monthly_target_cents", sa.Integer(), nullable=True),
        sa.Column("overall_target_cents", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("type", TXN_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("source", TXN_SOURCE, nullable=False),
        sa.Column("goal_id", sa.Integer(), sa.ForeignKey("goals.id"), nullable=True),
        sa.Column(
            "loan_tracker_id",
            sa.Integer(),
            sa.ForeignKey("loan_trackers.id"),
            nullable=True,
        ),
        sa.Column(
            "savings_tracker_id",
            sa.Integer(),
            sa.ForeignKey("savings_trackers.id"),
            nullable=True,
        ),
        sa.Column("paired_transaction_id", sa.Integer(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "date"],
    )
    op.create_index(
        "ix_transactions_user_account_date",
        "transactions",
        ["user_id", "account_id", "date"],
    )

    op.create_table(
        "goal_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("goal_id", sa.Integer(), sa.ForeignKey("goals.id"), nullable=False),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            nullable=True,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_goal_contributions_goal", "goal_contributions", ["goal_id"])

    op.create_table(
        "recurring_budget_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("is_overall", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("recurrence_rule", sa.String(length=255), nullable=False),
        sa.Column("starts_on", sa.Date(), nullable=False),
        sa.Column("ends_on", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents > 0", name="ck_budget_template_amount_positive"
        ),
    )
    op.create_index(
        "ix_budget_template_user", "recurring_budget_templates", ["user_id"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("is_overall", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("period", BUDGET_PERIOD, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("recurring_budget_templates.id"),
            nullable=True,
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint("end_date >= start_date", name="ck_budget_window_order"),
    )
    op.create_index(
        "ix_budget_user_window", "budgets", ["user_id", "start_date", "end_date"]
    )

    op.create_table(
        "monthly_budget_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "total_budgeted_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("total_spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("per_category_json", sa.Text(), nullable=False),
        sa.Column("refreshed_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "year", "month", name="uq_snapshot_user_month"),
    )


def downgrade():
    op.drop_table("monthly_budget_snapshots")
    op.drop_index("ix_budget_user_window", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_budget_template_user", table_name="recurring_budget_templates")
    op.drop_table("recurring_budget_templates")
    op.drop_index("ix_goal_contributions_goal", table_name="goal_contributions")
    op.drop_table("goal_contributions")
    op.drop_index("ix_transactions_user_account_date", table_name="transactions")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("savings_trackers")
    op.drop_table("loan_trackers")
    op.drop_table("goals")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("categories")
