from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

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
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TransactionSource(str, Enum):
    manual = "manual"
    transfer = "transfer"
    goal_contribution = "goal_contribution"
    loan_payment = "loan_payment"
    savings_contribution = "savings_contribution"
    reconciliation = "reconciliation"


class AccountClass(str, Enum):
    asset = "asset"
    liability = "liability"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    cash = "cash"
    investment = "investment"
    property = "property"
    other_asset = "other_asset"
    credit_card = "credit_card"
    home_loan = "home_loan"
    personal_loan = "personal_loan"
    car_loan = "car_loan"
    student_loan = "student_loan"
    line_of_credit = "line_of_credit"
    other_liability = "other_liability"


LIABILITY_TYPES = frozenset(
    {
        AccountType.credit_card,
        AccountType.home_loan,
        AccountType.personal_loan,
        AccountType.car_loan,
        AccountType.student_loan,
        AccountType.line_of_credit,
        AccountType.other_liability,
    }
)


class GoalStatus(str, Enum):
    in_progress = "in_progress"
    completed = "completed"


class BudgetPeriod(str, Enum):
    monthly = "monthly"
    yearly = "yearly"
    custom = "custom"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class VersionedMixin:
    # Bumped on every UPDATE; a stale value makes the flush raise StaleDataError.
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    @declared_attr.directive
    def __mapper_args__(cls) -> dict[str, Any]:
        return {"version_id_col": cls.__table__.c.version}


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    include_in_budget: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Account(Base, TimestampMixin, VersionedMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    # For liabilities this is the amount owed.
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_accounts_user", "user_id"),)

    @property
    def account_class(self) -> AccountClass:
        if self.type in LIABILITY_TYPES:
            return AccountClass.liability
        return AccountClass.asset


class Goal(Base, TimestampMixin, VersionedMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    target_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[GoalStatus] = mapped_column(
        SAEnum(GoalStatus), nullable=False, default=GoalStatus.in_progress
    )
    linked_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    contributions: Mapped[list["GoalContribution"]] = relationship(
        "GoalContribution", back_populates="goal"
    )

    __table_args__ = (
        CheckConstraint("current_amount_cents >= 0", name="ck_goal_current_floor"),
        CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
    )


class LoanTracker(Base, TimestampMixin, VersionedMixin):
    __tablename__ = "loan_trackers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    linked_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    emi_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # Annual rate, 1250 == 12.5 %.
    interest_rate_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tenure_months: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_installments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # Sum of principal taken off by recorded payments; reversals subtract it back.
    principal_paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("remaining_balance_cents >= 0", name="ck_loan_remaining_floor"),
        CheckConstraint("paid_installments >= 0", name="ck_loan_paid_floor"),
        CheckConstraint("tenure_months > 0", name="ck_loan_tenure_positive"),
    )


class SavingsTracker(Base, TimestampMixin, VersionedMixin):
    """Savings bookkeeping; the balance always comes from the linked account."""

    __tablename__ = "savings_trackers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    linked_account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    linked_goal_id: Mapped[Optional[int]] = mapped_column(ForeignKey("goals.id"))
    monthly_target_cents: Mapped[Optional[int]] = mapped_column(Integer)
    overall_target_cents: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Transaction(Base, TimestampMixin, VersionedMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    source: Mapped[TransactionSource] = mapped_column(
        SAEnum(TransactionSource), nullable=False, default=TransactionSource.manual
    )
    goal_id: Mapped[Optional[int]] = mapped_column(ForeignKey("goals.id"))
    loan_tracker_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("loan_trackers.id")
    )
    savings_tracker_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_trackers.id")
    )
    # Cross-reference to the other leg of a transfer; both legs are removed together.
    paired_transaction_id: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        Index("ix_transactions_user_account_date", "user_id", "account_id", "date"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )

    @property
    def is_transfer_leg(self) -> bool:
        return self.source == TransactionSource.transfer


class GoalContribution(Base):
    __tablename__ = "goal_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    goal_id: Mapped[int] = mapped_column(ForeignKey("goals.id"), nullable=False)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    goal: Mapped["Goal"] = relationship("Goal", back_populates="contributions")
    transaction: Mapped[Optional["Transaction"]] = relationship("Transaction")

    __table_args__ = (Index("ix_goal_contributions_goal", "goal_id"),)


class RecurringBudgetTemplate(Base, TimestampMixin):
    __tablename__ = "recurring_budget_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    is_overall: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    recurrence_rule: Mapped[str] = mapped_column(String(255), nullable=False)
    starts_on: Mapped[date] = mapped_column(Date, nullable=False)
    ends_on: Mapped[Optional[date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_budget_template_amount_positive"),
        Index("ix_budget_template_user", "user_id"),
    )


class Budget(Base, TimestampMixin, VersionedMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    is_overall: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period: Mapped[BudgetPeriod] = mapped_column(
        SAEnum(BudgetPeriod), nullable=False, default=BudgetPeriod.monthly
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_budget_templates.id")
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
        CheckConstraint("end_date >= start_date", name="ck_budget_window_order"),
        Index("ix_budget_user_window", "user_id", "start_date", "end_date"),
    )


class MonthlyBudgetSnapshot(Base):
    __tablename__ = "monthly_budget_snapshots"
    __table_args__ = (
        UniqueConstraint("user_id", "year", "month", name="uq_snapshot_user_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    total_budgeted_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    total_spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    per_category_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    refreshed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
