import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AccountType,
    BudgetPeriod,
    GoalStatus,
    TransactionSource,
    TransactionType,
)


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    date: dt.date
    category_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    goal_id: Optional[int] = None
    loan_tracker_id: Optional[int] = None
    savings_tracker_id: Optional[int] = None
    source: Optional[TransactionSource] = None


class TransactionPatch(BaseModel):
    """Every field a caller may change on an existing transaction.

    Only fields explicitly present in the payload are applied; sending
    ``null`` for a nullable field clears it.
    """

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    date: Optional[dt.date] = None
    category_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    goal_id: Optional[int] = None
    loan_tracker_id: Optional[int] = None
    savings_tracker_id: Optional[int] = None


class TransferIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    from_account_id: int
    to_account_id: int
    amount_cents: int = Field(..., ge=0)
    date: dt.date
    notes: Optional[str] = Field(default=None, max_length=500)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: Optional[int]
    type: TransactionType
    amount_cents: int
    date: dt.date
    notes: Optional[str]
    source: TransactionSource
    goal_id: Optional[int]
    loan_tracker_id: Optional[int]
    savings_tracker_id: Optional[int]
    paired_transaction_id: Optional[int]
    created_at: datetime
    updated_at: datetime


class TransferOut(BaseModel):
    from_transaction: TransactionOut = Field(..., alias="from")
    to_transaction: TransactionOut = Field(..., alias="to")

    model_config = ConfigDict(populate_by_name=True)


class CategoryAggregateOut(BaseModel):
    budgeted_cents: int
    spent_cents: int
    source: str
    budget_ids: list[int] = []
    template_id: Optional[int] = None
    name: str


class MonthlyAggregateOut(BaseModel):
    year: int
    month: int
    total_budgeted_cents: int
    total_spent_cents: int
    per_category: dict[int, CategoryAggregateOut]
    refreshed_at: datetime


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType
    balance_cents: int = 0
    currency: str = Field(default="EUR", min_length=3, max_length=3)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    include_in_budget: bool = True


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category_id: Optional[int] = None
    is_overall: bool = False
    amount_cents: int = Field(..., ge=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    start_date: date
    end_date: date
    notes: Optional[str] = None


class RecurringBudgetTemplateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category_id: Optional[int] = None
    is_overall: bool = False
    amount_cents: int = Field(..., ge=0)
    recurrence_rule: str = Field(..., min_length=1, max_length=255)
    starts_on: date
    ends_on: Optional[date] = None
    notes: Optional[str] = None


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount_cents: int = Field(..., gt=0)
    target_date: date
    linked_account_id: Optional[int] = None


class GoalSummary(BaseModel):
    id: int
    name: str
    current_amount_cents: int
    target_amount_cents: int
    status: GoalStatus
    progress_percentage: int
    days_remaining: int


class LoanTrackerIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    linked_account_id: Optional[int] = None
    total_amount_cents: int = Field(..., gt=0)
    emi_amount_cents: int = Field(..., gt=0)
    interest_rate_bps: int = Field(default=0, ge=0)
    tenure_months: int = Field(..., gt=0)
    start_date: date


class LoanSummary(BaseModel):
    id: int
    name: str
    remaining_balance_cents: int
    paid_installments: int
    next_due_date: date
    completion_percentage: int
    months_remaining: int
    total_interest_cents: int


class SavingsTrackerIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    linked_account_id: int
    linked_goal_id: Optional[int] = None
    monthly_target_cents: Optional[int] = Field(default=None, ge=0)
    overall_target_cents: Optional[int] = Field(default=None, ge=0)


class SavingsSummary(BaseModel):
    id: int
    name: str
    linked_account_id: int
    current_balance_cents: int
    contributed_this_month_cents: int
    monthly_target_cents: Optional[int]
    overall_target_cents: Optional[int]
    overall_progress_percentage: Optional[int]
