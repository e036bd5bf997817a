from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from database import run_in_transaction
from errors import (
    AuthorizationError,
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from models import (
    Account,
    Budget,
    BudgetPeriod,
    Category,
    Goal,
    GoalContribution,
    LoanTracker,
    MonthlyBudgetSnapshot,
    RecurringBudgetTemplate,
    SavingsTracker,
    Transaction,
    TransactionSource,
    TransactionType,
)
from periods import month_end, month_period, month_start, resolve_period
from projections import (
    GoalProgress,
    LoanState,
    apply_goal,
    apply_loan,
    apply_savings,
    balance_delta,
    goal_status,
)
from recurrence import add_months, local_today, month_activity, parse_rule
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryAggregateOut,
    CategoryIn,
    GoalIn,
    GoalSummary,
    LoanSummary,
    LoanTrackerIn,
    MonthlyAggregateOut,
    RecurringBudgetTemplateIn,
    SavingsSummary,
    SavingsTrackerIn,
    TransactionIn,
    TransactionPatch,
    TransferIn,
)

logger = logging.getLogger(__name__)

OVERALL = "overall"
Scope = Union[int, str]


def _owned(session: Session, model, obj_id: int, user_id: str, label: str):
    obj = session.get(model, obj_id)
    if obj is None:
        raise NotFoundError(f"{label} {obj_id} not found")
    if obj.user_id != user_id:
        raise AuthorizationError(f"{label} {obj_id} belongs to another user")
    return obj


def _load_owned(
    session: Session, model, ids: Iterable[int], user_id: str, label: str
) -> dict[int, object]:
    wanted = {i for i in ids if i is not None}
    if not wanted:
        return {}
    rows = session.scalars(select(model).where(model.id.in_(wanted))).all()
    found = {row.id: row for row in rows}
    for obj_id in sorted(wanted):
        row = found.get(obj_id)
        if row is None:
            raise NotFoundError(f"{label} {obj_id} not found")
        if row.user_id != user_id:
            raise AuthorizationError(f"{label} {obj_id} belongs to another user")
    return found


def _commit(session: Session) -> None:
    try:
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise ConflictError("Record was modified concurrently; reload and retry") from exc


def sum_budget_spending(
    session: Session,
    user_id: str,
    *,
    category_id: Optional[int],
    start: date,
    end: date,
    budgeted_only: bool = True,
) -> int:
    """Categorized expense total, transfers excluded; ``category_id=None`` is overall.

    With ``budgeted_only`` only categories that count toward budgets are summed.
    """
    stmt = (
        select(func.coalesce(func.sum(Transaction.amount_cents), 0))
        .join(Category, Transaction.category_id == Category.id)
        .where(
            Transaction.user_id == user_id,
            Transaction.type == TransactionType.expense,
            Transaction.source != TransactionSource.transfer,
            Transaction.date.between(start, end),
        )
    )
    if budgeted_only:
        stmt = stmt.where(Category.include_in_budget.is_(True))
    if category_id is not None:
        stmt = stmt.where(Transaction.category_id == category_id)
    return int(session.execute(stmt).scalar_one() or 0)


@dataclass
class TransactionFilters:
    year: Optional[int] = None
    month: Optional[int] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None


class AccountService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            currency=data.currency.upper(),
            balance_cents=data.balance_cents,
        )
        self.session.add(account)
        _commit(self.session)
        self.session.refresh(account)
        return account

    def get(self, account_id: int) -> Account:
        return _owned(self.session, Account, account_id, self.user_id, "Account")

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.is_active.is_(True))
            .order_by(Account.name.asc(), Account.id.asc())
        )
        return self.session.scalars(stmt).all()


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            Category.type == data.type,
            Category.name == name,
        )
        if self.session.scalar(stmt):
            raise ValidationError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            include_in_budget=data.include_in_budget,
        )
        self.session.add(category)
        _commit(self.session)
        self.session.refresh(category)
        return category

    def get(self, category_id: int) -> Category:
        return _owned(self.session, Category, category_id, self.user_id, "Category")

    def participates_in_budgeting(self, category_id: int) -> bool:
        return self.get(category_id).include_in_budget


@dataclass(frozen=True)
class BudgetWindow:
    budget_id: Optional[int]
    template_id: Optional[int]
    category_id: Optional[int]
    is_overall: bool
    name: str
    start: date
    end: date
    amount_cents: int
    # Stored counter for explicit rows; recomputed (or None) for virtual ones.
    spent_cents: Optional[int]

    @property
    def is_virtual(self) -> bool:
        return self.budget_id is None

    @property
    def scope(self) -> Scope:
        return OVERALL if self.is_overall else self.category_id


class BudgetResolver:
    """Finds the budget windows a date falls into for one scope.

    Explicit ``Budget`` rows win; a recurring template only yields a virtual
    window for a month in which no explicit row of the same scope exists.
    """

    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def _scope_filter(model, scope: Scope):
        if scope == OVERALL:
            return model.is_overall.is_(True)
        return (model.category_id == scope) & model.is_overall.is_(False)

    def explicit_rows(
        self, start: date, end: date, scope: Optional[Scope] = None
    ) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.start_date <= end,
                Budget.end_date >= start,
            )
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        if scope is not None:
            stmt = stmt.where(self._scope_filter(Budget, scope))
        return self.session.scalars(stmt).all()

    def _templates(self, scope: Optional[Scope] = None) -> list[RecurringBudgetTemplate]:
        stmt = (
            select(RecurringBudgetTemplate)
            .where(RecurringBudgetTemplate.user_id == self.user_id)
            .order_by(
                RecurringBudgetTemplate.starts_on.desc(),
                RecurringBudgetTemplate.id.desc(),
            )
        )
        if scope is not None:
            stmt = stmt.where(self._scope_filter(RecurringBudgetTemplate, scope))
        return self.session.scalars(stmt).all()

    @staticmethod
    def _explicit_window(row: Budget) -> BudgetWindow:
        return BudgetWindow(
            budget_id=row.id,
            template_id=row.template_id,
            category_id=row.category_id,
            is_overall=row.is_overall,
            name=row.name,
            start=row.start_date,
            end=row.end_date,
            amount_cents=row.amount_cents,
            spent_cents=row.spent_cents,
        )

    def _virtual_window(
        self,
        tmpl: RecurringBudgetTemplate,
        year: int,
        month: int,
        *,
        compute_spent: bool,
    ) -> Optional[BudgetWindow]:
        activity = month_activity(
            tmpl.recurrence_rule,
            tmpl.starts_on,
            tmpl.ends_on,
            year,
            month,
            tmpl.amount_cents,
        )
        if not activity.active:
            return None
        start = month_start(year, month)
        end = month_end(year, month)
        spent = None
        if compute_spent:
            spent = sum_budget_spending(
                self.session,
                self.user_id,
                category_id=None if tmpl.is_overall else tmpl.category_id,
                start=start,
                end=end,
            )
        return BudgetWindow(
            budget_id=None,
            template_id=tmpl.id,
            category_id=None if tmpl.is_overall else tmpl.category_id,
            is_overall=tmpl.is_overall,
            name=tmpl.name,
            start=start,
            end=end,
            amount_cents=activity.amount_cents,
            spent_cents=spent,
        )

    def resolve(
        self, scope: Scope, on_date: date, *, compute_virtual_spent: bool = False
    ) -> list[BudgetWindow]:
        first = month_start(on_date.year, on_date.month)
        last = month_end(on_date.year, on_date.month)
        month_rows = self.explicit_rows(first, last, scope)
        windows = [
            self._explicit_window(row)
            for row in month_rows
            if row.start_date <= on_date <= row.end_date
        ]
        if month_rows:
            return windows

        for tmpl in self._templates(scope):
            virtual = self._virtual_window(
                tmpl,
                on_date.year,
                on_date.month,
                compute_spent=compute_virtual_spent,
            )
            if virtual:
                windows.append(virtual)
                break
        return windows

    def windows_for_expense(
        self, category: Category, on_date: date
    ) -> list[BudgetWindow]:
        if not category.include_in_budget:
            return []
        return self.resolve(category.id, on_date) + self.resolve(OVERALL, on_date)

    def windows_for_month(self, year: int, month: int) -> list[BudgetWindow]:
        """Every explicit row overlapping the month, plus one virtual window
        for each scope that has no explicit row, with spending filled in.

        A month split across several explicit rows (say 1-15 and 16-31)
        yields all of them; callers sum per scope.
        """
        first = month_start(year, month)
        last = month_end(year, month)
        windows = [self._explicit_window(row) for row in self.explicit_rows(first, last)]
        covered = {w.scope for w in windows}

        for tmpl in self._templates():
            scope: Scope = OVERALL if tmpl.is_overall else tmpl.category_id
            if scope in covered:
                continue
            virtual = self._virtual_window(tmpl, year, month, compute_spent=True)
            if virtual:
                windows.append(virtual)
                covered.add(scope)

        return sorted(
            windows,
            key=lambda w: (-1 if w.is_overall else (w.category_id or 0), w.start),
        )


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _check_scope(self, category_id: Optional[int], is_overall: bool) -> None:
        if is_overall:
            if category_id is not None:
                raise ValidationError("Overall budgets cannot have a category")
            return
        if category_id is None:
            raise ValidationError("Category budgets require a category")
        category = _owned(self.session, Category, category_id, self.user_id, "Category")
        if category.type != TransactionType.expense:
            raise ValidationError("Budgets can only be set for expense categories")
        if not category.include_in_budget:
            raise ValidationError(
                f"Category {category.name!r} is not included in budgeting"
            )

    def create(self, data: BudgetIn) -> Budget:
        if data.amount_cents <= 0:
            raise ValidationError("Budget amount must be positive")
        if data.end_date < data.start_date:
            raise ValidationError("End date must be on or after start date")
        self._check_scope(data.category_id, data.is_overall)

        budget = Budget(
            user_id=self.user_id,
            name=data.name,
            category_id=data.category_id,
            is_overall=data.is_overall,
            amount_cents=data.amount_cents,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            notes=data.notes,
            spent_cents=sum_budget_spending(
                self.session,
                self.user_id,
                category_id=None if data.is_overall else data.category_id,
                start=data.start_date,
                end=data.end_date,
            ),
        )
        self.session.add(budget)
        _commit(self.session)
        self.session.refresh(budget)
        return budget

    def get(self, budget_id: int) -> Budget:
        return _owned(self.session, Budget, budget_id, self.user_id, "Budget")

    def create_template(self, data: RecurringBudgetTemplateIn) -> RecurringBudgetTemplate:
        if data.amount_cents <= 0:
            raise ValidationError("Budget amount must be positive")
        if data.ends_on is not None and data.ends_on < data.starts_on:
            raise ValidationError("End date must be on or after start date")
        self._check_scope(data.category_id, data.is_overall)
        parse_rule(data.recurrence_rule, data.starts_on)

        tmpl = RecurringBudgetTemplate(
            user_id=self.user_id,
            name=data.name,
            category_id=data.category_id,
            is_overall=data.is_overall,
            amount_cents=data.amount_cents,
            recurrence_rule=data.recurrence_rule.strip(),
            starts_on=data.starts_on,
            ends_on=data.ends_on,
            notes=data.notes,
        )
        self.session.add(tmpl)
        _commit(self.session)
        self.session.refresh(tmpl)
        return tmpl

    def materialize_template(self, template_id: int, year: int, month: int) -> Budget:
        tmpl = _owned(
            self.session, RecurringBudgetTemplate, template_id, self.user_id, "Template"
        )
        scope: Scope = OVERALL if tmpl.is_overall else tmpl.category_id
        resolver = BudgetResolver(self.session, self.user_id)
        first = month_start(year, month)
        last = month_end(year, month)
        if resolver.explicit_rows(first, last, scope):
            raise ValidationError("An explicit budget already exists for this period")
        activity = month_activity(
            tmpl.recurrence_rule, tmpl.starts_on, tmpl.ends_on, year, month,
            tmpl.amount_cents,
        )
        if not activity.active:
            raise ValidationError("Template is not active in this month")

        budget = Budget(
            user_id=self.user_id,
            name=tmpl.name,
            category_id=None if tmpl.is_overall else tmpl.category_id,
            is_overall=tmpl.is_overall,
            amount_cents=activity.amount_cents,
            period=BudgetPeriod.monthly,
            start_date=first,
            end_date=last,
            template_id=tmpl.id,
            notes=tmpl.notes,
            spent_cents=sum_budget_spending(
                self.session,
                self.user_id,
                category_id=None if tmpl.is_overall else tmpl.category_id,
                start=first,
                end=last,
            ),
        )
        self.session.add(budget)
        _commit(self.session)
        self.session.refresh(budget)
        logger.info(
            f"budget_materialized: user={self.user_id} template={tmpl.id} "
            f"period={year}-{month:02d} budget={budget.id}"
        )
        return budget

    def recalculate_spent(self, budget_id: int) -> Budget:
        """Rebuild one explicit row's counter from its transactions."""
        budget = self.get(budget_id)
        fresh = sum_budget_spending(
            self.session,
            self.user_id,
            category_id=None if budget.is_overall else budget.category_id,
            start=budget.start_date,
            end=budget.end_date,
        )
        if fresh != budget.spent_cents:
            logger.warning(
                f"budget_reconciled: budget={budget.id} stored={budget.spent_cents} "
                f"actual={fresh}"
            )
            budget.spent_cents = fresh
            _commit(self.session)
        return budget

    def windows_for_month(self, year: int, month: int) -> list[BudgetWindow]:
        return BudgetResolver(self.session, self.user_id).windows_for_month(year, month)


class GoalService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: GoalIn) -> Goal:
        if data.linked_account_id is not None:
            _owned(self.session, Account, data.linked_account_id, self.user_id, "Account")
        goal = Goal(
            user_id=self.user_id,
            name=data.name,
            target_amount_cents=data.target_amount_cents,
            current_amount_cents=0,
            target_date=data.target_date,
            status=goal_status(0, data.target_amount_cents),
            linked_account_id=data.linked_account_id,
        )
        self.session.add(goal)
        _commit(self.session)
        self.session.refresh(goal)
        return goal

    def get(self, goal_id: int) -> Goal:
        return _owned(self.session, Goal, goal_id, self.user_id, "Goal")

    def contributions(self, goal_id: int) -> list[GoalContribution]:
        self.get(goal_id)
        stmt = (
            select(GoalContribution)
            .where(GoalContribution.goal_id == goal_id)
            .order_by(GoalContribution.date.desc(), GoalContribution.id.desc())
        )
        return self.session.scalars(stmt).all()

    def summary(self, goal_id: int, today: Optional[date] = None) -> GoalSummary:
        today = today or local_today()
        goal = self.get(goal_id)
        progress = 0
        if goal.target_amount_cents > 0:
            progress = round(goal.current_amount_cents * 100 / goal.target_amount_cents)
        return GoalSummary(
            id=goal.id,
            name=goal.name,
            current_amount_cents=goal.current_amount_cents,
            target_amount_cents=goal.target_amount_cents,
            status=goal.status,
            progress_percentage=progress,
            days_remaining=max(0, (goal.target_date - today).days),
        )

    def delete(self, goal_id: int) -> None:
        """Remove a goal with all of its contributions in one batch.

        The batch is atomic but not version-checked; linked transactions
        and savings trackers are unlinked rather than deleted.
        """
        self.get(goal_id)
        self.session.execute(
            update(Transaction)
            .where(Transaction.user_id == self.user_id, Transaction.goal_id == goal_id)
            .values(goal_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            update(SavingsTracker)
            .where(
                SavingsTracker.user_id == self.user_id,
                SavingsTracker.linked_goal_id == goal_id,
            )
            .values(linked_goal_id=None)
            .execution_options(synchronize_session=False)
        )
        removed = self.session.execute(
            delete(GoalContribution).where(GoalContribution.goal_id == goal_id)
        ).rowcount
        self.session.execute(delete(Goal).where(Goal.id == goal_id))
        self.session.commit()
        self.session.expire_all()
        logger.info(f"goal_deleted: goal={goal_id} contributions_removed={removed}")


class TrackerService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def create_loan(self, data: LoanTrackerIn) -> LoanTracker:
        if data.linked_account_id is not None:
            _owned(self.session, Account, data.linked_account_id, self.user_id, "Account")
        tracker = LoanTracker(
            user_id=self.user_id,
            name=data.name,
            linked_account_id=data.linked_account_id,
            total_amount_cents=data.total_amount_cents,
            emi_amount_cents=data.emi_amount_cents,
            interest_rate_bps=data.interest_rate_bps,
            tenure_months=data.tenure_months,
            start_date=data.start_date,
            next_due_date=add_months(data.start_date, 1),
            paid_installments=0,
            remaining_balance_cents=data.total_amount_cents,
            principal_paid_cents=0,
        )
        self.session.add(tracker)
        _commit(self.session)
        self.session.refresh(tracker)
        return tracker

    def get_loan(self, tracker_id: int) -> LoanTracker:
        return _owned(self.session, LoanTracker, tracker_id, self.user_id, "Loan tracker")

    def loan_summary(self, tracker_id: int) -> LoanSummary:
        tracker = self.get_loan(tracker_id)
        total_payable = tracker.emi_amount_cents * tracker.tenure_months
        paid = tracker.emi_amount_cents * tracker.paid_installments
        completion = round(paid * 100 / total_payable) if total_payable else 0
        return LoanSummary(
            id=tracker.id,
            name=tracker.name,
            remaining_balance_cents=tracker.remaining_balance_cents,
            paid_installments=tracker.paid_installments,
            next_due_date=tracker.next_due_date,
            completion_percentage=completion,
            months_remaining=max(0, tracker.tenure_months - tracker.paid_installments),
            total_interest_cents=total_payable - tracker.total_amount_cents,
        )

    def create_savings(self, data: SavingsTrackerIn) -> SavingsTracker:
        _owned(self.session, Account, data.linked_account_id, self.user_id, "Account")
        if data.linked_goal_id is not None:
            _owned(self.session, Goal, data.linked_goal_id, self.user_id, "Goal")
        tracker = SavingsTracker(
            user_id=self.user_id,
            name=data.name,
            linked_account_id=data.linked_account_id,
            linked_goal_id=data.linked_goal_id,
            monthly_target_cents=data.monthly_target_cents,
            overall_target_cents=data.overall_target_cents,
        )
        self.session.add(tracker)
        _commit(self.session)
        self.session.refresh(tracker)
        return tracker

    def get_savings(self, tracker_id: int) -> SavingsTracker:
        return _owned(
            self.session, SavingsTracker, tracker_id, self.user_id, "Savings tracker"
        )

    def savings_summary(
        self, tracker_id: int, today: Optional[date] = None
    ) -> SavingsSummary:
        today = today or local_today()
        tracker = self.get_savings(tracker_id)
        account = _owned(
            self.session, Account, tracker.linked_account_id, self.user_id, "Account"
        )
        period = month_period(today.year, today.month)
        rows = self.session.execute(
            select(Transaction.type, func.coalesce(func.sum(Transaction.amount_cents), 0))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.savings_tracker_id == tracker.id,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.type)
        ).all()
        totals = {txn_type: int(amount or 0) for txn_type, amount in rows}
        contributed = totals.get(TransactionType.income, 0) - totals.get(
            TransactionType.expense, 0
        )

        overall_progress = None
        if tracker.overall_target_cents:
            overall_progress = round(
                account.balance_cents * 100 / tracker.overall_target_cents
            )
        return SavingsSummary(
            id=tracker.id,
            name=tracker.name,
            linked_account_id=account.id,
            current_balance_cents=account.balance_cents,
            contributed_this_month_cents=contributed,
            monthly_target_cents=tracker.monthly_target_cents,
            overall_target_cents=tracker.overall_target_cents,
            overall_progress_percentage=overall_progress,
        )


@dataclass(frozen=True)
class _Effect:
    """Everything about a transaction that moves money somewhere."""

    account_id: int
    type: TransactionType
    amount_cents: int
    date: date
    category_id: Optional[int] = None
    goal_id: Optional[int] = None
    loan_tracker_id: Optional[int] = None
    savings_tracker_id: Optional[int] = None
    is_transfer: bool = False

    @classmethod
    def of(cls, txn: Transaction) -> "_Effect":
        return cls(
            account_id=txn.account_id,
            type=txn.type,
            amount_cents=txn.amount_cents,
            date=txn.date,
            category_id=txn.category_id,
            goal_id=txn.goal_id,
            loan_tracker_id=txn.loan_tracker_id,
            savings_tracker_id=txn.savings_tracker_id,
            is_transfer=txn.is_transfer_leg,
        )

    def patched(self, patch: TransactionPatch) -> "_Effect":
        changes = {}
        present = patch.model_fields_set
        if "account_id" in present:
            if patch.account_id is None:
                raise ValidationError("Account cannot be cleared")
            changes["account_id"] = patch.account_id
        if "type" in present:
            if patch.type is None:
                raise ValidationError("Type cannot be cleared")
            changes["type"] = patch.type
        if "amount_cents" in present:
            if patch.amount_cents is None:
                raise ValidationError("Amount cannot be cleared")
            changes["amount_cents"] = patch.amount_cents
        if "date" in present:
            if patch.date is None:
                raise ValidationError("Date cannot be cleared")
            changes["date"] = patch.date
        if "category_id" in present:
            changes["category_id"] = patch.category_id
        if "goal_id" in present:
            changes["goal_id"] = patch.goal_id
        if "loan_tracker_id" in present:
            changes["loan_tracker_id"] = patch.loan_tracker_id
        if "savings_tracker_id" in present:
            changes["savings_tracker_id"] = patch.savings_tracker_id
        return _Effect(**{**self.__dict__, **changes})


def _validate_effect(effect: _Effect) -> None:
    if effect.amount_cents <= 0:
        raise ValidationError("Transaction amount must be positive")
    if (
        effect.type == TransactionType.expense
        and not effect.is_transfer
        and effect.category_id is None
    ):
        raise ValidationError("Category is required for an expense")


def _source_for(effect: _Effect, requested: Optional[TransactionSource]) -> TransactionSource:
    if effect.is_transfer:
        return TransactionSource.transfer
    if requested == TransactionSource.reconciliation:
        return requested
    if effect.loan_tracker_id is not None:
        return TransactionSource.loan_payment
    if effect.goal_id is not None:
        return TransactionSource.goal_contribution
    if effect.savings_tracker_id is not None:
        return TransactionSource.savings_contribution
    return TransactionSource.manual


@dataclass
class _Snapshot:
    accounts: dict[int, Account] = field(default_factory=dict)
    categories: dict[int, Category] = field(default_factory=dict)
    goals: dict[int, Goal] = field(default_factory=dict)
    loans: dict[int, LoanTracker] = field(default_factory=dict)
    savings: dict[int, SavingsTracker] = field(default_factory=dict)
    budgets: dict[int, Budget] = field(default_factory=dict)
    windows: dict[_Effect, list[BudgetWindow]] = field(default_factory=dict)
    contributions: list[GoalContribution] = field(default_factory=list)


class _LedgerReader:
    """Read phase: every row an operation may touch, loaded before any write."""

    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.resolver = BudgetResolver(session, user_id)

    def transaction(self, transaction_id: int) -> Transaction:
        return _owned(self.session, Transaction, transaction_id, self.user_id, "Transaction")

    def load(
        self, effects: list[_Effect], transaction_ids: Iterable[int] = ()
    ) -> _Snapshot:
        snap = _Snapshot()
        uid = self.user_id
        snap.accounts = _load_owned(
            self.session, Account, [e.account_id for e in effects], uid, "Account"
        )
        snap.categories = _load_owned(
            self.session, Category, [e.category_id for e in effects], uid, "Category"
        )
        snap.goals = _load_owned(
            self.session, Goal, [e.goal_id for e in effects], uid, "Goal"
        )
        snap.loans = _load_owned(
            self.session,
            LoanTracker,
            [e.loan_tracker_id for e in effects],
            uid,
            "Loan tracker",
        )
        snap.savings = _load_owned(
            self.session,
            SavingsTracker,
            [e.savings_tracker_id for e in effects],
            uid,
            "Savings tracker",
        )

        budget_ids: set[int] = set()
        for effect in effects:
            windows: list[BudgetWindow] = []
            if _counts_toward_budgets(effect):
                category = snap.categories[effect.category_id]
                windows = self.resolver.windows_for_expense(category, effect.date)
            snap.windows[effect] = windows
            budget_ids.update(w.budget_id for w in windows if not w.is_virtual)
        snap.budgets = _load_owned(self.session, Budget, budget_ids, uid, "Budget")

        ids = [i for i in transaction_ids if i is not None]
        if ids:
            snap.contributions = self.session.scalars(
                select(GoalContribution).where(GoalContribution.transaction_id.in_(ids))
            ).all()
        return snap


def _counts_toward_budgets(effect: _Effect) -> bool:
    return (
        effect.type == TransactionType.expense
        and not effect.is_transfer
        and effect.category_id is not None
    )


def _check_new_effect(effect: _Effect, snap: _Snapshot) -> None:
    account = snap.accounts[effect.account_id]
    if not account.is_active:
        raise ValidationError(f"Account {account.id} is inactive")
    if effect.category_id is not None:
        category = snap.categories[effect.category_id]
        if category.type != effect.type:
            raise ValidationError("Category type mismatch")


@dataclass
class _WritePlan:
    account_deltas: dict[int, int] = field(default_factory=lambda: defaultdict(int))
    budget_deltas: dict[int, int] = field(default_factory=lambda: defaultdict(int))
    # Goals and loans clamp at their floors, so order matters: keep a sequence.
    goal_deltas: list[tuple[int, int]] = field(default_factory=list)
    loan_deltas: list[tuple[int, int]] = field(default_factory=list)
    savings_touched: set[int] = field(default_factory=set)

    def add(self, effect: _Effect, snap: _Snapshot, sign: int) -> None:
        amount = sign * effect.amount_cents
        account = snap.accounts[effect.account_id]
        self.account_deltas[account.id] += balance_delta(
            account.account_class, effect.type, amount
        )
        for window in snap.windows.get(effect, []):
            if not window.is_virtual:
                self.budget_deltas[window.budget_id] += amount
        if effect.goal_id is not None:
            self.goal_deltas.append((effect.goal_id, amount))
        if effect.loan_tracker_id is not None:
            self.loan_deltas.append((effect.loan_tracker_id, amount))
        if effect.savings_tracker_id is not None:
            self.savings_touched.add(effect.savings_tracker_id)

    def apply(self, snap: _Snapshot) -> None:
        for account_id, delta in self.account_deltas.items():
            if delta:
                snap.accounts[account_id].balance_cents += delta
        for budget_id, delta in self.budget_deltas.items():
            if delta:
                snap.budgets[budget_id].spent_cents += delta
        for goal_id, delta in self.goal_deltas:
            goal = snap.goals[goal_id]
            progress = apply_goal(
                GoalProgress(
                    current_amount_cents=goal.current_amount_cents,
                    target_amount_cents=goal.target_amount_cents,
                    status=goal.status,
                ),
                delta,
            )
            goal.current_amount_cents = progress.current_amount_cents
            goal.status = progress.status
        for tracker_id, delta in self.loan_deltas:
            tracker = snap.loans[tracker_id]
            state = apply_loan(
                LoanState(
                    total_amount_cents=tracker.total_amount_cents,
                    emi_amount_cents=tracker.emi_amount_cents,
                    interest_rate_bps=tracker.interest_rate_bps,
                    start_date=tracker.start_date,
                    principal_paid_cents=tracker.principal_paid_cents,
                    paid_installments=tracker.paid_installments,
                ),
                delta,
            )
            tracker.principal_paid_cents = state.principal_paid_cents
            tracker.remaining_balance_cents = state.remaining_balance_cents
            tracker.paid_installments = state.paid_installments
            tracker.next_due_date = state.next_due_date
        for tracker_id in self.savings_touched:
            snap.savings[tracker_id].updated_at = apply_savings()


def _contribution_for(txn: Transaction, effect: _Effect, user_id: str) -> GoalContribution:
    return GoalContribution(
        user_id=user_id,
        goal_id=effect.goal_id,
        transaction=txn,
        amount_cents=effect.amount_cents,
        date=effect.date,
        source="transaction",
        notes=txn.notes,
    )


class LedgerService:
    """Keeps accounts, budgets, goals and trackers in step with transactions.

    Every public operation runs as one optimistic transaction: all reads
    first, then the computed writes, committed together or not at all.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        user_id: str,
        *,
        max_attempts: Optional[int] = None,
    ) -> None:
        if session_factory is None:
            raise InternalError("LedgerService requires a session factory")
        if not user_id:
            raise AuthorizationError("A user id is required")
        self.session_factory = session_factory
        self.user_id = user_id
        self.max_attempts = max_attempts or get_settings().max_commit_attempts

    def _run(self, label: str, fn):
        return run_in_transaction(
            self.session_factory, fn, max_attempts=self.max_attempts, label=label
        )

    def create_transaction(self, data: TransactionIn) -> Transaction:
        if data.source == TransactionSource.transfer:
            raise ValidationError("Transfers must be created with create_transfer")
        effect = _Effect(
            account_id=data.account_id,
            type=data.type,
            amount_cents=data.amount_cents,
            date=data.date,
            category_id=data.category_id,
            goal_id=data.goal_id,
            loan_tracker_id=data.loan_tracker_id,
            savings_tracker_id=data.savings_tracker_id,
        )
        _validate_effect(effect)

        def work(session: Session) -> Transaction:
            snap = _LedgerReader(session, self.user_id).load([effect])
            _check_new_effect(effect, snap)
            plan = _WritePlan()
            plan.add(effect, snap, +1)

            txn = Transaction(
                user_id=self.user_id,
                account_id=effect.account_id,
                category_id=effect.category_id,
                type=effect.type,
                amount_cents=effect.amount_cents,
                date=effect.date,
                notes=data.notes,
                source=_source_for(effect, data.source),
                goal_id=effect.goal_id,
                loan_tracker_id=effect.loan_tracker_id,
                savings_tracker_id=effect.savings_tracker_id,
            )
            session.add(txn)
            plan.apply(snap)
            if effect.goal_id is not None:
                session.add(_contribution_for(txn, effect, self.user_id))
            return txn

        txn = self._run("ledger_create", work)
        logger.info(
            f"ledger_commit: op=create user={self.user_id} txn={txn.id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def update_transaction(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        def work(session: Session) -> Transaction:
            reader = _LedgerReader(session, self.user_id)
            txn = reader.transaction(transaction_id)
            if txn.is_transfer_leg:
                money_fields = patch.model_fields_set - {"notes"}
                if money_fields:
                    raise ValidationError(
                        "Only notes can be edited on a transfer; delete and recreate it"
                    )
            old = _Effect.of(txn)
            new = old.patched(patch)
            _validate_effect(new)

            snap = reader.load([old, new], transaction_ids=[txn.id])
            plan = _WritePlan()
            if new != old:
                _check_new_effect(new, snap)
                plan.add(old, snap, -1)
                plan.add(new, snap, +1)

            plan.apply(snap)
            for contribution in snap.contributions:
                session.delete(contribution)
            txn.account_id = new.account_id
            txn.type = new.type
            txn.amount_cents = new.amount_cents
            txn.date = new.date
            txn.category_id = new.category_id
            txn.goal_id = new.goal_id
            txn.loan_tracker_id = new.loan_tracker_id
            txn.savings_tracker_id = new.savings_tracker_id
            if "notes" in patch.model_fields_set:
                txn.notes = patch.notes
            txn.source = _source_for(new, txn.source)
            if new.goal_id is not None:
                session.add(_contribution_for(txn, new, self.user_id))
            return txn

        txn = self._run("ledger_update", work)
        logger.info(f"ledger_commit: op=update user={self.user_id} txn={txn.id}")
        return txn

    def delete_transaction(self, transaction_id: int) -> bool:
        def work(session: Session) -> list[int]:
            reader = _LedgerReader(session, self.user_id)
            txn = reader.transaction(transaction_id)
            legs = [txn]
            if txn.is_transfer_leg and txn.paired_transaction_id is not None:
                legs.append(reader.transaction(txn.paired_transaction_id))

            effects = [_Effect.of(leg) for leg in legs]
            snap = reader.load(effects, transaction_ids=[leg.id for leg in legs])
            plan = _WritePlan()
            for effect in effects:
                plan.add(effect, snap, -1)

            plan.apply(snap)
            for contribution in snap.contributions:
                session.delete(contribution)
            for leg in legs:
                session.delete(leg)
            return [leg.id for leg in legs]

        removed = self._run("ledger_delete", work)
        logger.info(
            f"ledger_commit: op=delete user={self.user_id} "
            f"txns={','.join(str(i) for i in removed)}"
        )
        return True

    def create_transfer(self, data: TransferIn) -> tuple[Transaction, Transaction]:
        if data.from_account_id == data.to_account_id:
            raise ValidationError("Source and destination accounts must differ")
        if data.amount_cents <= 0:
            raise ValidationError("Transfer amount must be positive")
        out_leg = _Effect(
            account_id=data.from_account_id,
            type=TransactionType.expense,
            amount_cents=data.amount_cents,
            date=data.date,
            is_transfer=True,
        )
        in_leg = _Effect(
            account_id=data.to_account_id,
            type=TransactionType.income,
            amount_cents=data.amount_cents,
            date=data.date,
            is_transfer=True,
        )

        def work(session: Session) -> tuple[Transaction, Transaction]:
            snap = _LedgerReader(session, self.user_id).load([out_leg, in_leg])
            _check_new_effect(out_leg, snap)
            _check_new_effect(in_leg, snap)
            source = snap.accounts[out_leg.account_id]
            target = snap.accounts[in_leg.account_id]
            if source.currency != target.currency:
                raise ValidationError("Transfers between currencies are not supported")
            plan = _WritePlan()
            plan.add(out_leg, snap, +1)
            plan.add(in_leg, snap, +1)

            legs = []
            for effect in (out_leg, in_leg):
                legs.append(
                    Transaction(
                        user_id=self.user_id,
                        account_id=effect.account_id,
                        category_id=None,
                        type=effect.type,
                        amount_cents=effect.amount_cents,
                        date=effect.date,
                        notes=data.notes,
                        source=TransactionSource.transfer,
                    )
                )
            session.add_all(legs)
            plan.apply(snap)
            session.flush()
            legs[0].paired_transaction_id = legs[1].id
            legs[1].paired_transaction_id = legs[0].id
            return legs[0], legs[1]

        sent, received = self._run("ledger_transfer", work)
        logger.info(
            f"ledger_commit: op=transfer user={self.user_id} "
            f"from_txn={sent.id} to_txn={received.id} amount_cents={sent.amount_cents}"
        )
        return sent, received


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, transaction_id: int) -> Transaction:
        return _owned(self.session, Transaction, transaction_id, self.user_id, "Transaction")

    def list(
        self, filters: TransactionFilters, *, today: Optional[date] = None
    ) -> list[Transaction]:
        try:
            period = resolve_period(
                filters.year, filters.month, today=today or local_today()
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        return self.session.scalars(stmt).all()


class MonthlyAggregateService:
    """Dashboard totals per (user, month), cached for a short freshness window.

    Writes never invalidate the cache; a snapshot older than the window is
    rebuilt on the next read.
    """

    def __init__(
        self, session: Session, user_id: str, *, ttl_secs: Optional[int] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.ttl = timedelta(
            seconds=ttl_secs
            if ttl_secs is not None
            else get_settings().aggregate_ttl_secs
        )

    def _snapshot(self, year: int, month: int) -> Optional[MonthlyBudgetSnapshot]:
        return self.session.scalar(
            select(MonthlyBudgetSnapshot).where(
                MonthlyBudgetSnapshot.user_id == self.user_id,
                MonthlyBudgetSnapshot.year == year,
                MonthlyBudgetSnapshot.month == month,
            )
        )

    @staticmethod
    def _from_snapshot(row: MonthlyBudgetSnapshot) -> MonthlyAggregateOut:
        per_category = {
            int(key): CategoryAggregateOut(**value)
            for key, value in json.loads(row.per_category_json or "{}").items()
        }
        return MonthlyAggregateOut(
            year=row.year,
            month=row.month,
            total_budgeted_cents=row.total_budgeted_cents,
            total_spent_cents=row.total_spent_cents,
            per_category=per_category,
            refreshed_at=row.refreshed_at,
        )

    def is_fresh(self, row: MonthlyBudgetSnapshot, now: datetime) -> bool:
        return now - row.refreshed_at < self.ttl

    def get_or_build(
        self, year: int, month: int, *, now: Optional[datetime] = None
    ) -> MonthlyAggregateOut:
        if not 1 <= month <= 12:
            raise ValidationError("Month must be between 1 and 12")
        now = now or datetime.utcnow()
        row = self._snapshot(year, month)
        if row is not None and self.is_fresh(row, now):
            return self._from_snapshot(row)
        return self.rebuild(year, month, now=now, existing=row)

    def rebuild(
        self,
        year: int,
        month: int,
        *,
        now: Optional[datetime] = None,
        existing: Optional[MonthlyBudgetSnapshot] = None,
    ) -> MonthlyAggregateOut:
        now = now or datetime.utcnow()
        windows = BudgetResolver(self.session, self.user_id).windows_for_month(
            year, month
        )
        category_ids = {w.category_id for w in windows if not w.is_overall}
        names = {}
        if category_ids:
            names = dict(
                self.session.execute(
                    select(Category.id, Category.name).where(
                        Category.id.in_(category_ids)
                    )
                ).all()
            )

        per_category: dict[int, CategoryAggregateOut] = {}
        overall_budget: Optional[int] = None
        for window in windows:
            if window.is_overall:
                overall_budget = (overall_budget or 0) + window.amount_cents
                continue
            entry = per_category.get(window.category_id)
            if entry is None:
                per_category[window.category_id] = CategoryAggregateOut(
                    budgeted_cents=window.amount_cents,
                    spent_cents=window.spent_cents or 0,
                    source="template" if window.is_virtual else "budget",
                    budget_ids=[] if window.is_virtual else [window.budget_id],
                    template_id=window.template_id,
                    name=names.get(window.category_id, window.name),
                )
                continue
            # Several explicit rows split this category's month.
            entry.budgeted_cents += window.amount_cents
            entry.spent_cents += window.spent_cents or 0
            entry.budget_ids.append(window.budget_id)

        if overall_budget is not None:
            total_budgeted = overall_budget
        else:
            total_budgeted = sum(c.budgeted_cents for c in per_category.values())
        total_spent = sum_budget_spending(
            self.session,
            self.user_id,
            category_id=None,
            start=month_start(year, month),
            end=month_end(year, month),
            budgeted_only=False,
        )

        row = existing or self._snapshot(year, month)
        if row is None:
            row = MonthlyBudgetSnapshot(user_id=self.user_id, year=year, month=month)
            self.session.add(row)
        row.total_budgeted_cents = total_budgeted
        row.total_spent_cents = total_spent
        row.per_category_json = json.dumps(
            {str(k): v.model_dump() for k, v in per_category.items()}
        )
        row.refreshed_at = now
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent reader inserted the same (user, month) snapshot first.
            self.session.rollback()
            logger.warning(
                f"aggregate_snapshot_race: user={self.user_id} period={year}-{month:02d}"
            )
            return MonthlyAggregateOut(
                year=year,
                month=month,
                total_budgeted_cents=total_budgeted,
                total_spent_cents=total_spent,
                per_category=per_category,
                refreshed_at=now,
            )
        logger.info(
            f"aggregate_rebuilt: user={self.user_id} period={year}-{month:02d} "
            f"budgeted={total_budgeted} spent={total_spent}"
        )
        return self._from_snapshot(row)


def refresh_stale_aggregates(
    session: Session, year: int, month: int, *, now: Optional[datetime] = None
) -> int:
    """Rebuild the given month's stale snapshots for every user that has one."""
    now = now or datetime.utcnow()
    rows = session.scalars(
        select(MonthlyBudgetSnapshot).where(
            MonthlyBudgetSnapshot.year == year,
            MonthlyBudgetSnapshot.month == month,
        )
    ).all()
    rebuilt = 0
    for row in rows:
        service = MonthlyAggregateService(session, row.user_id)
        if service.is_fresh(row, now):
            continue
        service.rebuild(year, month, now=now, existing=row)
        rebuilt += 1
    return rebuilt
