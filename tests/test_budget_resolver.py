from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import ValidationError
from models import AccountType, BudgetPeriod, Transaction, TransactionSource, TransactionType
from schemas import AccountIn, BudgetIn, CategoryIn, RecurringBudgetTemplateIn
from services import (
    OVERALL,
    AccountService,
    BudgetResolver,
    BudgetService,
    CategoryService,
)

USER = "user-1"


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _template(budgets: BudgetService, category_id, amount: int, starts_on: date, **kw):
    return budgets.create_template(
        RecurringBudgetTemplateIn(
            name=kw.pop("name", "Monthly"),
            category_id=category_id,
            is_overall=kw.pop("is_overall", False),
            amount_cents=amount,
            recurrence_rule=kw.pop("rule", "FREQ=MONTHLY"),
            starts_on=starts_on,
            **kw,
        )
    )


def _expense(session: Session, account_id: int, category_id: int, amount: int, day: date):
    session.add(
        Transaction(
            user_id=USER,
            account_id=account_id,
            category_id=category_id,
            type=TransactionType.expense,
            amount_cents=amount,
            date=day,
            source=TransactionSource.manual,
        )
    )
    session.commit()


def test_explicit_budget_takes_precedence_over_template() -> None:
    with make_session() as session:
        groceries = CategoryService(session, USER).create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        budgets = BudgetService(session, USER)
        tmpl = _template(budgets, groceries.id, 30_000, date(2026, 1, 1))
        explicit = budgets.create(
            BudgetIn(
                name="October groceries",
                category_id=groceries.id,
                amount_cents=40_000,
                start_date=date(2026, 10, 1),
                end_date=date(2026, 10, 31),
            )
        )

        resolver = BudgetResolver(session, USER)
        october = resolver.resolve(groceries.id, date(2026, 10, 10))
        assert [w.budget_id for w in october] == [explicit.id]
        assert not october[0].is_virtual

        november = resolver.resolve(groceries.id, date(2026, 11, 10))
        assert len(november) == 1
        assert november[0].is_virtual
        assert november[0].template_id == tmpl.id
        assert november[0].amount_cents == 30_000
        assert (november[0].start, november[0].end) == (date(2026, 11, 1), date(2026, 11, 30))


def test_latest_template_wins_for_a_scope() -> None:
    with make_session() as session:
        rent = CategoryService(session, USER).create(
            CategoryIn(name="Rent", type=TransactionType.expense)
        )
        budgets = BudgetService(session, USER)
        _template(budgets, rent.id, 20_000, date(2026, 1, 1))
        newer = _template(budgets, rent.id, 25_000, date(2026, 6, 1))

        windows = BudgetResolver(session, USER).resolve(rent.id, date(2026, 10, 3))
        assert [w.template_id for w in windows] == [newer.id]
        assert windows[0].amount_cents == 25_000

        before = BudgetResolver(session, USER).resolve(rent.id, date(2026, 3, 3))
        assert before[0].amount_cents == 20_000


def test_windows_for_expense_include_overall_and_skip_excluded_categories() -> None:
    with make_session() as session:
        categories = CategoryService(session, USER)
        food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
        fees = categories.create(
            CategoryIn(name="Fees", type=TransactionType.expense, include_in_budget=False)
        )
        budgets = BudgetService(session, USER)
        overall = budgets.create(
            BudgetIn(
                name="Everything",
                is_overall=True,
                amount_cents=200_000,
                period=BudgetPeriod.yearly,
                start_date=date(2026, 1, 1),
                end_date=date(2026, 12, 31),
            )
        )

        resolver = BudgetResolver(session, USER)
        food_windows = resolver.windows_for_expense(food, date(2026, 10, 1))
        assert [w.budget_id for w in food_windows] == [overall.id]
        assert food_windows[0].scope == OVERALL

        assert resolver.windows_for_expense(fees, date(2026, 10, 1)) == []


def test_windows_for_month_recompute_virtual_spending() -> None:
    with make_session() as session:
        account = AccountService(session, USER).create(
            AccountIn(name="Checking", type=AccountType.checking, balance_cents=100_000)
        )
        food = CategoryService(session, USER).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        budgets = BudgetService(session, USER)
        _template(budgets, food.id, 30_000, date(2026, 1, 1))
        _expense(session, account.id, food.id, 4_500, date(2026, 10, 2))
        _expense(session, account.id, food.id, 1_500, date(2026, 10, 30))
        _expense(session, account.id, food.id, 9_999, date(2026, 9, 30))

        windows = budgets.windows_for_month(2026, 10)
        assert len(windows) == 1
        assert windows[0].is_virtual
        assert windows[0].spent_cents == 6_000


def test_other_users_budgets_are_invisible() -> None:
    with make_session() as session:
        food = CategoryService(session, USER).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        BudgetService(session, USER).create(
            BudgetIn(
                name="Food",
                category_id=food.id,
                amount_cents=10_000,
                start_date=date(2026, 10, 1),
                end_date=date(2026, 10, 31),
            )
        )
        assert BudgetResolver(session, "someone-else").resolve(food.id, date(2026, 10, 5)) == []


def test_template_validation() -> None:
    with make_session() as session:
        food = CategoryService(session, USER).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        salary = CategoryService(session, USER).create(
            CategoryIn(name="Salary", type=TransactionType.income)
        )
        budgets = BudgetService(session, USER)
        with pytest.raises(ValidationError):
            _template(budgets, food.id, 10_000, date(2026, 1, 1), rule="FREQ=NEVER")
        with pytest.raises(ValidationError):
            _template(budgets, salary.id, 10_000, date(2026, 1, 1))
        with pytest.raises(ValidationError):
            _template(
                budgets, food.id, 10_000, date(2026, 5, 1), ends_on=date(2026, 4, 1)
            )
        with pytest.raises(ValidationError):
            _template(budgets, None, 10_000, date(2026, 1, 1))


def test_materialize_template_and_recalculate_spent() -> None:
    with make_session() as session:
        account = AccountService(session, USER).create(
            AccountIn(name="Checking", type=AccountType.checking)
        )
        food = CategoryService(session, USER).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        budgets = BudgetService(session, USER)
        tmpl = _template(budgets, food.id, 30_000, date(2026, 1, 1))
        _expense(session, account.id, food.id, 2_000, date(2026, 10, 4))

        budget = budgets.materialize_template(tmpl.id, 2026, 10)
        assert budget.template_id == tmpl.id
        assert budget.spent_cents == 2_000
        assert (budget.start_date, budget.end_date) == (date(2026, 10, 1), date(2026, 10, 31))

        with pytest.raises(ValidationError):
            budgets.materialize_template(tmpl.id, 2026, 10)
        with pytest.raises(ValidationError):
            budgets.materialize_template(tmpl.id, 2025, 12)

        windows = BudgetResolver(session, USER).resolve(food.id, date(2026, 10, 20))
        assert [w.budget_id for w in windows] == [budget.id]

        budget.spent_cents = 123
        session.commit()
        assert budgets.recalculate_spent(budget.id).spent_cents == 2_000


def test_category_lookup_reports_budget_participation() -> None:
    with make_session() as session:
        categories = CategoryService(session, USER)
        food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
        fees = categories.create(
            CategoryIn(name="Fees", type=TransactionType.expense, include_in_budget=False)
        )
        assert categories.participates_in_budgeting(food.id)
        assert not categories.participates_in_budgeting(fees.id)
        with pytest.raises(ValidationError):
            categories.create(CategoryIn(name="Food", type=TransactionType.expense))
