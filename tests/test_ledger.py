from datetime import date

import pytest
from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, create_session_factory
from errors import AuthorizationError, InternalError, NotFoundError, ValidationError
from models import (
    Account,
    AccountType,
    Budget,
    Goal,
    GoalContribution,
    GoalStatus,
    LoanTracker,
    SavingsTracker,
    Transaction,
    TransactionSource,
    TransactionType,
)
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    GoalIn,
    LoanTrackerIn,
    RecurringBudgetTemplateIn,
    SavingsTrackerIn,
    TransactionIn,
    TransactionPatch,
    TransferIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    GoalService,
    LedgerService,
    TrackerService,
)

USER = "user-1"
OCT = date(2026, 10, 5)


def make_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return create_session_factory(engine)


def seed(factory: sessionmaker, balance_cents: int = 10_000) -> dict:
    with factory() as session:
        account = AccountService(session, USER).create(
            AccountIn(name="Checking", type=AccountType.checking, balance_cents=balance_cents)
        )
        groceries = CategoryService(session, USER).create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        salary = CategoryService(session, USER).create(
            CategoryIn(name="Salary", type=TransactionType.income)
        )
        budget = BudgetService(session, USER).create(
            BudgetIn(
                name="October groceries",
                category_id=groceries.id,
                amount_cents=20_000,
                start_date=date(2026, 10, 1),
                end_date=date(2026, 10, 31),
            )
        )
        return {
            "account": account.id,
            "groceries": groceries.id,
            "salary": salary.id,
            "budget": budget.id,
        }


def fetch(factory: sessionmaker, model, obj_id: int):
    with factory() as session:
        return session.get(model, obj_id)


def count(factory: sessionmaker, model) -> int:
    with factory() as session:
        return session.scalar(select(func.count()).select_from(model))


def expense(ids: dict, amount: int, **kw) -> TransactionIn:
    return TransactionIn(
        account_id=kw.pop("account_id", ids["account"]),
        type=TransactionType.expense,
        amount_cents=amount,
        date=kw.pop("date", OCT),
        category_id=kw.pop("category_id", ids["groceries"]),
        **kw,
    )


def test_scenario_a_create_update_delete() -> None:
    factory = make_factory()
    ids = seed(factory)
    ledger = LedgerService(factory, USER, max_attempts=3)

    txn = ledger.create_transaction(expense(ids, 3_000))
    assert txn.source == TransactionSource.manual
    assert fetch(factory, Account, ids["account"]).balance_cents == 7_000
    assert fetch(factory, Budget, ids["budget"]).spent_cents == 3_000

    ledger.update_transaction(txn.id, TransactionPatch(amount_cents=5_000))
    assert fetch(factory, Account, ids["account"]).balance_cents == 5_000
    assert fetch(factory, Budget, ids["budget"]).spent_cents == 5_000

    assert ledger.delete_transaction(txn.id) is True
    assert fetch(factory, Account, ids["account"]).balance_cents == 10_000
    assert fetch(factory, Budget, ids["budget"]).spent_cents == 0
    assert count(factory, Transaction) == 0


def test_income_raises_asset_balance_without_touching_budgets() -> None:
    factory = make_factory()
    ids = seed(factory)
    ledger = LedgerService(factory, USER, max_attempts=3)

    ledger.create_transaction(
        TransactionIn(
            account_id=ids["account"],
            type=TransactionType.income,
            amount_cents=250_000,
            date=OCT,
            category_id=ids["salary"],
        )
    )
    assert fetch(factory, Account, ids["account"]).balance_cents == 260_000
    assert fetch(factory, Budget, ids["budget"]).spent_cents == 0


def test_expense_outside_budget_window_does_not_count() -> None:
    factory = make_factory()
    ids = seed(factory)
    ledger = LedgerService(factory, USER, max_attempts=3)

    txn = ledger.create_transaction(expense(ids, 1_000, date=date(2026, 11, 2)))
    assert fetch(factory, Budget, ids["budget"]).spent_cents == 0

    ledger.update_transaction(txn.id, TransactionPatch(date=date(2026, 10, 20)))
    assert fetch(factory, Budget, ids["budget"]).spent_cents == 1_000


def test_update_matches_delete_then_create() -> None:
    def final_state(via_update: bool) -> tuple:
        factory = make_factory()
        ids = seed(factory)
        with factory() as session:
            goal = GoalService(session, USER).create(
                GoalIn(name="Trip", target_amount_cents=50_000, target_date=date(2027, 6, 1))
            )
            goal_id = goal.id
        ledger = LedgerService(factory, USER, max_attempts=3)
        txn = ledger.create_transaction(expense(ids, 3_000, goal_id=goal_id))
        if via_update:
            ledger.update_transaction(txn.id, TransactionPatch(amount_cents=7_500))
        else:
            ledger.delete_transaction(txn.id)
            ledger.create_transaction(expense(ids, 7_500, goal_id=goal_id))
        return (
            fetch(factory, Account, ids["account"]).balance_cents,
            fetch(factory, Budget, ids["budget"]).spent_cents,
            fetch(factory, Goal, goal_id).current_amount_cents,
            count(factory, GoalContribution),
        )

    assert final_state(via_update=True) == final_state(via_update=False)
    assert final_state(via_update=True) == (2_500, 7_500, 7_500, 1)


def test_moving_expense_into_template_month_stores_no_row() -> None:
    factory = make_factory()
    ids = seed(factory)
    with factory() as session:
        BudgetService(session, USER).create_template(
            RecurringBudgetTemplateIn(
                name="Groceries",
                category_id=ids["groceries"],
                amount_cents=25_000,
                recurrence_rule="FREQ=MONTHLY",
                starts_on=date(2026, 1, 1),
            )
        )
    ledger = LedgerService(factory, USER, max_attempts=3)
    txn = ledger.create_transaction(expense(ids, 3_000))
    assert fetch(factory, Budget, ids["budget"]).spent_cents == 3_000

    ledger.update_transaction(txn.id, TransactionPatch(date=date(2026, 11, 5)))
    assert fetch(factory, Budget, ids["budget"]).spent_cents == 0
    assert count(factory, Budget) == 1

    with factory() as session:
        november = BudgetService(session, USER).windows_for_month(2026, 11)
    assert [(w.is_virtual, w.amount_cents, w.spent_cents) for w in november] == [
        (True, 25_000, 3_000)
    ]


def test_update_moves_effects_between_accounts_and_categories() -> None:
    factory = make_factory()
    ids = seed(factory)
    with factory() as session:
        cash = AccountService(session, USER).create(
            AccountIn(name="Cash", type=AccountType.cash, balance_cents=5_000)
        )
        dining = CategoryService(session, USER).create(
            CategoryIn(name="Dining", type=TransactionType.expense)
        )
        cash_id, dining_id = cash.id, dining.id
    ledger = LedgerService(factory, USER, max_attempts=3)

    txn = ledger.create_transaction(expense(ids, 2_000))
    updated = ledger.update_transaction(
        txn.id, TransactionPatch(account_id=cash_id, category_id=dining_id)
    )
    assert updated.account_id == cash_id
    assert fetch(factory, Account, ids["account"]).balance_cents == 10_000
    assert fetch(factory, Account, cash_id).balance_cents == 3_000
    assert fetch(factory, Budget, ids["budget"]).spent_cents == 0


def test_notes_only_update_leaves_balances_alone() -> None:
    factory = make_factory()
    ids = seed(factory)
    ledger = LedgerService(factory, USER, max_attempts=3)
    txn = ledger.create_transaction(expense(ids, 2_000))

    updated = ledger.update_transaction(txn.id, TransactionPatch(notes="weekly shop"))
    assert updated.notes == "weekly shop"
    assert fetch(factory, Account, ids["account"]).balance_cents == 8_000
    assert fetch(factory, Budget, ids["budget"]).spent_cents == 2_000


def test_liability_account_tracks_amount_owed() -> None:
    factory = make_factory()
    ids = seed(factory)
    with factory() as session:
        card = AccountService(session, USER).create(
            AccountIn(name="Card", type=AccountType.credit_card, balance_cents=50_000)
        )
        refunds = CategoryService(session, USER).create(
            CategoryIn(name="Refunds", type=TransactionType.income)
        )
        card_id, refunds_id = card.id, refunds.id
    ledger = LedgerService(factory, USER, max_attempts=3)

    ledger.create_transaction(expense(ids, 20_000, account_id=card_id))
    assert fetch(factory, Account, card_id).balance_cents == 30_000

    ledger.create_transaction(
        TransactionIn(
            account_id=card_id,
            type=TransactionType.income,
            amount_cents=5_000,
            date=OCT,
            category_id=refunds_id,
        )
    )
    assert fetch(factory, Account, card_id).balance_cents == 35_000


def test_goal_contribution_lifecycle_and_floor() -> None:
    factory = make_factory()
    ids = seed(factory)
    with factory() as session:
        goal_id = GoalService(session, USER).create(
            GoalIn(name="Laptop", target_amount_cents=3_000, target_date=date(2027, 1, 1))
        ).id
    ledger = LedgerService(factory, USER, max_attempts=3)

    txn = ledger.create_transaction(expense(ids, 3_000, goal_id=goal_id))
    assert txn.source == TransactionSource.goal_contribution
    goal = fetch(factory, Goal, goal_id)
    assert goal.current_amount_cents == 3_000
    assert goal.status == GoalStatus.completed
    assert count(factory, GoalContribution) == 1
    with factory() as session:
        contributions = GoalService(session, USER).contributions(goal_id)
        assert [(c.transaction_id, c.source) for c in contributions] == [(txn.id, "transaction")]

    with factory() as session:
        session.get(Goal, goal_id).current_amount_cents = 1_000
        session.commit()

    ledger.delete_transaction(txn.id)
    goal = fetch(factory, Goal, goal_id)
    assert goal.current_amount_cents == 0
    assert goal.status == GoalStatus.in_progress
    assert count(factory, GoalContribution) == 0


def test_unlinking_goal_on_update_reverses_contribution() -> None:
    factory = make_factory()
    ids = seed(factory)
    with factory() as session:
        goal_id = GoalService(session, USER).create(
            GoalIn(name="Bike", target_amount_cents=90_000, target_date=date(2027, 1, 1))
        ).id
    ledger = LedgerService(factory, USER, max_attempts=3)
    txn = ledger.create_transaction(expense(ids, 4_000, goal_id=goal_id))

    updated = ledger.update_transaction(txn.id, TransactionPatch(goal_id=None))
    assert updated.goal_id is None
    assert updated.source == TransactionSource.manual
    assert fetch(factory, Goal, goal_id).current_amount_cents == 0
    with factory() as session:
        assert GoalService(session, USER).contributions(goal_id) == []


def test_scenario_b_loan_payment() -> None:
    factory = make_factory()
    ids = seed(factory, balance_cents=500_000)
    with factory() as session:
        tracker = TrackerService(session, USER).create_loan(
            LoanTrackerIn(
                name="Car",
                total_amount_cents=1_200_000,
                emi_amount_cents=100_000,
                tenure_months=12,
                start_date=date(2026, 9, 15),
            )
        )
        tracker_id = tracker.id
        assert tracker.next_due_date == date(2026, 10, 15)
    ledger = LedgerService(factory, USER, max_attempts=3)

    txn = ledger.create_transaction(expense(ids, 100_000, loan_tracker_id=tracker_id))
    assert txn.source == TransactionSource.loan_payment
    tracker = fetch(factory, LoanTracker, tracker_id)
    assert tracker.paid_installments == 1
    assert tracker.remaining_balance_cents == 1_100_000
    assert tracker.next_due_date == date(2026, 11, 15)

    ledger.delete_transaction(txn.id)
    tracker = fetch(factory, LoanTracker, tracker_id)
    assert tracker.paid_installments == 0
    assert tracker.remaining_balance_cents == 1_200_000
    assert tracker.next_due_date == date(2026, 10, 15)


def make_loan(factory: sessionmaker, start: date, **kw) -> int:
    with factory() as session:
        return TrackerService(session, USER).create_loan(
            LoanTrackerIn(
                name="Car",
                total_amount_cents=1_200_000,
                emi_amount_cents=100_000,
                tenure_months=12,
                start_date=start,
                **kw,
            )
        ).id


def test_deleting_payment_after_overpayment_restores_exact_balance() -> None:
    factory = make_factory()
    ids = seed(factory, balance_cents=2_000_000)
    tracker_id = make_loan(factory, date(2026, 9, 15))
    ledger = LedgerService(factory, USER, max_attempts=3)

    ledger.create_transaction(expense(ids, 1_100_000, loan_tracker_id=tracker_id))
    assert fetch(factory, LoanTracker, tracker_id).remaining_balance_cents == 100_000

    second = ledger.create_transaction(expense(ids, 200_000, loan_tracker_id=tracker_id))
    assert fetch(factory, LoanTracker, tracker_id).remaining_balance_cents == 0

    ledger.delete_transaction(second.id)
    tracker = fetch(factory, LoanTracker, tracker_id)
    assert tracker.remaining_balance_cents == 100_000
    assert tracker.paid_installments == 1


def test_loan_due_date_survives_month_end_round_trip() -> None:
    factory = make_factory()
    ids = seed(factory, balance_cents=500_000)
    tracker_id = make_loan(factory, date(2026, 7, 31))
    ledger = LedgerService(factory, USER, max_attempts=3)
    assert fetch(factory, LoanTracker, tracker_id).next_due_date == date(2026, 8, 31)

    txn = ledger.create_transaction(expense(ids, 100_000, loan_tracker_id=tracker_id))
    assert fetch(factory, LoanTracker, tracker_id).next_due_date == date(2026, 9, 30)

    ledger.delete_transaction(txn.id)
    assert fetch(factory, LoanTracker, tracker_id).next_due_date == date(2026, 8, 31)


def test_loan_payment_update_matches_delete_then_create() -> None:
    def final_state(via_update: bool) -> tuple:
        factory = make_factory()
        ids = seed(factory, balance_cents=500_000)
        tracker_id = make_loan(factory, date(2026, 9, 15), interest_rate_bps=1_200)
        ledger = LedgerService(factory, USER, max_attempts=3)
        txn = ledger.create_transaction(expense(ids, 100_000, loan_tracker_id=tracker_id))
        moved = date(2026, 11, 3)
        if via_update:
            ledger.update_transaction(
                txn.id, TransactionPatch(amount_cents=150_000, date=moved)
            )
        else:
            ledger.delete_transaction(txn.id)
            ledger.create_transaction(
                expense(ids, 150_000, date=moved, loan_tracker_id=tracker_id)
            )
        tracker = fetch(factory, LoanTracker, tracker_id)
        return (
            fetch(factory, Account, ids["account"]).balance_cents,
            fetch(factory, Budget, ids["budget"]).spent_cents,
            tracker.paid_installments,
            tracker.remaining_balance_cents,
            tracker.next_due_date,
        )

    assert final_state(via_update=True) == final_state(via_update=False)
    # 1% monthly interest on the EMI leaves 149_000 of principal.
    assert final_state(via_update=True) == (
        350_000,
        0,
        1,
        1_051_000,
        date(2026, 11, 15),
    )


def test_savings_contribution_touches_tracker_only() -> None:
    factory = make_factory()
    ids = seed(factory)
    with factory() as session:
        tracker = TrackerService(session, USER).create_savings(
            SavingsTrackerIn(name="Rainy day", linked_account_id=ids["account"])
        )
        tracker_id, stamp = tracker.id, tracker.updated_at
    ledger = LedgerService(factory, USER, max_attempts=3)

    txn = ledger.create_transaction(
        TransactionIn(
            account_id=ids["account"],
            type=TransactionType.income,
            amount_cents=2_500,
            date=OCT,
            savings_tracker_id=tracker_id,
        )
    )
    assert txn.source == TransactionSource.savings_contribution
    assert fetch(factory, SavingsTracker, tracker_id).updated_at >= stamp

    with factory() as session:
        summary = TrackerService(session, USER).savings_summary(tracker_id, today=OCT)
    assert summary.current_balance_cents == 12_500
    assert summary.contributed_this_month_cents == 2_500


def test_scenario_c_transfer_and_delete_either_leg() -> None:
    factory = make_factory()
    with factory() as session:
        accounts = AccountService(session, USER)
        checking = accounts.create(
            AccountIn(name="Checking", type=AccountType.checking, balance_cents=50_000)
        )
        savings = accounts.create(
            AccountIn(name="Savings", type=AccountType.savings, balance_cents=10_000)
        )
        overall = BudgetService(session, USER).create(
            BudgetIn(
                name="Everything",
                is_overall=True,
                amount_cents=100_000,
                start_date=date(2026, 10, 1),
                end_date=date(2026, 10, 31),
            )
        )
        checking_id, savings_id, overall_id = checking.id, savings.id, overall.id
    ledger = LedgerService(factory, USER, max_attempts=3)

    sent, received = ledger.create_transfer(
        TransferIn(
            from_account_id=checking_id,
            to_account_id=savings_id,
            amount_cents=5_000,
            date=OCT,
        )
    )
    assert sent.paired_transaction_id == received.id
    assert received.paired_transaction_id == sent.id
    assert sent.type == TransactionType.expense
    assert received.type == TransactionType.income
    assert sent.category_id is None and received.category_id is None
    assert fetch(factory, Account, checking_id).balance_cents == 45_000
    assert fetch(factory, Account, savings_id).balance_cents == 15_000
    assert fetch(factory, Budget, overall_id).spent_cents == 0

    ledger.delete_transaction(received.id)
    assert fetch(factory, Account, checking_id).balance_cents == 50_000
    assert fetch(factory, Account, savings_id).balance_cents == 10_000
    assert count(factory, Transaction) == 0


def test_transfer_delete_with_missing_pair_changes_nothing() -> None:
    factory = make_factory()
    with factory() as session:
        accounts = AccountService(session, USER)
        checking_id = accounts.create(
            AccountIn(name="Checking", type=AccountType.checking, balance_cents=50_000)
        ).id
        savings_id = accounts.create(
            AccountIn(name="Savings", type=AccountType.savings, balance_cents=10_000)
        ).id
    ledger = LedgerService(factory, USER, max_attempts=3)
    sent, received = ledger.create_transfer(
        TransferIn(
            from_account_id=checking_id,
            to_account_id=savings_id,
            amount_cents=5_000,
            date=OCT,
        )
    )
    with factory() as session:
        session.execute(delete(Transaction).where(Transaction.id == received.id))
        session.commit()

    with pytest.raises(NotFoundError):
        ledger.delete_transaction(sent.id)
    assert fetch(factory, Transaction, sent.id) is not None
    assert fetch(factory, Account, checking_id).balance_cents == 45_000
    assert fetch(factory, Account, savings_id).balance_cents == 15_000


def test_transfer_legs_only_allow_notes_edits() -> None:
    factory = make_factory()
    ids = seed(factory)
    with factory() as session:
        savings_id = AccountService(session, USER).create(
            AccountIn(name="Savings", type=AccountType.savings)
        ).id
    ledger = LedgerService(factory, USER, max_attempts=3)
    sent, _ = ledger.create_transfer(
        TransferIn(
            from_account_id=ids["account"],
            to_account_id=savings_id,
            amount_cents=1_000,
            date=OCT,
        )
    )

    assert ledger.update_transaction(sent.id, TransactionPatch(notes="rent pot")).notes == "rent pot"
    with pytest.raises(ValidationError):
        ledger.update_transaction(sent.id, TransactionPatch(amount_cents=2_000))
    assert fetch(factory, Account, ids["account"]).balance_cents == 9_000


def test_transfer_validation() -> None:
    factory = make_factory()
    ids = seed(factory)
    ledger = LedgerService(factory, USER, max_attempts=3)
    with pytest.raises(ValidationError):
        ledger.create_transfer(
            TransferIn(
                from_account_id=ids["account"],
                to_account_id=ids["account"],
                amount_cents=1_000,
                date=OCT,
            )
        )
    with factory() as session:
        other_id = AccountService(session, USER).create(
            AccountIn(name="Cash", type=AccountType.cash)
        ).id
    with pytest.raises(ValidationError):
        ledger.create_transfer(
            TransferIn(
                from_account_id=ids["account"],
                to_account_id=other_id,
                amount_cents=0,
                date=OCT,
            )
        )
    assert count(factory, Transaction) == 0


def test_validation_errors_create_nothing() -> None:
    factory = make_factory()
    ids = seed(factory)
    ledger = LedgerService(factory, USER, max_attempts=3)

    with pytest.raises(ValidationError):
        ledger.create_transaction(expense(ids, 0))
    with pytest.raises(ValidationError):
        ledger.create_transaction(expense(ids, 1_000, category_id=None))
    with pytest.raises(ValidationError):
        ledger.create_transaction(expense(ids, 1_000, category_id=ids["salary"]))
    with pytest.raises(ValidationError):
        ledger.create_transaction(expense(ids, 1_000, source=TransactionSource.transfer))

    assert count(factory, Transaction) == 0
    assert fetch(factory, Account, ids["account"]).balance_cents == 10_000


def test_missing_and_foreign_records_abort() -> None:
    factory = make_factory()
    ids = seed(factory)
    with factory() as session:
        foreign_id = AccountService(session, "intruder").create(
            AccountIn(name="Theirs", type=AccountType.checking, balance_cents=1_000)
        ).id
    ledger = LedgerService(factory, USER, max_attempts=3)

    with pytest.raises(NotFoundError):
        ledger.create_transaction(expense(ids, 1_000, account_id=9_999))
    with pytest.raises(AuthorizationError):
        ledger.create_transaction(expense(ids, 1_000, account_id=foreign_id))
    with pytest.raises(NotFoundError):
        ledger.create_transaction(expense(ids, 1_000, goal_id=42))
    assert fetch(factory, Account, foreign_id).balance_cents == 1_000

    txn = ledger.create_transaction(expense(ids, 1_000))
    with pytest.raises(NotFoundError):
        ledger.update_transaction(txn.id, TransactionPatch(category_id=777, amount_cents=9_000))
    assert fetch(factory, Transaction, txn.id).amount_cents == 1_000
    assert fetch(factory, Account, ids["account"]).balance_cents == 9_000

    intruder = LedgerService(factory, "intruder", max_attempts=3)
    with pytest.raises(AuthorizationError):
        intruder.delete_transaction(txn.id)
    with pytest.raises(NotFoundError):
        intruder.delete_transaction(123_456)
    assert count(factory, Transaction) == 1


def test_coordinator_requires_session_factory() -> None:
    with pytest.raises(InternalError):
        LedgerService(None, USER)


def test_goal_delete_unlinks_transactions() -> None:
    factory = make_factory()
    ids = seed(factory)
    with factory() as session:
        goal_id = GoalService(session, USER).create(
            GoalIn(name="Sofa", target_amount_cents=80_000, target_date=date(2027, 3, 1))
        ).id
    ledger = LedgerService(factory, USER, max_attempts=3)
    txn = ledger.create_transaction(expense(ids, 4_000, goal_id=goal_id))

    with factory() as session:
        GoalService(session, USER).delete(goal_id)

    assert fetch(factory, Goal, goal_id) is None
    assert fetch(factory, Transaction, txn.id).goal_id is None
    assert count(factory, GoalContribution) == 0

    ledger.delete_transaction(txn.id)
    assert fetch(factory, Account, ids["account"]).balance_cents == 10_000


def test_goal_and_loan_summaries() -> None:
    factory = make_factory()
    with factory() as session:
        goals = GoalService(session, USER)
        goal = goals.create(
            GoalIn(name="Trip", target_amount_cents=40_000, target_date=date(2026, 12, 31))
        )
        goal.current_amount_cents = 10_000
        session.commit()
        summary = goals.summary(goal.id, today=date(2026, 12, 1))
        assert summary.progress_percentage == 25
        assert summary.days_remaining == 30

        trackers = TrackerService(session, USER)
        loan = trackers.create_loan(
            LoanTrackerIn(
                name="Bike",
                total_amount_cents=100_000,
                emi_amount_cents=11_000,
                tenure_months=10,
                start_date=date(2026, 1, 1),
            )
        )
        loan_summary = trackers.loan_summary(loan.id)
        assert loan_summary.total_interest_cents == 10_000
        assert loan_summary.months_remaining == 10
        assert loan_summary.completion_percentage == 0
