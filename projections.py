"""Pure money-movement rules.

Nothing in here touches the store: callers load the current state, pass it
through these functions and persist what comes back.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from models import AccountClass, GoalStatus, TransactionType
from recurrence import add_months


# Liability balances are the amount owed: a credit/refund (income) raises it,
# a payment (expense) lowers it.
_BALANCE_SIGN = {
    (AccountClass.asset, TransactionType.income): 1,
    (AccountClass.asset, TransactionType.expense): -1,
    (AccountClass.liability, TransactionType.income): 1,
    (AccountClass.liability, TransactionType.expense): -1,
}


def balance_delta(
    account_class: AccountClass, txn_type: TransactionType, amount_cents: int
) -> int:
    """Signed change to an account balance; negate ``amount_cents`` to reverse."""
    return _BALANCE_SIGN[(account_class, txn_type)] * amount_cents


@dataclass(frozen=True)
class GoalProgress:
    current_amount_cents: int
    target_amount_cents: int
    status: GoalStatus


def goal_status(current_amount_cents: int, target_amount_cents: int) -> GoalStatus:
    if current_amount_cents >= target_amount_cents:
        return GoalStatus.completed
    return GoalStatus.in_progress


def apply_goal(progress: GoalProgress, amount_delta_cents: int) -> GoalProgress:
    current = max(0, progress.current_amount_cents + amount_delta_cents)
    return replace(
        progress,
        current_amount_cents=current,
        status=goal_status(current, progress.target_amount_cents),
    )


@dataclass(frozen=True)
class LoanState:
    total_amount_cents: int
    emi_amount_cents: int
    interest_rate_bps: int
    start_date: date
    # Running sum of principal taken off by payments, never floored.
    principal_paid_cents: int
    paid_installments: int

    @property
    def remaining_balance_cents(self) -> int:
        return min(
            self.total_amount_cents,
            max(0, self.total_amount_cents - self.principal_paid_cents),
        )

    @property
    def next_due_date(self) -> date:
        return add_months(self.start_date, self.paid_installments + 1)


def monthly_interest_cents(emi_amount_cents: int, interest_rate_bps: int) -> int:
    raw = Decimal(emi_amount_cents) * Decimal(interest_rate_bps) / Decimal(10_000 * 12)
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def principal_portion(state: LoanState, payment_cents: int) -> int:
    interest = monthly_interest_cents(state.emi_amount_cents, state.interest_rate_bps)
    return max(0, payment_cents - interest)


def apply_loan(state: LoanState, payment_delta_cents: int) -> LoanState:
    """Record (positive delta) or reverse (negative delta) one installment.

    The remaining balance and due date are derived from the running totals,
    so a reversal undoes exactly what the matching payment applied.
    """
    if payment_delta_cents == 0:
        return state
    principal = principal_portion(state, abs(payment_delta_cents))
    step = 1 if payment_delta_cents > 0 else -1
    return replace(
        state,
        principal_paid_cents=state.principal_paid_cents + step * principal,
        paid_installments=max(0, state.paid_installments + step),
    )


def apply_savings(touched_at: Optional[datetime] = None) -> datetime:
    # The balance lives on the linked account; only the bookkeeping stamp moves.
    return touched_at or datetime.utcnow()
