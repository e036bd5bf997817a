import logging
from datetime import date
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import create_session_factory, create_store_engine
from errors import AuthorizationError, LedgerError
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    BudgetIn,
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
    TransactionOut,
    TransactionPatch,
    TransferIn,
    TransferOut,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    GoalService,
    LedgerService,
    MonthlyAggregateService,
    TrackerService,
    TransactionFilters,
    TransactionService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")

STATUS_BY_KIND = {
    "validation": 422,
    "not_found": 404,
    "forbidden": 403,
    "conflict": 409,
    "internal": 500,
}


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return create_session_factory(create_store_engine(get_settings().database_url))


def get_db(factory: sessionmaker = Depends(get_session_factory)):
    db = factory()
    try:
        yield db
    finally:
        db.close()


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise AuthorizationError("Missing X-User-Id header")
    return x_user_id.strip()


def get_ledger(
    factory: sessionmaker = Depends(get_session_factory),
    user_id: str = Depends(get_user_id),
) -> LedgerService:
    return LedgerService(factory, user_id)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status = STATUS_BY_KIND.get(exc.kind, 500)
    if status >= 500:
        logger.error(f"request_failed: path={request.url.path} kind={exc.kind} detail={exc.message}")
    return JSONResponse(status_code=status, content={"error": exc.kind, "detail": exc.message})


scheduler_manager: Optional[SchedulerManager] = None


@app.on_event("startup")
def startup_event():
    global scheduler_manager
    scheduler_manager = SchedulerManager(get_session_factory())
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(data: TransactionIn, ledger: LedgerService = Depends(get_ledger)):
    return ledger.create_transaction(data)


@app.patch("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    patch: TransactionPatch,
    ledger: LedgerService = Depends(get_ledger),
):
    return ledger.update_transaction(transaction_id, patch)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, ledger: LedgerService = Depends(get_ledger)):
    return {"deleted": ledger.delete_transaction(transaction_id)}


@app.post("/transfers", response_model=TransferOut, status_code=201)
def create_transfer(data: TransferIn, ledger: LedgerService = Depends(get_ledger)):
    sent, received = ledger.create_transfer(data)
    return TransferOut(
        from_transaction=TransactionOut.model_validate(sent),
        to_transaction=TransactionOut.model_validate(received),
    )


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(
    year: Optional[int] = None,
    month: Optional[int] = None,
    category_id: Optional[int] = None,
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    filters = TransactionFilters(
        year=year, month=month, category_id=category_id, account_id=account_id
    )
    return TransactionService(db, user_id).list(filters)


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    return TransactionService(db, user_id).get(transaction_id)


@app.get("/aggregates/{year}/{month}", response_model=MonthlyAggregateOut)
def monthly_aggregate(
    year: int,
    month: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return MonthlyAggregateService(db, user_id).get_or_build(year, month)


@app.post("/accounts", status_code=201)
def create_account(
    data: AccountIn, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    return _account_payload(AccountService(db, user_id).create(data))


@app.get("/accounts")
def list_accounts(db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    return [_account_payload(a) for a in AccountService(db, user_id).list_all()]


@app.get("/accounts/{account_id}")
def get_account(
    account_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    return _account_payload(AccountService(db, user_id).get(account_id))


def _account_payload(account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "account_class": account.account_class.value,
        "currency": account.currency,
        "balance_cents": account.balance_cents,
    }


@app.post("/categories", status_code=201)
def create_category(
    data: CategoryIn, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    category = CategoryService(db, user_id).create(data)
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "include_in_budget": category.include_in_budget,
    }


@app.post("/budgets", status_code=201)
def create_budget(
    data: BudgetIn, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    budget = BudgetService(db, user_id).create(data)
    return _budget_payload(budget)


@app.post("/budgets/{budget_id}/recalculate")
def recalculate_budget(
    budget_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    return _budget_payload(BudgetService(db, user_id).recalculate_spent(budget_id))


@app.post("/budget-templates", status_code=201)
def create_budget_template(
    data: RecurringBudgetTemplateIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    tmpl = BudgetService(db, user_id).create_template(data)
    return {
        "id": tmpl.id,
        "name": tmpl.name,
        "category_id": tmpl.category_id,
        "is_overall": tmpl.is_overall,
        "amount_cents": tmpl.amount_cents,
        "recurrence_rule": tmpl.recurrence_rule,
        "starts_on": tmpl.starts_on.isoformat(),
        "ends_on": tmpl.ends_on.isoformat() if tmpl.ends_on else None,
    }


@app.post("/budget-templates/{template_id}/materialize/{year}/{month}", status_code=201)
def materialize_budget_template(
    template_id: int,
    year: int,
    month: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    budget = BudgetService(db, user_id).materialize_template(template_id, year, month)
    return _budget_payload(budget)


def _budget_payload(budget) -> dict:
    return {
        "id": budget.id,
        "name": budget.name,
        "category_id": budget.category_id,
        "is_overall": budget.is_overall,
        "amount_cents": budget.amount_cents,
        "spent_cents": budget.spent_cents,
        "period": budget.period.value,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat(),
        "template_id": budget.template_id,
    }


@app.post("/goals", status_code=201, response_model=GoalSummary)
def create_goal(
    data: GoalIn, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    service = GoalService(db, user_id)
    goal = service.create(data)
    return service.summary(goal.id)


@app.get("/goals/{goal_id}", response_model=GoalSummary)
def goal_summary(
    goal_id: int,
    today: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return GoalService(db, user_id).summary(goal_id, today)


@app.delete("/goals/{goal_id}")
def delete_goal(
    goal_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    GoalService(db, user_id).delete(goal_id)
    return {"deleted": True}


@app.post("/loan-trackers", status_code=201, response_model=LoanSummary)
def create_loan_tracker(
    data: LoanTrackerIn, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    service = TrackerService(db, user_id)
    tracker = service.create_loan(data)
    return service.loan_summary(tracker.id)


@app.get("/loan-trackers/{tracker_id}", response_model=LoanSummary)
def loan_summary(
    tracker_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    return TrackerService(db, user_id).loan_summary(tracker_id)


@app.post("/savings-trackers", status_code=201, response_model=SavingsSummary)
def create_savings_tracker(
    data: SavingsTrackerIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    service = TrackerService(db, user_id)
    tracker = service.create_savings(data)
    return service.savings_summary(tracker.id)


@app.get("/savings-trackers/{tracker_id}", response_model=SavingsSummary)
def savings_summary(
    tracker_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    return TrackerService(db, user_id).savings_summary(tracker_id)
