import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy.orm import Session

from config import get_settings
from database import Store
from errors import (
    Conflict,
    Forbidden,
    InvalidInput,
    LedgerError,
    NotAuthenticated,
    NotFound,
    PreconditionFailed,
    StoreUnavailable,
)
from identity import IdentityProvider, Principal
from periods import resolve_period
from scheduler import SchedulerManager
from schemas import (
    AllocationOut,
    BudgetAssignmentIn,
    CategoryIn,
    CategoryOut,
    CategoryPatch,
    ExpenseIn,
    ExpenseOut,
    ExpensePatch,
    IncomeIn,
    IncomeOut,
    IncomePatch,
    MonthlySummaryOut,
    PaymentTaskOut,
    PaymentTemplateIn,
    PaymentTemplateOut,
    PaymentTemplatePatch,
    PocketOut,
    RolloverOut,
    TaskCompletionIn,
)
from services import (
    BudgetService,
    CategoryService,
    ExpenseService,
    GroupService,
    IncomeService,
    PaymentTaskService,
    Pocket,
    perform_monthly_rollover,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Household Pockets")

STATUS_CODES = {
    NotAuthenticated: 401,
    Forbidden: 403,
    NotFound: 404,
    InvalidInput: 400,
    PreconditionFailed: 412,
    Conflict: 409,
    StoreUnavailable: 503,
}


def http_error(exc: LedgerError) -> HTTPException:
    status_code = next(
        (code for kind, code in STATUS_CODES.items() if isinstance(exc, kind)), 400
    )
    detail = {"error": type(exc).__name__, "message": exc.message}
    if exc.field:
        detail["field"] = exc.field
    headers = {"Retry-After": "1"} if exc.retryable else None
    return HTTPException(status_code=status_code, detail=detail, headers=headers)


def get_store(request: Request) -> Store:
    store = getattr(request.app.state, "store", None)
    if store is None:
        store = Store()
        request.app.state.store = store
    return store


def get_db(store: Store = Depends(get_store)):
    db = store.session()
    try:
        yield db
    finally:
        db.close()


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def current_principal(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> Principal:
    try:
        return IdentityProvider(db).current_principal(_bearer(authorization))
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    if getattr(app.state, "store", None) is None:
        app.state.store = Store()
    app.state.scheduler = SchedulerManager(app.state.store)
    app.state.scheduler.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager = getattr(app.state, "scheduler", None)
    if scheduler_manager:
        scheduler_manager.stop()
    store = getattr(app.state, "store", None)
    if store:
        store.dispose()
        app.state.store = None


def pocket_out(pocket: Pocket) -> PocketOut:
    info = pocket.pace.info
    return PocketOut(
        allocation=AllocationOut.model_validate(pocket.allocation),
        category_name=pocket.category.name,
        status=info.status.value,
        percentage=info.percentage,
        color=info.color,
        days_remaining=pocket.pace.days_remaining,
        recommended_daily=pocket.pace.recommended_daily,
        average_daily=pocket.pace.average_daily,
        over_budget=pocket.pace.over_budget,
        editable=pocket.editable,
    )


@app.get("/api/groups/{group_id}/categories", response_model=list[CategoryOut])
def list_categories(
    group_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return CategoryService(db, principal).list_all(group_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post(
    "/api/groups/{group_id}/categories", response_model=CategoryOut, status_code=201
)
def create_category(
    group_id: int,
    payload: CategoryIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return CategoryService(db, principal).create(group_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryPatch,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return CategoryService(db, principal).update(category_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        CategoryService(db, principal).delete(category_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/api/groups/{group_id}/budgets", response_model=list[PocketOut])
def list_budgets(
    group_id: int,
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        pockets = BudgetService(db, principal).pockets_for_month(group_id, month, year)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return [pocket_out(pocket) for pocket in pockets]


@app.put("/api/groups/{group_id}/budgets")
def assign_budgets(
    group_id: int,
    payload: BudgetAssignmentIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        result = BudgetService(db, principal).assign(group_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {
        "budgets": [AllocationOut.model_validate(b) for b in result.budgets],
        "failures": result.failures,
    }


@app.get("/api/groups/{group_id}/expenses", response_model=list[ExpenseOut])
def list_expenses(
    group_id: int,
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    category_id: Optional[int] = None,
    created_by: Optional[int] = None,
    limit: Optional[int] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return ExpenseService(db, principal).list(
            group_id,
            resolve_period(period, start, end),
            category_id=category_id,
            created_by=created_by,
            limit=limit,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/groups/{group_id}/expenses", response_model=ExpenseOut, status_code=201)
def record_expense(
    group_id: int,
    payload: ExpenseIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return ExpenseService(db, principal).record(group_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/api/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return ExpenseService(db, principal).get(expense_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch("/api/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int,
    payload: ExpensePatch,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return ExpenseService(db, principal).update(expense_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        ExpenseService(db, principal).delete(expense_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/recurring-expenses/{rule_id}/pause")
def pause_recurring_expense(
    rule_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        rule = ExpenseService(db, principal).set_recurrence_paused(rule_id, True)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"id": rule.id, "is_paused": rule.is_paused}


@app.post("/api/recurring-expenses/{rule_id}/resume")
def resume_recurring_expense(
    rule_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        rule = ExpenseService(db, principal).set_recurrence_paused(rule_id, False)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"id": rule.id, "is_paused": rule.is_paused}


@app.get("/api/groups/{group_id}/summary", response_model=MonthlySummaryOut)
def monthly_summary(
    group_id: int,
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return BudgetService(db, principal).monthly_summary(group_id, month, year)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/api/groups/{group_id}/incomes", response_model=list[IncomeOut])
def list_incomes(
    group_id: int,
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return IncomeService(db, principal).list_for_month(group_id, month, year)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/groups/{group_id}/incomes", response_model=IncomeOut, status_code=201)
def record_income(
    group_id: int,
    payload: IncomeIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return IncomeService(db, principal).record(group_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch("/api/incomes/{income_id}", response_model=IncomeOut)
def update_income(
    income_id: int,
    payload: IncomePatch,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return IncomeService(db, principal).update(income_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/incomes/{income_id}", status_code=204)
def delete_income(
    income_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        IncomeService(db, principal).delete(income_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get(
    "/api/groups/{group_id}/payment-templates",
    response_model=list[PaymentTemplateOut],
)
def list_payment_templates(
    group_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return PaymentTaskService(db, principal).list_templates(group_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post(
    "/api/groups/{group_id}/payment-templates",
    response_model=PaymentTemplateOut,
    status_code=201,
)
def create_payment_template(
    group_id: int,
    payload: PaymentTemplateIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return PaymentTaskService(db, principal).create_template(group_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch("/api/payment-templates/{template_id}", response_model=PaymentTemplateOut)
def update_payment_template(
    template_id: int,
    payload: PaymentTemplatePatch,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return PaymentTaskService(db, principal).update_template(template_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/payment-templates/{template_id}", status_code=204)
def deactivate_payment_template(
    template_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        PaymentTaskService(db, principal).deactivate_template(template_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/api/groups/{group_id}/payment-tasks", response_model=list[PaymentTaskOut])
def list_payment_tasks(
    group_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return PaymentTaskService(db, principal).list_tasks(group_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/payment-tasks/{task_id}/complete", response_model=PaymentTaskOut)
def complete_payment_task(
    task_id: int,
    payload: TaskCompletionIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return PaymentTaskService(db, principal).complete(task_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/payment-tasks/{task_id}/reopen", response_model=PaymentTaskOut)
def reopen_payment_task(
    task_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        return PaymentTaskService(db, principal).reopen(task_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/groups/{group_id}/leave")
def leave_group(
    group_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        pruned = GroupService(db, principal).leave(group_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"left": group_id, "pruned_categories": pruned}


@app.delete("/api/groups/{group_id}/members/{user_id}")
def remove_group_member(
    group_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
):
    try:
        pruned = GroupService(db, principal).remove_member(group_id, user_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"removed": user_id, "pruned_categories": pruned}


@app.post("/api/cron/rollover", response_model=RolloverOut)
def cron_rollover(
    authorization: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    secret = get_settings().cron_secret
    if not secret or _bearer(authorization) != secret:
        raise HTTPException(status_code=401, detail="Unauthorized")
    result = perform_monthly_rollover(store)
    logger.info(
        "cron_rollover: reset=%s created=%s errors=%s",
        result.reset_count,
        result.created_count,
        len(result.errors),
    )
    return RolloverOut(
        reset_count=result.reset_count,
        created_count=result.created_count,
        month=result.month,
        year=result.year,
        errors=result.errors,
    )
