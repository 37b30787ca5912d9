"""Finance tracker REST API over FastAPI."""

import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import ledger
import queries
import reports
from auth import authenticate, register_user
from database import get_db, init_db
from errors import FinanceError, InvalidInput
from queries import GoalFilters, PageParams, TransactionFilters
from schemas import (
    CategoryPayload,
    CategoryResponse,
    ContributionCreate,
    ContributionResponse,
    ContributionUpdate,
    GoalCreate,
    GoalResponse,
    GoalStatus,
    GoalUpdate,
    LoginRequest,
    PageResponse,
    RecalculateResponse,
    RegisterRequest,
    ReportResponse,
    TransactionCreate,
    TransactionResponse,
    TransactionType,
    TransactionUpdate,
    UserResponse,
    UserUpdate,
)

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173")
API_PORT = int(os.getenv("API_PORT", "8000"))

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Finance Tracker API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FinanceError)
async def finance_error_handler(request: Request, exc: FinanceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": {"message": exc.message}})


def get_today() -> date:
    return date.today()


def get_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[int]:
    if not x_user_id:
        return None
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise InvalidInput("Invalid user identity") from exc


def page_params(
    page: int = Query(1, ge=1),
    limit: int = Query(queries.DEFAULT_LIMIT, ge=1, le=queries.MAX_LIMIT),
    sort: str = Query("id"),
    order: str = Query("ASC"),
) -> PageParams:
    return PageParams(page=page, limit=limit, sort=sort, order=order)


def transaction_filters(
    user_ids: List[int] = Query([]),
    category_ids: List[int] = Query([]),
    type: Optional[TransactionType] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    min_amount: Optional[float] = Query(None, ge=0),
    max_amount: Optional[float] = Query(None, ge=0),
) -> TransactionFilters:
    return TransactionFilters(
        user_ids=user_ids,
        category_ids=category_ids,
        type=type,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
    )


def goal_filters(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    status: Optional[GoalStatus] = Query(None),
) -> GoalFilters:
    return GoalFilters(start_date=start_date, end_date=end_date, status=status)


def paged(page, schema):
    return {"data": [schema.model_validate(item) for item in page.items], "pagination": page.pagination()}


# --- Users ---

@app.post("/api/users/register", response_model=UserResponse, status_code=201)
def register(req: RegisterRequest, db: Session = Depends(get_db)):
    return register_user(db, req.name, req.username, req.email, req.password)


@app.post("/api/users/login", response_model=UserResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    return authenticate(db, req.username, req.password)


@app.get("/api/users", response_model=PageResponse[UserResponse])
def list_users(
    name: Optional[str] = Query(None),
    username: Optional[str] = Query(None),
    email: Optional[str] = Query(None),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
):
    page = queries.list_users(db, name=name, username=username, email=email, params=params)
    return paged(page, UserResponse)


@app.post("/api/users", response_model=UserResponse, status_code=201)
def create_user(req: RegisterRequest, db: Session = Depends(get_db)):
    return register_user(db, req.name, req.username, req.email, req.password)


@app.get("/api/users/{user_id}", response_model=UserResponse)
def get_user(user_id: int, db: Session = Depends(get_db)):
    return queries.get_user(db, user_id)


@app.put("/api/users/{user_id}", response_model=UserResponse)
def update_user(user_id: int, req: UserUpdate, db: Session = Depends(get_db)):
    return queries.update_user(db, user_id, req.model_dump(exclude_unset=True))


@app.delete("/api/users/{user_id}", status_code=204)
def delete_user(user_id: int, db: Session = Depends(get_db)):
    queries.delete_user(db, user_id)
    return Response(status_code=204)


# --- Categories ---

@app.get("/api/categories", response_model=PageResponse[CategoryResponse])
def list_categories(params: PageParams = Depends(page_params), db: Session = Depends(get_db)):
    return paged(queries.list_categories(db, params), CategoryResponse)


@app.post("/api/categories", response_model=CategoryResponse, status_code=201)
def create_category(req: CategoryPayload, db: Session = Depends(get_db)):
    return queries.create_category(db, req.name)


@app.get("/api/categories/{category_id}", response_model=CategoryResponse)
def get_category(category_id: int, db: Session = Depends(get_db)):
    return queries.get_category(db, category_id)


@app.put("/api/categories/{category_id}", response_model=CategoryResponse)
def update_category(category_id: int, req: CategoryPayload, db: Session = Depends(get_db)):
    return queries.update_category(db, category_id, req.name)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(category_id: int, db: Session = Depends(get_db)):
    queries.delete_category(db, category_id)
    return Response(status_code=204)


# --- Transactions ---

@app.get("/api/transactions", response_model=PageResponse[TransactionResponse])
def list_transactions(
    filters: TransactionFilters = Depends(transaction_filters),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
):
    return paged(queries.list_transactions(db, filters, params), TransactionResponse)


@app.post("/api/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    req: TransactionCreate,
    user_id: Optional[int] = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    owner_id = req.user_id or user_id
    if owner_id is None:
        raise InvalidInput("user_id is required (body or x-user-id header)")
    return queries.create_transaction(db, owner_id, req.category_id, req.amount, req.type, req.date, req.note)


@app.get("/api/transactions/reports/summary")
def transaction_summary(
    filters: TransactionFilters = Depends(transaction_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    return reports.transaction_report(queries.transactions_to_df(db, filters), today)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return queries.get_transaction(db, transaction_id)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(transaction_id: int, req: TransactionUpdate, db: Session = Depends(get_db)):
    return queries.update_transaction(db, transaction_id, req.model_dump(exclude_unset=True))


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    queries.delete_transaction(db, transaction_id)
    return Response(status_code=204)


# --- Goals and contributions ---

@app.get("/api/goals", response_model=PageResponse[GoalResponse])
def list_goals(
    filters: GoalFilters = Depends(goal_filters),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
):
    return paged(queries.list_goals(db, filters, params), GoalResponse)


@app.post("/api/goals", response_model=GoalResponse, status_code=201)
def create_goal(req: GoalCreate, db: Session = Depends(get_db)):
    return queries.create_goal(
        db,
        name=req.name,
        goal_amount=req.goal_amount,
        end_date=req.end_date,
        start_date=req.start_date,
        description=req.description,
        status=req.status,
        saved_amount=req.saved_amount,
    )


@app.get("/api/goals/{goal_id}", response_model=GoalResponse)
def get_goal(goal_id: int, db: Session = Depends(get_db)):
    return queries.get_goal(db, goal_id)


@app.put("/api/goals/{goal_id}", response_model=GoalResponse)
def update_goal(goal_id: int, req: GoalUpdate, db: Session = Depends(get_db)):
    return queries.update_goal(db, goal_id, req.model_dump(exclude_unset=True))


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(goal_id: int, db: Session = Depends(get_db)):
    queries.delete_goal(db, goal_id)
    return Response(status_code=204)


@app.get("/api/goals/{goal_id}/progress")
def goal_progress(goal_id: int, today: date = Depends(get_today), db: Session = Depends(get_db)):
    goal = queries.get_goal(db, goal_id)
    row = {
        "id": goal.id,
        "name": goal.name,
        "status": goal.status,
        "goal_amount": goal.goal_amount,
        "saved_amount": goal.saved_amount,
        "start_date": goal.start_date,
        "end_date": goal.end_date,
    }
    return reports.progress_entry(row, today)


@app.post("/api/goals/{goal_id}/recalculate", response_model=RecalculateResponse)
def recalculate_goal(goal_id: int, db: Session = Depends(get_db)):
    total = ledger.recalculate_saved_amount(db, goal_id)
    return RecalculateResponse(goal_id=goal_id, saved_amount=float(total))


@app.get("/api/goals/{goal_id}/contributions", response_model=List[ContributionResponse])
def list_contributions(goal_id: int, db: Session = Depends(get_db)):
    return ledger.list_contributions(db, goal_id)


@app.post("/api/goals/{goal_id}/contributions", response_model=ContributionResponse, status_code=201)
def add_contribution(
    goal_id: int,
    req: ContributionCreate,
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    return ledger.add_contribution(db, goal_id, req.amount, req.date or today)


@app.put("/api/contributions/{contribution_id}", response_model=ContributionResponse)
def update_contribution(contribution_id: int, req: ContributionUpdate, db: Session = Depends(get_db)):
    return ledger.update_contribution(
        db, contribution_id, goal_id=req.goal_id, amount=req.amount, contribution_date=req.date
    )


@app.delete("/api/contributions/{contribution_id}", status_code=204)
def delete_contribution(contribution_id: int, db: Session = Depends(get_db)):
    ledger.delete_contribution(db, contribution_id)
    return Response(status_code=204)


# --- Financial reports ---

def _financial_report(filters: TransactionFilters, today: date, db: Session) -> dict:
    return reports.transaction_report(queries.transactions_to_df(db, filters), today)


@app.get("/api/reports/financial", response_model=ReportResponse)
def financial_report(
    filters: TransactionFilters = Depends(transaction_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    report = _financial_report(filters, today, db)
    return ReportResponse(data=report, message="Financial report generated successfully")


@app.get("/api/reports/income-expense", response_model=ReportResponse)
def income_expense(
    filters: TransactionFilters = Depends(transaction_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    report = _financial_report(filters, today, db)
    return ReportResponse(
        data=reports.income_expense_comparison(report),
        message="Income vs expense comparison generated successfully",
    )


@app.get("/api/reports/categories", response_model=ReportResponse)
def categories_report(
    filters: TransactionFilters = Depends(transaction_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    report = _financial_report(filters, today, db)
    return ReportResponse(data=reports.category_analysis(report), message="Category analysis generated successfully")


@app.get("/api/reports/monthly-trends", response_model=ReportResponse)
def monthly_trends_report(
    filters: TransactionFilters = Depends(transaction_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    report = _financial_report(filters, today, db)
    return ReportResponse(data=reports.monthly_trends(report), message="Monthly trends generated successfully")


@app.get("/api/reports/spending-insights", response_model=ReportResponse)
def spending_insights_report(
    filters: TransactionFilters = Depends(transaction_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    report = _financial_report(filters, today, db)
    return ReportResponse(data=reports.spending_insights(report), message="Spending insights generated successfully")


# --- Goal reports ---

def _goal_frames(filters: GoalFilters, db: Session):
    goals = queries.goals_to_df(db, filters)
    contributions = queries.contributions_to_df(db, goals["id"].tolist())
    return goals, contributions


@app.get("/api/goal-reports/overview", response_model=ReportResponse)
def goal_overview_report(
    filters: GoalFilters = Depends(goal_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    goals, contributions = _goal_frames(filters, db)
    return ReportResponse(
        data=reports.goal_overview(goals, contributions, today),
        message="Goal overview report generated successfully",
    )


@app.get("/api/goal-reports/transactions", response_model=ReportResponse)
def goal_transactions_report(
    filters: GoalFilters = Depends(goal_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    goals, contributions = _goal_frames(filters, db)
    return ReportResponse(
        data=reports.contribution_report(goals, contributions, today),
        message="Goal transaction analysis generated successfully",
    )


@app.get("/api/goal-reports/progress", response_model=ReportResponse)
def goal_progress_report(
    filters: GoalFilters = Depends(goal_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    goals = queries.goals_to_df(db, filters)
    return ReportResponse(
        data=reports.progress_report(goals, today),
        message="Goal progress tracking generated successfully",
    )


@app.get("/api/goal-reports/at-risk", response_model=ReportResponse)
def goals_at_risk(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    # only active goals can be at risk
    filters = GoalFilters(start_date=start_date, end_date=end_date, status="active")
    goals, contributions = _goal_frames(filters, db)
    overview = reports.goal_overview(goals, contributions, today)
    return ReportResponse(
        data=reports.goals_at_risk_report(overview),
        message="Goals at risk analysis generated successfully",
    )


@app.get("/api/goal-reports/top-performers", response_model=ReportResponse)
def top_performers(
    filters: GoalFilters = Depends(goal_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    goals, contributions = _goal_frames(filters, db)
    overview = reports.goal_overview(goals, contributions, today)
    return ReportResponse(
        data=reports.top_performers_report(overview),
        message="Top performing goals analysis generated successfully",
    )


@app.get("/api/goal-reports/contribution-trends", response_model=ReportResponse)
def contribution_trends_report(
    filters: GoalFilters = Depends(goal_filters),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    goals, contributions = _goal_frames(filters, db)
    report = reports.contribution_report(goals, contributions, today)
    return ReportResponse(
        data=reports.contribution_trends(report),
        message="Goal contribution trends generated successfully",
    )


@app.get("/api/goal-reports/completion-forecast", response_model=ReportResponse)
def completion_forecast_report(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    filters = GoalFilters(start_date=start_date, end_date=end_date, status="active")
    goals = queries.goals_to_df(db, filters)
    return ReportResponse(
        data=reports.completion_forecast(goals, today),
        message="Goal completion forecast generated successfully",
    )


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api:app", host="0.0.0.0", port=API_PORT, reload=True)
