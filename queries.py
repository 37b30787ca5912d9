"""
queries.py
----------
Record-level reads and writes for users, categories, transactions and
goals, plus the DataFrame fetchers the report endpoints hand to
``reports.py``. Goal contributions live in ``ledger.py``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from auth import ensure_unique_identity, hash_password
from database import Category, GoalContribution, SaveGoal, Transaction, User, atomic, guarded
from errors import Conflict, InvalidInput, NotFound
from ledger import to_amount, to_date
from reports import CONTRIBUTION_COLUMNS, GOAL_COLUMNS, TRANSACTION_COLUMNS

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 100

# Sortable columns per entity; anything else falls back to id.
USER_SORT = {"id": User.id, "name": User.name, "username": User.username, "email": User.email}
CATEGORY_SORT = {"id": Category.id, "name": Category.name, "created_at": Category.created_at}
TRANSACTION_SORT = {
    "id": Transaction.id,
    "date": Transaction.date,
    "amount": Transaction.amount,
    "type": Transaction.type,
    "created_at": Transaction.created_at,
}
GOAL_SORT = {
    "id": SaveGoal.id,
    "name": SaveGoal.name,
    "goal_amount": SaveGoal.goal_amount,
    "target_amount": SaveGoal.goal_amount,
    "saved_amount": SaveGoal.saved_amount,
    "start_date": SaveGoal.start_date,
    "end_date": SaveGoal.end_date,
    "deadline": SaveGoal.end_date,
    "status": SaveGoal.status,
    "created_at": SaveGoal.created_at,
}


@dataclass
class PageParams:
    page: int = 1
    limit: int = DEFAULT_LIMIT
    sort: str = "id"
    order: str = "ASC"

    def normalized(self, allowed: Dict) -> "PageParams":
        return PageParams(
            page=self.page if self.page and self.page >= 1 else 1,
            limit=min(max(self.limit or DEFAULT_LIMIT, 1), MAX_LIMIT),
            sort=self.sort if self.sort in allowed else "id",
            order="DESC" if str(self.order or "").upper() == "DESC" else "ASC",
        )


@dataclass
class Page:
    items: List
    total: int
    params: PageParams

    def pagination(self) -> Dict:
        total_pages = math.ceil(self.total / self.params.limit) if self.total else 0
        return {
            "current_page": self.params.page,
            "total_pages": total_pages,
            "total": self.total,
            "limit": self.params.limit,
            "has_next_page": self.params.page < total_pages,
            "has_previous_page": self.params.page > 1,
        }


@dataclass
class TransactionFilters:
    user_ids: Sequence[int] = field(default_factory=list)
    category_ids: Sequence[int] = field(default_factory=list)
    type: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None


@dataclass
class GoalFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[str] = None


def _paginate(db: Session, stmt, model, allowed: Dict, params: Optional[PageParams], what: str) -> Page:
    params = (params or PageParams()).normalized(allowed)
    column = allowed[params.sort]
    ordering = [column.desc() if params.order == "DESC" else column.asc()]
    if params.sort != "id":
        ordering.append(model.id.asc())

    with guarded(what):
        total = db.scalar(select(func.count()).select_from(stmt.subquery()))
        items = list(
            db.scalars(stmt.order_by(*ordering).limit(params.limit).offset((params.page - 1) * params.limit))
        )
    return Page(items=items, total=total or 0, params=params)


def _get(db: Session, model, record_id: int, label: str):
    with guarded(label):
        record = db.get(model, record_id)
    if record is None:
        raise NotFound(f"{label.capitalize()} {record_id} not found")
    return record


# --- Users ---

def list_users(db: Session, name: str = None, username: str = None, email: str = None, params: PageParams = None) -> Page:
    stmt = select(User)
    if name:
        stmt = stmt.where(User.name.like(f"%{name}%"))
    if username:
        stmt = stmt.where(User.username.like(f"%{username}%"))
    if email:
        stmt = stmt.where(User.email.like(f"%{email}%"))
    return _paginate(db, stmt, User, USER_SORT, params, "users")


def get_user(db: Session, user_id: int) -> User:
    return _get(db, User, user_id, "user")


def update_user(db: Session, user_id: int, changes: Dict) -> User:
    user = get_user(db, user_id)
    if "email" in changes and changes["email"]:
        changes["email"] = changes["email"].strip().lower()
    ensure_unique_identity(db, username=changes.get("username"), email=changes.get("email"), exclude_id=user_id)

    with atomic(db):
        for key in ("name", "username", "email"):
            if changes.get(key):
                setattr(user, key, changes[key].strip())
        if changes.get("password"):
            user.password_hash = hash_password(changes["password"])
    return user


def delete_user(db: Session, user_id: int) -> None:
    user = get_user(db, user_id)
    with atomic(db):
        db.delete(user)
    logger.info("Deleted user %s and their transactions", user_id)


# --- Categories ---

def list_categories(db: Session, params: PageParams = None) -> Page:
    return _paginate(db, select(Category), Category, CATEGORY_SORT, params, "categories")


def get_category(db: Session, category_id: int) -> Category:
    return _get(db, Category, category_id, "category")


def create_category(db: Session, name: str) -> Category:
    category = Category(name=name.strip())
    with atomic(db):
        db.add(category)
    return category


def update_category(db: Session, category_id: int, name: str) -> Category:
    category = get_category(db, category_id)
    with atomic(db):
        category.name = name.strip()
    return category


def delete_category(db: Session, category_id: int) -> None:
    """Refuses to drop a category that transactions still point at."""
    category = get_category(db, category_id)
    with guarded("transactions"):
        in_use = db.scalar(select(func.count()).where(Transaction.category_id == category_id))
    if in_use:
        raise Conflict(f"Category {category_id} is used by {in_use} transaction(s)")
    with atomic(db):
        db.delete(category)


# --- Transactions ---

def _transaction_conditions(filters: Optional[TransactionFilters]) -> List:
    filters = filters or TransactionFilters()
    conditions = []
    if filters.user_ids:
        conditions.append(Transaction.user_id.in_(list(filters.user_ids)))
    if filters.category_ids:
        conditions.append(Transaction.category_id.in_(list(filters.category_ids)))
    if filters.type:
        conditions.append(Transaction.type == filters.type)
    if filters.start_date:
        conditions.append(Transaction.date >= filters.start_date)
    if filters.end_date:
        conditions.append(Transaction.date <= filters.end_date)
    if filters.min_amount is not None:
        conditions.append(Transaction.amount >= filters.min_amount)
    if filters.max_amount is not None:
        conditions.append(Transaction.amount <= filters.max_amount)
    return conditions


def list_transactions(db: Session, filters: TransactionFilters = None, params: PageParams = None) -> Page:
    stmt = select(Transaction).where(*_transaction_conditions(filters))
    return _paginate(db, stmt, Transaction, TRANSACTION_SORT, params, "transactions")


def get_transaction(db: Session, transaction_id: int) -> Transaction:
    return _get(db, Transaction, transaction_id, "transaction")


def _check_transaction_refs(db: Session, user_id: Optional[int], category_id: Optional[int]):
    if user_id is not None:
        get_user(db, user_id)
    if category_id is not None:
        get_category(db, category_id)


def create_transaction(
    db: Session, user_id: int, category_id: int, amount, type: str, tx_date, note: str = None
) -> Transaction:
    _check_transaction_refs(db, user_id, category_id)
    transaction = Transaction(
        user_id=user_id,
        category_id=category_id,
        amount=to_amount(amount),
        type=type,
        date=to_date(tx_date),
        note=note,
    )
    with atomic(db):
        db.add(transaction)
    return transaction


def update_transaction(db: Session, transaction_id: int, changes: Dict) -> Transaction:
    transaction = get_transaction(db, transaction_id)
    _check_transaction_refs(db, changes.get("user_id"), changes.get("category_id"))

    with atomic(db):
        if changes.get("user_id") is not None:
            transaction.user_id = changes["user_id"]
        if changes.get("category_id") is not None:
            transaction.category_id = changes["category_id"]
        if changes.get("amount") is not None:
            transaction.amount = to_amount(changes["amount"])
        if changes.get("type"):
            transaction.type = changes["type"]
        if changes.get("date") is not None:
            transaction.date = to_date(changes["date"])
        if "note" in changes:
            transaction.note = changes["note"]
    return transaction


def delete_transaction(db: Session, transaction_id: int) -> None:
    transaction = get_transaction(db, transaction_id)
    with atomic(db):
        db.delete(transaction)


def transactions_to_df(db: Session, filters: TransactionFilters = None) -> pd.DataFrame:
    stmt = (
        select(
            Transaction.id,
            Transaction.user_id,
            Transaction.category_id,
            Category.name.label("category_name"),
            Transaction.amount,
            Transaction.type,
            Transaction.date,
            Transaction.note,
        )
        .join(Category, Category.id == Transaction.category_id, isouter=True)
        .where(*_transaction_conditions(filters))
    )
    with guarded("transactions report"):
        rows = db.execute(stmt).all()

    if not rows:
        return pd.DataFrame(columns=TRANSACTION_COLUMNS)
    df = pd.DataFrame([dict(row._mapping) for row in rows], columns=TRANSACTION_COLUMNS)
    df["amount"] = df["amount"].astype(float)
    return df


# --- Goals ---

def _goal_conditions(filters: Optional[GoalFilters]) -> List:
    filters = filters or GoalFilters()
    conditions = []
    if filters.start_date:
        conditions.append(SaveGoal.start_date >= filters.start_date)
    if filters.end_date:
        conditions.append(SaveGoal.end_date <= filters.end_date)
    if filters.status:
        conditions.append(SaveGoal.status == filters.status)
    return conditions


def list_goals(db: Session, filters: GoalFilters = None, params: PageParams = None) -> Page:
    stmt = select(SaveGoal).where(*_goal_conditions(filters))
    return _paginate(db, stmt, SaveGoal, GOAL_SORT, params, "goals")


def get_goal(db: Session, goal_id: int) -> SaveGoal:
    return _get(db, SaveGoal, goal_id, "goal")


def create_goal(
    db: Session,
    name: str,
    goal_amount,
    end_date,
    start_date=None,
    description: str = None,
    status: str = "active",
    saved_amount=None,
) -> SaveGoal:
    """
    Creates a goal. An opening ``saved_amount`` is booked as a contribution
    dated on the start date so the cached total matches its rows.
    """
    start_date = to_date(start_date) if start_date is not None else date.today()
    end_date = to_date(end_date)
    if end_date < start_date:
        raise InvalidInput("End date must not be before start date")
    opening = to_amount(saved_amount) if saved_amount else None

    goal = SaveGoal(
        name=name.strip(),
        description=description,
        goal_amount=to_amount(goal_amount),
        saved_amount=opening or 0,
        status=status or "active",
        start_date=start_date,
        end_date=end_date,
    )
    with atomic(db):
        db.add(goal)
        db.flush()
        if opening:
            db.add(GoalContribution(goal_id=goal.id, amount=opening, date=start_date))

    logger.info("Created goal %s (%s)", goal.id, goal.name)
    return goal


def update_goal(db: Session, goal_id: int, changes: Dict) -> SaveGoal:
    goal = get_goal(db, goal_id)
    start_date = to_date(changes["start_date"]) if changes.get("start_date") is not None else goal.start_date
    end_date = to_date(changes["end_date"]) if changes.get("end_date") is not None else goal.end_date
    if end_date < start_date:
        raise InvalidInput("End date must not be before start date")

    with atomic(db):
        if changes.get("name"):
            goal.name = changes["name"].strip()
        if "description" in changes:
            goal.description = changes["description"]
        if changes.get("goal_amount") is not None:
            goal.goal_amount = to_amount(changes["goal_amount"])
        if changes.get("status"):
            goal.status = changes["status"]
        goal.start_date = start_date
        goal.end_date = end_date
    return goal


def delete_goal(db: Session, goal_id: int) -> None:
    goal = get_goal(db, goal_id)
    with atomic(db):
        db.delete(goal)
    logger.info("Deleted goal %s and its contributions", goal_id)


def goals_to_df(db: Session, filters: GoalFilters = None) -> pd.DataFrame:
    with guarded("goals report"):
        goals = list(db.scalars(select(SaveGoal).where(*_goal_conditions(filters)).order_by(SaveGoal.id)))

    if not goals:
        return pd.DataFrame(columns=GOAL_COLUMNS)
    return pd.DataFrame(
        [
            {
                "id": g.id,
                "name": g.name,
                "description": g.description,
                "goal_amount": float(g.goal_amount),
                "saved_amount": float(g.saved_amount or 0),
                "status": g.status,
                "start_date": g.start_date,
                "end_date": g.end_date,
            }
            for g in goals
        ],
        columns=GOAL_COLUMNS,
    )


def contributions_to_df(db: Session, goal_ids: Sequence[int]) -> pd.DataFrame:
    if len(goal_ids) == 0:
        return pd.DataFrame(columns=CONTRIBUTION_COLUMNS)
    stmt = (
        select(GoalContribution)
        .where(GoalContribution.goal_id.in_([int(i) for i in goal_ids]))
        .order_by(GoalContribution.date, GoalContribution.id)
    )
    with guarded("contributions report"):
        contributions = list(db.scalars(stmt))

    if not contributions:
        return pd.DataFrame(columns=CONTRIBUTION_COLUMNS)
    return pd.DataFrame(
        [{"id": c.id, "goal_id": c.goal_id, "amount": float(c.amount), "date": c.date} for c in contributions],
        columns=CONTRIBUTION_COLUMNS,
    )
