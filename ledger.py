"""
ledger.py
---------
Savings-goal contributions.

``save_goals.saved_amount`` caches the sum of a goal's contribution rows.
Every mutation here changes the rows and the cached total inside one
database transaction, locking the affected goal rows first and moving the
total with an in-database ``saved_amount = saved_amount + delta`` so two
concurrent writers never overwrite each other's adjustment.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from database import GoalContribution, SaveGoal, atomic, guarded
from errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)


def to_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidInput("Amount must be a number") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidInput("Amount must be a positive number")
    return amount


def to_date(value) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise InvalidInput(f"Invalid date: {value!r}") from exc


def _lock_goal(db: Session, goal_id: int) -> SaveGoal:
    goal = db.execute(
        select(SaveGoal).where(SaveGoal.id == goal_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if goal is None:
        raise NotFound(f"Goal {goal_id} not found")
    return goal


def _lock_contribution(db: Session, contribution_id: int) -> GoalContribution:
    contribution = db.execute(
        select(GoalContribution).where(GoalContribution.id == contribution_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if contribution is None:
        raise NotFound(f"Contribution {contribution_id} not found")
    return contribution


def _shift_saved_amount(db: Session, goal_id: int, delta: Decimal):
    db.execute(
        update(SaveGoal)
        .where(SaveGoal.id == goal_id)
        .values(saved_amount=SaveGoal.saved_amount + delta)
    )


def add_contribution(db: Session, goal_id: int, amount, contribution_date) -> GoalContribution:
    amount = to_amount(amount)
    contribution_date = to_date(contribution_date)

    with atomic(db):
        _lock_goal(db, goal_id)
        contribution = GoalContribution(goal_id=goal_id, amount=amount, date=contribution_date)
        db.add(contribution)
        db.flush()
        _shift_saved_amount(db, goal_id, amount)

    logger.info("Added contribution %s of %s to goal %s", contribution.id, amount, goal_id)
    return contribution


def update_contribution(
    db: Session,
    contribution_id: int,
    goal_id: Optional[int] = None,
    amount=None,
    contribution_date=None,
) -> GoalContribution:
    """
    Edits a contribution and rebalances the cached totals.

    Moving a contribution to another goal takes its old amount off the old
    goal and puts the new amount on the new one.
    """
    new_amount = to_amount(amount) if amount is not None else None
    new_date = to_date(contribution_date) if contribution_date is not None else None

    with atomic(db):
        contribution = _lock_contribution(db, contribution_id)
        old_goal_id = contribution.goal_id
        old_amount = contribution.amount
        target_goal_id = goal_id if goal_id is not None else old_goal_id
        target_amount = new_amount if new_amount is not None else old_amount

        # fixed lock order so two movers between the same goals cannot deadlock
        for locked_id in sorted({old_goal_id, target_goal_id}):
            _lock_goal(db, locked_id)

        if target_goal_id == old_goal_id:
            delta = target_amount - old_amount
            if delta:
                _shift_saved_amount(db, old_goal_id, delta)
        else:
            _shift_saved_amount(db, old_goal_id, -old_amount)
            _shift_saved_amount(db, target_goal_id, target_amount)

        contribution.goal_id = target_goal_id
        contribution.amount = target_amount
        if new_date is not None:
            contribution.date = new_date

    logger.info(
        "Updated contribution %s: goal %s -> %s, amount %s -> %s",
        contribution_id, old_goal_id, target_goal_id, old_amount, target_amount,
    )
    return contribution


def delete_contribution(db: Session, contribution_id: int) -> None:
    with atomic(db):
        contribution = _lock_contribution(db, contribution_id)
        goal_id = contribution.goal_id
        amount = contribution.amount
        _lock_goal(db, goal_id)
        _shift_saved_amount(db, goal_id, -amount)
        db.delete(contribution)

    logger.info("Deleted contribution %s (%s) from goal %s", contribution_id, amount, goal_id)


def get_contribution(db: Session, contribution_id: int) -> GoalContribution:
    with guarded("contribution"):
        contribution = db.get(GoalContribution, contribution_id)
    if contribution is None:
        raise NotFound(f"Contribution {contribution_id} not found")
    return contribution


def list_contributions(db: Session, goal_id: int) -> List[GoalContribution]:
    """Newest first; same-day entries newest id first."""
    with guarded("contributions"):
        if db.get(SaveGoal, goal_id) is None:
            raise NotFound(f"Goal {goal_id} not found")
        return list(
            db.scalars(
                select(GoalContribution)
                .where(GoalContribution.goal_id == goal_id)
                .order_by(GoalContribution.date.desc(), GoalContribution.id.desc())
            )
        )


def recalculate_saved_amount(db: Session, goal_id: int) -> Decimal:
    """Rewrites the cached total from the contribution rows."""
    with atomic(db):
        _lock_goal(db, goal_id)
        total = db.scalar(
            select(func.coalesce(func.sum(GoalContribution.amount), 0)).where(GoalContribution.goal_id == goal_id)
        )
        db.execute(update(SaveGoal).where(SaveGoal.id == goal_id).values(saved_amount=total))

    logger.info("Recalculated saved amount of goal %s: %s", goal_id, total)
    return Decimal(str(total))
