from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

import ledger
from database import GoalContribution, SaveGoal, init_db
from errors import InvalidInput, NotFound, StorageFailure


def saved(db, goal_id):
    db.expire_all()
    return float(db.get(SaveGoal, goal_id).saved_amount)


def row_total(db, goal_id):
    total = db.scalar(
        select(func.coalesce(func.sum(GoalContribution.amount), 0)).where(GoalContribution.goal_id == goal_id)
    )
    return float(total)


def row_count(db, goal_id):
    return db.scalar(select(func.count()).where(GoalContribution.goal_id == goal_id))


def test_add_contribution_increments_saved_amount(db, make_goal):
    goal = make_goal()
    ledger.add_contribution(db, goal.id, 100, date(2024, 2, 1))
    assert saved(db, goal.id) == 100

    contribution = ledger.add_contribution(db, goal.id, 50, date(2024, 3, 1))

    assert saved(db, goal.id) == 150
    assert row_count(db, goal.id) == 2
    assert float(contribution.amount) == 50
    assert contribution.date == date(2024, 3, 1)


def test_update_contribution_applies_difference(db, make_goal):
    goal = make_goal()
    ledger.add_contribution(db, goal.id, 100, date(2024, 2, 1))
    contribution = ledger.add_contribution(db, goal.id, 50, date(2024, 2, 2))
    assert saved(db, goal.id) == 150

    ledger.update_contribution(db, contribution.id, amount=30)

    assert saved(db, goal.id) == 130
    assert saved(db, goal.id) == row_total(db, goal.id)


def test_delete_contribution_removes_row_and_amount(db, make_goal):
    goal = make_goal()
    ledger.add_contribution(db, goal.id, 100, date(2024, 2, 1))
    contribution = ledger.add_contribution(db, goal.id, 30, date(2024, 2, 2))
    contribution_id = contribution.id

    ledger.delete_contribution(db, contribution_id)

    assert saved(db, goal.id) == 100
    assert db.get(GoalContribution, contribution_id) is None
    assert row_count(db, goal.id) == 1


def test_moving_contribution_rebalances_both_goals(db, make_goal):
    goal_a = make_goal(name="Goal A")
    goal_b = make_goal(name="Goal B")
    ledger.add_contribution(db, goal_a.id, 80, date(2024, 2, 1))
    moved = ledger.add_contribution(db, goal_a.id, 20, date(2024, 2, 2))
    ledger.add_contribution(db, goal_b.id, 50, date(2024, 2, 3))
    assert (saved(db, goal_a.id), saved(db, goal_b.id)) == (100, 50)

    ledger.update_contribution(db, moved.id, goal_id=goal_b.id)

    assert saved(db, goal_a.id) == 80
    assert saved(db, goal_b.id) == 70
    assert row_total(db, goal_a.id) == 80
    assert row_total(db, goal_b.id) == 70


def test_move_with_new_amount_books_new_amount_on_target(db, make_goal):
    goal_a = make_goal(name="Goal A")
    goal_b = make_goal(name="Goal B")
    moved = ledger.add_contribution(db, goal_a.id, 40, date(2024, 2, 1))

    ledger.update_contribution(db, moved.id, goal_id=goal_b.id, amount=12.5, contribution_date="2024-02-10")

    assert saved(db, goal_a.id) == 0
    assert saved(db, goal_b.id) == 12.5
    contribution = ledger.get_contribution(db, moved.id)
    assert contribution.goal_id == goal_b.id
    assert contribution.date == date(2024, 2, 10)


def test_invariant_holds_across_mixed_sequence(db, make_goal):
    goal_a = make_goal(name="Goal A")
    goal_b = make_goal(name="Goal B")

    first = ledger.add_contribution(db, goal_a.id, 25, date(2024, 1, 5))
    second = ledger.add_contribution(db, goal_a.id, 12.5, date(2024, 1, 6))
    third = ledger.add_contribution(db, goal_b.id, 60, date(2024, 1, 7))
    steps = [
        lambda: ledger.update_contribution(db, first.id, amount=75),
        lambda: ledger.update_contribution(db, second.id, goal_id=goal_b.id),
        lambda: ledger.add_contribution(db, goal_b.id, 0.5, date(2024, 1, 8)),
        lambda: ledger.delete_contribution(db, third.id),
        lambda: ledger.update_contribution(db, second.id, goal_id=goal_a.id, amount=100),
        lambda: ledger.delete_contribution(db, first.id),
    ]
    for step in steps:
        step()
        for goal_id in (goal_a.id, goal_b.id):
            assert saved(db, goal_id) == row_total(db, goal_id)

    assert saved(db, goal_a.id) == 100
    assert saved(db, goal_b.id) == 0.5


def test_list_contributions_orders_newest_first(db, make_goal):
    goal = make_goal()
    older = ledger.add_contribution(db, goal.id, 10, date(2024, 1, 1))
    same_day_first = ledger.add_contribution(db, goal.id, 20, date(2024, 3, 1))
    same_day_second = ledger.add_contribution(db, goal.id, 30, date(2024, 3, 1))

    listed = [c.id for c in ledger.list_contributions(db, goal.id)]

    assert listed == [same_day_second.id, same_day_first.id, older.id]
    assert [c.id for c in ledger.list_contributions(db, goal.id)] == listed


def test_list_contributions_unknown_goal(db):
    with pytest.raises(NotFound):
        ledger.list_contributions(db, 999)


def test_add_contribution_unknown_goal(db):
    with pytest.raises(NotFound):
        ledger.add_contribution(db, 999, 10, date(2024, 1, 1))


@pytest.mark.parametrize("amount", [0, -5, "abc", None])
def test_add_contribution_rejects_bad_amount(db, make_goal, amount):
    goal = make_goal()
    with pytest.raises(InvalidInput):
        ledger.add_contribution(db, goal.id, amount, date(2024, 1, 1))
    assert saved(db, goal.id) == 0
    assert row_count(db, goal.id) == 0


def test_add_contribution_rejects_bad_date(db, make_goal):
    goal = make_goal()
    with pytest.raises(InvalidInput):
        ledger.add_contribution(db, goal.id, 10, "not-a-date")


def test_update_unknown_contribution(db):
    with pytest.raises(NotFound):
        ledger.update_contribution(db, 999, amount=10)


def test_update_to_unknown_goal_leaves_totals(db, make_goal):
    goal = make_goal()
    contribution = ledger.add_contribution(db, goal.id, 40, date(2024, 1, 1))

    with pytest.raises(NotFound):
        ledger.update_contribution(db, contribution.id, goal_id=999)

    assert saved(db, goal.id) == 40
    assert ledger.get_contribution(db, contribution.id).goal_id == goal.id


def test_update_rejects_non_positive_amount(db, make_goal):
    goal = make_goal()
    contribution = ledger.add_contribution(db, goal.id, 40, date(2024, 1, 1))

    with pytest.raises(InvalidInput):
        ledger.update_contribution(db, contribution.id, amount=0)

    assert saved(db, goal.id) == 40


def test_delete_unknown_contribution(db):
    with pytest.raises(NotFound):
        ledger.delete_contribution(db, 999)


def test_failed_move_rolls_back_every_adjustment(db, make_goal, monkeypatch):
    goal_a = make_goal(name="Goal A")
    goal_b = make_goal(name="Goal B")
    contribution = ledger.add_contribution(db, goal_a.id, 20, date(2024, 1, 1))
    ledger.add_contribution(db, goal_b.id, 50, date(2024, 1, 1))

    original_shift = ledger._shift_saved_amount
    calls = []

    def failing_shift(session, goal_id, delta):
        calls.append(goal_id)
        if len(calls) == 2:
            raise RuntimeError("connection lost")
        original_shift(session, goal_id, delta)

    monkeypatch.setattr(ledger, "_shift_saved_amount", failing_shift)

    with pytest.raises(RuntimeError):
        ledger.update_contribution(db, contribution.id, goal_id=goal_b.id)

    assert saved(db, goal_a.id) == 20
    assert saved(db, goal_b.id) == 50
    assert ledger.get_contribution(db, contribution.id).goal_id == goal_a.id


def test_recalculate_repairs_drifted_total(db, make_goal):
    goal = make_goal()
    ledger.add_contribution(db, goal.id, 25, date(2024, 1, 1))
    ledger.add_contribution(db, goal.id, 12.5, date(2024, 1, 2))
    db.execute(update(SaveGoal).where(SaveGoal.id == goal.id).values(saved_amount=999))
    db.commit()

    total = ledger.recalculate_saved_amount(db, goal.id)

    assert total == Decimal("37.5")
    assert saved(db, goal.id) == 37.5


def test_concurrent_adds_keep_total(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}", connect_args={"check_same_thread": False})
    init_db(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    with Session() as setup:
        goal = SaveGoal(
            name="Shared", goal_amount=1000, saved_amount=0, start_date=date(2024, 1, 1), end_date=date(2024, 12, 31)
        )
        setup.add(goal)
        setup.commit()
        goal_id = goal.id

    def worker(_):
        with Session() as session:
            for _ in range(5):
                ledger.add_contribution(session, goal_id, 2.5, date(2024, 1, 1))

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(worker, range(4)))

    with Session() as check:
        assert float(check.get(SaveGoal, goal_id).saved_amount) == 50
        assert row_total(check, goal_id) == 50
        assert row_count(check, goal_id) == 20
    engine.dispose()


def test_driver_error_mid_move_becomes_storage_failure(db, make_goal, monkeypatch):
    goal_a = make_goal(name="Goal A")
    goal_b = make_goal(name="Goal B")
    contribution = ledger.add_contribution(db, goal_a.id, 20, date(2024, 1, 1))
    ledger.add_contribution(db, goal_b.id, 50, date(2024, 1, 1))

    original_shift = ledger._shift_saved_amount
    calls = []

    def failing_shift(session, goal_id, delta):
        calls.append(goal_id)
        if len(calls) == 2:
            raise OperationalError("UPDATE save_goals", {}, Exception("disk I/O error"))
        original_shift(session, goal_id, delta)

    monkeypatch.setattr(ledger, "_shift_saved_amount", failing_shift)

    with pytest.raises(StorageFailure):
        ledger.update_contribution(db, contribution.id, goal_id=goal_b.id, amount=30)

    assert saved(db, goal_a.id) == 20
    assert saved(db, goal_b.id) == 50
    assert row_total(db, goal_a.id) == 20
    assert row_total(db, goal_b.id) == 50
    unchanged = ledger.get_contribution(db, contribution.id)
    assert unchanged.goal_id == goal_a.id
    assert float(unchanged.amount) == 20


def test_driver_error_on_read_becomes_storage_failure(db, make_goal, monkeypatch):
    goal = make_goal()

    def broken_scalars(*args, **kwargs):
        raise OperationalError("SELECT save_goal_transactions", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "scalars", broken_scalars)

    with pytest.raises(StorageFailure):
        ledger.list_contributions(db, goal.id)
