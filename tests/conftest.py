from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api import app, get_today
from database import Category, SaveGoal, User, get_db, init_db

TODAY = date(2024, 6, 15)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_today] = lambda: TODAY
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def user(db):
    user = User(name="Test User", username="tester", email="tester@example.com", password_hash="x")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def category(db):
    category = Category(name="Groceries")
    db.add(category)
    db.commit()
    return category


@pytest.fixture
def make_goal(db):
    def factory(name="Emergency fund", goal_amount=1000, start_date=date(2024, 1, 1), end_date=date(2024, 12, 31)):
        goal = SaveGoal(name=name, goal_amount=goal_amount, saved_amount=0, start_date=start_date, end_date=end_date)
        db.add(goal)
        db.commit()
        return goal

    return factory
