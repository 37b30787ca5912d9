import logging
import os
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from dotenv import load_dotenv

from errors import Conflict, StorageFailure

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Database Setup
# Default to local SQLite, but allow override for MySQL/Postgres
DB_URL = os.getenv("DATABASE_URL", "sqlite:///finance_tracker.db")

engine = create_engine(DB_URL, connect_args={"check_same_thread": False} if "sqlite" in DB_URL else {})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

MONEY = Numeric(15, 2)
TRANSACTION_TYPES = ("income", "expense")
GOAL_STATUSES = ("active", "completed", "cancelled")


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE unless asked per connection
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# --- Models ---

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    username = Column(String(100), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)  # bcrypt hash, never plain text
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions = relationship(
        "Transaction", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions = relationship("Transaction", back_populates="category")


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    type = Column(Enum(*TRANSACTION_TYPES, name="transaction_type"), nullable=False)
    date = Column(Date, nullable=False, index=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="transactions")
    category = relationship("Category", back_populates="transactions")


class SaveGoal(Base):
    __tablename__ = "save_goals"

    id = Column(Integer, primary_key=True, index=True)
    goal_amount = Column(MONEY, nullable=False)
    # Cached SUM(save_goal_transactions.amount); only ledger.py writes it
    saved_amount = Column(MONEY, nullable=False, default=0)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Enum(*GOAL_STATUSES, name="goal_status"), nullable=False, default="active")
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    contributions = relationship(
        "GoalContribution", back_populates="goal", cascade="all, delete-orphan", passive_deletes=True
    )


class GoalContribution(Base):
    __tablename__ = "save_goal_transactions"

    id = Column(Integer, primary_key=True, index=True)
    goal_id = Column(
        "save_goal_id", Integer, ForeignKey("save_goals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount = Column(MONEY, nullable=False)
    date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    goal = relationship("SaveGoal", back_populates="contributions")


# --- Init DB ---
def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """
    Runs a unit of writes as one database transaction.

    Commits when the block exits cleanly. Any exception rolls back every
    statement issued inside the block; driver errors surface as
    ``StorageFailure``.
    """
    try:
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.info("Integrity violation, rolled back: %s", exc.orig)
        raise Conflict("Resource already exists or is still referenced") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Transaction rolled back: %s", exc)
        raise StorageFailure("Storage operation failed") from exc
    except Exception:
        db.rollback()
        raise


@contextmanager
def guarded(what: str):
    """Translates driver errors raised by reads into ``StorageFailure``."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Failed to load %s: %s", what, exc)
        raise StorageFailure(f"Failed to load {what}") from exc
