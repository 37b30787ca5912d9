import logging

import bcrypt
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from database import User, atomic, guarded
from errors import AuthenticationFailed, Conflict

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def ensure_unique_identity(db: Session, username: str = None, email: str = None, exclude_id: int = None):
    """Raises Conflict when another user already holds the username or email."""
    conditions = []
    if username:
        conditions.append(User.username == username)
    if email:
        conditions.append(User.email == email)
    if not conditions:
        return
    stmt = select(User).where(or_(*conditions))
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    with guarded("users"):
        existing = db.scalars(stmt).first()
    if existing is None:
        return
    if username and existing.username == username:
        raise Conflict("Username already exists")
    raise Conflict("Email already exists")


def register_user(db: Session, name: str, username: str, email: str, password: str) -> User:
    email = email.strip().lower()
    username = username.strip()
    ensure_unique_identity(db, username=username, email=email)

    user = User(name=name.strip(), username=username, email=email, password_hash=hash_password(password))
    with atomic(db):
        db.add(user)

    logger.info("Registered user %s (%s)", user.id, username)
    return user


def authenticate(db: Session, username: str, password: str) -> User:
    with guarded("user"):
        user = db.scalars(select(User).where(User.username == username.strip())).first()

    if user is None or not verify_password(password, user.password_hash):
        logger.info("Failed login attempt for user %s", username)
        raise AuthenticationFailed("Invalid username or password")
    return user
