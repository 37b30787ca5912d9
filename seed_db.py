from sqlalchemy import select

from auth import hash_password
from database import Category, SessionLocal, User, init_db

DEFAULT_USERS = [
    {"name": "Admin", "username": "admin", "email": "admin@example.com", "password": "admin123"},
    {"name": "Demo User", "username": "demo", "email": "demo@example.com", "password": "demo123"},
]

DEFAULT_CATEGORIES = [
    "Salary",
    "Freelance",
    "Investments",
    "Food",
    "Rent",
    "Utilities",
    "Transport",
    "Entertainment",
    "Healthcare",
    "Shopping",
]


def seed_users(db):
    # Check if users exist
    if db.scalars(select(User)).first():
        print("Users already exist. Skipping user seed.")
        return

    for entry in DEFAULT_USERS:
        db.add(User(
            name=entry["name"],
            username=entry["username"],
            email=entry["email"],
            password_hash=hash_password(entry["password"]),
        ))
    db.commit()
    print(f"Added {len(DEFAULT_USERS)} default users.")


def seed_categories(db):
    existing = set(db.scalars(select(Category.name)))
    missing = [name for name in DEFAULT_CATEGORIES if name not in existing]
    for name in missing:
        db.add(Category(name=name))
    db.commit()
    print(f"Added {len(missing)} default categories.")


def seed():
    init_db()
    db = SessionLocal()
    try:
        seed_users(db)
        seed_categories(db)
        print("Database initialized with default data.")
    finally:
        db.close()


if __name__ == "__main__":
    seed()
