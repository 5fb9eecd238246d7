"""
Database connection and session management
Postgres in production; DATABASE_URL may point anywhere SQLAlchemy supports
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
import os

# Database URL from environment
POSTGRES_USER = os.getenv("POSTGRES_USER", "exam_user")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "exam_pass")
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
POSTGRES_PORT = os.getenv("POSTGRES_PORT", "5432")
POSTGRES_DB = os.getenv("POSTGRES_DB", "exam_questions")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}",
)

# SQLite engines reject pool sizing arguments
_engine_args = {"pool_pre_ping": True}
if not DATABASE_URL.startswith("sqlite"):
    _engine_args.update(pool_size=5, max_overflow=10)
else:
    _engine_args["connect_args"] = {"check_same_thread": False}

# Create engine
engine = create_engine(DATABASE_URL, **_engine_args)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative models
Base = declarative_base()


def get_db():
    """
    Database session dependency for FastAPI
    Yields a database session and ensures it's closed after use
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
