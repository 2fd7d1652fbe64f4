"""
Talk to My Lawyer - Database Configuration
PostgreSQL connection using SQLAlchemy
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    # SQLite connections are shared across FastAPI worker threads
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


# Create engine
engine = create_engine(DATABASE_URL, echo=False, **_engine_kwargs(DATABASE_URL))

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """Dependency for FastAPI - yields database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database - create all tables."""
    # Importing the models registers them on Base.metadata
    from .models import db_models  # noqa: F401
    Base.metadata.create_all(bind=engine)
