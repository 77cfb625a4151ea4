"""
Database configuration and session management.

This module provides database connection and session management
for all services of the Facility Reservation system.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
import os

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql://postgres:postgres@db:5432/facilities"
)

engine = create_engine(
    DATABASE_URL,
    echo=os.getenv("SQL_ECHO", "false").lower() == "true",
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Get database session.

    Yields:
        Session: Database session

    Example:
        >>> db = next(get_db())
        >>> # Use db session
        >>> db.close()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """
    Initialize database tables.

    Creates all tables defined in the models. On PostgreSQL this also
    installs the reservation overlap exclusion constraint (see models).

    Args:
        bind: Engine to create the tables on (defaults to the module engine)

    Example:
        >>> init_db()
    """
    import shared.models  # noqa: F401  registers the tables on Base.metadata
    Base.metadata.create_all(bind=bind or engine)
