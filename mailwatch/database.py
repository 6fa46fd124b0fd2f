from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from mailwatch.config import get_database_url

# Create engine with connection pooling
engine = create_engine(
    get_database_url(),
    echo=False,  # Set True for SQL debugging
    pool_pre_ping=True  # Verify connections before use
)

# Session factory for request-scoped sessions
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def get_db():
    """
    FastAPI dependency to get a database session.

    Usage:
        @router.post("/events")
        def events(db: Session = Depends(get_db)):
            ...

    Yields:
        Session: Database session that auto-closes after request
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
