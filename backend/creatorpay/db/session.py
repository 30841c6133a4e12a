"""Database session management"""
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from creatorpay.models.base import Base
from creatorpay.core.config import settings

# Create engine
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=3600
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    import creatorpay.models  # noqa: F401 - registers every model with Base.metadata
    Base.metadata.create_all(bind=engine)


@contextmanager
def transaction(db: Session):
    """Commit the enclosed writes together, or roll all of them back"""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
