import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from .config import settings

# Prefer public DB URL when set (so local runs against a hosted Postgres work)
_database_url = os.environ.get("DATABASE_PUBLIC_URL") or settings.DATABASE_URL


def engine_options(url: str) -> dict:
    """Engine keyword arguments for the given database URL."""
    if "sqlite" in url:
        # Credit writes from worker threads share the file; wait on locks instead of failing fast.
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_engine(_database_url, **engine_options(_database_url))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency that yields a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class Base(DeclarativeBase):
    pass
