import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Importing config loads .env before DATABASE_URL is read
from donation_service import config  # noqa: F401

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

_SQLITE = DATABASE_URL.startswith("sqlite")

# Handlers run on the threadpool, so SQLite connections cross threads
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if _SQLITE else {},
    pool_pre_ping=not _SQLITE,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    """Request-scoped session, closed after the response."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
