from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .config import DATABASE_URL


def build_engine(url: str):
    # Pool sizing only applies to PostgreSQL; SQLite is used for tests and local runs.
    if url.startswith("postgresql"):
        return create_engine(
            url,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )
    return create_engine(url, connect_args={"check_same_thread": False})


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope():
    """Session for code running outside a request (middleware, CLI jobs)."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
