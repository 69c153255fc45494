"""
Learner Chat — Database Engine
SQLAlchemy setup. Works with SQLite (dev) and PostgreSQL (prod).
"""

import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from app.config import DATABASE_URL, RESET_DATABASE

logger = logging.getLogger(__name__)


# ─── Engine Setup ────────────────────────────────────────────────────────────

def build_engine(url: str):
    """Create an engine with the SQLite special case applied."""
    if url.startswith("sqlite"):
        # SQLite needs special handling for concurrent access
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, _connection_record):
            cursor = dbapi_connection.cursor()
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    # PostgreSQL / MySQL — standard pooled connection
    return create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Test connections before use
        echo=False,
    )


engine = build_engine(DATABASE_URL)


# ─── Session Factory ─────────────────────────────────────────────────────────

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
)


# ─── Base Class ──────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


# ─── Dependency ──────────────────────────────────────────────────────────────

def get_db():
    """FastAPI dependency: yields a database session, auto-closes."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables. Called once at startup."""
    # Registers the mapped classes on Base.metadata
    import app.models  # noqa: F401

    if RESET_DATABASE:
        logger.warning("RESET_DATABASE=true — dropping all tables!")
        if DATABASE_URL.startswith("postgresql"):
            with engine.connect() as conn:
                conn.execute(text("DROP SCHEMA public CASCADE"))
                conn.execute(text("CREATE SCHEMA public"))
                conn.execute(text("GRANT ALL ON SCHEMA public TO PUBLIC"))
                conn.commit()
        else:
            Base.metadata.drop_all(bind=engine)
        logger.info("All tables dropped. Creating fresh schema...")

    Base.metadata.create_all(bind=engine)
