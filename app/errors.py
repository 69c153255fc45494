"""
Learner Chat — Error Types
Validation / NotFound / RateLimited surface as HTTPException in the routers.
The types below cover failures that cross module boundaries.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A store-level read/write failed. Maps to 500 on the synchronous path."""


class ExternalServiceError(Exception):
    """The AI turn could not be completed (transport, timeout, bad reply)."""


@contextmanager
def persistence(db: DBSession, operation: str):
    """Roll back and re-raise SQLAlchemy failures as PersistenceError."""
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Persistence failure during {operation}: {e}")
        raise PersistenceError(f"{operation} failed") from e
