"""
Learner Chat — Session Store
Session lookup/creation, transcript persistence, sliding-window rate counters,
busy flag and reward score.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional

from sqlalchemy import case, func, update
from sqlalchemy.orm import Session as DBSession

from app.config import HISTORY_LIMIT, RATE_WINDOW_HOURS
from app.errors import persistence
from app.models import Session, Message

logger = logging.getLogger(__name__)


@dataclass
class RateCounts:
    per_session: int
    per_origin: int


# ─── Sessions ────────────────────────────────────────────────────────────────

def resolve_session(db: DBSession, token: str, origin: str) -> Optional[Session]:
    """Return the session only if both token and origin address match."""
    if not token or not origin:
        return None
    with persistence(db, "resolve_session"):
        return (
            db.query(Session)
            .filter(Session.uuid == token, Session.ip_address == origin)
            .first()
        )


def create_session(db: DBSession, origin: str) -> Session:
    with persistence(db, "create_session"):
        session = Session(ip_address=origin, is_busy=False, wisdom_points=0)
        db.add(session)
        db.commit()
        db.refresh(session)
    logger.info(f"Created session {session.uuid} for {origin}")
    return session


def get_or_create_session(
    db: DBSession, token: Optional[str], origin: str
) -> tuple[Session, bool]:
    """Reuse the session when the token+origin pair is valid, else start a new one."""
    if token:
        existing = resolve_session(db, token, origin)
        if existing:
            return existing, True
    return create_session(db, origin), False


def set_age(db: DBSession, session: Session, age: int) -> Session:
    with persistence(db, "set_age"):
        session.age = age
        db.commit()
        db.refresh(session)
    return session


def set_busy(db: DBSession, session_id: int, value: bool) -> None:
    """Idempotent flag flip. A missing row updates nothing."""
    with persistence(db, "set_busy"):
        db.execute(
            update(Session).where(Session.id == session_id).values(is_busy=value)
        )
        db.commit()


def add_reward(db: DBSession, session_id: int, delta: int) -> None:
    """Add to the cumulative wisdom points in a single UPDATE. Never below zero."""
    total = Session.wisdom_points + delta
    with persistence(db, "add_reward"):
        db.execute(
            update(Session)
            .where(Session.id == session_id)
            .values(wisdom_points=case((total < 0, 0), else_=total))
        )
        db.commit()


# ─── Rate Counters ───────────────────────────────────────────────────────────

def rate_counts(db: DBSession, session: Session, now: Optional[datetime] = None) -> RateCounts:
    """Human messages in the trailing window, per session and per origin address."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=RATE_WINDOW_HOURS)
    with persistence(db, "rate_counts"):
        per_session = (
            db.query(func.count(Message.id))
            .filter(
                Message.session_id == session.id,
                Message.is_human == True,  # noqa: E712
                Message.created_at >= cutoff,
            )
            .scalar()
        )
        per_origin = (
            db.query(func.count(Message.id))
            .join(Session, Session.id == Message.session_id)
            .filter(
                Session.ip_address == session.ip_address,
                Message.is_human == True,  # noqa: E712
                Message.created_at >= cutoff,
            )
            .scalar()
        )
    return RateCounts(per_session=per_session or 0, per_origin=per_origin or 0)


# ─── Transcript ──────────────────────────────────────────────────────────────

def add_message(db: DBSession, session_id: int, is_human: bool, text: str) -> Message:
    with persistence(db, "add_message"):
        message = Message(session_id=session_id, is_human=is_human, text=text)
        db.add(message)
        db.commit()
        db.refresh(message)
    return message


def list_messages(db: DBSession, session_id: int, limit: int = HISTORY_LIMIT) -> list[dict]:
    """Newest `limit` messages of the session, oldest first."""
    with persistence(db, "list_messages"):
        rows = (
            db.query(Message)
            .filter(Message.session_id == session_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .all()
        )
    return [
        {
            "uuid": m.uuid,
            "text": m.text,
            "is_human": m.is_human,
            "created_at": m.created_at,
        }
        for m in reversed(rows)
    ]
