"""
Learner Chat — Knowledge Model
Per-session topics with proficiency scores (0-100). The AI's teaching target is
the least proficient topic that is not yet mastered.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session as DBSession

from app.config import FALLBACK_TOPIC_NAME, HISTORY_LIMIT, MASTERED_PROFICIENCY
from app.errors import persistence
from app.models import SessionTopic, LearningMoment

logger = logging.getLogger(__name__)


@dataclass
class TopicView:
    """Detached snapshot of a topic, safe to hand across threads."""
    topic_name: str
    proficiency: int
    id: Optional[int] = None
    created_at: Optional[datetime] = None


FALLBACK_TOPIC = TopicView(topic_name=FALLBACK_TOPIC_NAME, proficiency=0)


# ─── Read ────────────────────────────────────────────────────────────────────

def list_teachable(db: DBSession, session_id: int) -> list[TopicView]:
    """Topics below mastery, most proficient first, capped at HISTORY_LIMIT."""
    with persistence(db, "list_teachable"):
        rows = (
            db.query(SessionTopic)
            .filter(
                SessionTopic.session_id == session_id,
                SessionTopic.proficiency < MASTERED_PROFICIENCY,
            )
            .order_by(SessionTopic.proficiency.desc(), SessionTopic.id.asc())
            .limit(HISTORY_LIMIT)
            .all()
        )
    return [
        TopicView(
            id=r.id,
            topic_name=r.topic_name,
            proficiency=r.proficiency,
            created_at=r.created_at,
        )
        for r in rows
    ]


def select_target(topics: Iterable[TopicView]) -> TopicView:
    """
    Lowest-proficiency teachable topic. Ties go to the first one in the given
    order. Falls back to a synthetic "General Knowledge" topic at 0.
    """
    target = None
    for topic in topics:
        if topic.proficiency >= MASTERED_PROFICIENCY:
            continue
        if target is None or topic.proficiency < target.proficiency:
            target = topic
    return target or FALLBACK_TOPIC


# ─── Write ───────────────────────────────────────────────────────────────────

def add_topic(db: DBSession, session_id: int, name: str, proficiency: int) -> int:
    """Insert a topic. Duplicate names are tolerated."""
    with persistence(db, "add_topic"):
        topic = SessionTopic(session_id=session_id, topic_name=name, proficiency=proficiency)
        db.add(topic)
        db.commit()
        db.refresh(topic)
    logger.info(f"Session {session_id}: new topic '{name}' at {proficiency}")
    return topic.id


def update_topic(
    db: DBSession, session_id: int, name: str, proficiency: int
) -> Optional[TopicView]:
    """
    Set the proficiency of the first topic (oldest row) with exactly this name.
    Returns the previous state, or None when no topic matched (no-op).
    """
    with persistence(db, "update_topic"):
        topic = (
            db.query(SessionTopic)
            .filter(SessionTopic.session_id == session_id, SessionTopic.topic_name == name)
            .order_by(SessionTopic.id.asc())
            .first()
        )
        if topic is None:
            logger.info(f"Session {session_id}: no topic named '{name}' to update")
            return None
        before = TopicView(
            id=topic.id,
            topic_name=topic.topic_name,
            proficiency=topic.proficiency,
            created_at=topic.created_at,
        )
        topic.proficiency = proficiency
        db.commit()
    logger.info(f"Session {session_id}: topic '{name}' {before.proficiency} -> {proficiency}")
    return before


# ─── Learning Moments ────────────────────────────────────────────────────────

def add_learning_moment(
    db: DBSession,
    session_id: int,
    topic_id: Optional[int],
    wisdom_points: int,
    title: str,
    details: Optional[str] = None,
) -> int:
    with persistence(db, "add_learning_moment"):
        moment = LearningMoment(
            session_id=session_id,
            topic_id=topic_id,
            wisdom_points=wisdom_points,
            title=title,
            details=details,
        )
        db.add(moment)
        db.commit()
        db.refresh(moment)
    return moment.id


def list_learning_moments(db: DBSession, session_id: int) -> list[LearningMoment]:
    with persistence(db, "list_learning_moments"):
        return (
            db.query(LearningMoment)
            .filter(LearningMoment.session_id == session_id)
            .order_by(LearningMoment.created_at.desc(), LearningMoment.id.desc())
            .limit(HISTORY_LIMIT)
            .all()
        )


# ─── Public Views ────────────────────────────────────────────────────────────

def public_topic(topic: TopicView) -> dict:
    """Topic without internal identifiers."""
    return {
        "topic_name": topic.topic_name,
        "proficiency": topic.proficiency,
        "created_at": topic.created_at,
    }


def public_learning_moment(moment: LearningMoment) -> dict:
    return {
        "wisdom_points": moment.wisdom_points,
        "title": moment.title,
        "details": moment.details,
        "created_at": moment.created_at,
    }
