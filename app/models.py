"""
Learner Chat — ORM Models
A session owns its messages, topics and learning moments (scoped by session_id).
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String, Integer, Boolean, Text, DateTime, ForeignKey, Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.config import DEFAULT_LEARNER_AGE
from app.database import Base


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _uuid() -> str:
    return str(uuid.uuid4())

def _now() -> datetime:
    return datetime.now(timezone.utc)


# ─── Sessions ────────────────────────────────────────────────────────────────

class Session(Base):
    __tablename__ = "session"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, index=True, default=_uuid)
    ip_address: Mapped[str] = mapped_column(String(45), index=True)
    age: Mapped[int] = mapped_column(Integer, default=DEFAULT_LEARNER_AGE)
    is_busy: Mapped[bool] = mapped_column(Boolean, default=False)
    wisdom_points: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    # Relationships
    messages: Mapped[list["Message"]] = relationship(
        back_populates="session", order_by="Message.id"
    )
    topics: Mapped[list["SessionTopic"]] = relationship(back_populates="session")


# ─── Messages ────────────────────────────────────────────────────────────────

class Message(Base):
    __tablename__ = "message"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, default=_uuid)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("session.id"))
    is_human: Mapped[bool] = mapped_column(Boolean)
    text: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    session: Mapped["Session"] = relationship(back_populates="messages")

    # Rate counters scan by (session_id, created_at)
    __table_args__ = (
        Index("ix_message_session_created", "session_id", "created_at"),
    )


# ─── Knowledge Model ─────────────────────────────────────────────────────────

class SessionTopic(Base):
    """One thing the learner has taught. Names are not unique per session."""
    __tablename__ = "session_topic"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("session.id"), index=True)
    topic_name: Mapped[str] = mapped_column(String(255))
    proficiency: Mapped[int] = mapped_column(Integer, default=0)  # 0..100, 100 = mastered
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    session: Mapped["Session"] = relationship(back_populates="topics")


class LearningMoment(Base):
    """Audit trail of acknowledged learning events and the reward they earned."""
    __tablename__ = "session_learning_moment"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("session.id"), index=True)
    topic_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("session_topic.id"), nullable=True
    )
    wisdom_points: Mapped[int] = mapped_column(Integer, default=0)
    title: Mapped[str] = mapped_column(String(255))
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
