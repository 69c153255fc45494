"""
Learner Chat — Public Session Router
Anonymous sessions bound to the caller's address: get-or-create, learner age,
message submission, transcript, topics and learning moments.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from sqlalchemy.orm import Session as DBSession

from app.config import MIN_LEARNER_AGE, MAX_LEARNER_AGE
from app.database import get_db
from app.models import Session
from app.origin import extract_origin
from app.realtime import issue_channel_token
from app.tutor import knowledge, sessions
from app.tutor.pipeline import ConversationPipeline

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/public", tags=["public"])


# ─── Request/Response Models ─────────────────────────────────────────────────

class SessionResponse(BaseModel):
    success: bool = True
    sessionId: str
    ip: str
    existing: bool
    age: int
    wisdom_points: int
    is_busy: bool
    wsToken: str

class AgeRequest(BaseModel):
    sessionId: Optional[str] = None
    age: Optional[int] = None

class AgeResponse(BaseModel):
    success: bool = True
    age: int

class ChatRequest(BaseModel):
    sessionId: Optional[str] = None
    text: Optional[str] = None

class ChatMessage(BaseModel):
    text: str
    is_human: bool
    created_at: datetime

class TranscriptMessage(ChatMessage):
    uuid: str

class SessionState(BaseModel):
    session_id: str
    is_busy: bool

class ChatResponse(BaseModel):
    message: ChatMessage
    session: SessionState

class TopicOut(BaseModel):
    topic_name: str
    proficiency: int
    created_at: Optional[datetime] = None

class LearningMomentOut(BaseModel):
    wisdom_points: int
    title: str
    details: Optional[str] = None
    created_at: Optional[datetime] = None


# ─── Dependencies ────────────────────────────────────────────────────────────

def get_origin(request: Request) -> str:
    return extract_origin(request.headers, request.client.host if request.client else None)


def get_pipeline(request: Request) -> ConversationPipeline:
    return request.app.state.pipeline


def _require_session(db: DBSession, token: Optional[str], origin: str) -> Session:
    if not token:
        raise HTTPException(400, "Missing session UUID")
    session = sessions.resolve_session(db, token, origin)
    if not session:
        raise HTTPException(404, "Session not found")
    return session


# ─── Sessions ────────────────────────────────────────────────────────────────

@router.get("/session", response_model=SessionResponse)
def get_or_create_session(
    sessionId: Optional[str] = None,
    origin: str = Depends(get_origin),
    db: DBSession = Depends(get_db),
):
    session, existing = sessions.get_or_create_session(db, sessionId, origin)
    return SessionResponse(
        sessionId=session.uuid,
        ip=origin,
        existing=existing,
        age=session.age,
        wisdom_points=session.wisdom_points,
        is_busy=session.is_busy,
        wsToken=issue_channel_token(session.uuid, origin),
    )


@router.patch("/session/age", response_model=AgeResponse)
def update_age(
    req: AgeRequest,
    origin: str = Depends(get_origin),
    db: DBSession = Depends(get_db),
):
    if req.age is None:
        raise HTTPException(400, "Missing age")
    session = _require_session(db, req.sessionId, origin)
    if not MIN_LEARNER_AGE <= req.age <= MAX_LEARNER_AGE:
        raise HTTPException(400, f"Age must be between {MIN_LEARNER_AGE} and {MAX_LEARNER_AGE}")
    session = sessions.set_age(db, session, req.age)
    return AgeResponse(age=session.age)


# ─── Chat ────────────────────────────────────────────────────────────────────

@router.post("/chat", response_model=ChatResponse)
async def add_message(
    req: ChatRequest,
    origin: str = Depends(get_origin),
    db: DBSession = Depends(get_db),
    pipeline: ConversationPipeline = Depends(get_pipeline),
):
    """Accept a message and return right away. The AI reply arrives over the WebSocket."""
    if not req.sessionId or not (req.text or "").strip():
        raise HTTPException(400, "Missing UUID or message")

    accepted = await pipeline.submit_message(db, req.sessionId, req.text, origin)
    return ChatResponse(
        message=ChatMessage(
            text=accepted.text,
            is_human=accepted.is_human,
            created_at=accepted.created_at,
        ),
        session=SessionState(session_id=accepted.session.uuid, is_busy=True),
    )


@router.get("/chat", response_model=list[TranscriptMessage])
async def get_messages(
    sessionId: Optional[str] = None,
    origin: str = Depends(get_origin),
    db: DBSession = Depends(get_db),
):
    session = await run_in_threadpool(_require_session, db, sessionId, origin)
    return await run_in_threadpool(sessions.list_messages, db, session.id)


# ─── Knowledge Model ─────────────────────────────────────────────────────────

@router.get("/session/{sessionId}/topics", response_model=list[TopicOut])
def get_topics(
    sessionId: str,
    origin: str = Depends(get_origin),
    db: DBSession = Depends(get_db),
):
    session = _require_session(db, sessionId, origin)
    return [knowledge.public_topic(t) for t in knowledge.list_teachable(db, session.id)]


@router.get("/session/{sessionId}/moments", response_model=list[LearningMomentOut])
def get_learning_moments(
    sessionId: str,
    origin: str = Depends(get_origin),
    db: DBSession = Depends(get_db),
):
    session = _require_session(db, sessionId, origin)
    return [knowledge.public_learning_moment(m) for m in knowledge.list_learning_moments(db, session.id)]
