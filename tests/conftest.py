"""
Shared fixtures: a throwaway SQLite database per test, a scripted LLM and an
in-memory WebSocket stand-in.
"""

import json
from datetime import datetime, timezone, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from starlette.websockets import WebSocketState

from app.database import Base
from app.models import Session, Message
from app.realtime import ConnectionRegistry
from app.tutor.llm import LLMResult
from app.tutor.pipeline import ConversationPipeline

import app.models  # noqa: F401  (registers tables on Base.metadata)


ORIGIN = "10.0.0.1"

NO_CHANGE_REPLY = {
    "response": "Hi! I don't know what that means yet.",
    "is_factually_true": True,
    "action": "NO_CHANGE",
    "topic_name": "",
    "new_proficiency": -1,
}


def reply(**overrides) -> dict:
    data = dict(NO_CHANGE_REPLY)
    data.update(overrides)
    return data


class FakeLLM:
    """Returns scripted replies in order. Exceptions in the script are raised."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: list[list[dict]] = []

    async def generate_json(self, messages, **kwargs):
        self.calls.append(messages)
        item = self.replies.pop(0) if self.replies else NO_CHANGE_REPLY
        if isinstance(item, Exception):
            raise item
        text = item if isinstance(item, str) else json.dumps(item)
        return LLMResult(text=text, latency_ms=1, model="fake", usage={})


class FakeWebSocket:
    def __init__(self, fail_send: bool = False):
        self.client_state = WebSocketState.CONNECTING
        self.application_state = WebSocketState.CONNECTING
        self.sent: list[dict] = []
        self.close_code = None
        self.fail_send = fail_send

    async def accept(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def close(self, code: int = 1000):
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    async def send_text(self, data: str):
        if self.fail_send:
            raise RuntimeError("socket went away")
        self.sent.append(json.loads(data))


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def make_pipeline(session_factory, registry):
    def _make(llm, **kwargs):
        return ConversationPipeline(
            session_factory=session_factory,
            llm=llm,
            registry=registry,
            **kwargs,
        )
    return _make


@pytest.fixture
def learner(db):
    """A fresh session at ORIGIN."""
    session = Session(ip_address=ORIGIN)
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def add_messages(db, session, count, is_human=True, age=timedelta(0)):
    """Insert `count` messages created `age` ago."""
    created = datetime.now(timezone.utc) - age
    for i in range(count):
        db.add(Message(session_id=session.id, is_human=is_human, text=f"msg {i}", created_at=created))
    db.commit()
