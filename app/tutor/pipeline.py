"""
Learner Chat — Conversation Pipeline
The message loop. Synchronous part:
    resolve session → rate limits → length check → persist → busy=True → respond
Then one background task per message (the AI turn):
    topics → prompt → LLM → validate → persist AI message → mutate topics → push
    → busy=False (always, from every path)

The busy flag is advisory. Two quick messages may run two overlapping turns
unless SERIALIZE_AI_TURNS is on, which queues turns per session in-process.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import HTTPException
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session as DBSession

from app.config import (
    PUBLIC_SESSION_MESSAGE_DAILY_LIMIT, PUBLIC_IP_MESSAGE_DAILY_LIMIT,
    MESSAGE_MIN_LENGTH, MESSAGE_MAX_LENGTH, SERIALIZE_AI_TURNS,
)
from app.errors import ExternalServiceError, PersistenceError
from app.realtime import ConnectionRegistry
from app.tutor import knowledge, sessions
from app.tutor.llm import LLMProvider
from app.tutor.turn_protocol import (
    TurnAction, TurnDecision, build_turn_messages, parse_turn_reply,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSnapshot:
    """What the background turn needs; ORM rows stay with their DB session."""
    id: int
    uuid: str
    age: int


@dataclass
class AcceptedMessage:
    text: str
    is_human: bool
    created_at: datetime
    session: SessionSnapshot


class ConversationPipeline:
    def __init__(
        self,
        session_factory: Callable[[], DBSession],
        llm: LLMProvider,
        registry: ConnectionRegistry,
        serialize_turns: bool = SERIALIZE_AI_TURNS,
        session_limit: int = PUBLIC_SESSION_MESSAGE_DAILY_LIMIT,
        origin_limit: int = PUBLIC_IP_MESSAGE_DAILY_LIMIT,
    ):
        self._session_factory = session_factory
        self._llm = llm
        self._registry = registry
        self._serialize_turns = serialize_turns
        self._session_limit = session_limit
        self._origin_limit = origin_limit
        self._tasks: set[asyncio.Task] = set()
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}

    # ─── Synchronous Path ────────────────────────────────────────────────────

    async def submit_message(
        self, db: DBSession, token: str, raw_text: str, origin: str
    ) -> AcceptedMessage:
        """Accept a human message and start its AI turn without waiting for it."""
        accepted = await run_in_threadpool(self._accept, db, token, raw_text, origin)
        self.spawn_turn(accepted.session, accepted.text)
        return accepted

    def _accept(self, db: DBSession, token: str, raw_text: str, origin: str) -> AcceptedMessage:
        session = sessions.resolve_session(db, token, origin)
        if not session:
            raise HTTPException(404, "Session not found")

        counts = sessions.rate_counts(db, session)
        if counts.per_session >= self._session_limit:
            raise HTTPException(429, f"Session daily limit reached ({self._session_limit})")
        if counts.per_origin >= self._origin_limit:
            raise HTTPException(429, f"IP daily limit reached ({self._origin_limit})")

        text = (raw_text or "").strip()
        if len(text) < MESSAGE_MIN_LENGTH:
            raise HTTPException(400, "Text length short")
        if len(text) > MESSAGE_MAX_LENGTH:
            raise HTTPException(400, "Text length too long")

        message = sessions.add_message(db, session.id, True, text)
        sessions.set_busy(db, session.id, True)

        return AcceptedMessage(
            text=text,
            is_human=True,
            created_at=message.created_at,
            session=SessionSnapshot(id=session.id, uuid=session.uuid, age=session.age),
        )

    # ─── Background Turn ─────────────────────────────────────────────────────

    def spawn_turn(self, session: SessionSnapshot, text: str) -> asyncio.Task:
        task = asyncio.create_task(self.run_turn(session, text), name=f"ai-turn-{session.uuid}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending_turns(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every spawned turn has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_turn(self, session: SessionSnapshot, text: str) -> Optional[TurnDecision]:
        """
        One AI turn. Never raises: failures abandon the turn and are logged.
        The busy flag is cleared on the way out no matter what happened.
        """
        try:
            if self._serialize_turns:
                return await self._serialized_turn(session, text)
            return await self._turn(session, text)
        except ExternalServiceError as e:
            logger.warning(f"Session {session.uuid}: AI turn abandoned: {e}")
        except PersistenceError as e:
            logger.error(f"Session {session.uuid}: AI turn abandoned on persistence failure: {e}")
        except Exception:
            logger.exception(f"Session {session.uuid}: AI turn crashed")
        finally:
            await self._clear_busy(session)
        return None

    async def _turn(self, session: SessionSnapshot, text: str) -> TurnDecision:
        topics = await run_in_threadpool(self._with_db, knowledge.list_teachable, session.id)
        messages = build_turn_messages(session.age, topics, text)

        result = await self._llm.generate_json(messages)
        decision = parse_turn_reply(result.text)
        logger.info(
            f"Session {session.uuid}: {decision.action.value} "
            f"'{decision.topic_name}' ({decision.new_proficiency}), true={decision.is_factually_true}"
        )

        ai_message = await run_in_threadpool(
            self._with_db, sessions.add_message, session.id, False, decision.response
        )
        topic_event = await run_in_threadpool(self._with_db, self._apply_decision, session, decision, text)

        if topic_event:
            await self._registry.push(session.uuid, topic_event)
        await self._registry.push(session.uuid, {
            "rpc": "addMessage",
            "session": {"is_busy": False},
            "message": {
                "uuid": ai_message.uuid,
                "is_human": False,
                "text": ai_message.text,
                "created_at": ai_message.created_at,
            },
        })
        return decision

    def _apply_decision(
        self, db: DBSession, session: SessionSnapshot, decision: TurnDecision, text: str
    ) -> Optional[dict]:
        """Mutate the knowledge model. Returns the realtime event, if anything changed."""
        if decision.action == TurnAction.NEW_TOPIC:
            topic_id = knowledge.add_topic(db, session.id, decision.topic_name, decision.new_proficiency)
            self._reward(db, session, topic_id, decision.new_proficiency, f"Learned about {decision.topic_name}", text)
            return {
                "rpc": "addSessionTopic",
                "topic": {
                    "insert_id": topic_id,
                    "topic_name": decision.topic_name,
                    "proficiency": decision.new_proficiency,
                },
            }

        if decision.action == TurnAction.INCREASE_PROFICIENCY:
            before = knowledge.update_topic(db, session.id, decision.topic_name, decision.new_proficiency)
            if before is None:
                return None
            gain = decision.new_proficiency - before.proficiency
            self._reward(db, session, before.id, gain, f"Got better at {decision.topic_name}", text)
            return {
                "rpc": "updateSessionTopic",
                "topic": {
                    "topic_name": decision.topic_name,
                    "proficiency": decision.new_proficiency,
                },
            }

        return None

    def _reward(
        self, db: DBSession, session: SessionSnapshot, topic_id: Optional[int],
        points: int, title: str, details: str,
    ) -> None:
        if points <= 0:
            return
        knowledge.add_learning_moment(db, session.id, topic_id, points, title, details)
        sessions.add_reward(db, session.id, points)

    async def _clear_busy(self, session: SessionSnapshot) -> None:
        try:
            await run_in_threadpool(self._with_db, sessions.set_busy, session.id, False)
        except Exception as e:
            logger.error(f"Session {session.uuid}: failed to reset busy flag: {e}")

    # ─── Helpers ─────────────────────────────────────────────────────────────

    def _with_db(self, fn, *args):
        """Run fn(db, *args) on a fresh DB session (background turns own their own)."""
        db = self._session_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()

    async def _serialized_turn(self, session: SessionSnapshot, text: str) -> TurnDecision:
        """Run the turn under the session's lock. The lock is dropped with its last user."""
        lock = self._locks.get(session.id)
        if lock is None:
            lock = self._locks[session.id] = asyncio.Lock()
        self._lock_users[session.id] = self._lock_users.get(session.id, 0) + 1
        try:
            async with lock:
                return await self._turn(session, text)
        finally:
            self._lock_users[session.id] -= 1
            if not self._lock_users[session.id]:
                del self._lock_users[session.id]
                del self._locks[session.id]

    @property
    def session_locks(self) -> int:
        return len(self._locks)
