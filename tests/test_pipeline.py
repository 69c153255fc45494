"""
Tests for the conversation pipeline — synchronous acceptance and the background AI turn.

The busy flag must be back to False after every turn, whatever went wrong.
"""

import asyncio
from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.errors import PersistenceError
from app.models import Session, Message, SessionTopic, LearningMoment
from app.realtime import issue_channel_token
from app.tutor import knowledge, sessions
from app.tutor.llm import LLMError
from app.tutor.pipeline import SessionSnapshot

from conftest import ORIGIN, FakeLLM, FakeWebSocket, add_messages, reply

pytestmark = pytest.mark.asyncio

NEW_PHOTOSYNTHESIS = reply(
    response="Plants cook with sunlight? Amazing!",
    action="NEW_TOPIC",
    topic_name="Photosynthesis",
    new_proficiency=8,
)


def _snapshot(session) -> SessionSnapshot:
    return SessionSnapshot(id=session.id, uuid=session.uuid, age=session.age)


def _busy(db, session) -> bool:
    db.expire_all()
    return db.get(Session, session.id).is_busy


async def _connect(registry, session) -> FakeWebSocket:
    ws = FakeWebSocket()
    assert await registry.admit(ws, session.uuid, issue_channel_token(session.uuid, ORIGIN), ORIGIN)
    ws.sent.clear()  # drop the welcome event
    return ws


# ─── Synchronous Acceptance ──────────────────────────────────────────────────

class TestSubmitMessage:
    async def test_accepts_persists_and_marks_busy(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM(NEW_PHOTOSYNTHESIS))

        accepted = await pipeline.submit_message(db, learner.uuid, "  Plants make food  ", ORIGIN)

        assert accepted.text == "Plants make food"
        assert accepted.is_human is True
        assert accepted.session.uuid == learner.uuid
        assert _busy(db, learner) is True
        assert db.query(Message).filter(Message.is_human == True).count() == 1  # noqa: E712

        await pipeline.drain()
        assert _busy(db, learner) is False

    async def test_unknown_session_404(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM())
        with pytest.raises(HTTPException) as exc:
            await pipeline.submit_message(db, learner.uuid, "hello there", "6.6.6.6")
        assert exc.value.status_code == 404
        assert pipeline.pending_turns == 0

    @pytest.mark.parametrize("length,status", [(2, 400), (3, None), (256, None), (257, 400)])
    async def test_length_bounds(self, db, learner, make_pipeline, length, status):
        pipeline = make_pipeline(FakeLLM())
        text = "x" * length
        if status is None:
            accepted = await pipeline.submit_message(db, learner.uuid, text, ORIGIN)
            assert len(accepted.text) == length
            await pipeline.drain()
        else:
            with pytest.raises(HTTPException) as exc:
                await pipeline.submit_message(db, learner.uuid, text, ORIGIN)
            assert exc.value.status_code == status
            assert db.query(Message).count() == 0
            assert _busy(db, learner) is False

    async def test_length_is_measured_after_trim(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM())
        with pytest.raises(HTTPException) as exc:
            await pipeline.submit_message(db, learner.uuid, "   ab   ", ORIGIN)
        assert exc.value.status_code == 400

    async def test_session_daily_limit(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM(), session_limit=50)
        add_messages(db, learner, 50)

        with pytest.raises(HTTPException) as exc:
            await pipeline.submit_message(db, learner.uuid, "one more fact", ORIGIN)

        assert exc.value.status_code == 429
        assert "50" in exc.value.detail
        assert db.query(Message).count() == 50

    async def test_origin_daily_limit(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM(), session_limit=50, origin_limit=10)
        sibling = sessions.create_session(db, ORIGIN)
        add_messages(db, sibling, 10)

        with pytest.raises(HTTPException) as exc:
            await pipeline.submit_message(db, learner.uuid, "one more fact", ORIGIN)

        assert exc.value.status_code == 429
        assert "IP daily limit reached (10)" == exc.value.detail

    async def test_rate_limit_checked_before_length(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM(), session_limit=1)
        add_messages(db, learner, 1)
        with pytest.raises(HTTPException) as exc:
            await pipeline.submit_message(db, learner.uuid, "x", ORIGIN)
        assert exc.value.status_code == 429

    async def test_old_messages_do_not_count(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM(), session_limit=50)
        add_messages(db, learner, 50, age=timedelta(hours=24, minutes=1))

        await pipeline.submit_message(db, learner.uuid, "fresh day", ORIGIN)
        await pipeline.drain()


# ─── AI Turn ─────────────────────────────────────────────────────────────────

class TestRunTurn:
    async def test_new_topic_end_to_end(self, db, learner, make_pipeline, registry):
        ws = await _connect(registry, learner)
        llm = FakeLLM(NEW_PHOTOSYNTHESIS)
        pipeline = make_pipeline(llm)

        await pipeline.submit_message(db, learner.uuid, "Plants make food from sunlight", ORIGIN)
        await pipeline.drain()

        topics = knowledge.list_teachable(db, learner.id)
        assert [(t.topic_name, t.proficiency) for t in topics] == [("Photosynthesis", 8)]

        transcript = sessions.list_messages(db, learner.id)
        assert [m["is_human"] for m in transcript] == [True, False]
        assert transcript[1]["text"] == "Plants cook with sunlight? Amazing!"

        assert [e["rpc"] for e in ws.sent] == ["addSessionTopic", "addMessage"]
        assert ws.sent[0]["topic"]["topic_name"] == "Photosynthesis"
        assert ws.sent[0]["topic"]["proficiency"] == 8
        assert ws.sent[1]["message"]["is_human"] is False
        assert ws.sent[1]["session"]["is_busy"] is False

        assert _busy(db, learner) is False
        assert "Plants make food from sunlight" in llm.calls[0][1]["content"]

    async def test_new_topic_records_learning_moment_and_reward(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM(NEW_PHOTOSYNTHESIS))
        await pipeline.run_turn(_snapshot(learner), "Plants make food from sunlight")

        moment = db.query(LearningMoment).one()
        assert moment.wisdom_points == 8
        assert moment.title == "Learned about Photosynthesis"
        db.expire_all()
        assert db.get(Session, learner.id).wisdom_points == 8

    async def test_increase_proficiency(self, db, learner, make_pipeline, registry):
        knowledge.add_topic(db, learner.id, "Moon", 10)
        ws = await _connect(registry, learner)
        pipeline = make_pipeline(FakeLLM(reply(
            action="INCREASE_PROFICIENCY", topic_name="Moon", new_proficiency=13,
        )))

        await pipeline.run_turn(_snapshot(learner), "The moon orbits the earth")

        db.expire_all()
        assert db.query(SessionTopic).one().proficiency == 13
        assert db.get(Session, learner.id).wisdom_points == 3
        assert ws.sent[0] == {
            "rpc": "updateSessionTopic",
            "topic": {"topic_name": "Moon", "proficiency": 13},
        }

    async def test_increase_unknown_topic_is_noop(self, db, learner, make_pipeline, registry):
        ws = await _connect(registry, learner)
        pipeline = make_pipeline(FakeLLM(reply(
            action="INCREASE_PROFICIENCY", topic_name="Moon", new_proficiency=13,
        )))

        await pipeline.run_turn(_snapshot(learner), "The moon orbits the earth")

        assert db.query(SessionTopic).count() == 0
        assert [e["rpc"] for e in ws.sent] == ["addMessage"]
        assert db.query(Message).filter(Message.is_human == False).count() == 1  # noqa: E712

    async def test_no_change_only_adds_message(self, db, learner, make_pipeline, registry):
        ws = await _connect(registry, learner)
        pipeline = make_pipeline(FakeLLM(reply()))

        decision = await pipeline.run_turn(_snapshot(learner), "hello!!")

        assert decision.action.value == "NO_CHANGE"
        assert db.query(SessionTopic).count() == 0
        assert db.query(LearningMoment).count() == 0
        assert [e["rpc"] for e in ws.sent] == ["addMessage"]

    async def test_untrue_statement_never_mutates(self, db, learner, make_pipeline, registry):
        knowledge.add_topic(db, learner.id, "Moon", 10)
        ws = await _connect(registry, learner)
        pipeline = make_pipeline(FakeLLM(
            reply(is_factually_true=False, action="NEW_TOPIC", topic_name="Cheese Moon", new_proficiency=9),
            reply(is_factually_true=False, action="INCREASE_PROFICIENCY", topic_name="Moon", new_proficiency=15),
        ))

        await pipeline.run_turn(_snapshot(learner), "The moon is made of cheese")
        await pipeline.run_turn(_snapshot(learner), "The moon is very hot cheese")

        db.expire_all()
        rows = db.query(SessionTopic).all()
        assert [(t.topic_name, t.proficiency) for t in rows] == [("Moon", 10)]
        assert [e["rpc"] for e in ws.sent] == ["addMessage", "addMessage"]

    async def test_missing_action_abandons_turn(self, db, learner, make_pipeline, registry):
        ws = await _connect(registry, learner)
        bad = reply(action="NEW_TOPIC", topic_name="Photosynthesis", new_proficiency=8)
        del bad["action"]
        pipeline = make_pipeline(FakeLLM(bad))
        sessions.set_busy(db, learner.id, True)

        assert await pipeline.run_turn(_snapshot(learner), "Plants make food") is None

        assert db.query(Message).count() == 0
        assert db.query(SessionTopic).count() == 0
        assert ws.sent == []
        assert _busy(db, learner) is False

    async def test_garbage_reply_abandons_turn(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM("Sure! Here's what I think..."))
        sessions.set_busy(db, learner.id, True)

        assert await pipeline.run_turn(_snapshot(learner), "Plants make food") is None
        assert db.query(Message).count() == 0
        assert _busy(db, learner) is False

    async def test_transport_failure_abandons_turn(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM(LLMError("LLM request timed out")))
        sessions.set_busy(db, learner.id, True)

        assert await pipeline.run_turn(_snapshot(learner), "Plants make food") is None
        assert db.query(Message).count() == 0
        assert _busy(db, learner) is False

    async def test_unexpected_crash_still_clears_busy(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM(RuntimeError("bug")))
        sessions.set_busy(db, learner.id, True)

        assert await pipeline.run_turn(_snapshot(learner), "Plants make food") is None
        assert _busy(db, learner) is False

    async def test_persistence_failure_mid_turn_clears_busy(self, db, learner, make_pipeline, monkeypatch):
        pipeline = make_pipeline(FakeLLM(NEW_PHOTOSYNTHESIS))
        sessions.set_busy(db, learner.id, True)

        def broken_add_topic(*args, **kwargs):
            raise PersistenceError("add_topic failed")

        monkeypatch.setattr(knowledge, "add_topic", broken_add_topic)

        assert await pipeline.run_turn(_snapshot(learner), "Plants make food") is None
        assert _busy(db, learner) is False

    async def test_busy_clear_failure_is_swallowed(self, learner, make_pipeline, monkeypatch, caplog):
        pipeline = make_pipeline(FakeLLM(reply()))

        def broken_set_busy(*args, **kwargs):
            raise PersistenceError("set_busy failed")

        monkeypatch.setattr(sessions, "set_busy", broken_set_busy)

        await pipeline.run_turn(_snapshot(learner), "hello there")
        assert "failed to reset busy flag" in caplog.text

    async def test_push_without_connection_completes(self, db, learner, make_pipeline, registry):
        pipeline = make_pipeline(FakeLLM(NEW_PHOTOSYNTHESIS))
        assert len(registry) == 0

        decision = await asyncio.wait_for(
            pipeline.run_turn(_snapshot(learner), "Plants make food"), timeout=5
        )

        assert decision is not None
        assert knowledge.list_teachable(db, learner.id)[0].topic_name == "Photosynthesis"
        assert _busy(db, learner) is False

    async def test_turn_for_deleted_session_does_not_raise(self, db, make_pipeline):
        pipeline = make_pipeline(FakeLLM(LLMError("down")))
        ghost = SessionSnapshot(id=4242, uuid="ghost", age=8)
        assert await pipeline.run_turn(ghost, "hello there") is None


# ─── Concurrency ─────────────────────────────────────────────────────────────

class SlowLLM(FakeLLM):
    """Records how many calls overlap."""

    def __init__(self, *replies):
        super().__init__(*replies)
        self.active = 0
        self.max_active = 0

    async def generate_json(self, messages, **kwargs):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.2)
        try:
            return await super().generate_json(messages, **kwargs)
        finally:
            self.active -= 1


class TestConcurrency:
    async def test_submit_does_not_wait_for_turn(self, db, learner, make_pipeline):
        llm = SlowLLM(reply())
        pipeline = make_pipeline(llm)

        await pipeline.submit_message(db, learner.uuid, "hello there", ORIGIN)
        assert pipeline.pending_turns == 1
        assert _busy(db, learner) is True

        await pipeline.drain()
        assert pipeline.pending_turns == 0
        assert _busy(db, learner) is False

    async def test_turns_may_overlap_by_default(self, db, learner, make_pipeline):
        llm = SlowLLM(reply(), reply())
        pipeline = make_pipeline(llm, serialize_turns=False)

        await pipeline.submit_message(db, learner.uuid, "first fact", ORIGIN)
        await pipeline.submit_message(db, learner.uuid, "second fact", ORIGIN)
        await pipeline.drain()

        assert llm.max_active == 2

    async def test_serialized_turns_run_one_at_a_time(self, db, learner, make_pipeline):
        llm = SlowLLM(reply(), reply())
        pipeline = make_pipeline(llm, serialize_turns=True)

        await pipeline.submit_message(db, learner.uuid, "first fact", ORIGIN)
        await pipeline.submit_message(db, learner.uuid, "second fact", ORIGIN)
        await pipeline.drain()

        assert llm.max_active == 1
        assert db.query(Message).filter(Message.is_human == False).count() == 2  # noqa: E712
        assert _busy(db, learner) is False

    async def test_session_lock_released_after_last_turn(self, db, learner, make_pipeline):
        llm = SlowLLM(reply(), reply())
        pipeline = make_pipeline(llm, serialize_turns=True)

        await pipeline.submit_message(db, learner.uuid, "first fact", ORIGIN)
        await pipeline.submit_message(db, learner.uuid, "second fact", ORIGIN)
        await asyncio.sleep(0.05)
        assert pipeline.session_locks == 1

        await pipeline.drain()
        assert pipeline.session_locks == 0

    async def test_session_lock_released_after_failed_turn(self, db, learner, make_pipeline):
        pipeline = make_pipeline(FakeLLM("not json"), serialize_turns=True)
        await pipeline.submit_message(db, learner.uuid, "first fact", ORIGIN)
        await pipeline.drain()
        assert pipeline.session_locks == 0
