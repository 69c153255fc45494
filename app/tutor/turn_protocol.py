"""
Learner Chat — AI Turn Protocol
Builds the two-part chat context for one AI turn and validates the model's
JSON decision before anything is written.

Reply schema (all fields required):
    response            str   what the AI says back to the child
    is_factually_true   bool  whether the child's statement is true
    action              str   NEW_TOPIC | INCREASE_PROFICIENCY | NO_CHANGE
    topic_name          str   topic to add/update ("" for NO_CHANGE)
    new_proficiency     num   0..100 for mutating actions, -1 for NO_CHANGE
"""

import json
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Sequence

from app.errors import ExternalServiceError
from app.tutor.knowledge import TopicView, select_target

logger = logging.getLogger(__name__)


class TurnAction(str, Enum):
    NEW_TOPIC = "NEW_TOPIC"
    INCREASE_PROFICIENCY = "INCREASE_PROFICIENCY"
    NO_CHANGE = "NO_CHANGE"


MUTATING_ACTIONS = {TurnAction.NEW_TOPIC, TurnAction.INCREASE_PROFICIENCY}

TURN_SCHEMA = {
    "type": "object",
    "properties": {
        "response": {"type": "string"},
        "is_factually_true": {"type": "boolean"},
        "action": {"type": "string", "enum": [a.value for a in TurnAction]},
        "topic_name": {"type": "string"},
        "new_proficiency": {"type": "number"},
    },
    "required": [
        "response", "is_factually_true", "action", "topic_name", "new_proficiency",
    ],
}


class TurnReplyError(ExternalServiceError):
    """The model's reply is not valid JSON or violates the turn schema."""


@dataclass(frozen=True)
class TurnDecision:
    response: str
    is_factually_true: bool
    action: TurnAction
    topic_name: str
    new_proficiency: int

    @property
    def mutates(self) -> bool:
        return self.action in MUTATING_ACTIONS


# ─── Prompt ──────────────────────────────────────────────────────────────────

TURN_SYSTEM = """You are "Curious Learner", a playful AI who learns from a child by chatting with them.
You keep a list of topics the child has taught you, each with a proficiency from 0 to 100.
Only learn from statements that are factually true.

# Output format
Reply with ONE JSON object and nothing else. It must match this JSON schema exactly:
{schema}

# Learner
The child is {age} years old. Keep your language right for that age.
Your current teaching target (least proficient topic you have not mastered) is "{target_name}" at {target_proficiency}%.
Gently steer the conversation toward it.

# Decision rules (apply in order, stop at the first that matches)
1. Set is_factually_true to true only for a verifiable fact or definition. Opinions, guesses and false claims are false.
   If is_factually_true is false, action MUST be "NO_CHANGE", no matter how new the idea is.
2. If the statement is true and introduces a brand new concept, set action "NEW_TOPIC" with a short topic_name
   and a small starting new_proficiency (5 to 10).
3. If the statement is true and improves an existing topic (prefer "{target_name}"), set action
   "INCREASE_PROFICIENCY", topic_name to that topic's exact name, and new_proficiency to its current value
   plus 1 to 5. Never go above 100.
4. Otherwise (greeting, small talk, unclear, untrue) set action "NO_CHANGE", topic_name "" and new_proficiency -1.

When you cannot learn from the message, "response" should be a playful way of saying you don't know what that
means or can't learn it right now. Stay in character as a learner.

# Topics you know
{topics}"""


def build_turn_messages(age: int, topics: Sequence[TopicView], message: str) -> list[dict]:
    """System instruction plus the child's raw message, in chat-completions format."""
    target = select_target(topics)
    known = [{"topic_name": t.topic_name, "proficiency": t.proficiency} for t in topics]
    system = TURN_SYSTEM.format(
        schema=json.dumps(TURN_SCHEMA, indent=2),
        age=age,
        target_name=target.topic_name,
        target_proficiency=target.proficiency,
        topics=json.dumps(known, ensure_ascii=False),
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": f'User message to learn from: "{message}"'},
    ]


# ─── Reply Validation ────────────────────────────────────────────────────────

def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            text = text[first_newline + 1:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def _is_number(value) -> bool:
    # bool is an int subclass; JSON true/false must not pass as a number
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def parse_turn_reply(raw: str) -> TurnDecision:
    """
    Strictly validate the model's reply. Raises TurnReplyError on any deviation.

    A statement flagged untrue is forced to NO_CHANGE whatever action was declared.
    NO_CHANGE always carries topic_name "" and new_proficiency -1; whatever the
    model put there is discarded.
    """
    try:
        data = json.loads(_strip_fences(raw or ""))
    except json.JSONDecodeError as e:
        raise TurnReplyError(f"Reply is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise TurnReplyError("Reply is not a JSON object")

    missing = [f for f in TURN_SCHEMA["required"] if f not in data]
    if missing:
        raise TurnReplyError(f"Reply missing fields: {', '.join(missing)}")

    if not isinstance(data["response"], str) or not data["response"].strip():
        raise TurnReplyError("'response' must be a non-empty string")
    if not isinstance(data["is_factually_true"], bool):
        raise TurnReplyError("'is_factually_true' must be a boolean")
    if not isinstance(data["topic_name"], str):
        raise TurnReplyError("'topic_name' must be a string")
    if not _is_number(data["new_proficiency"]):
        raise TurnReplyError("'new_proficiency' must be a number")
    try:
        action = TurnAction(data["action"])
    except ValueError as e:
        raise TurnReplyError(f"Unknown action {data['action']!r}") from e

    decision = TurnDecision(
        response=data["response"].strip(),
        is_factually_true=data["is_factually_true"],
        action=action,
        topic_name=data["topic_name"].strip(),
        new_proficiency=int(round(data["new_proficiency"])),
    )

    if not decision.is_factually_true and decision.action != TurnAction.NO_CHANGE:
        logger.warning(
            f"Untrue statement declared {decision.action.value} on "
            f"'{decision.topic_name}'; forcing NO_CHANGE"
        )
        return replace(decision, action=TurnAction.NO_CHANGE, topic_name="", new_proficiency=-1)

    if decision.action == TurnAction.NO_CHANGE:
        return replace(decision, topic_name="", new_proficiency=-1)

    if decision.mutates:
        if not decision.topic_name:
            raise TurnReplyError(f"{action.value} requires a topic_name")
        if not 0 <= decision.new_proficiency <= 100:
            raise TurnReplyError(
                f"{action.value} proficiency out of range: {decision.new_proficiency}"
            )

    return decision
