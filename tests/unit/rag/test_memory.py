"""Tests for bounded conversation memory."""

from __future__ import annotations

import pytest

from qarag.models import ConversationTurn, Intent
from qarag.rag.memory import ConversationMemory, discussed_features


def _turn(i: int, role: str = "user") -> ConversationTurn:
    return ConversationTurn(role=role, content=f"message {i}")


def test_max_turns_validated():
    with pytest.raises(ValueError):
        ConversationMemory("p1", max_turns=0)


def test_turns_kept_oldest_first():
    mem = ConversationMemory("p1")
    for i in range(3):
        mem.append(_turn(i))
    assert [t.content for t in mem.turns()] == ["message 0", "message 1", "message 2"]


def test_fifo_eviction_at_capacity():
    mem = ConversationMemory("p1", max_turns=10)
    for i in range(12):
        mem.append(_turn(i))
    assert len(mem) == 10
    assert mem.turns()[0].content == "message 2"
    assert mem.turns()[-1].content == "message 11"


def test_extend_appends_pair():
    mem = ConversationMemory("p1", max_turns=3)
    mem.append(_turn(0))
    mem.extend([_turn(1), _turn(2, role="assistant")])
    mem.extend([_turn(3), _turn(4, role="assistant")])
    assert [t.content for t in mem.turns()] == ["message 2", "message 3", "message 4"]


def test_recent_context():
    mem = ConversationMemory("p1")
    for i in range(5):
        mem.append(_turn(i))
    assert [t.content for t in mem.recent_context(2)] == ["message 3", "message 4"]
    assert mem.recent_context(0) == []
    assert len(mem.recent_context(50)) == 5


def test_clear():
    mem = ConversationMemory("p1")
    mem.append(_turn(0))
    mem.clear()
    assert mem.turns() == []


def test_turns_returns_copy():
    mem = ConversationMemory("p1")
    mem.append(_turn(0))
    mem.turns().clear()
    assert len(mem) == 1


def test_serialize_round_trip():
    mem = ConversationMemory("p1", max_turns=4)
    mem.extend(
        [
            ConversationTurn(role="user", content="test cases for login", intent=Intent.TEST_CASE_GENERATION),
            ConversationTurn(
                role="assistant",
                content="| ID | ...",
                intent=Intent.TEST_CASE_GENERATION,
                metadata={"quality_score": 90},
            ),
        ]
    )
    restored = ConversationMemory.deserialize(mem.serialize())
    assert restored.project_id == "p1"
    assert restored.max_turns == 4
    assert restored.turns() == mem.turns()


def test_deserialize_with_smaller_capacity_keeps_newest():
    mem = ConversationMemory("p1", max_turns=10)
    for i in range(6):
        mem.append(_turn(i))
    restored = ConversationMemory.deserialize(mem.serialize(), max_turns=2)
    assert [t.content for t in restored.turns()] == ["message 4", "message 5"]


def test_from_dict_rejects_unknown_version():
    with pytest.raises(ValueError):
        ConversationMemory.from_dict({"version": 7, "project_id": "p1", "turns": []})


def test_discussed_features_from_user_turns():
    turns = [
        ConversationTurn(role="user", content="Generate test cases for the login page"),
        ConversationTurn(role="assistant", content="Here is the payment module table"),
        ConversationTurn(role="user", content="Now the checkout flow and the login page again"),
    ]
    assert discussed_features(turns) == ["login", "checkout"]
