"""
Shared pytest setup: puts ``src`` on the import path and provides memory
record factories with a deterministic clock.
"""

import itertools
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# 添加 src 目录到 PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from persona_journal.memory.models import CompressedTurn, FullTurn  # noqa: E402
from persona_journal.memory.store import InMemoryMemoryStore  # noqa: E402

BASE_TIME = datetime(2025, 11, 8, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Strictly increasing timestamps, one minute apart."""
    counter = itertools.count()
    return lambda: BASE_TIME + timedelta(minutes=next(counter))


@pytest.fixture
def store():
    return InMemoryMemoryStore()


@pytest.fixture
def make_memory(clock):
    def _make(
        persona="ananya",
        user_id="user-1",
        salience=5,
        user_intent="Asked about pricing",
        response="Suggested a 20% increase",
        arc="pricing: raise prices when churn is low",
        **kwargs,
    ):
        kwargs.setdefault("created_at", clock())
        return CompressedTurn(
            persona=persona,
            user_id=user_id,
            salience_score=salience,
            user_intent_summary=user_intent,
            persona_response_summary=response,
            decision_arc_summary=arc,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_full_turn(clock):
    def _make(
        persona="ananya",
        user_id="user-1",
        user_message="How should I think about hiring?",
        ai_response="Hire for the bottleneck, not the org chart.",
        **kwargs,
    ):
        kwargs.setdefault("created_at", clock())
        return FullTurn(
            persona=persona,
            user_id=user_id,
            user_message=user_message,
            ai_response=ai_response,
            **kwargs,
        )

    return _make
