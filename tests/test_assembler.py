"""
Tests for the tiered context assembler.
"""

import pytest

from persona_journal.errors import UnknownPersonaError
from persona_journal.memory.assembler import (
    DECISION_ARCS,
    FILES,
    INSTRUCTIONS,
    RECENT,
    STARRED,
    WORKING_MEMORY,
    ContextAssembler,
)
from persona_journal.memory.config import MemoryConfig
from persona_journal.memory.formatter import SECTION_ORDER
from persona_journal.memory.store import InMemoryMemoryStore
from persona_journal.memory.token_budget import estimate_tokens


def _arc_with_cost(tokens: int, salience: int) -> str:
    """Arc text whose rendered item (plus separator) costs exactly ``tokens``."""
    prefix = len(f"[{salience}] ")
    return "a" * (tokens * 4 - 2 - prefix)


class _FailingStarredStore(InMemoryMemoryStore):
    def starred_turns(self, user_id, persona):
        raise RuntimeError("journal unavailable")


# ── Empty Store Tests ──


class TestEmptyStore:
    def test_empty_store_renders_nothing(self, store):
        text, stats = ContextAssembler(store).assemble("user-1", "ananya", 131_072)
        assert text == ""
        assert stats.total_tokens == 0
        for heading in SECTION_ORDER:
            assert heading not in text

    def test_unknown_persona(self, store):
        with pytest.raises(UnknownPersonaError):
            ContextAssembler(store).assemble("user-1", "bob", 131_072)


# ── Budget Tests ──


class TestBudget:
    def test_budget_is_forty_percent_of_window(self, store):
        _, stats = ContextAssembler(store).assemble("user-1", "ananya", 131_072)
        assert stats.budget == 52_428

    def test_config_window_used_when_not_given(self, store):
        assembler = ContextAssembler(store, MemoryConfig(context_window=10_000))
        _, stats = assembler.assemble("user-1", "ananya")
        assert stats.budget == 4000

    @pytest.mark.parametrize("context_window", [1, 50, 200, 1000, 5000, 20_000])
    def test_rendered_text_stays_within_budget(self, store, make_memory, context_window):
        for i in range(40):
            store.insert_compressed_turn(
                make_memory(salience=(i % 10) + 1, user_intent="detail " * (i % 13 + 1))
            )
            store.insert_compressed_turn(
                make_memory(persona="kirby", salience=8, arc="growth: " + "x" * (i * 7))
            )
        store.insert_file_summary("user-1", "plan.pdf", "pdf", "Q4 plan " * 30)

        text, stats = ContextAssembler(store).assemble("user-1", "ananya", context_window)
        assert stats.total_tokens <= stats.budget
        assert estimate_tokens(text) <= stats.budget

    def test_greedy_skips_oversized_item_and_keeps_scanning(self, store, make_memory):
        # header (6 tokens) is charged with the first item: 56 + 50 + 50 = 156
        sizes = [(10, 50), (9, 5000), (8, 50), (7, 50)]
        entries = [
            store.insert_compressed_turn(
                make_memory(persona="vlad", salience=s, arc=_arc_with_cost(t, s))
            )
            for s, t in sizes
        ]

        context = ContextAssembler(store).build("user-1", "ananya", 390)

        assert context.stats.budget == 156
        assert context.manifest[DECISION_ARCS] == [entries[0].id, entries[2].id, entries[3].id]
        assert context.stats.total_tokens == 156
        assert context.stats.available[DECISION_ARCS] == 4

    def test_item_that_no_longer_fits_is_dropped(self, store, make_memory):
        sizes = [(10, 50), (9, 5000), (8, 50), (7, 50)]
        first = store.insert_compressed_turn(
            make_memory(persona="vlad", salience=10, arc=_arc_with_cost(50, 10))
        )
        for s, t in sizes[1:]:
            store.insert_compressed_turn(
                make_memory(persona="vlad", salience=s, arc=_arc_with_cost(t, s))
            )

        # budget 155: the last small item would overshoot by one token
        context = ContextAssembler(store).build("user-1", "ananya", 388)

        assert context.stats.budget == 155
        assert len(context.manifest[DECISION_ARCS]) == 2
        assert context.manifest[DECISION_ARCS][0] == first.id
        assert context.stats.total_tokens == 106

    def test_instructions_survive_zero_budget(self, store, make_memory):
        store.insert_compressed_turn(
            make_memory(
                salience=1,
                is_instruction=True,
                instruction_scope="global",
                user_intent="Always quantify the downside",
            )
        )
        store.insert_compressed_turn(make_memory(salience=9, is_starred=True))

        context = ContextAssembler(store).build("user-1", "ananya", 1)

        assert context.stats.budget == 0
        assert "--- BEHAVIORAL INSTRUCTIONS ---" in context.text
        assert "Always quantify the downside" in context.text
        assert context.stats.items[INSTRUCTIONS] == 1
        assert context.stats.items[STARRED] == 0
        assert context.stats.items[RECENT] == 0

    def test_starred_packed_before_instructions(self, store, make_memory):
        store.insert_compressed_turn(
            make_memory(
                is_instruction=True,
                instruction_scope="global",
                user_intent="Always quantify the downside",
            )
        )
        store.insert_compressed_turn(make_memory(salience=9, is_starred=True))

        # budget 100: starred (43) + instructions (48) leave 9 tokens
        context = ContextAssembler(store).build("user-1", "ananya", 250)
        stats = context.stats

        assert stats.budget == 100
        assert stats.items[STARRED] == 1
        assert stats.tokens[STARRED] == 43
        assert stats.items[INSTRUCTIONS] == 1
        assert stats.tokens[INSTRUCTIONS] == 48
        assert stats.items[RECENT] == 0
        assert stats.items[DECISION_ARCS] == 0
        assert stats.total_tokens == 91

    def test_oversized_instructions_never_evict_starred(self, store, make_memory):
        store.insert_compressed_turn(
            make_memory(
                is_instruction=True,
                instruction_scope="ananya",
                user_intent="x" * 2000,
            )
        )
        store.insert_compressed_turn(make_memory(salience=9, is_starred=True))

        context = ContextAssembler(store).build("user-1", "ananya", 250)

        assert context.stats.items[STARRED] == 1
        assert context.stats.items[INSTRUCTIONS] == 1
        assert context.stats.total_tokens > context.stats.budget
        assert context.stats.items[RECENT] == 0
        assert context.text.index("--- STARRED MESSAGES ---") < context.text.index(
            "--- BEHAVIORAL INSTRUCTIONS ---"
        )


# ── Section Tests ──


class TestSections:
    def test_sections_follow_priority_order(self, store, make_memory):
        store.insert_compressed_turn(make_memory(salience=9, is_starred=True))
        store.insert_compressed_turn(
            make_memory(is_instruction=True, instruction_scope="global")
        )
        store.insert_compressed_turn(make_memory(salience=4))
        store.insert_compressed_turn(make_memory(persona="stefan", salience=8))
        store.insert_file_summary("user-1", "deck.pdf", "pdf", "Seed deck, 14 slides")

        context = ContextAssembler(store).build("user-1", "ananya", 131_072)

        positions = [context.text.index(f"--- {h} ---") for h in SECTION_ORDER]
        assert positions == sorted(positions)
        assert [heading for heading, _ in context.sections] == list(SECTION_ORDER)

    def test_empty_tiers_have_no_heading(self, store, make_memory):
        store.insert_compressed_turn(make_memory(salience=3))
        text, _ = ContextAssembler(store).assemble("user-1", "ananya", 131_072)
        assert "--- RECENT MEMORY ---" in text
        assert "STARRED MESSAGES" not in text
        assert "DECISION ARCS" not in text
        assert "UPLOADED FILES" not in text

    def test_file_summary_rendering(self, store):
        store.insert_file_summary("user-1", "test.txt", "text", "Test description")
        text, _ = ContextAssembler(store).assemble("user-1", "ananya", 131_072)
        assert text == "--- UPLOADED FILES ---\n## test.txt (text)\nTest description\n\n"

    def test_blank_summaries_are_excluded(self, store, make_memory):
        no_arc = store.insert_compressed_turn(make_memory(persona="vlad", salience=9, arc=""))
        store.insert_file_summary("user-1", "empty.txt", "text", "   ")

        context = ContextAssembler(store).build("user-1", "ananya", 131_072)

        assert no_arc.id not in context.manifest[DECISION_ARCS]
        assert context.stats.available[DECISION_ARCS] == 0
        assert context.manifest[FILES] == []
        assert "[9] \n" not in context.text

    def test_assembly_is_idempotent(self, store, make_memory):
        for i in range(10):
            store.insert_compressed_turn(make_memory(salience=(i % 10) + 1))
        assembler = ContextAssembler(store)
        first, _ = assembler.assemble("user-1", "ananya", 2000)
        second, _ = assembler.assemble("user-1", "ananya", 2000)
        assert first == second


# ── Working Memory Tests ──


class TestWorkingMemory:
    def test_history_is_last_five_turns(self, store, make_full_turn):
        turns = [store.insert_full_turn(make_full_turn(user_message=f"m{i}")) for i in range(8)]

        context = ContextAssembler(store).build("user-1", "ananya", 131_072)

        assert [t.id for t in context.history] == [t.id for t in reversed(turns[3:])]
        assert context.stats.items[WORKING_MEMORY] == 5
        assert context.stats.history_tokens > 0
        # not part of the budgeted document
        assert context.text == ""

    def test_history_tokens_count_message_overhead(self, store, make_full_turn):
        store.insert_full_turn(make_full_turn())

        context = ContextAssembler(store).build("user-1", "ananya", 131_072)

        # (8 + 4) for the question, (11 + 4) for the answer
        assert context.stats.history_tokens == 27

    def test_history_is_per_persona(self, store, make_full_turn):
        store.insert_full_turn(make_full_turn(persona="vlad"))
        context = ContextAssembler(store).build("user-1", "ananya", 131_072)
        assert context.history == []


# ── Scoping Tests ──


class TestScoping:
    def test_null_user_is_its_own_scope(self, store, make_memory):
        store.insert_compressed_turn(make_memory(user_id=None, user_intent="legacy note"))
        store.insert_compressed_turn(make_memory(user_id="user-1", user_intent="owned note"))

        legacy, _ = ContextAssembler(store).assemble(None, "ananya", 131_072)
        owned, _ = ContextAssembler(store).assemble("user-1", "ananya", 131_072)

        assert "legacy note" in legacy and "owned note" not in legacy
        assert "owned note" in owned and "legacy note" not in owned

    def test_starred_instruction_rendered_once(self, store, make_memory):
        store.insert_compressed_turn(
            make_memory(
                is_starred=True,
                is_instruction=True,
                instruction_scope="global",
                user_intent="Always quantify the downside",
            )
        )
        store.insert_file_summary("user-1", "deck.pdf", "pdf", "Seed deck")
        store.set_starred(store.file_summaries("user-1")[0].id)

        text, _ = ContextAssembler(store).assemble("user-1", "ananya", 131_072)

        assert text.count("Always quantify the downside") == 1
        assert text.count("Seed deck") == 1
        assert "STARRED MESSAGES" not in text
        assert "Global:" not in text

    def test_other_users_never_leak(self, store, make_memory):
        store.insert_compressed_turn(make_memory(user_id="user-2", salience=10, is_starred=True))
        text, _ = ContextAssembler(store).assemble("user-1", "ananya", 131_072)
        assert text == ""

    def test_private_memories_stay_with_private_persona(self, store, make_memory):
        store.insert_compressed_turn(
            make_memory(
                persona="samara",
                salience=10,
                is_starred=True,
                is_private=True,
                user_intent="Worried about co-founder conflict",
            )
        )
        others, _ = ContextAssembler(store).assemble("user-1", "ananya", 131_072)
        own, _ = ContextAssembler(store).assemble("user-1", "samara", 131_072)
        assert "co-founder" not in others
        assert "co-founder" in own

    def test_instruction_scoped_to_other_persona_is_ignored(self, store, make_memory):
        store.insert_compressed_turn(
            make_memory(
                is_instruction=True,
                instruction_scope="gunnar",
                user_intent="No sports analogies",
            )
        )
        text, _ = ContextAssembler(store).assemble("user-1", "ananya", 131_072)
        assert "No sports analogies" not in text


# ── Failure Isolation Tests ──


class TestTierFailures:
    def test_failed_tier_is_empty(self, make_memory):
        store = _FailingStarredStore()
        store.insert_compressed_turn(make_memory(salience=9, is_starred=True))

        context = ContextAssembler(store).build("user-1", "ananya", 131_072)

        assert context.stats.failed_tiers == [STARRED]
        assert "STARRED MESSAGES" not in context.text
        assert "--- RECENT MEMORY ---" in context.text
        assert "--- DECISION ARCS ---" in context.text

    def test_parallel_queries_match_sequential(self, make_memory):
        store = _FailingStarredStore()
        for i in range(30):
            store.insert_compressed_turn(
                make_memory(persona=("ananya", "vlad")[i % 2], salience=(i % 10) + 1)
            )
        store.insert_file_summary("user-1", "notes.md", "markdown", "Board notes")

        sequential = ContextAssembler(store).build("user-1", "ananya", 3000)
        parallel = ContextAssembler(
            store, MemoryConfig(parallel_tier_queries=True)
        ).build("user-1", "ananya", 3000)

        assert parallel.text == sequential.text
        assert parallel.manifest == sequential.manifest
        assert parallel.stats.failed_tiers == [STARRED]


# ── End-to-End Scenario ──


class TestScenario:
    def test_mixed_tiers_under_tight_budget(self, store, make_memory):
        starred = store.insert_compressed_turn(
            make_memory(persona="gunnar", salience=10, is_starred=True)
        )
        store.insert_compressed_turn(
            make_memory(
                is_instruction=True,
                instruction_scope="global",
                user_intent="Always quantify the downside",
            )
        )
        for _ in range(96):
            store.insert_compressed_turn(make_memory(salience=3))
        for i in range(15):
            store.insert_compressed_turn(
                make_memory(persona="vlad", salience=8, arc=f"market: enter segment {i}")
            )
        for name in ("a.pdf", "b.pdf", "c.pdf"):
            store.insert_file_summary("user-1", name, "pdf", "Quarterly numbers")

        context = ContextAssembler(store).build("user-1", "ananya", 2500)
        stats = context.stats

        assert stats.budget == 1000
        assert stats.total_tokens <= 1000
        assert estimate_tokens(context.text) <= 1000
        assert context.manifest[STARRED] == [starred.id]
        assert "Always quantify the downside" in context.text
        assert 0 < stats.items[RECENT] < 96
        expected = [t.id for t in store.recent_compressed_turns("user-1", "ananya")]
        assert context.manifest[RECENT] == expected[: stats.items[RECENT]]
        assert stats.utilization > 0.9
