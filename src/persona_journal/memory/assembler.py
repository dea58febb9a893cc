"""
Tiered context assembler.

Builds the memory context for one turn from six tiers, in fixed priority
order:

1. Working memory: last 5 full turns, sent as chat history (not budgeted)
2. Starred messages
3. Behavioral instructions (never dropped, but they consume budget)
4. Recent memory: last 100 compressed turns for this persona
5. Decision arcs: high-salience compressed turns
6. Uploaded files

Tiers 2-6 share one budget of ``floor(context_window * 0.4)`` tokens. Items
are packed greedily in query order; an item that does not fit is skipped
and the scan continues, so smaller items later in the tier still get in.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Union

from ..personas import Persona
from . import formatter
from .config import MemoryConfig
from .models import FullTurn
from .store import MemoryStore
from .token_budget import (
    TokenBudget,
    calculate_budget,
    estimate_message_tokens,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

WORKING_MEMORY = "working_memory"
STARRED = "starred"
INSTRUCTIONS = "instructions"
RECENT = "recent"
DECISION_ARCS = "decision_arcs"
FILES = "files"

# Priority order. Queries may run concurrently; processing never reorders.
TIER_ORDER = (WORKING_MEMORY, STARRED, INSTRUCTIONS, RECENT, DECISION_ARCS, FILES)

TIER_HEADINGS = {
    STARRED: formatter.STARRED_MESSAGES,
    INSTRUCTIONS: formatter.BEHAVIORAL_INSTRUCTIONS,
    RECENT: formatter.RECENT_MEMORY,
    DECISION_ARCS: formatter.DECISION_ARCS,
    FILES: formatter.UPLOADED_FILES,
}


@dataclass
class ContextStats:
    """What one assembly included, per tier."""

    context_window: int
    budget: int
    total_tokens: int = 0
    history_tokens: int = 0
    items: dict[str, int] = field(default_factory=dict)
    available: dict[str, int] = field(default_factory=dict)
    tokens: dict[str, int] = field(default_factory=dict)
    failed_tiers: list[str] = field(default_factory=list)

    @property
    def utilization(self) -> float:
        return self.total_tokens / self.budget if self.budget else 0.0


@dataclass
class AssembledContext:
    """Per-call context. Never persisted."""

    text: str
    sections: list[tuple[str, str]]
    history: list[FullTurn]
    manifest: dict[str, list[str]]
    stats: ContextStats


class ContextAssembler:
    """
    Tiered context assembler.

    Usage:
        assembler = ContextAssembler(store, config, model_name)
        text, stats = assembler.assemble(user_id, "ananya")
    """

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[MemoryConfig] = None,
        model_name: str = "",
    ):
        self.store = store
        self.config = config or MemoryConfig()
        self.model_name = model_name

    def assemble(
        self,
        user_id: Optional[str],
        persona: Union[str, Persona],
        context_window: Optional[int] = None,
    ) -> tuple[str, ContextStats]:
        """Return the rendered context document and its statistics."""
        context = self.build(user_id, persona, context_window)
        return context.text, context.stats

    def build(
        self,
        user_id: Optional[str],
        persona: Union[str, Persona],
        context_window: Optional[int] = None,
    ) -> AssembledContext:
        """
        Assemble the full context for one turn.

        ``context_window`` is resolved by the caller from the active model;
        when omitted it falls back to config / model-name lookup.
        """
        persona = Persona.parse(persona)
        budget = calculate_budget(self.config, self.model_name, context_window)
        stats = ContextStats(context_window=budget.context_window, budget=budget.total)

        results = self._query_tiers(user_id, persona, stats)

        history = results[WORKING_MEMORY]
        stats.items[WORKING_MEMORY] = len(history)
        stats.available[WORKING_MEMORY] = len(history)
        stats.history_tokens = sum(
            estimate_message_tokens(m) for m in formatter.history_messages(history)
        )

        rendered = {
            tier: self._render_items(tier, results[tier]) for tier in TIER_HEADINGS
        }

        packed: dict[str, list[tuple[str, str]]] = {}

        packed[STARRED], running_total = self._pack(
            TIER_HEADINGS[STARRED], rendered[STARRED], 0, budget, stats, STARRED
        )

        # Instructions are never dropped; their cost still comes out of the
        # budget left for the lower tiers.
        packed[INSTRUCTIONS], instruction_tokens = self._take_all(
            TIER_HEADINGS[INSTRUCTIONS], rendered[INSTRUCTIONS]
        )
        stats.tokens[INSTRUCTIONS] = instruction_tokens
        running_total += instruction_tokens
        if running_total > budget.total:
            logger.warning(
                "Behavioral instructions (%d tokens) overrun the context budget "
                "(%d of %d tokens used)",
                instruction_tokens,
                running_total,
                budget.total,
            )

        for tier in (RECENT, DECISION_ARCS, FILES):
            packed[tier], running_total = self._pack(
                TIER_HEADINGS[tier], rendered[tier], running_total, budget, stats, tier
            )

        sections = []
        manifest = {WORKING_MEMORY: [t.id for t in history]}
        for tier in TIER_HEADINGS:
            items = packed[tier]
            stats.items[tier] = len(items)
            stats.available[tier] = len(rendered[tier])
            manifest[tier] = [item_id for item_id, _ in items]
            if items:
                heading = TIER_HEADINGS[tier]
                sections.append(
                    (heading, formatter.render_section(heading, [text for _, text in items]))
                )

        stats.total_tokens = running_total
        text = "".join(section for _, section in sections)

        logger.info(
            "Context tiers for %s: WM=%d, starred=%d/%d, instructions=%d, "
            "recent=%d/%d, arcs=%d/%d, files=%d/%d (%d/%d tokens, %.1f%%)",
            persona.value,
            stats.items[WORKING_MEMORY],
            stats.items[STARRED], stats.available[STARRED],
            stats.items[INSTRUCTIONS],
            stats.items[RECENT], stats.available[RECENT],
            stats.items[DECISION_ARCS], stats.available[DECISION_ARCS],
            stats.items[FILES], stats.available[FILES],
            stats.total_tokens,
            budget.total,
            stats.utilization * 100,
        )

        return AssembledContext(
            text=text,
            sections=sections,
            history=history,
            manifest=manifest,
            stats=stats,
        )

    def _tier_queries(self, user_id: Optional[str], persona: Persona) -> dict:
        cfg = self.config
        name = persona.value
        return {
            WORKING_MEMORY: lambda: self.store.recent_full_turns(
                user_id, name, limit=cfg.full_turn_limit
            ),
            STARRED: lambda: self.store.starred_turns(user_id, name),
            INSTRUCTIONS: lambda: self.store.instructions(user_id, name),
            RECENT: lambda: self.store.recent_compressed_turns(
                user_id, name, limit=cfg.recent_compressed_limit
            ),
            DECISION_ARCS: lambda: self.store.high_salience_turns(
                user_id,
                name,
                min_salience=cfg.high_salience_min,
                limit=cfg.high_salience_limit,
            ),
            FILES: lambda: self.store.file_summaries(user_id),
        }

    def _query_tiers(
        self, user_id: Optional[str], persona: Persona, stats: ContextStats
    ) -> dict[str, list]:
        """Run every tier query; a failing tier yields no items."""
        queries = self._tier_queries(user_id, persona)

        def run(tier: str) -> list:
            try:
                return list(queries[tier]() or [])
            except Exception as e:
                logger.warning("Failed to load %s tier: %s", tier, e)
                stats.failed_tiers.append(tier)
                return []

        if self.config.parallel_tier_queries:
            with ThreadPoolExecutor(max_workers=len(TIER_ORDER)) as pool:
                futures = {tier: pool.submit(run, tier) for tier in TIER_ORDER}
                results = {tier: futures[tier].result() for tier in TIER_ORDER}
            # keep failure order deterministic
            stats.failed_tiers.sort(key=TIER_ORDER.index)
            return results

        return {tier: run(tier) for tier in TIER_ORDER}

    @staticmethod
    def _render_items(tier: str, turns: list) -> list[tuple[str, str]]:
        """Render a tier's items, dropping those with nothing to show."""
        render = formatter.TIER_RENDERERS[TIER_HEADINGS[tier]]
        items = []
        for turn in turns:
            text = render(turn)
            if text:
                items.append((turn.id, text))
        return items

    @staticmethod
    def _item_cost(text: str) -> int:
        return estimate_tokens(text + formatter.ITEM_SEPARATOR)

    def _take_all(
        self, heading: str, items: list[tuple[str, str]]
    ) -> tuple[list[tuple[str, str]], int]:
        if not items:
            return [], 0
        cost = estimate_tokens(formatter.section_header(heading))
        cost += sum(self._item_cost(text) for _, text in items)
        return list(items), cost

    def _pack(
        self,
        heading: str,
        items: list[tuple[str, str]],
        running_total: int,
        budget: TokenBudget,
        stats: ContextStats,
        tier: str,
    ) -> tuple[list[tuple[str, str]], int]:
        """
        Greedy packing: include each item that still fits, skip the rest.

        The section heading is charged together with the first item.
        """
        header_cost = estimate_tokens(formatter.section_header(heading))
        included = []
        tier_tokens = 0

        for item_id, text in items:
            if running_total >= budget.total:
                break
            cost = self._item_cost(text)
            if not included:
                cost += header_cost
            if running_total + cost <= budget.total:
                included.append((item_id, text))
                running_total += cost
                tier_tokens += cost
            else:
                logger.debug(
                    "Skipping %s item %s (%d tokens, %d remaining)",
                    tier,
                    item_id,
                    cost,
                    budget.total - running_total,
                )

        stats.tokens[tier] = tier_tokens
        return included, running_total
