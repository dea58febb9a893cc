"""
Tiered memory context engine.

Assembles a token-budgeted memory context for each turn from six tiers,
in priority order:

- Working memory: last 5 full turns, replayed as chat history
- Starred messages: user-pinned memories
- Behavioral instructions: standing directives, never dropped
- Recent memory: last 100 compressed turns for the persona
- Decision arcs: high-salience compressed turns
- Uploaded files: file summaries

Tiers 2-6 share a budget of 40% of the model's context window. Each
completed turn is distilled into a compressed, salience-scored record that
feeds the next assembly.
"""

from .assembler import AssembledContext, ContextAssembler, ContextStats
from .config import MemoryConfig
from .distiller import Distiller
from .models import CompressedTurn, DistilledTurn, FullTurn
from .store import InMemoryMemoryStore, MemoryStore, PostgresMemoryStore
from .token_budget import (
    TokenBudget,
    calculate_budget,
    estimate_message_tokens,
    estimate_tokens,
)

__all__ = [
    "AssembledContext",
    "CompressedTurn",
    "ContextAssembler",
    "ContextStats",
    "DistilledTurn",
    "Distiller",
    "FullTurn",
    "InMemoryMemoryStore",
    "MemoryConfig",
    "MemoryStore",
    "PostgresMemoryStore",
    "TokenBudget",
    "calculate_budget",
    "estimate_message_tokens",
    "estimate_tokens",
]
