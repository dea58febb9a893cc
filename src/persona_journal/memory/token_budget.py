"""
Token estimation and budget calculation for the tiered context.

Counts are approximate (4 characters per token) and always rounded up, so
a packed context never exceeds its budget because of estimation error.
"""

import math
from dataclasses import dataclass
from typing import Optional

from .config import MemoryConfig

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4  # role tag etc.


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token estimate: ceil(chars / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(msg) -> int:
    """Estimate tokens for a LangChain message."""
    content = getattr(msg, "content", "")
    if isinstance(content, str):
        return estimate_tokens(content) + MESSAGE_OVERHEAD_TOKENS
    if isinstance(content, list):
        total = MESSAGE_OVERHEAD_TOKENS
        for block in content:
            if isinstance(block, str):
                total += estimate_tokens(block)
            elif isinstance(block, dict):
                total += estimate_tokens(block.get("text", ""))
        return total
    return MESSAGE_OVERHEAD_TOKENS


@dataclass
class TokenBudget:
    """Token ceiling for the budget-gated tiers of one assembly."""

    context_window: int
    total: int


def calculate_budget(
    config: MemoryConfig,
    model_name: str = "",
    context_window: Optional[int] = None,
) -> TokenBudget:
    """
    Calculate the token budget for the budget-gated tiers.

    budget = floor(context_window * budget_ratio)

    An explicit ``context_window`` (resolved by the caller for this turn)
    wins over config and model-name lookup.
    """
    if context_window is None or context_window <= 0:
        context_window = config.get_context_window(model_name)
    return TokenBudget(
        context_window=context_window,
        total=max(math.floor(context_window * config.budget_ratio), 0),
    )
