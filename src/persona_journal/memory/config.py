"""
Memory configuration and model context window mappings.
"""

import os
from dataclasses import dataclass

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Fireworks
    "accounts/fireworks/models/qwen3-235b-a22b": 131_072,
    "accounts/fireworks/models/qwen3-235b-a22b-instruct-2507": 262_144,
    "accounts/fireworks/models/llama-v3p1-70b-instruct": 131_072,
    # Anthropic
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-3-5-sonnet": 200_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    # DeepSeek
    "deepseek-chat": 64_000,
}

DEFAULT_CONTEXT_WINDOW = 131_072


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class MemoryConfig:
    """Configuration for the tiered memory context engine."""

    # Context window (0 = auto-detect from model name)
    context_window: int = 0

    # Share of the context window available to the budgeted tiers
    budget_ratio: float = 0.40

    # Tier limits
    full_turn_limit: int = 5
    recent_compressed_limit: int = 100
    high_salience_limit: int = 20
    high_salience_min: int = 7

    # Issue tier queries from a thread pool (results are merged in priority order)
    parallel_tier_queries: bool = False

    # Generation parameters per stage
    reasoning_temperature: float = 0.7
    reasoning_max_tokens: int = 4096
    response_temperature: float = 0.7
    response_max_tokens: int = 4096
    distill_temperature: float = 0.3
    distill_max_tokens: int = 1024

    # Second distillation pass that critiques and re-emits the record
    distill_refine: bool = False

    # Embeddings
    embedding_model: str = "voyage-3"
    embedding_base_url: str = ""  # empty = reuse API_BASE_URL
    embedding_api_key: str = ""  # empty = reuse API_KEY
    embedding_dimensions: int = 1024

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        return cls(
            context_window=int(os.getenv("MEMORY_CONTEXT_WINDOW", "0")),
            budget_ratio=float(os.getenv("MEMORY_BUDGET_RATIO", "0.4")),
            full_turn_limit=int(os.getenv("MEMORY_FULL_TURN_LIMIT", "5")),
            recent_compressed_limit=int(
                os.getenv("MEMORY_RECENT_COMPRESSED_LIMIT", "100")
            ),
            high_salience_limit=int(os.getenv("MEMORY_HIGH_SALIENCE_LIMIT", "20")),
            high_salience_min=int(os.getenv("MEMORY_HIGH_SALIENCE_MIN", "7")),
            parallel_tier_queries=_env_bool("MEMORY_PARALLEL_TIER_QUERIES", "false"),
            distill_refine=_env_bool("MEMORY_DISTILL_REFINE", "false"),
            embedding_model=os.getenv("MEMORY_EMBEDDING_MODEL", "voyage-3"),
            embedding_base_url=os.getenv("MEMORY_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("MEMORY_EMBEDDING_API_KEY", ""),
            embedding_dimensions=int(os.getenv("MEMORY_EMBEDDING_DIMENSIONS", "1024")),
        )

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        # Try exact match first, then prefix match
        if model_name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[model_name]
        if model_name:
            for key, size in MODEL_CONTEXT_WINDOWS.items():
                if model_name.startswith(key) or key.startswith(model_name):
                    return size
        return DEFAULT_CONTEXT_WINDOW
