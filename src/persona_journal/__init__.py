"""
Persona journal: a multi-persona journaling assistant with compounding memory.
"""

from .errors import (
    DistillationError,
    EmbeddingError,
    PersonaJournalError,
    ReasoningError,
    StreamingError,
    TurnCancelled,
    UnknownPersonaError,
)
from .personas import PRIVATE_PERSONA, Persona
from .pipeline import CallPipeline, TurnResult, TurnStage, create_call_pipeline

__all__ = [
    "CallPipeline",
    "DistillationError",
    "EmbeddingError",
    "PRIVATE_PERSONA",
    "Persona",
    "PersonaJournalError",
    "ReasoningError",
    "StreamingError",
    "TurnCancelled",
    "TurnResult",
    "TurnStage",
    "UnknownPersonaError",
    "create_call_pipeline",
]
