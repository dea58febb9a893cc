"""
Exception taxonomy for a chat turn.

Fatal errors (unknown persona, reasoning, streaming, cancellation) abort
the turn before anything is persisted. Distillation and embedding errors
only cost the turn its compressed memory entry.
"""


class PersonaJournalError(Exception):
    """Base class for all engine errors."""


class UnknownPersonaError(PersonaJournalError, ValueError):
    """Raised when a turn is addressed to a persona that does not exist."""

    def __init__(self, name):
        super().__init__(f"Unknown persona: {name!r}")
        self.name = name


class ReasoningError(PersonaJournalError):
    """The hidden reasoning call failed."""


class StreamingError(PersonaJournalError):
    """The user-visible stream failed before completion."""


class TurnCancelled(PersonaJournalError):
    """The caller abandoned the turn."""


class DistillationError(PersonaJournalError):
    """The distillation call failed or returned an invalid record."""


class EmbeddingError(PersonaJournalError):
    """The decision-arc embedding could not be computed."""
