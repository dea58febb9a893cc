"""
Persisted memory records and the distillation record.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

MIN_SALIENCE = 1
MAX_SALIENCE = 10
GLOBAL_SCOPE = "global"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class FullTurn:
    """One raw exchange (a superjournal row). Never edited once written."""

    persona: str
    user_message: str
    ai_response: str
    user_id: Optional[str] = None
    is_starred: bool = False
    is_private: bool = False
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)


@dataclass
class CompressedTurn:
    """
    A distilled memory record (a journal row).

    Usually derived from one FullTurn (``full_turn_id``). Instruction
    entries and uploaded-file summaries have no source turn; a file
    summary carries ``file_name``/``file_type`` and keeps its description
    in ``persona_response_summary``.
    """

    persona: str
    user_intent_summary: Optional[str]
    persona_response_summary: Optional[str]
    decision_arc_summary: Optional[str]
    salience_score: int
    user_id: Optional[str] = None
    full_turn_id: Optional[str] = None
    is_starred: bool = False
    is_instruction: bool = False
    instruction_scope: Optional[str] = None
    is_private: bool = False
    embedding: Optional[list[float]] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self):
        if not MIN_SALIENCE <= self.salience_score <= MAX_SALIENCE:
            raise ValueError(
                f"salience_score must be in [{MIN_SALIENCE}, {MAX_SALIENCE}], "
                f"got {self.salience_score}"
            )

    @property
    def is_file_summary(self) -> bool:
        return self.file_name is not None


class DistilledTurn(BaseModel):
    """Structured output of the distillation call."""

    model_config = ConfigDict(extra="forbid", strict=True)

    user_intent_summary: str = Field(min_length=1)
    persona_response_summary: str = Field(min_length=1)
    decision_arc_summary: str = Field(min_length=1)
    salience_score: int = Field(ge=MIN_SALIENCE, le=MAX_SALIENCE)
