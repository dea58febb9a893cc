"""
Turn distillation.

Compresses one full exchange into a salience-scored memory record
(user intent, persona response, decision arc, salience 1-10). An optional
second pass asks the model to critique and re-emit its own record.
"""

import logging
from typing import Optional

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from ..errors import DistillationError
from .config import MemoryConfig
from .formatter import parse_distillation
from .models import DistilledTurn

logger = logging.getLogger(__name__)

DISTILL_SYSTEM_PROMPT = """You compress one conversation turn into a memory record.

You receive the Boss's message and one persona's full response. Treat them differently:
the Boss's words are source material (preserve), the persona's words are derived
content (condense).

user_intent_summary:
- Keep explanations, numbers, names, timelines, amounts, emotional state, strategic questions.
- Remove only filler, grammatical padding and repetition.

persona_response_summary:
- Keep unique insights, specific recommendations, diagnostic questions, what was chosen or rejected and why.
- Remove examples, analogies, step-by-step detail, politeness, repetition of the Boss's points.

decision_arc_summary:
- One compressed line, 50-150 characters: "pattern type: specific behavior when condition".
- Reflect what the Boss actually said or decided in THIS turn. Never empty.

salience_score (integer 1-10):
- 8-10: values, identity-defining choices, irreversible pivots.
- 5-7: resource allocation, hiring, pricing, roadmap priorities.
- 1-4: tactical or exploratory questions, easily reversible choices.

Output ONLY this JSON object, with exactly these four fields and nothing else:
{
  "user_intent_summary": "...",
  "persona_response_summary": "...",
  "decision_arc_summary": "...",
  "salience_score": 5
}"""

REFINE_DISTILLATION_PROMPT = (
    "Critique the previous record and present a higher quality one. "
    "Output only the corrected JSON object with the same four fields."
)


class Distiller:
    """Runs the distillation call(s) for a completed turn."""

    def __init__(self, generator, config: Optional[MemoryConfig] = None):
        self._generator = generator
        self.config = config or MemoryConfig()

    def _call(self, messages: list) -> str:
        try:
            return self._generator.generate(
                messages,
                temperature=self.config.distill_temperature,
                max_tokens=self.config.distill_max_tokens,
            )
        except Exception as e:
            raise DistillationError(f"Distillation call failed: {e}") from e

    def distill(self, user_message: str, ai_response: str, persona: str) -> DistilledTurn:
        """
        Distill one exchange. Raises DistillationError on call or parse failure;
        a bad record is not retried.
        """
        turn_text = (
            f"User message:\n{user_message}\n\n"
            f"Persona ({persona}) response:\n{ai_response}"
        )
        messages = [
            SystemMessage(content=DISTILL_SYSTEM_PROMPT),
            HumanMessage(content=turn_text),
        ]
        raw = self._call(messages)
        record = parse_distillation(raw)

        if not self.config.distill_refine:
            return record

        refine_messages = [
            *messages,
            AIMessage(content=raw),
            HumanMessage(content=REFINE_DISTILLATION_PROMPT),
        ]
        refined = parse_distillation(self._call(refine_messages))
        logger.debug(
            "Refined distillation: salience %d -> %d",
            record.salience_score,
            refined.salience_score,
        )
        return refined
