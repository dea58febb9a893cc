"""
Prompt and response formatting.

Pure functions that render memory items into context text, turn an
assembled context into a role-tagged LangChain message list, and parse the
distillation call's output.
"""

import json
import re
from typing import Optional

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from pydantic import ValidationError

from ..errors import DistillationError
from .models import CompressedTurn, DistilledTurn, FullTurn

# Section headings, in render order. Downstream consumers match on these.
WORKING_MEMORY = "WORKING MEMORY"  # tier 1 is sent as chat history, not a section
STARRED_MESSAGES = "STARRED MESSAGES"
BEHAVIORAL_INSTRUCTIONS = "BEHAVIORAL INSTRUCTIONS"
RECENT_MEMORY = "RECENT MEMORY"
DECISION_ARCS = "DECISION ARCS"
UPLOADED_FILES = "UPLOADED FILES"

SECTION_ORDER = (
    STARRED_MESSAGES,
    BEHAVIORAL_INSTRUCTIONS,
    RECENT_MEMORY,
    DECISION_ARCS,
    UPLOADED_FILES,
)

ITEM_SEPARATOR = "\n\n"

REFINE_RESPONSE_PROMPT = (
    "Now provide your refined, user-facing response based on your analysis above."
)

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def _blank(text: Optional[str]) -> bool:
    return text is None or not str(text).strip()


def _date(turn) -> str:
    return turn.created_at.strftime("%Y-%m-%d")


def section_header(heading: str) -> str:
    return f"--- {heading} ---\n"


def _memory_lines(turn: CompressedTurn) -> list[str]:
    lines = []
    if not _blank(turn.user_intent_summary):
        lines.append(f"User: {turn.user_intent_summary.strip()}")
    if not _blank(turn.persona_response_summary):
        lines.append(
            f"{turn.persona.capitalize()}: {turn.persona_response_summary.strip()}"
        )
    if not _blank(turn.decision_arc_summary):
        lines.append(f"Arc: {turn.decision_arc_summary.strip()}")
    return lines


def render_starred(turn: CompressedTurn) -> Optional[str]:
    lines = _memory_lines(turn)
    if not lines:
        return None
    return "\n".join([f"[Starred - {_date(turn)} | salience {turn.salience_score}]", *lines])


def render_instruction(turn: CompressedTurn) -> Optional[str]:
    lines = _memory_lines(turn)
    if not lines:
        return None
    scope = turn.instruction_scope or "global"
    return "\n".join([f"[Instruction - {_date(turn)} | scope: {scope}]", *lines])


def render_recent(turn: CompressedTurn) -> Optional[str]:
    lines = _memory_lines(turn)
    if not lines:
        return None
    return "\n".join([f"[Recent Memory - {_date(turn)}]", *lines])


def render_decision_arc(turn: CompressedTurn) -> Optional[str]:
    if _blank(turn.decision_arc_summary):
        return None
    return f"[{turn.salience_score}] {turn.decision_arc_summary.strip()}"


def render_file_summary(turn: CompressedTurn) -> Optional[str]:
    if _blank(turn.persona_response_summary) or _blank(turn.file_name):
        return None
    file_type = turn.file_type or "other"
    return f"## {turn.file_name} ({file_type})\n{turn.persona_response_summary.strip()}"


TIER_RENDERERS = {
    STARRED_MESSAGES: render_starred,
    BEHAVIORAL_INSTRUCTIONS: render_instruction,
    RECENT_MEMORY: render_recent,
    DECISION_ARCS: render_decision_arc,
    UPLOADED_FILES: render_file_summary,
}


def render_section(heading: str, items: list[str]) -> str:
    """Render one context section; empty sections render as ''."""
    if not items:
        return ""
    return section_header(heading) + "".join(item + ITEM_SEPARATOR for item in items)


def build_system_prompt(base_instructions: str, persona_profile: str, context: str) -> str:
    parts = [base_instructions.strip(), persona_profile.strip()]
    if context:
        parts.append(context.rstrip())
    return "\n\n---\n\n".join(parts)


def history_messages(turns: list[FullTurn]) -> list:
    """Render full turns (given newest first) as chat history, oldest first."""
    messages = []
    for turn in reversed(turns):
        messages.append(HumanMessage(content=turn.user_message))
        messages.append(AIMessage(content=turn.ai_response))
    return messages


def build_messages(system_prompt: str, history: list[FullTurn], query: str) -> list:
    """system prompt, then prior full turns, then the new user query."""
    return [
        SystemMessage(content=system_prompt),
        *history_messages(history),
        HumanMessage(content=query),
    ]


def build_response_messages(messages: list, reasoning: str) -> list:
    """Seed the visible answer with the hidden reasoning as an assistant turn."""
    return [
        *messages,
        AIMessage(content=reasoning),
        HumanMessage(content=REFINE_RESPONSE_PROMPT),
    ]


def message_text(response) -> str:
    """Extract plain text from a LangChain message, chunk or raw string."""
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content) if content else ""


def parse_distillation(raw: str) -> DistilledTurn:
    """
    Parse the distillation call's output.

    Reasoning models may wrap the object in <think> blocks or a markdown
    fence; the object itself must match DistilledTurn exactly. Any failure
    raises DistillationError.
    """
    if _blank(raw):
        raise DistillationError("Empty distillation output")

    text = _THINK_BLOCK.sub("", raw).strip()
    match = _JSON_OBJECT.search(text)
    if not match:
        raise DistillationError(f"No JSON object in distillation output: {raw[:200]!r}")

    try:
        payload = json.loads(match.group())
    except json.JSONDecodeError as e:
        raise DistillationError(f"Invalid JSON in distillation output: {e}") from e

    if not isinstance(payload, dict):
        raise DistillationError("Distillation output is not a JSON object")

    try:
        return DistilledTurn.model_validate(payload)
    except ValidationError as e:
        raise DistillationError(f"Invalid distillation record: {e}") from e
