"""
Call pipeline for one chat turn.

    ASSEMBLE -> REASON (hidden) -> RESPOND (streamed) -> DISTILL -> PERSIST

- ASSEMBLE: tiered memory context + persona profile -> message list
- REASON: non-streaming call; its output never leaves the pipeline
- RESPOND: streaming call seeded with the reasoning; chunks are yielded to
  the caller in arrival order
- DISTILL: compress the exchange into a salience-scored record + embedding
- PERSIST: write the full turn, then the compressed turn that references it

A failed distillation or embedding only loses the compressed turn; the full
turn is still written. A cancelled or failed RESPOND writes nothing.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Union

from .errors import (
    DistillationError,
    EmbeddingError,
    ReasoningError,
    StreamingError,
    TurnCancelled,
)
from .llm import ChatGenerator, create_chat_model, create_embeddings, get_model_name
from .memory.assembler import ContextAssembler, ContextStats
from .memory.config import MemoryConfig
from .memory.distiller import Distiller
from .memory.formatter import (
    build_messages,
    build_response_messages,
    build_system_prompt,
)
from .memory.models import CompressedTurn, DistilledTurn, FullTurn
from .memory.store import InMemoryMemoryStore, MemoryStore, PostgresMemoryStore
from .personas import BASE_INSTRUCTIONS, PERSONA_PROFILES, Persona

logger = logging.getLogger(__name__)


class TurnStage(str, Enum):
    ASSEMBLE = "assemble"
    REASON = "reason"
    RESPOND = "respond"
    DISTILL = "distill"
    PERSIST = "persist"


@dataclass
class TurnResult:
    """Outcome of a completed turn."""

    response: str
    full_turn: FullTurn
    compressed_turn: Optional[CompressedTurn]
    context_stats: ContextStats
    distill_error: Optional[str] = None


class CallPipeline:
    """
    Runs chat turns against the tiered memory.

    Usage:
        pipeline = CallPipeline(store, ChatGenerator(model), embeddings)
        for event in pipeline.stream_turn("Should we raise prices?", "stefan"):
            if event["type"] == "text":
                print(event["content"], end="")
    """

    def __init__(
        self,
        store: MemoryStore,
        generator: ChatGenerator,
        embeddings=None,
        config: Optional[MemoryConfig] = None,
        model_name: str = "",
    ):
        self.store = store
        self.generator = generator
        self.embeddings = embeddings
        self.config = config or MemoryConfig()
        self.model_name = model_name
        self.assembler = ContextAssembler(store, self.config, model_name)
        self.distiller = Distiller(generator, self.config)

    @staticmethod
    def _check_cancelled(cancel_event, stage: TurnStage):
        if cancel_event is not None and cancel_event.is_set():
            raise TurnCancelled(f"Turn abandoned before {stage.value}")

    def stream_turn(
        self,
        query: str,
        persona: Union[str, Persona],
        user_id: Optional[str] = None,
        cancel_event=None,
        context_window: Optional[int] = None,
    ) -> Iterator[dict]:
        """
        Run one turn, yielding events:

        - {"type": "text", "content": "..."}: a response chunk
        - {"type": "error", "error": "..."}: the stream failed (then raises)
        - {"type": "done", "response": "...", "full_turn_id": "...",
           "compressed_turn_id": "..." | None, "result": TurnResult}

        ``cancel_event`` (e.g. a threading.Event) abandons the turn when
        set; closing the generator has the same effect. Either way nothing
        is distilled or persisted.
        """
        # --- ASSEMBLE ---
        persona = Persona.parse(persona)
        self._check_cancelled(cancel_event, TurnStage.ASSEMBLE)
        context = self.assembler.build(user_id, persona, context_window)
        system_prompt = build_system_prompt(
            BASE_INSTRUCTIONS, PERSONA_PROFILES[persona], context.text
        )
        messages = build_messages(system_prompt, context.history, query)

        # --- REASON ---
        self._check_cancelled(cancel_event, TurnStage.REASON)
        reasoning = self._reason(messages)

        # --- RESPOND ---
        self._check_cancelled(cancel_event, TurnStage.RESPOND)
        chunks: list[str] = []
        stream = None
        try:
            stream = self.generator.generate_streaming(
                build_response_messages(messages, reasoning),
                temperature=self.config.response_temperature,
                max_tokens=self.config.response_max_tokens,
            )
            for text in stream:
                self._check_cancelled(cancel_event, TurnStage.RESPOND)
                chunks.append(text)
                yield {"type": "text", "content": text}
        except TurnCancelled:
            logger.info("Turn for %s cancelled mid-stream", persona.value)
            raise
        except Exception as e:
            logger.warning("Response stream for %s failed: %s", persona.value, e)
            yield {"type": "error", "error": str(e)}
            raise StreamingError(f"Response stream failed: {e}") from e
        finally:
            close = getattr(stream, "close", None)
            if close:
                close()

        self._check_cancelled(cancel_event, TurnStage.DISTILL)
        response = "".join(chunks)

        # --- DISTILL ---
        record, embedding, distill_error = self._distill(query, response, persona)

        # --- PERSIST ---
        full_turn, compressed_turn = self._persist(
            user_id, persona, query, response, record, embedding
        )

        logger.info(
            "Turn complete for %s: %d chars, full_turn=%s, compressed_turn=%s",
            persona.value,
            len(response),
            full_turn.id,
            compressed_turn.id if compressed_turn else None,
        )

        result = TurnResult(
            response=response,
            full_turn=full_turn,
            compressed_turn=compressed_turn,
            context_stats=context.stats,
            distill_error=distill_error,
        )
        yield {
            "type": "done",
            "response": response,
            "full_turn_id": full_turn.id,
            "compressed_turn_id": compressed_turn.id if compressed_turn else None,
            "result": result,
        }

    def run_turn(
        self,
        query: str,
        persona: Union[str, Persona],
        user_id: Optional[str] = None,
        cancel_event=None,
        context_window: Optional[int] = None,
    ) -> TurnResult:
        """Run a turn to completion without forwarding chunks."""
        result = None
        for event in self.stream_turn(
            query, persona, user_id, cancel_event, context_window
        ):
            if event["type"] == "done":
                result = event["result"]
        return result

    def _reason(self, messages: list) -> str:
        try:
            return self.generator.generate(
                messages,
                temperature=self.config.reasoning_temperature,
                max_tokens=self.config.reasoning_max_tokens,
            )
        except Exception as e:
            logger.warning("Reasoning call failed: %s", e)
            raise ReasoningError(f"Reasoning call failed: {e}") from e

    def _embed(self, text: str) -> Optional[list[float]]:
        if self.embeddings is None:
            return None
        try:
            return self.embeddings.embed_query(text)
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e

    def _distill(
        self, query: str, response: str, persona: Persona
    ) -> tuple[Optional[DistilledTurn], Optional[list[float]], Optional[str]]:
        try:
            record = self.distiller.distill(query, response, persona.value)
            embedding = self._embed(record.decision_arc_summary)
        except (DistillationError, EmbeddingError) as e:
            logger.warning(
                "Skipping compressed memory for %s turn: %s", persona.value, e
            )
            return None, None, str(e)
        return record, embedding, None

    def _persist(
        self,
        user_id: Optional[str],
        persona: Persona,
        query: str,
        response: str,
        record: Optional[DistilledTurn],
        embedding: Optional[list[float]],
    ) -> tuple[FullTurn, Optional[CompressedTurn]]:
        full_turn = self.store.insert_full_turn(
            FullTurn(
                user_id=user_id,
                persona=persona.value,
                user_message=query,
                ai_response=response,
                is_private=persona.is_private,
            )
        )
        if record is None:
            return full_turn, None

        try:
            compressed_turn = self.store.insert_compressed_turn(
                CompressedTurn(
                    full_turn_id=full_turn.id,
                    user_id=user_id,
                    persona=persona.value,
                    user_intent_summary=record.user_intent_summary,
                    persona_response_summary=record.persona_response_summary,
                    decision_arc_summary=record.decision_arc_summary,
                    salience_score=record.salience_score,
                    is_private=persona.is_private,
                    embedding=embedding,
                )
            )
        except Exception as e:
            logger.warning("Failed to store compressed turn for %s: %s", full_turn.id, e)
            return full_turn, None
        return full_turn, compressed_turn


def _create_store(config: MemoryConfig) -> MemoryStore:
    """
    PostgreSQL store when DATABASE_URL is set, in-memory otherwise (so the
    pipeline runs without a database).
    """
    db_url = os.getenv("DATABASE_URL")
    if db_url:
        try:
            from psycopg import Connection

            conn = Connection.connect(db_url, autocommit=True, prepare_threshold=0)
            store = PostgresMemoryStore(conn, config.embedding_dimensions)
            store.setup()
            return store
        except Exception as e:
            logger.warning(
                "Failed to connect to PostgreSQL: %s. Falling back to in-memory store.", e
            )
    return InMemoryMemoryStore()


def create_call_pipeline(
    model_name: Optional[str] = None,
    config: Optional[MemoryConfig] = None,
    store: Optional[MemoryStore] = None,
) -> CallPipeline:
    """Build a pipeline from environment configuration."""
    config = config or MemoryConfig.from_env()
    model_name = model_name or get_model_name()
    store = store or _create_store(config)

    embeddings = None
    try:
        embeddings = create_embeddings(config)
    except Exception as e:
        logger.warning("Failed to create embedding model: %s", e)

    return CallPipeline(
        store=store,
        generator=ChatGenerator(create_chat_model(model_name)),
        embeddings=embeddings,
        config=config,
        model_name=model_name,
    )
