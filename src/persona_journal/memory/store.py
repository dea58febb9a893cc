"""
Memory store client: one bounded, ordered query per context tier plus the
writes of the call pipeline.

Two backends share the ``MemoryStore`` interface:

  - PostgresMemoryStore: psycopg 3 + pgvector, tables ``superjournal``
    (full turns) and ``journal`` (compressed turns, instructions and
    uploaded-file summaries)
  - InMemoryMemoryStore: list-backed, read-after-write, for development
    and tests

Queries return empty lists when nothing matches. Genuine backend failures
propagate; the context assembler isolates them per tier.

``user_id=None`` selects rows written before authentication existed
(NULL user_id), never "all users".

Private rows (written while talking to the private persona) are only
visible in the user-wide tiers (starred, high-salience) when the current
persona is the one that produced them.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from .models import GLOBAL_SCOPE, CompressedTurn, FullTurn

logger = logging.getLogger(__name__)

_FULL_TURN_COLUMNS = (
    "id, user_id, persona_name, user_message, ai_response, "
    "is_starred, is_private, created_at"
)

_COMPRESSED_TURN_COLUMNS = (
    "id, superjournal_id, user_id, persona_name, user_intent_summary, "
    "persona_response_summary, decision_arc_summary, salience_score, "
    "is_starred, is_instruction, instruction_scope, is_private, "
    "file_name, file_type, created_at, updated_at"
)


class MemoryStore(ABC):
    """Read/write interface over full turns and compressed turns."""

    # -- tier queries --

    @abstractmethod
    def recent_full_turns(
        self, user_id: Optional[str], persona: str, limit: int = 5
    ) -> list[FullTurn]:
        """Most recent full turns for (user, persona), newest first."""

    @abstractmethod
    def starred_turns(
        self, user_id: Optional[str], persona: str
    ) -> list[CompressedTurn]:
        """Starred conversation memories for the user, highest salience first."""

    @abstractmethod
    def instructions(
        self, user_id: Optional[str], persona: str
    ) -> list[CompressedTurn]:
        """Instruction entries scoped globally or to this persona, oldest first."""

    @abstractmethod
    def recent_compressed_turns(
        self, user_id: Optional[str], persona: str, limit: int = 100
    ) -> list[CompressedTurn]:
        """Most recent conversation memories for (user, persona), newest first."""

    @abstractmethod
    def high_salience_turns(
        self,
        user_id: Optional[str],
        persona: str,
        min_salience: int = 7,
        limit: int = 20,
    ) -> list[CompressedTurn]:
        """Conversation memories with salience >= min_salience, highest first."""

    @abstractmethod
    def file_summaries(self, user_id: Optional[str]) -> list[CompressedTurn]:
        """Uploaded-file summaries for the user, newest first."""

    # -- writes --

    @abstractmethod
    def insert_full_turn(self, turn: FullTurn) -> FullTurn:
        """Persist a full turn."""

    @abstractmethod
    def insert_compressed_turn(self, turn: CompressedTurn) -> CompressedTurn:
        """Persist a compressed turn, instruction or file summary."""

    def insert_file_summary(
        self,
        user_id: Optional[str],
        file_name: str,
        file_type: str,
        description: str,
        embedding: Optional[list[float]] = None,
        salience_score: int = 5,
    ) -> CompressedTurn:
        """Persist the summary of an uploaded file as a journal entry."""
        entry = CompressedTurn(
            persona=GLOBAL_SCOPE,
            user_intent_summary=None,
            persona_response_summary=description,
            decision_arc_summary=None,
            salience_score=salience_score,
            user_id=user_id,
            embedding=embedding,
            file_name=file_name,
            file_type=file_type,
        )
        return self.insert_compressed_turn(entry)

    # -- maintenance --

    @abstractmethod
    def set_starred(self, turn_id: str, starred: bool = True) -> bool:
        """Star or unstar a full or compressed turn. Returns True if found."""

    @abstractmethod
    def delete_full_turn(self, turn_id: str) -> bool:
        """Delete a full turn and the compressed turns derived from it."""

    @abstractmethod
    def delete_compressed_turn(self, turn_id: str) -> bool:
        """Delete a single compressed turn."""

    @abstractmethod
    def clear(self, user_id: Optional[str]) -> None:
        """Delete every full and compressed turn owned by the user."""


def _visible_to(turn, persona: str) -> bool:
    return not turn.is_private or turn.persona == persona


def _newest_first(rows: list) -> list:
    # Stable on equal timestamps: later inserts count as newer.
    indexed = list(enumerate(rows))
    indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
    return [row for _, row in indexed]


class InMemoryMemoryStore(MemoryStore):
    """List-backed store with read-after-write consistency."""

    def __init__(self):
        self.full_turns: list[FullTurn] = []
        self.compressed_turns: list[CompressedTurn] = []
        self._lock = threading.Lock()

    def _snapshot(self) -> tuple[list[FullTurn], list[CompressedTurn]]:
        with self._lock:
            return list(self.full_turns), list(self.compressed_turns)

    def _conversation_memories(self, user_id: Optional[str]) -> list[CompressedTurn]:
        _, compressed = self._snapshot()
        return [
            t for t in compressed
            if t.user_id == user_id and not t.is_instruction and not t.is_file_summary
        ]

    def recent_full_turns(self, user_id, persona, limit=5):
        full, _ = self._snapshot()
        rows = [t for t in full if t.user_id == user_id and t.persona == persona]
        return _newest_first(rows)[:limit]

    def starred_turns(self, user_id, persona):
        _, compressed = self._snapshot()
        rows = _newest_first([
            t for t in compressed
            if t.user_id == user_id
            and t.is_starred
            and not t.is_instruction
            and not t.is_file_summary
            and _visible_to(t, persona)
        ])
        # sort() is stable, so newest-first survives within equal salience
        rows.sort(key=lambda t: t.salience_score, reverse=True)
        return rows

    def instructions(self, user_id, persona):
        _, compressed = self._snapshot()
        rows = [
            t for t in compressed
            if t.user_id == user_id
            and t.is_instruction
            and t.instruction_scope in (GLOBAL_SCOPE, persona)
        ]
        return list(reversed(_newest_first(rows)))

    def recent_compressed_turns(self, user_id, persona, limit=100):
        rows = [t for t in self._conversation_memories(user_id) if t.persona == persona]
        return _newest_first(rows)[:limit]

    def high_salience_turns(self, user_id, persona, min_salience=7, limit=20):
        rows = _newest_first([
            t for t in self._conversation_memories(user_id)
            if t.salience_score >= min_salience and _visible_to(t, persona)
        ])
        rows.sort(key=lambda t: t.salience_score, reverse=True)
        return rows[:limit]

    def file_summaries(self, user_id):
        _, compressed = self._snapshot()
        rows = [t for t in compressed if t.user_id == user_id and t.is_file_summary]
        return _newest_first(rows)

    def insert_full_turn(self, turn):
        with self._lock:
            self.full_turns.append(turn)
        return turn

    def insert_compressed_turn(self, turn):
        with self._lock:
            self.compressed_turns.append(turn)
        return turn

    def set_starred(self, turn_id, starred=True):
        with self._lock:
            for turn in [*self.full_turns, *self.compressed_turns]:
                if turn.id == turn_id:
                    turn.is_starred = starred
                    return True
        return False

    def delete_full_turn(self, turn_id):
        with self._lock:
            before = len(self.full_turns)
            self.full_turns = [t for t in self.full_turns if t.id != turn_id]
            if len(self.full_turns) == before:
                return False
            self.compressed_turns = [
                t for t in self.compressed_turns if t.full_turn_id != turn_id
            ]
        return True

    def delete_compressed_turn(self, turn_id):
        with self._lock:
            before = len(self.compressed_turns)
            self.compressed_turns = [t for t in self.compressed_turns if t.id != turn_id]
            return len(self.compressed_turns) < before

    def clear(self, user_id):
        with self._lock:
            self.full_turns = [t for t in self.full_turns if t.user_id != user_id]
            self.compressed_turns = [
                t for t in self.compressed_turns if t.user_id != user_id
            ]


class PostgresMemoryStore(MemoryStore):
    """
    PostgreSQL-backed store (psycopg 3 connection, pgvector embeddings).

    The connection should be opened with ``autocommit=True``, as the agent
    factory does.
    """

    def __init__(self, pg_conn, embedding_dimensions: int = 1024):
        self._pg_conn = pg_conn
        self._embedding_dimensions = embedding_dimensions

    def setup(self):
        """Create the superjournal and journal tables if missing."""
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS superjournal (
                        id UUID PRIMARY KEY,
                        user_id TEXT,
                        persona_name TEXT NOT NULL,
                        user_message TEXT NOT NULL,
                        ai_response TEXT NOT NULL,
                        is_starred BOOLEAN NOT NULL DEFAULT false,
                        is_private BOOLEAN NOT NULL DEFAULT false,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS journal (
                        id UUID PRIMARY KEY,
                        superjournal_id UUID REFERENCES superjournal(id) ON DELETE CASCADE,
                        user_id TEXT,
                        persona_name TEXT NOT NULL,
                        user_intent_summary TEXT,
                        persona_response_summary TEXT,
                        decision_arc_summary TEXT,
                        salience_score INTEGER NOT NULL
                            CHECK (salience_score >= 1 AND salience_score <= 10),
                        is_starred BOOLEAN NOT NULL DEFAULT false,
                        is_instruction BOOLEAN NOT NULL DEFAULT false,
                        instruction_scope TEXT,
                        is_private BOOLEAN NOT NULL DEFAULT false,
                        file_name TEXT,
                        file_type TEXT,
                        embedding vector({int(self._embedding_dimensions)}),
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_superjournal_user_persona
                    ON superjournal (user_id, persona_name, created_at DESC)
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_journal_user_created
                    ON journal (user_id, created_at DESC)
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_journal_instruction_scope
                    ON journal (is_instruction, instruction_scope)
                    WHERE is_instruction = true
                """)
        except Exception as e:
            logger.warning("Failed to setup journal tables: %s", e)

    def _fetch(self, sql: str, params: tuple) -> list[dict]:
        from psycopg.rows import dict_row

        with self._pg_conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    @staticmethod
    def _to_full_turn(row: dict) -> FullTurn:
        return FullTurn(
            id=str(row["id"]),
            user_id=row["user_id"],
            persona=row["persona_name"],
            user_message=row["user_message"],
            ai_response=row["ai_response"],
            is_starred=row["is_starred"],
            is_private=row["is_private"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _to_compressed_turn(row: dict) -> CompressedTurn:
        sj_id = row.get("superjournal_id")
        return CompressedTurn(
            id=str(row["id"]),
            full_turn_id=str(sj_id) if sj_id else None,
            user_id=row["user_id"],
            persona=row["persona_name"],
            user_intent_summary=row["user_intent_summary"],
            persona_response_summary=row["persona_response_summary"],
            decision_arc_summary=row["decision_arc_summary"],
            salience_score=row["salience_score"],
            is_starred=row["is_starred"],
            is_instruction=row["is_instruction"],
            instruction_scope=row["instruction_scope"],
            is_private=row["is_private"],
            file_name=row["file_name"],
            file_type=row["file_type"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def recent_full_turns(self, user_id, persona, limit=5):
        rows = self._fetch(
            f"""
            SELECT {_FULL_TURN_COLUMNS} FROM superjournal
            WHERE user_id IS NOT DISTINCT FROM %s AND persona_name = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (user_id, persona, limit),
        )
        return [self._to_full_turn(r) for r in rows]

    def starred_turns(self, user_id, persona):
        rows = self._fetch(
            f"""
            SELECT {_COMPRESSED_TURN_COLUMNS} FROM journal
            WHERE user_id IS NOT DISTINCT FROM %s
              AND is_starred = true
              AND is_instruction = false
              AND file_name IS NULL
              AND (is_private = false OR persona_name = %s)
            ORDER BY salience_score DESC, created_at DESC
            """,
            (user_id, persona),
        )
        return [self._to_compressed_turn(r) for r in rows]

    def instructions(self, user_id, persona):
        rows = self._fetch(
            f"""
            SELECT {_COMPRESSED_TURN_COLUMNS} FROM journal
            WHERE user_id IS NOT DISTINCT FROM %s
              AND is_instruction = true
              AND instruction_scope IN (%s, %s)
            ORDER BY created_at ASC
            """,
            (user_id, GLOBAL_SCOPE, persona),
        )
        return [self._to_compressed_turn(r) for r in rows]

    def recent_compressed_turns(self, user_id, persona, limit=100):
        rows = self._fetch(
            f"""
            SELECT {_COMPRESSED_TURN_COLUMNS} FROM journal
            WHERE user_id IS NOT DISTINCT FROM %s
              AND persona_name = %s
              AND is_instruction = false
              AND file_name IS NULL
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (user_id, persona, limit),
        )
        return [self._to_compressed_turn(r) for r in rows]

    def high_salience_turns(self, user_id, persona, min_salience=7, limit=20):
        rows = self._fetch(
            f"""
            SELECT {_COMPRESSED_TURN_COLUMNS} FROM journal
            WHERE user_id IS NOT DISTINCT FROM %s
              AND salience_score >= %s
              AND is_instruction = false
              AND file_name IS NULL
              AND (is_private = false OR persona_name = %s)
            ORDER BY salience_score DESC, created_at DESC
            LIMIT %s
            """,
            (user_id, min_salience, persona, limit),
        )
        return [self._to_compressed_turn(r) for r in rows]

    def file_summaries(self, user_id):
        rows = self._fetch(
            f"""
            SELECT {_COMPRESSED_TURN_COLUMNS} FROM journal
            WHERE user_id IS NOT DISTINCT FROM %s AND file_name IS NOT NULL
            ORDER BY created_at DESC
            """,
            (user_id,),
        )
        return [self._to_compressed_turn(r) for r in rows]

    def insert_full_turn(self, turn):
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO superjournal (id, user_id, persona_name, user_message,
                                          ai_response, is_starred, is_private, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    turn.id, turn.user_id, turn.persona, turn.user_message,
                    turn.ai_response, turn.is_starred, turn.is_private, turn.created_at,
                ),
            )
        return turn

    def insert_compressed_turn(self, turn):
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO journal (id, superjournal_id, user_id, persona_name,
                                     user_intent_summary, persona_response_summary,
                                     decision_arc_summary, salience_score, is_starred,
                                     is_instruction, instruction_scope, is_private,
                                     file_name, file_type, embedding,
                                     created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                        %s::vector, %s, %s)
                """,
                (
                    turn.id, turn.full_turn_id, turn.user_id, turn.persona,
                    turn.user_intent_summary, turn.persona_response_summary,
                    turn.decision_arc_summary, turn.salience_score, turn.is_starred,
                    turn.is_instruction, turn.instruction_scope, turn.is_private,
                    turn.file_name, turn.file_type,
                    _vector_literal(turn.embedding), turn.created_at, turn.updated_at,
                ),
            )
        return turn

    def set_starred(self, turn_id, starred=True):
        with self._pg_conn.cursor() as cur:
            cur.execute(
                "UPDATE superjournal SET is_starred = %s WHERE id = %s",
                (starred, turn_id),
            )
            found = cur.rowcount > 0
            cur.execute(
                "UPDATE journal SET is_starred = %s, updated_at = now() WHERE id = %s",
                (starred, turn_id),
            )
            return found or cur.rowcount > 0

    def delete_full_turn(self, turn_id):
        # journal rows go with it through ON DELETE CASCADE
        with self._pg_conn.cursor() as cur:
            cur.execute("DELETE FROM superjournal WHERE id = %s", (turn_id,))
            return cur.rowcount > 0

    def delete_compressed_turn(self, turn_id):
        with self._pg_conn.cursor() as cur:
            cur.execute("DELETE FROM journal WHERE id = %s", (turn_id,))
            return cur.rowcount > 0

    def clear(self, user_id):
        with self._pg_conn.cursor() as cur:
            cur.execute(
                "DELETE FROM journal WHERE user_id IS NOT DISTINCT FROM %s", (user_id,)
            )
            cur.execute(
                "DELETE FROM superjournal WHERE user_id IS NOT DISTINCT FROM %s",
                (user_id,),
            )
        logger.info("Cleared all memory for user %s", user_id)


def _vector_literal(embedding: Optional[list[float]]) -> Optional[str]:
    """Format an embedding as a pgvector text literal."""
    if embedding is None:
        return None
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"
