"""Activation state storage, keyed by (conversation_id, entry_id).

Two implementations of the StateStore contract:
  - SQLiteStateStore: aiosqlite-backed, one transaction per batch commit
  - InMemoryStateStore: dict-backed, for tests and single-process use

Both commit a turn's states all-or-nothing.
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from knowledge_activation.config import STATE_DB_PATH
from knowledge_activation.errors import StateCommitError
from knowledge_activation.models import ActivationState, Phase

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS activation_state (
    conversation_id     TEXT NOT NULL,
    entry_id            TEXT NOT NULL,
    phase               TEXT NOT NULL DEFAULT 'neutral',
    remaining           INTEGER NOT NULL DEFAULT 0,
    consecutive_matches INTEGER NOT NULL DEFAULT 0,
    last_turn_index     INTEGER NOT NULL DEFAULT -1,
    primed              INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (conversation_id, entry_id)
);

CREATE INDEX IF NOT EXISTS idx_state_conversation ON activation_state(conversation_id);
"""


class SQLiteStateStore:
    """Async SQLite store for per-conversation activation state."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or STATE_DB_PATH
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "SQLiteStateStore not initialized — call initialize() first"
        return self._db

    async def get_state(self, conversation_id: str, entry_id: str) -> ActivationState:
        async with self.db.execute(
            "SELECT * FROM activation_state WHERE conversation_id = ? AND entry_id = ?",
            (conversation_id, entry_id),
        ) as cur:
            row = await cur.fetchone()
            return _row_to_state(dict(row)) if row else ActivationState()

    async def get_states(
        self, conversation_id: str, entry_ids: list[str],
    ) -> dict[str, ActivationState]:
        wanted = set(entry_ids)
        states = {eid: ActivationState() for eid in entry_ids}
        async with self.db.execute(
            "SELECT * FROM activation_state WHERE conversation_id = ?", (conversation_id,),
        ) as cur:
            async for row in cur:
                data = dict(row)
                if data["entry_id"] in wanted:
                    states[data["entry_id"]] = _row_to_state(data)
        return states

    async def commit_states(
        self, conversation_id: str, states: list[tuple[str, ActivationState]],
    ) -> None:
        if not states:
            return
        rows = [
            (
                conversation_id, entry_id, s.phase.value, s.remaining,
                s.consecutive_matches, s.last_turn_index, int(s.primed),
            )
            for entry_id, s in states
        ]
        try:
            await self.db.executemany(
                """INSERT OR REPLACE INTO activation_state
                (conversation_id, entry_id, phase, remaining,
                 consecutive_matches, last_turn_index, primed)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            raise StateCommitError(
                "Failed to commit activation state",
                {"conversation_id": conversation_id, "states": len(states)},
            ) from exc

    async def delete_conversation(self, conversation_id: str) -> int:
        """Drop all state for a conversation. Returns the number of rows removed."""
        cur = await self.db.execute(
            "DELETE FROM activation_state WHERE conversation_id = ?", (conversation_id,),
        )
        await self.db.commit()
        return cur.rowcount


class InMemoryStateStore:
    """Dict-backed state store."""

    def __init__(self) -> None:
        self._states: dict[tuple[str, str], ActivationState] = {}

    async def get_state(self, conversation_id: str, entry_id: str) -> ActivationState:
        return self._states.get((conversation_id, entry_id), ActivationState())

    async def get_states(
        self, conversation_id: str, entry_ids: list[str],
    ) -> dict[str, ActivationState]:
        return {
            eid: self._states.get((conversation_id, eid), ActivationState())
            for eid in entry_ids
        }

    async def commit_states(
        self, conversation_id: str, states: list[tuple[str, ActivationState]],
    ) -> None:
        # States are frozen, so a single dict update is the whole commit
        self._states.update({(conversation_id, eid): s for eid, s in states})

    async def delete_conversation(self, conversation_id: str) -> int:
        keys = [k for k in self._states if k[0] == conversation_id]
        for key in keys:
            del self._states[key]
        return len(keys)


def _row_to_state(row: dict) -> ActivationState:
    return ActivationState(
        phase=Phase(row["phase"]),
        remaining=row["remaining"],
        consecutive_matches=row["consecutive_matches"],
        last_turn_index=row["last_turn_index"],
        primed=bool(row["primed"]),
    )
