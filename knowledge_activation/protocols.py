"""Contracts for the collaborators the engine consumes but does not own.

The engine talks to embedding models, vector indexes, entry storage, and
activation-state storage only through these protocols. The storage/ and
embeddings/ packages ship implementations; callers may inject their own.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from knowledge_activation.models import ActivationState, KnowledgeEntry


@runtime_checkable
class EmbeddingService(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """One fixed-dimension vector per input, in input order, no dedup."""
        ...


@runtime_checkable
class VectorIndex(Protocol):
    async def upsert(self, id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        ...

    async def query(
        self, vector: list[float], top_k: int, tenant_filter: dict[str, Any] | None = None,
    ) -> list[tuple[str, float]]:
        """Return ``(id, score)`` pairs, higher score meaning more similar.

        Indexes may also offer ``query_by_entry(vector, limit, tenant_filter)``
        returning the best chunk of each of the top ``limit`` entries; the
        retriever prefers it when present.
        """
        ...

    async def delete_entry(self, entry_id: str) -> None:
        ...


@runtime_checkable
class EntryStore(Protocol):
    async def entries_for(self, bot_id: str | None, persona_id: str | None) -> list[KnowledgeEntry]:
        ...


@runtime_checkable
class StateStore(Protocol):
    async def get_state(self, conversation_id: str, entry_id: str) -> ActivationState:
        """Return the stored state, or a default NEUTRAL state."""
        ...

    async def get_states(
        self, conversation_id: str, entry_ids: list[str],
    ) -> dict[str, ActivationState]:
        ...

    async def commit_states(
        self, conversation_id: str, states: list[tuple[str, ActivationState]],
    ) -> None:
        """Persist all states atomically, or raise and persist none."""
        ...
