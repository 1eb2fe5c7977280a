"""Batched semantic retrieval for vector and hybrid entries.

One embedding call and one grouped index query per turn cover every
vector-capable entry, so entries compete for the same top-k slots under the
same scores. The query is counted in entries, not chunks: an entry with many
matching chunks takes one slot. Indexes without grouping are re-queried with
a wider top_k until enough distinct entries are covered.
Entry text is indexed ahead of time, one point per chunk, with point ids of
the form ``"<entry_id>:<chunk_index>"``.

If the embedding service or the vector index fails or exceeds the timeout,
retrieval returns a degraded signal: no entry is vector-eligible for the
turn, and the caller falls back to keyword-only behaviour for hybrid entries.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from knowledge_activation.config import ENGINE_CONFIG
from knowledge_activation.core.chunking import chunk_text, get_chunk_config
from knowledge_activation.errors import VectorSearchError
from knowledge_activation.models import (
    ChunkConfig,
    HybridActivation,
    KnowledgeEntry,
    Message,
    VectorActivation,
    normalize_role,
)
from knowledge_activation.protocols import EmbeddingService, VectorIndex

logger = logging.getLogger(__name__)


def chunk_point_id(entry_id: str, chunk_index: int) -> str:
    return f"{entry_id}:{chunk_index}"


def entry_id_from_point(point_id: str) -> str:
    return point_id.rsplit(":", 1)[0]


def uses_vector(entry: KnowledgeEntry) -> bool:
    return isinstance(entry.activation, (VectorActivation, HybridActivation))


@dataclass
class VectorSignal:
    """Per-turn vector retrieval outcome."""

    scores: dict[str, float] = field(default_factory=dict)
    eligible: set[str] = field(default_factory=set)
    degraded: bool = False
    error: str | None = None


class VectorRetriever:
    """Runs the per-turn vector query and indexes entry chunks."""

    def __init__(
        self,
        embedder: EmbeddingService | None,
        index: VectorIndex | None,
        timeout: float | None = None,
        query_depth: int | None = None,
        overfetch: int | None = None,
        max_fetch: int | None = None,
    ) -> None:
        self.embedder = embedder
        self.index = index
        self.timeout = timeout if timeout is not None else ENGINE_CONFIG["backend_timeout_seconds"]
        self.query_depth = query_depth or ENGINE_CONFIG["vector_query_depth"]
        self.overfetch = overfetch or ENGINE_CONFIG["vector_overfetch"]
        self.max_fetch = max_fetch or ENGINE_CONFIG["vector_max_fetch"]

    @property
    def available(self) -> bool:
        return self.embedder is not None and self.index is not None

    def query_text(self, messages: list[Message]) -> str:
        recent = messages[-self.query_depth:] if self.query_depth > 0 else []
        return " ".join(
            m.content for m in recent
            if m.content and normalize_role(m.role) in ("user", "assistant")
        )

    async def retrieve(
        self,
        entries: list[KnowledgeEntry],
        messages: list[Message],
        tenant_id: str | None = None,
    ) -> VectorSignal:
        """Score every vector-capable entry against the recent conversation."""
        candidates = [e for e in entries if uses_vector(e)]
        if not candidates:
            return VectorSignal()

        query = self.query_text(messages)
        if not query.strip():
            return VectorSignal()

        if not self.available:
            logger.warning("Vector backend not configured, %d entries degraded", len(candidates))
            return VectorSignal(degraded=True, error="vector backend not configured")

        limit = max(e.activation.vector.max_vector_results for e in candidates) * self.overfetch
        tenant_filter = {"tenant_id": tenant_id} if tenant_id is not None else None

        try:
            hits = await self._search(query, limit, tenant_filter)
        except VectorSearchError as exc:
            logger.warning("Vector retrieval degraded: %s", exc)
            return VectorSignal(degraded=True, error=str(exc))

        by_id = {e.id: e for e in candidates}
        best: dict[str, float] = {}
        for point_id, score in hits:
            entry_id = entry_id_from_point(point_id)
            if entry_id in by_id and score > best.get(entry_id, float("-inf")):
                best[entry_id] = score

        passing = [
            by_id[eid] for eid, score in best.items()
            if score >= by_id[eid].activation.vector.similarity_threshold
        ]
        passing.sort(key=lambda e: (-best[e.id], e.id))
        eligible = {
            e.id for rank, e in enumerate(passing)
            if rank < e.activation.vector.max_vector_results
        }

        logger.debug(
            "Vector query: %d hits, %d entries scored, %d eligible",
            len(hits), len(best), len(eligible),
        )
        return VectorSignal(scores=best, eligible=eligible)

    async def _search(
        self, query: str, limit: int, tenant_filter: dict | None,
    ) -> list[tuple[str, float]]:
        """Embed ``query`` and fetch chunk hits covering at least ``limit`` entries.

        The embedding call and the index queries share one timeout.
        """
        try:
            return await asyncio.wait_for(self._embed_and_query(query, limit, tenant_filter), self.timeout)
        except asyncio.TimeoutError as exc:
            raise VectorSearchError(
                f"Vector backend timed out after {self.timeout}s", {"limit": limit},
            ) from exc
        except VectorSearchError:
            raise
        except Exception as exc:
            raise VectorSearchError(f"Vector backend failed: {exc}", {"limit": limit}) from exc

    async def _embed_and_query(
        self, query: str, limit: int, tenant_filter: dict | None,
    ) -> list[tuple[str, float]]:
        vectors = await self.embedder.embed([query])
        if not vectors:
            raise VectorSearchError("Embedding service returned no vector")
        vector = vectors[0]

        # Indexes that can group by entry return the best chunk per entry directly
        if hasattr(self.index, "query_by_entry"):
            return await self.index.query_by_entry(vector, limit, tenant_filter)

        # Point-level indexes: widen top_k until enough distinct entries are covered
        top_k = limit
        while True:
            hits = await self.index.query(vector, top_k, tenant_filter)
            entries = {entry_id_from_point(point_id) for point_id, _ in hits}
            if len(entries) >= limit or len(hits) < top_k or top_k >= self.max_fetch:
                return hits
            top_k = min(top_k * 2, self.max_fetch)

    # ── Indexing ──

    async def index_entry(
        self, entry: KnowledgeEntry, config: ChunkConfig | None = None,
    ) -> int:
        """Chunk, embed, and upsert an entry's text. Returns the chunk count.

        Previous points for the entry are removed first, so chunks never
        outlive the text version they were cut from.
        """
        if not self.available:
            raise VectorSearchError("Vector backend not configured", {"entry_id": entry.id})

        config = config or get_chunk_config("lore")
        chunks = chunk_text(entry.text, config)
        await self.index.delete_entry(entry.id)
        if not chunks:
            return 0

        vectors = await self.embedder.embed([c.text for c in chunks])
        for chunk, vector in zip(chunks, vectors):
            await self.index.upsert(
                chunk_point_id(entry.id, chunk.index),
                vector,
                {
                    "entry_id": entry.id,
                    "chunk_index": chunk.index,
                    "total_chunks": chunk.total_chunks,
                    "tenant_id": entry.tenant_id,
                    "version": entry.version,
                    "chunk_text": chunk.text,
                },
            )

        logger.info("Indexed entry %s: %d chunks", entry.id, len(chunks))
        return len(chunks)

    async def remove_entry(self, entry_id: str) -> None:
        if not self.available:
            raise VectorSearchError("Vector backend not configured", {"entry_id": entry_id})
        await self.index.delete_entry(entry_id)
