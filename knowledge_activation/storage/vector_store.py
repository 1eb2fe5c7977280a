"""Vector indexes for entry chunk embeddings.

Two implementations of the VectorIndex contract:
  - QdrantVectorIndex: Qdrant in embedded (local) mode — no server required
  - InMemoryVectorIndex: numpy cosine similarity, for tests and small pools

Point ids are the engine's chunk ids (``"<entry_id>:<chunk_index>"``).
Qdrant only accepts UUIDs or integers, so the chunk id is mapped to a
deterministic UUID and kept in the payload.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointStruct,
    VectorParams,
)

from knowledge_activation.config import ENGINE_CONFIG, VECTOR_DIR

logger = logging.getLogger(__name__)


def _qdrant_id(point_id: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, point_id))


def _filter(conditions: dict[str, Any] | None) -> Filter | None:
    if not conditions:
        return None
    return Filter(must=[
        FieldCondition(key=key, match=MatchValue(value=value))
        for key, value in conditions.items()
    ])


class QdrantVectorIndex:
    """Qdrant-backed index of entry chunk embeddings."""

    def __init__(self, vector_dir: Path | None = None, collection: str | None = None) -> None:
        self.vector_dir = vector_dir or VECTOR_DIR
        self.collection = collection or ENGINE_CONFIG["vector_collection"]
        self._client: QdrantClient | None = None

    def initialize(self, dim: int = 384) -> None:
        """Initialize Qdrant in embedded mode and ensure the collection exists."""
        self.vector_dir.mkdir(parents=True, exist_ok=True)
        self._client = QdrantClient(path=str(self.vector_dir))
        collections = [c.name for c in self.client.get_collections().collections]
        if self.collection not in collections:
            self.client.create_collection(
                collection_name=self.collection,
                vectors_config=VectorParams(size=dim, distance=Distance.COSINE),
            )

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> QdrantClient:
        assert self._client is not None, "QdrantVectorIndex not initialized — call initialize() first"
        return self._client

    async def upsert(self, id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        point = PointStruct(
            id=_qdrant_id(id),
            vector=vector,
            payload={**metadata, "point_id": id},
        )
        await asyncio.to_thread(
            self.client.upsert, collection_name=self.collection, points=[point],
        )

    async def query(
        self, vector: list[float], top_k: int, tenant_filter: dict[str, Any] | None = None,
    ) -> list[tuple[str, float]]:
        results = await asyncio.to_thread(
            self.client.query_points,
            collection_name=self.collection,
            query=vector,
            limit=top_k,
            query_filter=_filter(tenant_filter),
        )
        return [(r.payload["point_id"], r.score) for r in results.points]

    async def query_by_entry(
        self, vector: list[float], limit: int, tenant_filter: dict[str, Any] | None = None,
    ) -> list[tuple[str, float]]:
        """Best-scoring chunk of each of the top ``limit`` entries."""
        results = await asyncio.to_thread(
            self.client.query_points_groups,
            collection_name=self.collection,
            query=vector,
            group_by="entry_id",
            limit=limit,
            group_size=1,
            query_filter=_filter(tenant_filter),
            with_payload=True,
        )
        return [
            (group.hits[0].payload["point_id"], group.hits[0].score)
            for group in results.groups if group.hits
        ]

    async def delete_entry(self, entry_id: str) -> None:
        """Delete every chunk point for an entry."""
        await asyncio.to_thread(
            self.client.delete,
            collection_name=self.collection,
            points_selector=_filter({"entry_id": entry_id}),
        )


class InMemoryVectorIndex:
    """Brute-force cosine index."""

    def __init__(self) -> None:
        self._points: dict[str, tuple[np.ndarray, dict[str, Any]]] = {}

    def __len__(self) -> int:
        return len(self._points)

    async def upsert(self, id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        self._points[id] = (np.asarray(vector, dtype=float), dict(metadata))

    async def query(
        self, vector: list[float], top_k: int, tenant_filter: dict[str, Any] | None = None,
    ) -> list[tuple[str, float]]:
        query = np.asarray(vector, dtype=float)
        scored: list[tuple[str, float]] = []
        for point_id, (stored, metadata) in self._points.items():
            if tenant_filter and any(metadata.get(k) != v for k, v in tenant_filter.items()):
                continue
            scored.append((point_id, _cosine_similarity(query, stored)))
        scored.sort(key=lambda x: (-x[1], x[0]))
        return scored[:top_k]

    async def query_by_entry(
        self, vector: list[float], limit: int, tenant_filter: dict[str, Any] | None = None,
    ) -> list[tuple[str, float]]:
        best: dict[str, tuple[str, float]] = {}
        for point_id, score in await self.query(vector, len(self._points), tenant_filter):
            entry_id = self._points[point_id][1].get("entry_id", point_id)
            if entry_id not in best:
                best[entry_id] = (point_id, score)
        return list(best.values())[:limit]

    async def delete_entry(self, entry_id: str) -> None:
        for point_id in [p for p, (_, m) in self._points.items() if m.get("entry_id") == entry_id]:
            del self._points[point_id]


def _cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    return float(np.dot(a, b) / norm) if norm > 0 else 0.0
