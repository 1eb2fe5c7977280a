"""Sentence-transformers wrapper implementing the embedding service contract.

Runs locally on CPU or GPU. Encoding happens in a worker thread so the
engine's backend timeout can bound it.
"""

from __future__ import annotations

import asyncio
import logging

from sentence_transformers import SentenceTransformer

from knowledge_activation.config import ENGINE_CONFIG

logger = logging.getLogger(__name__)


class TextEmbedder:
    """Lazy-loading wrapper around sentence-transformers."""

    def __init__(self, model_name: str | None = None) -> None:
        self._model_name = model_name or ENGINE_CONFIG["text_embedding_model"]
        self._model: SentenceTransformer | None = None

    @property
    def model(self) -> SentenceTransformer:
        if self._model is None:
            logger.info("Loading text embedding model: %s", self._model_name)
            self._model = SentenceTransformer(self._model_name)
        return self._model

    @property
    def dimension(self) -> int:
        return self.model.get_sentence_embedding_dimension()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts synchronously. Returns a list of float lists."""
        if not texts:
            return []
        vectors = self.model.encode(texts, convert_to_numpy=True)
        return [v.tolist() for v in vectors]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """One vector per input text, in input order."""
        return await asyncio.to_thread(self.embed_batch, texts)
