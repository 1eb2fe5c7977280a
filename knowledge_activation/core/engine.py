"""Knowledge Engine — per-turn activation and context assembly.

This is the primary interface for the prompt builder. For each turn it:
  1. Loads the entries owned by the turn's bot/persona.
  2. Reads their activation state for the conversation in one batch.
  3. Runs one vector query for every vector/hybrid entry.
  4. Evaluates every entry (mode, delay, sticky/cooldown, probability).
  5. Packs the activated entries into the token budget.
  6. Commits the staged state for the whole turn at once.
  7. Renders the chosen entries into positioned context blocks.

Steps 2-6 run under a per-conversation lock so racing turns on the same
conversation cannot interleave state reads and writes.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from knowledge_activation.config import DATA_DIR
from knowledge_activation.core.activation import ActivationEvaluator, Evaluation
from knowledge_activation.core.assembler import assemble_blocks
from knowledge_activation.core.budget import (
    allocate,
    budget_stats,
    compute_budget,
    entry_cost,
    tokens_charged,
)
from knowledge_activation.core.vector_retrieval import VectorRetriever
from knowledge_activation.errors import StateCommitError
from knowledge_activation.models import (
    ActivationRecord,
    BudgetConfig,
    ChunkConfig,
    ContextBlock,
    KnowledgeEntry,
    TurnContext,
    TurnResult,
)
from knowledge_activation.protocols import EmbeddingService, EntryStore, StateStore, VectorIndex
from knowledge_activation.storage.activation_log import ActivationLog

logger = logging.getLogger(__name__)


class KnowledgeEngine:
    """Top-level orchestrator for knowledge activation."""

    def __init__(
        self,
        entry_store: EntryStore,
        state_store: StateStore,
        embedder: EmbeddingService | None = None,
        index: VectorIndex | None = None,
        evaluator: ActivationEvaluator | None = None,
        activation_log: ActivationLog | None = None,
        timeout: float | None = None,
    ) -> None:
        self.entry_store = entry_store
        self.state_store = state_store
        self.retriever = VectorRetriever(embedder, index, timeout=timeout)
        self.evaluator = evaluator or ActivationEvaluator()
        self.activation_log = activation_log

        # conversation_id -> (lock, turns holding or waiting on it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._owned: list = []

    @classmethod
    async def open_local(
        cls, entry_store: EntryStore, data_dir: Path | None = None, with_vectors: bool = True,
    ) -> KnowledgeEngine:
        """Build an engine on local storage: SQLite state, embedded Qdrant, JSONL log."""
        from knowledge_activation.embeddings.text_embedder import TextEmbedder
        from knowledge_activation.storage.state_store import SQLiteStateStore
        from knowledge_activation.storage.vector_store import QdrantVectorIndex

        data_dir = data_dir or DATA_DIR
        state_store = SQLiteStateStore(data_dir / "activation_state.db")
        await state_store.initialize()

        embedder = index = None
        if with_vectors:
            embedder = TextEmbedder()
            index = QdrantVectorIndex(data_dir / "vectors")
            index.initialize(dim=embedder.dimension)

        engine = cls(
            entry_store, state_store, embedder=embedder, index=index,
            activation_log=ActivationLog(data_dir / "logs" / "activations"),
        )
        engine._owned = [r for r in (state_store, index) if r is not None]
        return engine

    async def close(self) -> None:
        """Close storage opened by open_local()."""
        for resource in self._owned:
            result = resource.close()
            if asyncio.iscoroutine(result):
                await result
        self._owned = []

    @asynccontextmanager
    async def _conversation(self, conversation_id: str) -> AsyncIterator[None]:
        """Serialize turns of one conversation. The lock is dropped once unused."""
        lock, users = self._locks.get(conversation_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[conversation_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[conversation_id]
            if users <= 1:
                del self._locks[conversation_id]
            else:
                self._locks[conversation_id] = (lock, users - 1)

    # ── Turn processing ──

    async def assemble(self, conversation_id: str, turn_context: TurnContext) -> TurnResult:
        """Decide which entries to inject this turn and render them.

        Raises StateCommitError if the turn's state could not be persisted;
        in that case nothing from the turn is kept and no blocks are returned.
        """
        ctx = turn_context
        async with self._conversation(conversation_id):
            pool = await self.entry_store.entries_for(ctx.bot_id, ctx.persona_id)

            entries: list[KnowledgeEntry] = []
            records: dict[str, ActivationRecord] = {}
            for entry in pool:
                if entry.owner.applies_to(ctx.bot_id, ctx.persona_id):
                    entries.append(entry)
                else:
                    records[entry.id] = ActivationRecord(
                        entry_id=entry.id, method=entry.activation.mode,
                        exclusion_reason="filter_excluded",
                    )

            states = await self.state_store.get_states(conversation_id, [e.id for e in entries])
            signal = await self.retriever.retrieve(entries, ctx.messages, ctx.tenant_id)
            evaluations = await self.evaluator.evaluate(
                entries, states, ctx.messages, signal, ctx.turn_index,
            )
            for ev in evaluations:
                records[ev.entry.id] = ev.record

            budget = ctx.budget if ctx.budget is not None else compute_budget(
                ctx.budget_config or BudgetConfig(),
            )
            chosen, dropped = allocate([ev.entry for ev in evaluations if ev.activated], budget)

            for allocation in chosen:
                record = records[allocation.entry.id]
                record.included = True
                record.token_cost = allocation.cost
            for entry in dropped:
                record = records[entry.id]
                record.exclusion_reason = "budget_exceeded"
                record.token_cost = entry_cost(entry)

            await self._commit(conversation_id, evaluations)

        ordered = [records[e.id] for e in pool]
        result = TurnResult(
            conversation_id=conversation_id,
            turn_index=ctx.turn_index,
            blocks=assemble_blocks(chosen),
            records=ordered,
            budget=budget,
            tokens_used=tokens_charged(chosen),
            degraded=signal.degraded,
            stats=budget_stats(chosen, dropped, budget),
        )
        self._write_log(conversation_id, ctx.turn_index, ordered)

        logger.info(
            "Turn %d of %s: %d entries, %d activated, %d included, %d dropped, %d/%d tokens%s",
            ctx.turn_index, conversation_id, len(pool),
            sum(1 for ev in evaluations if ev.activated), len(chosen), len(dropped),
            result.tokens_used, budget, " (degraded)" if signal.degraded else "",
        )
        return result

    async def blocks(self, conversation_id: str, turn_context: TurnContext) -> list[ContextBlock]:
        """Only the ordered context blocks for the turn."""
        return (await self.assemble(conversation_id, turn_context)).blocks

    async def _commit(self, conversation_id: str, evaluations: list[Evaluation]) -> None:
        staged = [(ev.entry.id, ev.state) for ev in evaluations if ev.state is not None]
        try:
            await self.state_store.commit_states(conversation_id, staged)
        except StateCommitError:
            logger.exception("State commit failed for %s, turn discarded", conversation_id)
            raise
        except Exception as exc:
            logger.exception("State commit failed for %s, turn discarded", conversation_id)
            raise StateCommitError(
                "Failed to commit activation state",
                {"conversation_id": conversation_id, "states": len(staged)},
            ) from exc

    def _write_log(self, conversation_id: str, turn_index: int, records: list[ActivationRecord]) -> None:
        if self.activation_log is None:
            return
        try:
            self.activation_log.append(conversation_id, turn_index, records)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to write activation log for %s: %s", conversation_id, e)

    # ── Indexing ──

    async def index_entry(self, entry: KnowledgeEntry, config: ChunkConfig | None = None) -> int:
        """Chunk and embed an entry for vector retrieval. Returns the chunk count."""
        return await self.retriever.index_entry(entry, config)

    async def remove_entry(self, entry_id: str) -> None:
        await self.retriever.remove_entry(entry_id)
