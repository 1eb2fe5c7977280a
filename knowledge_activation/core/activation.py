"""Per-entry, per-turn activation decisions.

For each entry the evaluator:
  1. Dispatches on the activation mode to decide eligibility
     (keyword match, vector hit, either for hybrid, always for constant).
  2. Advances the entry's temporal state (delay, sticky, cooldown).
  3. Applies the probability gate to entries that would be active.

Evaluation never mutates stored state; each entry yields a staged state
that the engine commits for the whole turn at once. An error while
evaluating one entry skips that entry for the turn and leaves its state
untouched; the rest of the pool is still evaluated.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass

from knowledge_activation.config import ENGINE_CONFIG
from knowledge_activation.core.keyword_matcher import KeywordMatch, matches
from knowledge_activation.core.temporal import advance
from knowledge_activation.core.vector_retrieval import VectorSignal
from knowledge_activation.models import (
    ActivationRecord,
    ActivationState,
    ConstantActivation,
    DisabledActivation,
    HybridActivation,
    KeywordActivation,
    KnowledgeEntry,
    Message,
    ProbabilityGate,
    VectorActivation,
)

logger = logging.getLogger(__name__)


@dataclass
class Evaluation:
    """An entry's decision for the turn plus the state to commit (None = unchanged)."""

    entry: KnowledgeEntry
    record: ActivationRecord
    state: ActivationState | None = None

    @property
    def activated(self) -> bool:
        return self.record.activated


class ActivationEvaluator:
    """Decides which entries activate on a turn."""

    def __init__(self, rng: random.Random | None = None, fan_out: int | None = None) -> None:
        self.rng = rng or random.Random()
        self.fan_out = fan_out or ENGINE_CONFIG["evaluation_fan_out"]

    def roll(self, gate: ProbabilityGate) -> bool:
        """Draw the probability gate. Re-rolled on every turn the entry would be active."""
        if not gate.enabled or gate.probability >= 100:
            return True
        if gate.probability <= 0:
            return False
        return self.rng.random() <= gate.probability / 100

    def eligibility(
        self, entry: KnowledgeEntry, messages: list[Message], signal: VectorSignal,
    ) -> tuple[bool, ActivationRecord]:
        """Mode dispatch: is the entry eligible this turn, before temporal gating?"""
        settings = entry.activation
        record = ActivationRecord(entry_id=entry.id, method=settings.mode)

        if isinstance(settings, ConstantActivation):
            record.score = 100.0
            return True, record

        keyword = KeywordMatch()
        if isinstance(settings, (KeywordActivation, HybridActivation)):
            keyword = matches(settings.keywords, messages)
            record.matched_keywords = keyword.matched_keywords

        vector_hit = False
        if isinstance(settings, (VectorActivation, HybridActivation)):
            record.vector_similarity = signal.scores.get(entry.id)
            vector_hit = not signal.degraded and entry.id in signal.eligible

        if keyword.matched:
            record.method = "keyword"
            record.score = float(keyword.score)
            if vector_hit:
                record.score += record.vector_similarity * 50
        elif vector_hit:
            record.method = "vector"
            record.score = record.vector_similarity * 100

        return keyword.matched or vector_hit, record

    def evaluate_entry(
        self,
        entry: KnowledgeEntry,
        state: ActivationState,
        messages: list[Message],
        signal: VectorSignal,
        turn_index: int,
    ) -> Evaluation:
        if isinstance(entry.activation, DisabledActivation):
            return Evaluation(
                entry, ActivationRecord(entry_id=entry.id, method="disabled", exclusion_reason="disabled"),
            )

        eligible, record = self.eligibility(entry, messages, signal)
        step = advance(
            state, entry.advanced, eligible, turn_index,
            roll=lambda: self.roll(entry.activation.gate),
        )
        record.activated = step.active
        record.exclusion_reason = step.exclusion_reason
        return Evaluation(entry, record, step.state)

    async def evaluate(
        self,
        entries: list[KnowledgeEntry],
        states: dict[str, ActivationState],
        messages: list[Message],
        signal: VectorSignal,
        turn_index: int,
    ) -> list[Evaluation]:
        """Evaluate every entry, in input order, isolating per-entry failures."""
        semaphore = asyncio.Semaphore(self.fan_out)

        async def _one(entry: KnowledgeEntry) -> Evaluation:
            async with semaphore:
                return self.evaluate_entry(
                    entry, states.get(entry.id, ActivationState()), messages, signal, turn_index,
                )

        results = await asyncio.gather(*(_one(e) for e in entries), return_exceptions=True)

        evaluations: list[Evaluation] = []
        for entry, result in zip(entries, results):
            if isinstance(result, BaseException):
                # Cancellation and interpreter exits are not per-entry failures
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Evaluation of entry %s failed, skipping this turn: %s", entry.id, result)
                result = Evaluation(entry, ActivationRecord(
                    entry_id=entry.id, method=entry.activation.mode, exclusion_reason="error",
                ))
            evaluations.append(result)
        return evaluations
