"""Tests for the activation evaluator."""

import asyncio
import random

import pytest

from knowledge_activation.core.activation import ActivationEvaluator
from knowledge_activation.core.vector_retrieval import VectorSignal
from knowledge_activation.models import (
    ActivationState,
    AdvancedActivation,
    ConstantActivation,
    DisabledActivation,
    HybridActivation,
    KeywordActivation,
    KeywordRule,
    KnowledgeEntry,
    Message,
    Phase,
    ProbabilityGate,
    VectorActivation,
    VectorRule,
)


def _keyword(entry_id: str, *keys: str, **kwargs) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=entry_id,
        text=f"Lore for {entry_id}",
        activation=KeywordActivation(keywords=KeywordRule(primary_keys=keys)),
        **kwargs,
    )


MESSAGES = [Message("user", "I saw a dragon near the castle")]


@pytest.fixture
def evaluator():
    return ActivationEvaluator(rng=random.Random(7))


def test_keyword_entry_activates_on_match(evaluator):
    ev = evaluator.evaluate_entry(_keyword("a", "dragon"), ActivationState(), MESSAGES, VectorSignal(), 0)
    assert ev.activated
    assert ev.record.method == "keyword"
    assert ev.record.matched_keywords == ["dragon"]
    assert ev.record.score == 2.0
    assert ev.state is not None


def test_keyword_entry_without_match(evaluator):
    ev = evaluator.evaluate_entry(_keyword("a", "griffin"), ActivationState(), MESSAGES, VectorSignal(), 0)
    assert not ev.activated
    assert ev.record.exclusion_reason == "not_eligible"


def test_constant_entry_always_activates(evaluator):
    entry = KnowledgeEntry(id="c", text="Always", activation=ConstantActivation())
    ev = evaluator.evaluate_entry(entry, ActivationState(), [], VectorSignal(), 0)
    assert ev.activated
    assert ev.record.score == 100.0


def test_disabled_entry_has_no_state_update(evaluator):
    entry = KnowledgeEntry(id="d", text="Never", activation=DisabledActivation())
    ev = evaluator.evaluate_entry(entry, ActivationState(), MESSAGES, VectorSignal(), 0)
    assert not ev.activated
    assert ev.state is None
    assert ev.record.exclusion_reason == "disabled"


def test_vector_entry_uses_signal(evaluator):
    entry = KnowledgeEntry(id="v", text="Castle lore", activation=VectorActivation())
    hit = VectorSignal(scores={"v": 0.9}, eligible={"v"})
    ev = evaluator.evaluate_entry(entry, ActivationState(), MESSAGES, hit, 0)
    assert ev.activated
    assert ev.record.method == "vector"
    assert ev.record.vector_similarity == 0.9
    assert ev.record.score == pytest.approx(90.0)

    miss = VectorSignal(scores={"v": 0.5})
    assert not evaluator.evaluate_entry(entry, ActivationState(), MESSAGES, miss, 0).activated


def test_hybrid_is_inclusive_or(evaluator):
    entry = KnowledgeEntry(
        id="h", text="Hybrid lore",
        activation=HybridActivation(keywords=KeywordRule(primary_keys=("griffin",)), vector=VectorRule()),
    )
    vector_only = VectorSignal(scores={"h": 0.95}, eligible={"h"})
    assert evaluator.evaluate_entry(entry, ActivationState(), MESSAGES, vector_only, 0).activated

    keyword_entry = KnowledgeEntry(
        id="h2", text="Hybrid lore",
        activation=HybridActivation(keywords=KeywordRule(primary_keys=("dragon",))),
    )
    assert evaluator.evaluate_entry(keyword_entry, ActivationState(), MESSAGES, VectorSignal(), 0).activated


def test_hybrid_keyword_score_gains_vector_bonus(evaluator):
    entry = KnowledgeEntry(
        id="h", text="Hybrid lore",
        activation=HybridActivation(keywords=KeywordRule(primary_keys=("dragon",))),
    )
    signal = VectorSignal(scores={"h": 0.8}, eligible={"h"})
    record = evaluator.evaluate_entry(entry, ActivationState(), MESSAGES, signal, 0).record
    assert record.method == "keyword"
    assert record.score == pytest.approx(2 + 0.8 * 50)


def test_degraded_signal_disables_vector_path(evaluator):
    vector = KnowledgeEntry(id="v", text="x", activation=VectorActivation())
    hybrid = KnowledgeEntry(
        id="h", text="x", activation=HybridActivation(keywords=KeywordRule(primary_keys=("dragon",))),
    )
    degraded = VectorSignal(scores={"v": 0.99, "h": 0.99}, eligible={"v", "h"}, degraded=True)
    assert not evaluator.evaluate_entry(vector, ActivationState(), MESSAGES, degraded, 0).activated
    hybrid_record = evaluator.evaluate_entry(hybrid, ActivationState(), MESSAGES, degraded, 0).record
    assert hybrid_record.activated
    assert hybrid_record.method == "keyword"


def test_probability_gate_extremes(evaluator):
    assert evaluator.roll(ProbabilityGate(probability=0, enabled=False))
    assert not evaluator.roll(ProbabilityGate(probability=0, enabled=True))
    assert evaluator.roll(ProbabilityGate(probability=100, enabled=True))


def test_probability_gate_rate():
    evaluator = ActivationEvaluator(rng=random.Random(42))
    gate = ProbabilityGate(probability=30, enabled=True)
    hits = sum(evaluator.roll(gate) for _ in range(2000))
    assert 450 < hits < 750


def test_probability_zero_never_activates(evaluator):
    entry = KnowledgeEntry(id="c", text="x", activation=ConstantActivation(
        gate=ProbabilityGate(probability=0, enabled=True),
    ))
    ev = evaluator.evaluate_entry(entry, ActivationState(), [], VectorSignal(), 0)
    assert not ev.activated
    assert ev.record.exclusion_reason == "probability_failed"


def test_cooldown_overrides_eligibility(evaluator):
    entry = _keyword("a", "dragon", advanced=AdvancedActivation(cooldown=2))
    state = ActivationState(phase=Phase.COOLDOWN, remaining=2)
    ev = evaluator.evaluate_entry(entry, state, MESSAGES, VectorSignal(), 3)
    assert not ev.activated
    assert ev.record.exclusion_reason == "cooldown_active"
    assert ev.state.cooldown_remaining == 1


@pytest.mark.asyncio
async def test_evaluate_preserves_order_and_isolates_errors():
    class Exploding(ActivationEvaluator):
        def evaluate_entry(self, entry, state, messages, signal, turn_index):
            if entry.id == "boom":
                raise RuntimeError("bad entry")
            return super().evaluate_entry(entry, state, messages, signal, turn_index)

    entries = [_keyword("a", "dragon"), _keyword("boom", "dragon"), _keyword("c", "castle")]
    evaluations = await Exploding(fan_out=2).evaluate(entries, {}, MESSAGES, VectorSignal(), 0)

    assert [ev.entry.id for ev in evaluations] == ["a", "boom", "c"]
    assert evaluations[0].activated and evaluations[2].activated
    assert not evaluations[1].activated
    assert evaluations[1].record.exclusion_reason == "error"
    assert evaluations[1].state is None


@pytest.mark.asyncio
async def test_evaluate_propagates_cancellation():
    class Cancelled(ActivationEvaluator):
        def evaluate_entry(self, entry, state, messages, signal, turn_index):
            if entry.id == "stop":
                raise asyncio.CancelledError()
            return super().evaluate_entry(entry, state, messages, signal, turn_index)

    entries = [_keyword("a", "dragon"), _keyword("stop", "dragon")]
    with pytest.raises(asyncio.CancelledError):
        await Cancelled().evaluate(entries, {}, MESSAGES, VectorSignal(), 0)


@pytest.mark.asyncio
async def test_evaluate_reads_supplied_state():
    entry = _keyword("a", "dragon", advanced=AdvancedActivation(sticky=1))
    states = {"a": ActivationState(phase=Phase.ACTIVE, remaining=1)}
    [ev] = await ActivationEvaluator().evaluate([entry], states, [], VectorSignal(), 5)
    # Held active by sticky even though nothing matches
    assert ev.activated
    assert ev.state.phase is Phase.NEUTRAL
