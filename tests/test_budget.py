"""Tests for token budget allocation."""

import random

from knowledge_activation.core.budget import (
    allocate,
    budget_stats,
    compute_budget,
    format_budget_stats,
    recommended_budget_config,
    tokens_charged,
)
from knowledge_activation.models import (
    BudgetConfig,
    BudgetControl,
    KnowledgeEntry,
    Message,
    Position,
    Positioning,
)


def _entry(entry_id: str, tokens: int, order: int = 100, position: Position = Position.BEFORE_CHARACTER,
           depth: int = 0, **budget) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=entry_id,
        text="x" * (tokens * 4),
        positioning=Positioning(position=position, depth=depth, order=order),
        budget=BudgetControl(**budget),
    )


def test_greedy_single_pass():
    entries = [_entry("a", 40, order=1), _entry("b", 40, order=2), _entry("c", 40, order=3)]
    chosen, dropped = allocate(entries, 100)
    assert [a.entry.id for a in chosen] == ["a", "b"]
    assert [e.id for e in dropped] == ["c"]
    assert tokens_charged(chosen) == 80


def test_dropped_entry_is_not_retried_but_later_fit_is_taken():
    entries = [_entry("big", 90, order=1), _entry("mid", 20, order=2), _entry("small", 5, order=3)]
    chosen, dropped = allocate(entries, 100)
    assert [a.entry.id for a in chosen] == ["big", "small"]
    assert [e.id for e in dropped] == ["mid"]


def test_sort_by_position_then_depth_then_order():
    entries = [
        _entry("bottom", 1, order=0, position=Position.SYSTEM_BOTTOM),
        _entry("deep", 1, order=0, position=Position.AT_DEPTH, depth=4),
        _entry("shallow", 1, order=9, position=Position.AT_DEPTH, depth=1),
        _entry("top", 1, order=50, position=Position.SYSTEM_TOP),
        _entry("char-b", 1, order=2),
        _entry("char-a", 1, order=1),
    ]
    chosen, _ = allocate(entries, 1000)
    assert [a.entry.id for a in chosen] == ["top", "char-a", "char-b", "shallow", "deep", "bottom"]


def test_entry_id_breaks_full_ties():
    chosen, _ = allocate([_entry("b", 1), _entry("a", 1)], 10)
    assert [a.entry.id for a in chosen] == ["a", "b"]


def test_ignore_budget_is_free():
    entries = [
        _entry("pinned", 500, order=1, ignore_budget=True),
        _entry("a", 60, order=2),
        _entry("b", 60, order=3),
    ]
    chosen, dropped = allocate(entries, 100)
    assert [a.entry.id for a in chosen] == ["pinned", "a"]
    assert [e.id for e in dropped] == ["b"]
    assert tokens_charged(chosen) == 60
    assert not chosen[0].charged


def test_max_tokens_caps_cost_and_truncates_text():
    chosen, _ = allocate([_entry("a", 100, max_tokens=10)], 50)
    assert chosen[0].cost == 10
    assert len(chosen[0].text) == 40


def test_zero_budget_drops_everything_charged():
    chosen, dropped = allocate([_entry("a", 1), _entry("b", 1, ignore_budget=True)], 0)
    assert [a.entry.id for a in chosen] == ["b"]
    assert [e.id for e in dropped] == ["a"]


def test_allocation_is_deterministic():
    rng = random.Random(3)
    entries = [_entry(f"e{i}", rng.randint(1, 60), order=rng.randint(0, 5)) for i in range(40)]
    first, _ = allocate(entries, 500)
    shuffled = entries[:]
    rng.shuffle(shuffled)
    second, _ = allocate(shuffled, 500)
    assert [a.entry.id for a in first] == [a.entry.id for a in second]


def test_charged_cost_never_exceeds_budget():
    rng = random.Random(11)
    for budget in (0, 17, 100, 333):
        entries = [
            _entry(f"e{i}", rng.randint(1, 80), order=i, ignore_budget=rng.random() < 0.2)
            for i in range(30)
        ]
        chosen, _ = allocate(entries, budget)
        assert tokens_charged(chosen) <= budget


def test_compute_budget():
    assert compute_budget(BudgetConfig()) == 2000
    assert compute_budget(BudgetConfig(max_context_tokens=4000, budget_percentage=10)) == 400
    assert compute_budget(BudgetConfig(reserved_for_conversation=500)) == 1500
    assert compute_budget(BudgetConfig(max_context_tokens=1000, reserved_for_conversation=900)) == 0


def test_recommended_budget_config():
    config = recommended_budget_config(10000, [Message("user", "x" * 40)])
    assert config.max_context_tokens == 10000
    assert config.budget_cap_tokens == 2000
    assert config.reserved_for_conversation == 3 + 4 + 10

    small = recommended_budget_config(1000)
    assert small.budget_cap_tokens == 300


def test_budget_stats_and_format():
    entries = [_entry("a", 40, order=1), _entry("b", 40, order=2), _entry("c", 40, order=3),
               _entry("p", 10, order=4, ignore_budget=True)]
    chosen, dropped = allocate(entries, 100)
    stats = budget_stats(chosen, dropped, 100)
    assert stats.used_budget == 80
    assert stats.remaining_budget == 20
    assert stats.percent_used == 80.0
    assert stats.included_entries == 3
    assert stats.excluded_entries == 1
    assert stats.ignore_budget_entries == 1
    assert stats.average_tokens_per_entry == 30.0

    text = format_budget_stats(stats)
    assert "Used: 80 tokens (80.0%)" in text
    assert "Excluded: 1" in text
