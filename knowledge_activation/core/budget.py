"""Token budget allocation for activated entries.

Activated entries are ordered by rendering slot, depth, and order (entry id
breaks any remaining tie) and then consumed greedily in a single pass: an
entry that does not fit is dropped, never retried. Entries flagged
``ignore_budget`` are always included and never charged.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from knowledge_activation.core.tokens import estimate_messages_tokens, estimate_tokens, truncate_to_tokens
from knowledge_activation.models import BudgetConfig, BudgetStats, KnowledgeEntry, Message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allocation:
    """An entry chosen for the turn, with the text and cost actually charged."""

    entry: KnowledgeEntry
    text: str
    cost: int
    charged: bool = True


def compute_budget(config: BudgetConfig) -> int:
    """Tokens available for knowledge: a share of the context, capped, minus the reserve."""
    share = config.max_context_tokens * (config.budget_percentage / 100)
    capped = min(share, config.budget_cap_tokens)
    return math.floor(max(0, capped - config.reserved_for_conversation))


def recommended_budget_config(context_window: int, messages: list[Message] | None = None) -> BudgetConfig:
    """Budget config sized for a model's context window and the conversation so far."""
    reserved = min(estimate_messages_tokens(messages or []), int(context_window * 0.6))
    return BudgetConfig(
        max_context_tokens=context_window,
        budget_percentage=25,
        budget_cap_tokens=min(int(context_window * 0.3), 2000),
        reserved_for_conversation=reserved,
    )


def sort_key(entry: KnowledgeEntry) -> tuple[int, int, int, str]:
    p = entry.positioning
    return (p.position.bucket, p.depth, p.order, entry.id)


def entry_cost(entry: KnowledgeEntry) -> int:
    estimate = estimate_tokens(entry.text)
    if entry.budget.max_tokens > 0:
        return min(estimate, entry.budget.max_tokens)
    return estimate


def allocate(
    entries: list[KnowledgeEntry], budget: int,
) -> tuple[list[Allocation], list[KnowledgeEntry]]:
    """Choose entries to inject, in rendering order.

    Returns ``(chosen, dropped)``. The sum of charged costs never exceeds
    ``budget``, and the result depends only on the entries and the budget.
    """
    remaining = budget
    chosen: list[Allocation] = []
    dropped: list[KnowledgeEntry] = []

    for entry in sorted(entries, key=sort_key):
        cost = entry_cost(entry)
        text = truncate_to_tokens(entry.text, entry.budget.max_tokens)
        if entry.budget.ignore_budget:
            chosen.append(Allocation(entry, text, cost, charged=False))
        elif cost <= remaining:
            chosen.append(Allocation(entry, text, cost))
            remaining -= cost
        else:
            dropped.append(entry)

    logger.debug(
        "Budget allocation: %d chosen, %d dropped, %d/%d tokens used",
        len(chosen), len(dropped), budget - remaining, budget,
    )
    return chosen, dropped


def tokens_charged(allocations: list[Allocation]) -> int:
    return sum(a.cost for a in allocations if a.charged)


def budget_stats(allocations: list[Allocation], dropped: list[KnowledgeEntry], budget: int) -> BudgetStats:
    used = tokens_charged(allocations)
    total_cost = sum(a.cost for a in allocations)
    return BudgetStats(
        total_budget=budget,
        used_budget=used,
        remaining_budget=max(0, budget - used),
        percent_used=(used / budget * 100) if budget > 0 else 0.0,
        included_entries=len(allocations),
        excluded_entries=len(dropped),
        ignore_budget_entries=sum(1 for a in allocations if not a.charged),
        average_tokens_per_entry=(total_cost / len(allocations)) if allocations else 0.0,
    )


def format_budget_stats(stats: BudgetStats) -> str:
    return "\n".join([
        "=== Token Budget Statistics ===",
        f"Total Budget: {stats.total_budget} tokens",
        f"Used: {stats.used_budget} tokens ({stats.percent_used:.1f}%)",
        f"Remaining: {stats.remaining_budget} tokens",
        f"Included: {stats.included_entries}",
        f"Excluded: {stats.excluded_entries}",
        f"Ignore Budget: {stats.ignore_budget_entries}",
        f"Average Tokens/Entry: {stats.average_tokens_per_entry:.1f}",
    ])
