"""Render allocated entries into positioned, role-tagged context blocks.

This is a pure, order-preserving transform of the allocator's output; it
never filters or reorders. The helpers below let the prompt builder group
blocks by slot and splice at-depth blocks into the message list.
"""

from __future__ import annotations

from knowledge_activation.core.budget import Allocation
from knowledge_activation.models import ContextBlock, KnowledgeEntry, Message, Position


def render_entry(entry: KnowledgeEntry, text: str | None = None) -> str:
    """Entry text, labelled with its first tag when it has one."""
    body = entry.text if text is None else text
    if entry.tags:
        return f"[{entry.tags[0]}]\n{body}"
    return body


def assemble_blocks(allocations: list[Allocation]) -> list[ContextBlock]:
    return [
        ContextBlock(
            role=a.entry.positioning.role,
            text=render_entry(a.entry, a.text),
            position=a.entry.positioning.position,
            depth=a.entry.positioning.depth,
            entry_id=a.entry.id,
        )
        for a in allocations
    ]


def group_by_position(blocks: list[ContextBlock]) -> dict[Position, list[ContextBlock]]:
    groups: dict[Position, list[ContextBlock]] = {}
    for block in blocks:
        groups.setdefault(block.position, []).append(block)
    return groups


def splice_at_depth(messages: list[Message], blocks: list[ContextBlock]) -> list[Message]:
    """Insert at-depth blocks into ``messages``, depth counted back from the end.

    Depth 0 appends after the last message. Blocks at the same depth keep
    their relative order.
    """
    result = list(messages)
    depth_blocks = [b for b in blocks if b.position is Position.AT_DEPTH]
    # Deepest first so shallower insertions do not shift deeper targets
    for depth in sorted({b.depth for b in depth_blocks}, reverse=True):
        index = max(0, len(messages) - depth)
        offset = sum(1 for b in depth_blocks if b.depth > depth and max(0, len(messages) - b.depth) <= index)
        insert_at = index + offset
        for block in [b for b in depth_blocks if b.depth == depth]:
            result.insert(insert_at, Message(role=block.role, content=block.text))
            insert_at += 1
    return result
