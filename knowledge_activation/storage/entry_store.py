"""In-memory knowledge entry store.

Entries live in the surrounding application's content database; this store
implements the read-only EntryStore contract for tests and embedded use.
"""

from __future__ import annotations

from knowledge_activation.models import KnowledgeEntry, entry_from_dict


class InMemoryEntryStore:
    """Holds entries in insertion order."""

    def __init__(self, entries: list[KnowledgeEntry] | None = None) -> None:
        self._entries: dict[str, KnowledgeEntry] = {}
        for entry in entries or []:
            self.put(entry)

    @classmethod
    def from_records(cls, records: list[dict]) -> InMemoryEntryStore:
        return cls([entry_from_dict(r) for r in records])

    def put(self, entry: KnowledgeEntry) -> None:
        self._entries[entry.id] = entry

    def remove(self, entry_id: str) -> None:
        self._entries.pop(entry_id, None)

    def get(self, entry_id: str) -> KnowledgeEntry | None:
        return self._entries.get(entry_id)

    async def entries_for(self, bot_id: str | None, persona_id: str | None) -> list[KnowledgeEntry]:
        return [e for e in self._entries.values() if e.owner.applies_to(bot_id, persona_id)]
