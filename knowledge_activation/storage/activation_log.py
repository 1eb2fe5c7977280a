"""Append-only JSONL log of per-turn activation decisions.

Each conversation gets its own JSONL file; every line is one entry's
ActivationRecord for one turn. Lines are never modified or deleted.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from knowledge_activation.config import ACTIVATION_LOG_DIR
from knowledge_activation.models import ActivationRecord


class ActivationLog:
    """Append-only JSONL writer for activation records."""

    def __init__(self, log_dir: Path | None = None) -> None:
        self.log_dir = log_dir or ACTIVATION_LOG_DIR
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _conversation_path(self, conversation_id: str) -> Path:
        # Sanitize conversation_id to prevent path traversal
        safe_id = os.path.basename(conversation_id)
        return self.log_dir / f"{safe_id}.jsonl"

    def append(
        self, conversation_id: str, turn_index: int, records: list[ActivationRecord],
    ) -> int:
        """Append one turn's records. Returns the number of lines written."""
        if not records:
            return 0
        logged_at = datetime.now(timezone.utc).isoformat()
        path = self._conversation_path(conversation_id)
        with open(path, "a", encoding="utf-8") as f:
            for record in records:
                row = {"turn_index": turn_index, "logged_at": logged_at, **asdict(record)}
                f.write(json.dumps(row, ensure_ascii=False) + "\n")
        return len(records)

    def iter_conversation(self, conversation_id: str) -> Iterator[dict]:
        """Yield all logged rows for a conversation in order."""
        path = self._conversation_path(conversation_id)
        if not path.exists():
            return
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield json.loads(line)

    def records_for_turn(self, conversation_id: str, turn_index: int) -> list[ActivationRecord]:
        return [
            ActivationRecord(**{k: v for k, v in row.items() if k not in ("turn_index", "logged_at")})
            for row in self.iter_conversation(conversation_id)
            if row["turn_index"] == turn_index
        ]

    def list_conversations(self) -> list[str]:
        """Return all conversation IDs that have log files."""
        return [p.stem for p in sorted(self.log_dir.glob("*.jsonl"))]
