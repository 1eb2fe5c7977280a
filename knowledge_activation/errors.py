"""Exception types raised by the activation engine."""

from __future__ import annotations

from typing import Any


class ActivationError(Exception):
    """Base error for the activation engine."""

    code = "ACTIVATION_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ChunkConfigError(ActivationError, ValueError):
    code = "INVALID_CHUNK_CONFIG"


class KeywordMatchError(ActivationError):
    code = "KEYWORD_MATCH_ERROR"


class VectorSearchError(ActivationError):
    code = "VECTOR_SEARCH_ERROR"


class StateCommitError(ActivationError):
    """The turn's staged activation state could not be committed.

    Nothing from the turn was persisted; the caller retries the whole turn
    or proceeds with the last committed state.
    """

    code = "STATE_COMMIT_FAILED"
