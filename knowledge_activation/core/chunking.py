"""Token-bounded text chunking for embedding and indexing.

Three strategies:
  1. Paragraph — keeps paragraphs intact where they fit, falling back to
     sentences (and then word runs) for paragraphs larger than the budget.
  2. Sentence — accumulates sentences.
  3. Sliding — fixed-width word windows advanced with a constant step.

Paragraph and sentence chunks carry a tail of the previous chunk's
sentences into the next one as overlap. Every chunk's text is the exact
slice ``text[start_offset:end_offset]`` of the source, so consecutive
chunks either overlap or are separated only by whitespace.
"""

from __future__ import annotations

import logging
import re

from knowledge_activation.config import CHUNK_PRESETS, ENGINE_CONFIG
from knowledge_activation.core.tokens import estimate_tokens
from knowledge_activation.errors import ChunkConfigError
from knowledge_activation.models import Chunk, ChunkConfig, ChunkMethod, ChunkValidation

logger = logging.getLogger(__name__)

WORDS_PER_TOKEN = 0.75

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE = re.compile(r"[^.!?]+[.!?]*|[.!?]+")
_WORD = re.compile(r"\S+")

Span = tuple[int, int]


def get_chunk_config(content_type: str) -> ChunkConfig:
    """Return the recommended chunk config for a content type."""
    preset = CHUNK_PRESETS.get(content_type, CHUNK_PRESETS["lore"])
    return ChunkConfig(
        size=preset["size"],
        overlap=preset["overlap"],
        method=ChunkMethod(preset["method"]),
    )


def validate_config(config: ChunkConfig) -> None:
    if config.size <= 0:
        raise ChunkConfigError("Chunk size must be positive", {"size": config.size})
    if config.overlap < 0:
        raise ChunkConfigError("Overlap cannot be negative", {"overlap": config.overlap})
    if config.overlap >= config.size:
        raise ChunkConfigError(
            "Overlap must be smaller than chunk size",
            {"size": config.size, "overlap": config.overlap},
        )
    try:
        ChunkMethod(config.method)
    except ValueError:
        raise ChunkConfigError(
            f"Unknown chunking method: {config.method!r}", {"method": config.method},
        ) from None


def chunk_text(text: str, config: ChunkConfig) -> list[Chunk]:
    """Split ``text`` into overlapping, token-bounded chunks.

    Raises ChunkConfigError for an invalid config. Empty or whitespace-only
    text yields no chunks; text that already fits yields one chunk spanning
    the whole input.
    """
    validate_config(config)
    if not text or not text.strip():
        return []

    if estimate_tokens(text) <= config.size:
        return [Chunk(
            text=text.strip(), index=0, total_chunks=1,
            start_offset=0, end_offset=len(text),
        )]

    method = ChunkMethod(config.method)
    if method is ChunkMethod.SLIDING:
        spans = _sliding_spans(text, config.size, config.overlap)
    else:
        if method is ChunkMethod.PARAGRAPH:
            units = []
            for start, end in _paragraph_spans(text):
                units.extend(_fit_units(text, start, end, config.size, paragraph=True))
        else:
            units = _fit_units(text, 0, len(text), config.size, paragraph=False)
        spans = _accumulate(text, units, config.size, config.overlap)

    chunks = [
        Chunk(text=text[start:end], index=i, start_offset=start, end_offset=end)
        for i, (start, end) in enumerate(spans)
    ]
    for chunk in chunks:
        chunk.total_chunks = len(chunks)

    logger.debug(
        "Chunked %d chars into %d chunks (method=%s, size=%d, overlap=%d)",
        len(text), len(chunks), method.value, config.size, config.overlap,
    )
    return chunks


def validate_chunks(chunks: list[Chunk]) -> ChunkValidation:
    """Flag chunk-quality problems. These are warnings for the caller, not errors."""
    issues: list[str] = []
    if not chunks:
        return ChunkValidation(valid=False, issues=["No chunks generated"])

    empty = [c for c in chunks if not c.text.strip()]
    if empty:
        issues.append(f"{len(empty)} empty chunks found")

    if len(chunks) > 1:
        minimum = ENGINE_CONFIG["min_chunk_tokens"]
        tiny = [c for c in chunks if c.text.strip() and estimate_tokens(c.text) < minimum]
        if tiny:
            issues.append(f"{len(tiny)} chunks are too small (< {minimum} tokens)")

    if len({c.text for c in chunks}) != len(chunks):
        issues.append("Duplicate chunks detected")

    return ChunkValidation(valid=not issues, issues=issues)


# ── Unit splitting ──


def _trimmed(text: str, start: int, end: int) -> Span | None:
    segment = text[start:end]
    stripped = segment.strip()
    if not stripped:
        return None
    lead = len(segment) - len(segment.lstrip())
    return start + lead, start + lead + len(stripped)


def _paragraph_spans(text: str) -> list[Span]:
    spans: list[Span] = []
    cursor = 0
    for brk in _PARAGRAPH_BREAK.finditer(text):
        span = _trimmed(text, cursor, brk.start())
        if span:
            spans.append(span)
        cursor = brk.end()
    span = _trimmed(text, cursor, len(text))
    if span:
        spans.append(span)
    return spans


def _sentence_spans(text: str, start: int, end: int) -> list[Span]:
    spans: list[Span] = []
    for match in _SENTENCE.finditer(text, start, end):
        span = _trimmed(text, match.start(), match.end())
        if span:
            spans.append(span)
    return spans


def _word_runs(text: str, start: int, end: int, size: int) -> list[Span]:
    """Group the words of an oversized sentence into runs that fit ``size``."""
    runs: list[Span] = []
    run_start = run_end = None
    for word in _WORD.finditer(text, start, end):
        if run_start is None:
            run_start, run_end = word.start(), word.end()
        elif estimate_tokens(text[run_start:word.end()]) > size:
            runs.append((run_start, run_end))
            run_start, run_end = word.start(), word.end()
        else:
            run_end = word.end()
    if run_start is not None:
        runs.append((run_start, run_end))
    return runs


def _fit_units(text: str, start: int, end: int, size: int, paragraph: bool) -> list[Span]:
    """Return units within [start, end) no larger than ``size`` where possible."""
    if paragraph and estimate_tokens(text[start:end]) <= size:
        return [(start, end)]
    units: list[Span] = []
    for s_start, s_end in _sentence_spans(text, start, end):
        if estimate_tokens(text[s_start:s_end]) <= size:
            units.append((s_start, s_end))
        else:
            units.extend(_word_runs(text, s_start, s_end, size))
    return units


# ── Strategies ──


def _overlap_start(text: str, start: int, end: int, budget: int) -> int | None:
    """Start offset of the longest sentence suffix of [start, end) within ``budget``."""
    if budget <= 0:
        return None
    chosen = None
    for s_start, _ in reversed(_sentence_spans(text, start, end)):
        if s_start <= start or estimate_tokens(text[s_start:end]) > budget:
            break
        chosen = s_start
    return chosen


def _accumulate(text: str, units: list[Span], size: int, overlap: int) -> list[Span]:
    """Greedily pack units into chunk spans, seeding each new chunk with overlap."""
    spans: list[Span] = []
    current: Span | None = None

    for unit_start, unit_end in units:
        if current is None:
            current = (unit_start, unit_end)
            continue
        if estimate_tokens(text[current[0]:unit_end]) <= size:
            current = (current[0], unit_end)
            continue

        spans.append(current)
        unit_tokens = estimate_tokens(text[unit_start:unit_end])
        seed = _overlap_start(text, current[0], current[1], min(overlap, size - unit_tokens))
        if seed is not None and estimate_tokens(text[seed:unit_end]) > size:
            seed = None
        current = (seed if seed is not None else unit_start, unit_end)

    if current is not None:
        spans.append(current)
    return spans


def _sliding_spans(text: str, size: int, overlap: int) -> list[Span]:
    words = [(m.start(), m.end()) for m in _WORD.finditer(text)]
    width = max(1, int(size * WORDS_PER_TOKEN))
    overlap_width = int(overlap * WORDS_PER_TOKEN)
    step = max(1, width - overlap_width)

    spans: list[Span] = []
    position = 0
    while position < len(words):
        window = words[position:position + width]
        spans.append((window[0][0], window[-1][1]))
        if position + width >= len(words):
            break
        position += step
    return spans
