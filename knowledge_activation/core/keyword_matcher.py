"""Keyword matching of entry key lists against a conversation scan window.

Keys are matched as plain substrings, whole words, or regular expressions.
A key that fails to compile never matches; the remaining keys are still
evaluated. Primary keys gate the entry; secondary keys refine it according
to the entry's keyword logic.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache

from knowledge_activation.errors import KeywordMatchError
from knowledge_activation.models import (
    KeywordLogic,
    KeywordRule,
    Message,
    ScanWindow,
    normalize_role,
)

logger = logging.getLogger(__name__)


@dataclass
class KeywordMatch:
    matched: bool = False
    primary_matches: list[str] = field(default_factory=list)
    secondary_matches: list[str] = field(default_factory=list)

    @property
    def matched_keywords(self) -> list[str]:
        return self.primary_matches + self.secondary_matches

    @property
    def score(self) -> int:
        # Primary hits weigh double
        return len(self.primary_matches) * 2 + len(self.secondary_matches)


def build_scan_window(messages: list[Message], scan_depth: int, match_scope: frozenset[str]) -> ScanWindow:
    """Take the last ``scan_depth`` messages, keeping only roles in ``match_scope``."""
    if scan_depth <= 0:
        return ScanWindow()
    recent = messages[-scan_depth:]
    return ScanWindow(messages=tuple(
        m for m in recent if normalize_role(m.role) in match_scope
    ))


@lru_cache(maxsize=1024)
def _compile(pattern: str, flags: int) -> re.Pattern | None:
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        logger.warning("Invalid keyword pattern %r: %s", pattern, exc)
        return None


def check_patterns(rule: KeywordRule) -> None:
    """Raise KeywordMatchError if any regex key in ``rule`` fails to compile.

    Matching itself never raises; this is for validating entries on edit.
    """
    if not rule.use_regex:
        return
    flags = 0 if rule.case_sensitive else re.IGNORECASE
    bad = [k for k in rule.primary_keys + rule.secondary_keys if _compile(k, flags) is None]
    if bad:
        raise KeywordMatchError("Invalid keyword patterns", {"patterns": bad})


def key_matches(text: str, key: str, rule: KeywordRule) -> bool:
    """Check a single key against ``text`` under the rule's match options."""
    flags = 0 if rule.case_sensitive else re.IGNORECASE
    if rule.use_regex:
        compiled = _compile(key, flags)
        return bool(compiled and compiled.search(text))
    if rule.match_whole_words:
        compiled = _compile(rf"(?<!\w){re.escape(key)}(?!\w)", flags)
        return bool(compiled and compiled.search(text))
    if rule.case_sensitive:
        return key in text
    return key.casefold() in text.casefold()


def _combine(rule: KeywordRule, primary: list[str], secondary: list[str]) -> bool:
    if not primary:
        return False
    if not rule.secondary_keys:
        return True
    logic = KeywordLogic(rule.logic)
    if logic is KeywordLogic.AND_ANY:
        return bool(secondary)
    if logic is KeywordLogic.AND_ALL:
        return len(secondary) == len(rule.secondary_keys)
    if logic is KeywordLogic.NOT_ANY:
        return not secondary
    if logic is KeywordLogic.NOT_ALL:
        return len(secondary) < len(rule.secondary_keys)
    return False


def match_keywords(rule: KeywordRule, window: ScanWindow) -> KeywordMatch:
    """Evaluate a keyword rule against a scan window."""
    text = window.text
    if not text or not rule.primary_keys:
        return KeywordMatch()

    primary = [k for k in rule.primary_keys if key_matches(text, k, rule)]
    secondary = [k for k in rule.secondary_keys if key_matches(text, k, rule)]
    return KeywordMatch(
        matched=_combine(rule, primary, secondary),
        primary_matches=primary,
        secondary_matches=secondary,
    )


def matches(rule: KeywordRule, messages: list[Message]) -> KeywordMatch:
    """Build the rule's scan window from ``messages`` and match against it."""
    window = build_scan_window(messages, rule.scan_depth, rule.match_scope)
    return match_keywords(rule, window)
