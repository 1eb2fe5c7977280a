"""Data models for the Knowledge Activation Engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from knowledge_activation.config import ENGINE_CONFIG


class Position(str, Enum):
    """Rendering slots, declared in the order the prompt builder emits them."""

    SYSTEM_TOP = "system_top"
    BEFORE_CHARACTER = "before_character"
    AFTER_CHARACTER = "after_character"
    BEFORE_EXAMPLES = "before_examples"
    AFTER_EXAMPLES = "after_examples"
    AT_DEPTH = "at_depth"
    SYSTEM_BOTTOM = "system_bottom"

    @property
    def bucket(self) -> int:
        return _POSITION_ORDER.index(self)


_POSITION_ORDER = list(Position)


class KeywordLogic(str, Enum):
    AND_ANY = "AND_ANY"
    AND_ALL = "AND_ALL"
    NOT_ANY = "NOT_ANY"
    NOT_ALL = "NOT_ALL"


class ChunkMethod(str, Enum):
    PARAGRAPH = "paragraph"
    SENTENCE = "sentence"
    SLIDING = "sliding"


class Phase(str, Enum):
    NEUTRAL = "neutral"
    ACTIVE = "active"
    COOLDOWN = "cooldown"


ROLES = ("system", "user", "assistant")


def normalize_role(role: str) -> str:
    """Map the "bot" alias onto the assistant role."""
    role = role.lower()
    return "assistant" if role == "bot" else role


@dataclass(frozen=True)
class Message:
    role: str = "user"
    content: str = ""


# ── Activation settings (one variant per mode) ──


@dataclass(frozen=True)
class KeywordRule:
    primary_keys: tuple[str, ...] = ()
    secondary_keys: tuple[str, ...] = ()
    logic: KeywordLogic = KeywordLogic.AND_ANY
    case_sensitive: bool = False
    match_whole_words: bool = False
    use_regex: bool = False
    scan_depth: int = ENGINE_CONFIG["default_scan_depth"]
    match_scope: frozenset[str] = frozenset(ENGINE_CONFIG["default_match_scope"])


@dataclass(frozen=True)
class VectorRule:
    similarity_threshold: float = ENGINE_CONFIG["default_similarity_threshold"]
    max_vector_results: int = ENGINE_CONFIG["default_max_vector_results"]


@dataclass(frozen=True)
class ProbabilityGate:
    probability: int = 100
    enabled: bool = False


@dataclass(frozen=True)
class KeywordActivation:
    mode: ClassVar[str] = "keyword"
    keywords: KeywordRule = field(default_factory=KeywordRule)
    gate: ProbabilityGate = field(default_factory=ProbabilityGate)


@dataclass(frozen=True)
class VectorActivation:
    mode: ClassVar[str] = "vector"
    vector: VectorRule = field(default_factory=VectorRule)
    gate: ProbabilityGate = field(default_factory=ProbabilityGate)


@dataclass(frozen=True)
class HybridActivation:
    mode: ClassVar[str] = "hybrid"
    keywords: KeywordRule = field(default_factory=KeywordRule)
    vector: VectorRule = field(default_factory=VectorRule)
    gate: ProbabilityGate = field(default_factory=ProbabilityGate)


@dataclass(frozen=True)
class ConstantActivation:
    mode: ClassVar[str] = "constant"
    gate: ProbabilityGate = field(default_factory=ProbabilityGate)


@dataclass(frozen=True)
class DisabledActivation:
    mode: ClassVar[str] = "disabled"


ActivationSettings = Union[
    KeywordActivation,
    VectorActivation,
    HybridActivation,
    ConstantActivation,
    DisabledActivation,
]


@dataclass(frozen=True)
class AdvancedActivation:
    sticky: int = 0
    cooldown: int = 0
    delay: int = 0


@dataclass(frozen=True)
class BudgetControl:
    ignore_budget: bool = False
    max_tokens: int = 0


@dataclass(frozen=True)
class Positioning:
    position: Position = Position(ENGINE_CONFIG["default_position"])
    depth: int = 0
    role: str = ENGINE_CONFIG["default_role"]
    order: int = ENGINE_CONFIG["default_order"]


@dataclass(frozen=True)
class OwnerScope:
    bot_ids: tuple[str, ...] = ()
    persona_ids: tuple[str, ...] = ()
    excluded_bot_ids: tuple[str, ...] = ()
    excluded_persona_ids: tuple[str, ...] = ()

    def applies_to(self, bot_id: str | None, persona_id: str | None) -> bool:
        if bot_id is not None and bot_id in self.excluded_bot_ids:
            return False
        if persona_id is not None and persona_id in self.excluded_persona_ids:
            return False
        if not self.bot_ids and not self.persona_ids:
            return True
        return (bot_id is not None and bot_id in self.bot_ids) or (
            persona_id is not None and persona_id in self.persona_ids
        )


@dataclass(frozen=True)
class KnowledgeEntry:
    id: str
    text: str = ""
    owner: OwnerScope = field(default_factory=OwnerScope)
    activation: ActivationSettings = field(default_factory=KeywordActivation)
    positioning: Positioning = field(default_factory=Positioning)
    advanced: AdvancedActivation = field(default_factory=AdvancedActivation)
    budget: BudgetControl = field(default_factory=BudgetControl)
    tags: tuple[str, ...] = ()
    version: int = 1
    tenant_id: str | None = None


# ── Per-conversation state ──


@dataclass(frozen=True)
class ActivationState:
    """Temporal state of one entry within one conversation.

    ``phase`` and ``remaining`` together encode the sticky hold and the
    cooldown, so an entry can never be in both at once.
    """

    phase: Phase = Phase.NEUTRAL
    remaining: int = 0
    consecutive_matches: int = 0
    last_turn_index: int = -1
    primed: bool = False

    @property
    def sticky_remaining(self) -> int:
        return self.remaining if self.phase is Phase.ACTIVE else 0

    @property
    def cooldown_remaining(self) -> int:
        return self.remaining if self.phase is Phase.COOLDOWN else 0


# ── Chunking ──


@dataclass
class Chunk:
    text: str = ""
    index: int = 0
    total_chunks: int = 0
    start_offset: int = 0
    end_offset: int = 0


@dataclass(frozen=True)
class ChunkConfig:
    size: int = 750
    overlap: int = 50
    method: ChunkMethod = ChunkMethod.PARAGRAPH


@dataclass
class ChunkValidation:
    valid: bool = True
    issues: list[str] = field(default_factory=list)


# ── Turn inputs and outputs ──


@dataclass(frozen=True)
class ScanWindow:
    """Messages an entry's keywords are matched against for one turn."""

    messages: tuple[Message, ...] = ()

    @property
    def text(self) -> str:
        return "\n".join(m.content for m in self.messages if m.content)


@dataclass(frozen=True)
class BudgetConfig:
    max_context_tokens: int = ENGINE_CONFIG["max_context_tokens"]
    budget_percentage: float = ENGINE_CONFIG["budget_percentage"]
    budget_cap_tokens: int = ENGINE_CONFIG["budget_cap_tokens"]
    reserved_for_conversation: int = ENGINE_CONFIG["reserved_for_conversation"]


@dataclass
class BudgetStats:
    total_budget: int = 0
    used_budget: int = 0
    remaining_budget: int = 0
    percent_used: float = 0.0
    included_entries: int = 0
    excluded_entries: int = 0
    ignore_budget_entries: int = 0
    average_tokens_per_entry: float = 0.0


@dataclass
class TurnContext:
    messages: list[Message] = field(default_factory=list)
    turn_index: int = 0
    bot_id: str | None = None
    persona_id: str | None = None
    tenant_id: str | None = None
    budget: int | None = None
    budget_config: BudgetConfig | None = None


@dataclass
class ActivationRecord:
    """Outcome of one entry's evaluation for one turn."""

    entry_id: str = ""
    method: str = ""
    score: float = 0.0
    matched_keywords: list[str] = field(default_factory=list)
    vector_similarity: float | None = None
    activated: bool = False
    included: bool = False
    exclusion_reason: str | None = None
    token_cost: int = 0


@dataclass(frozen=True)
class ContextBlock:
    role: str
    text: str
    position: Position
    depth: int = 0
    entry_id: str = ""


@dataclass
class TurnResult:
    conversation_id: str = ""
    turn_index: int = 0
    blocks: list[ContextBlock] = field(default_factory=list)
    records: list[ActivationRecord] = field(default_factory=list)
    budget: int = 0
    tokens_used: int = 0
    degraded: bool = False
    stats: BudgetStats | None = None

    @property
    def budget_remaining(self) -> int:
        return self.budget - self.tokens_used


# ── Record-format conversion ──


def _keys(raw: Any) -> tuple[str, ...]:
    """Accept plain strings or ``{"keyword": ...}`` rows; drop blanks and duplicates."""
    keys: list[str] = []
    for item in raw or ():
        value = item.get("keyword") if isinstance(item, dict) else item
        if isinstance(value, str) and value.strip() and value not in keys:
            keys.append(value)
    return tuple(keys)


def _match_scope(data: dict) -> frozenset[str]:
    if "match_scope" in data:
        return frozenset(normalize_role(r) for r in data["match_scope"])
    default = set(ENGINE_CONFIG["default_match_scope"])
    scope = set()
    if data.get("match_in_user_messages", "user" in default):
        scope.add("user")
    if data.get("match_in_bot_messages", "assistant" in default):
        scope.add("assistant")
    if data.get("match_in_system_prompts", "system" in default):
        scope.add("system")
    return frozenset(scope)


def activation_settings_from_dict(data: dict | None) -> ActivationSettings:
    """Build the activation variant for a flat, string-tagged settings record.

    Fields that the selected mode does not use are ignored.
    """
    data = data or {}
    mode = data.get("activation_mode", "keyword")
    gate = ProbabilityGate(
        probability=int(data.get("probability", 100)),
        enabled=bool(data.get("use_probability", False)),
    )

    if mode == "disabled":
        return DisabledActivation()
    if mode == "constant":
        return ConstantActivation(gate=gate)

    keywords = KeywordRule(
        primary_keys=_keys(data.get("primary_keys")),
        secondary_keys=_keys(data.get("secondary_keys")),
        logic=KeywordLogic(data.get("keywords_logic", "AND_ANY")),
        case_sensitive=bool(data.get("case_sensitive", False)),
        match_whole_words=bool(data.get("match_whole_words", False)),
        use_regex=bool(data.get("use_regex", False)),
        scan_depth=int(data.get("scan_depth", ENGINE_CONFIG["default_scan_depth"])),
        match_scope=_match_scope(data),
    )
    vector = VectorRule(
        similarity_threshold=float(data.get(
            "vector_similarity_threshold",
            data.get("similarity_threshold", ENGINE_CONFIG["default_similarity_threshold"]),
        )),
        max_vector_results=int(data.get(
            "max_vector_results", ENGINE_CONFIG["default_max_vector_results"],
        )),
    )

    if mode == "keyword":
        return KeywordActivation(keywords=keywords, gate=gate)
    if mode == "vector":
        return VectorActivation(vector=vector, gate=gate)
    if mode == "hybrid":
        return HybridActivation(keywords=keywords, vector=vector, gate=gate)
    raise ValueError(f"Unknown activation mode: {mode!r}")


def entry_from_dict(data: dict) -> KnowledgeEntry:
    """Build a KnowledgeEntry from the entry store's record format."""
    positioning = data.get("positioning") or {}
    advanced = data.get("advanced_activation") or {}
    budget = data.get("budget_control") or {}
    owner = data.get("owner") or {}
    return KnowledgeEntry(
        id=str(data["id"]),
        text=data.get("entry", data.get("text", "")),
        owner=OwnerScope(
            bot_ids=tuple(str(b) for b in owner.get("bot_ids", ())),
            persona_ids=tuple(str(p) for p in owner.get("persona_ids", ())),
            excluded_bot_ids=tuple(str(b) for b in owner.get("excluded_bot_ids", ())),
            excluded_persona_ids=tuple(str(p) for p in owner.get("excluded_persona_ids", ())),
        ),
        activation=activation_settings_from_dict(data.get("activation_settings")),
        positioning=Positioning(
            position=Position(positioning.get("position", ENGINE_CONFIG["default_position"])),
            depth=int(positioning.get("depth", 0)),
            role=normalize_role(positioning.get("role", ENGINE_CONFIG["default_role"])),
            order=int(positioning.get("order", ENGINE_CONFIG["default_order"])),
        ),
        advanced=AdvancedActivation(
            sticky=int(advanced.get("sticky", 0)),
            cooldown=int(advanced.get("cooldown", 0)),
            delay=int(advanced.get("delay", 0)),
        ),
        budget=BudgetControl(
            ignore_budget=bool(budget.get("ignore_budget", False)),
            max_tokens=int(budget.get("max_tokens", 0)),
        ),
        tags=tuple(
            t.get("tag") if isinstance(t, dict) else t for t in data.get("tags", ())
        ),
        version=int(data.get("version", 1)),
        tenant_id=str(data["user"]) if data.get("user") is not None else None,
    )
