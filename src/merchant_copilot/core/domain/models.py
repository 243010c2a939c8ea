"""
Core Domain Models

This module defines the value objects that flow through one conversational
turn: the conversation context, the rewrite audit trail, classification
inputs, the execution plan and its per-task results, and the derived
confidence score.

Values produced inside a turn (RewriteResult, SkillResult, ConfidenceScore)
are immutable. ConversationContext is the only mutable model and is only
changed by the caller between turns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RewriteKind(str, Enum):
    """Kind of edit applied by the query rewriter."""

    COREFERENCE = "coreference"
    ELLIPSIS = "ellipsis"
    EXPANSION = "expansion"
    NORMALIZATION = "normalization"


@dataclass(frozen=True)
class RewriteOperation:
    """A single audited edit: `from_text` was replaced by `to_text`."""

    kind: RewriteKind
    from_text: str
    to_text: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "from": self.from_text, "to": self.to_text}


@dataclass(frozen=True)
class RewriteResult:
    """
    Output of the query rewriter for one turn.

    Attributes:
        original: Raw user input
        normalized: Canonical query after all rewrite stages
        operations: Ordered audit trail of edits
        confidence: Rewrite confidence in [0, 1]
    """

    original: str
    normalized: str
    operations: tuple[RewriteOperation, ...] = ()
    confidence: float = 1.0

    def count(self, *kinds: RewriteKind) -> int:
        return sum(1 for op in self.operations if op.kind in kinds)


@dataclass
class Message:
    role: str
    content: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ConversationContext:
    """
    Per-session conversation state.

    The pipeline reads this for the duration of a turn and never mutates it.
    Callers update it between turns via record_turn().

    Attributes:
        conversation_id: Session identifier
        entity_id: Active subject entity id (if any)
        entity_name: Active subject entity display name (if any)
        last_intent: Intent classified in the previous turn
        recent_messages: Bounded window of recent messages
        session_start: When the session began
        entity_stack: Previously active subjects, most recent last
        intent_history: Past intents, most recent last
        max_messages: Size of the recent message window
    """

    conversation_id: str = ""
    entity_id: str | None = None
    entity_name: str | None = None
    last_intent: str | None = None
    recent_messages: list[Message] = field(default_factory=list)
    session_start: datetime = field(default_factory=datetime.now)
    entity_stack: list[tuple[str, str]] = field(default_factory=list)
    intent_history: list[str] = field(default_factory=list)
    max_messages: int = 10

    @property
    def has_subject(self) -> bool:
        return bool(self.entity_name)

    def add_message(self, role: str, content: str) -> None:
        self.recent_messages.append(Message(role=role, content=content))
        if len(self.recent_messages) > self.max_messages:
            del self.recent_messages[: len(self.recent_messages) - self.max_messages]

    def set_subject(self, entity_id: str | None, entity_name: str | None) -> None:
        if self.entity_name and self.entity_name != entity_name:
            self.entity_stack.append((self.entity_id or "", self.entity_name))
            self.entity_stack = self.entity_stack[-5:]
        self.entity_id = entity_id
        self.entity_name = entity_name

    def record_turn(
        self,
        user_input: str,
        response: str | None = None,
        intent: str | None = None,
        entity_id: str | None = None,
        entity_name: str | None = None,
    ) -> None:
        """Fold the outcome of a finished turn back into the context."""
        self.add_message("user", user_input)
        if response:
            self.add_message("assistant", response)
        if intent:
            self.last_intent = intent
            self.intent_history.append(intent)
            self.intent_history = self.intent_history[-10:]
        if entity_name:
            self.set_subject(entity_id, entity_name)


@dataclass(frozen=True)
class Entity:
    """A catalog entity (e.g. a merchant) with arbitrary read-only attributes."""

    id: str
    name: str
    category: str = ""
    attributes: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class IntentResult:
    intent: str
    confidence: float
    keywords: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _check_unit_interval("intent confidence", self.confidence)


@dataclass(frozen=True)
class EntityResult:
    confidence: float
    matched: bool = False
    entity_id: str | None = None
    entity_name: str | None = None
    from_context: bool = False

    def __post_init__(self) -> None:
        _check_unit_interval("entity confidence", self.confidence)


class QueryType(str, Enum):
    """Shape of a query: one subject, the whole catalog, or a comparison."""

    SINGLE = "single"
    AGGREGATION = "aggregation"
    COMPARISON = "comparison"


@dataclass(frozen=True)
class QueryAnalysis:
    """
    Structure of a normalized query beyond its intent.

    Attributes:
        query_type: single, aggregation or comparison
        entity_ids: Catalog entities named in the query, in order of mention
        operation: Aggregation operation (count, sum, avg, max, min)
        metric: Numeric field aggregated by operations other than count
        risk_levels: Risk levels an aggregated entity must have
        categories: Terms an aggregated entity's category must contain
        group_by: Breakdown key (risk_level, category, floor)
        baseline: Comparison baseline, "entity" or "same_category"
        keywords: Vocabulary that decided the query type
    """

    query_type: QueryType = QueryType.SINGLE
    entity_ids: tuple[str, ...] = ()
    operation: str = "count"
    metric: str | None = None
    risk_levels: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    group_by: str | None = None
    baseline: str | None = None
    keywords: tuple[str, ...] = ()

    @property
    def is_single(self) -> bool:
        return self.query_type is QueryType.SINGLE


@dataclass(frozen=True)
class Task:
    """
    A node in the execution plan.

    Attributes:
        id: Unique id within the plan
        action: Name of the skill to dispatch to
        params: Skill parameters
        depends_on: Ids that must have produced a result before this runs
        priority: Informational ordering hint for planners; not used by the scheduler
    """

    id: str
    action: str
    params: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    depends_on: frozenset[str] = frozenset()
    priority: int = 1


@dataclass(frozen=True)
class ExecutionPlan:
    tasks: tuple[Task, ...] = ()
    confidence: float = 1.0
    strategy: str = "llm"
    parallelizable: bool = False

    @property
    def task_ids(self) -> set[str]:
        return {task.id for task in self.tasks}


@dataclass(frozen=True)
class SkillResult:
    """Outcome of exactly one task in one plan execution."""

    task_id: str
    success: bool
    data: Any = None
    error: str | None = None
    execution_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass(frozen=True)
class ConfidenceBreakdown:
    query_understanding: float
    intent_classification: float
    entity_extraction: float
    task_planning: float
    execution: float

    def as_dict(self) -> dict[str, float]:
        return {
            "query_understanding": self.query_understanding,
            "intent_classification": self.intent_classification,
            "entity_extraction": self.entity_extraction,
            "task_planning": self.task_planning,
            "execution": self.execution,
        }


@dataclass(frozen=True)
class ConfidenceScore:
    overall: float
    breakdown: ConfidenceBreakdown
    needs_confirmation: bool = False
    ambiguities: tuple[str, ...] = ()


@dataclass(frozen=True)
class BoundaryDecision:
    allowed: bool
    category: str | None = None
    reason: str | None = None
    suggested_action: str | None = None


@dataclass(frozen=True)
class UncertaintyDecision:
    needs_human_intervention: bool
    reason: str | None = None


@dataclass(frozen=True)
class ContextSwitchDecision:
    should_switch: bool
    confidence: float
    reason: str
    new_entity_id: str | None = None
    new_entity_name: str | None = None


@dataclass
class TurnResult:
    """
    Structured outcome of one pipeline turn.

    The caller renders `response` and decides what to do with the flags:
    prompt for confirmation, log fabrication, or surface `error`.
    """

    response: str
    boundary_decision: BoundaryDecision
    confidence_score: ConfidenceScore | None = None
    switch_decision: ContextSwitchDecision | None = None
    rewrite: RewriteResult | None = None
    analysis: QueryAnalysis | None = None
    intent: IntentResult | None = None
    entity: EntityResult | None = None
    skill_results: list[SkillResult] = field(default_factory=list)
    uncertainty: UncertaintyDecision | None = None
    fabricated_names: list[str] = field(default_factory=list)
    citation_warnings: list[str] = field(default_factory=list)
    cache_hit: bool = False
    error: str | None = None

    @property
    def needs_confirmation(self) -> bool:
        return bool(self.confidence_score and self.confidence_score.needs_confirmation)


def _check_unit_interval(label: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{label} must be within [0, 1], got {value}")
