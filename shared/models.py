"""
shared/models.py

Common data models and type definitions used across registries, stages and stores.

Conversation state is treated as an immutable value: stages build a new
`ConversationState` with `dataclasses.replace` instead of mutating the one they
received, and every save persists a brand new snapshot. Records that cross a
persistence boundary carry `to_dict()` / `from_dict()` helpers that emit plain
JSON-compatible dictionaries with ISO 8601 UTC timestamps.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from shared.utils import from_iso, generate_id, to_iso, utc_now


class ConversationMode(Enum):
    """
    Conversation modes a turn can be handled in.

    - CONSULT: advice seeking and problem solving
    - SMALLTALK: greetings and casual conversation
    - META: questions about the assistant itself
    """
    CONSULT = "consult"
    SMALLTALK = "smalltalk"
    META = "meta"


class ContextType(Enum):
    """Kinds of context elements; each kind decays at its own rate."""
    CRISIS = "crisis"
    EMOTIONAL = "emotional"
    TOPIC = "topic"
    PREFERENCE = "preference"
    GENERAL = "general"


class GoalStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class ContextElement:
    """A weighted piece of remembered context."""
    key: str
    value: Any
    weight: float = 1.0
    context_type: ContextType = ContextType.GENERAL
    created_at: datetime = field(default_factory=utc_now)
    last_accessed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'value': self.value,
            'weight': self.weight,
            'context_type': self.context_type.value,
            'created_at': to_iso(self.created_at),
            'last_accessed_at': to_iso(self.last_accessed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextElement":
        return cls(
            key=data['key'],
            value=data.get('value'),
            weight=float(data.get('weight', 1.0)),
            context_type=ContextType(data.get('context_type', ContextType.GENERAL.value)),
            created_at=from_iso(data.get('created_at')) or utc_now(),
            last_accessed_at=from_iso(data.get('last_accessed_at')) or utc_now(),
        )


@dataclass
class ConversationGoal:
    """A goal the user stated during the conversation."""
    description: str
    id: str = field(default_factory=generate_id)
    status: GoalStatus = GoalStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'description': self.description,
            'status': self.status.value,
            'created_at': to_iso(self.created_at),
            'completed_at': to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationGoal":
        return cls(
            id=data['id'],
            description=data['description'],
            status=GoalStatus(data.get('status', GoalStatus.ACTIVE.value)),
            created_at=from_iso(data.get('created_at')) or utc_now(),
            completed_at=from_iso(data.get('completed_at')),
        )


@dataclass
class ExtractedData:
    """Structured facts one domain extracted from one message."""
    domain_id: str
    data: Dict[str, Any]
    confidence: float
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain_id': self.domain_id,
            'data': self.data,
            'confidence': self.confidence,
            'timestamp': to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractedData":
        return cls(
            domain_id=data['domain_id'],
            data=data.get('data', {}),
            confidence=float(data.get('confidence', 0.0)),
            timestamp=from_iso(data.get('timestamp')) or utc_now(),
        )


@dataclass
class SteeringHints:
    """
    Advisory output of steering strategies.

    `suggestions` is an ordered, deduplicated list of prompts or questions the
    assistant may weave into its reply; `context` carries strategy-specific
    values; `priority` is the priority of the strongest contributor.
    """
    type: str
    suggestions: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    priority: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'suggestions': list(self.suggestions),
            'context': dict(self.context),
            'priority': self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SteeringHints":
        return cls(
            type=data['type'],
            suggestions=list(data.get('suggestions', [])),
            context=dict(data.get('context', {})),
            priority=float(data.get('priority', 0.0)),
        )


@dataclass
class Intent:
    """One detected intent of a user message, mapped to a mode."""
    mode: ConversationMode
    confidence: float
    trigger: Optional[str] = None
    essential: bool = True


@dataclass
class MultiIntentResult:
    """Classification output: one primary intent and optional secondary ones."""
    primary: Intent
    secondary: List[Intent] = field(default_factory=list)
    requires_orchestration: bool = False
    composition_strategy: str = "sequential"

    @property
    def all_intents(self) -> List[Intent]:
        return [self.primary] + list(self.secondary)


@dataclass
class ModeSegment:
    """A piece of the reply produced by one mode."""
    mode: ConversationMode
    content: str
    confidence: float = 1.0
    source_text: Optional[str] = None


@dataclass
class ConversationState:
    """
    Snapshot of a conversation's orchestration state.

    Persisted fields are written by `to_dict()`. The turn-scoped fields
    (`messages`, `intents`, `reply`) only live for the duration of one
    pipeline run and are never persisted.

    `extractions` maps a domain id to the ordered list of facts extracted for
    it; lists are only ever appended to (by building new lists).
    `steering_hints` is None until the steering stage produced a merged set.
    """
    conversation_id: str
    mode: ConversationMode = ConversationMode.SMALLTALK
    context_elements: List[ContextElement] = field(default_factory=list)
    goals: List[ConversationGoal] = field(default_factory=list)
    extractions: Dict[str, List[ExtractedData]] = field(default_factory=dict)
    steering_hints: Optional[SteeringHints] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)
    last_activity_at: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)
    # Turn-scoped
    messages: List[Dict[str, str]] = field(default_factory=list)
    intents: Optional[MultiIntentResult] = None
    reply: Optional[str] = None

    @property
    def current_message(self) -> str:
        """The latest user message of the turn, or an empty string."""
        for message in reversed(self.messages):
            if message.get('role') == 'user':
                return message.get('content', '')
        return ''

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get('user_id')

    def to_dict(self) -> Dict[str, Any]:
        """Persisted representation of the snapshot."""
        return {
            'id': self.id,
            'conversation_id': self.conversation_id,
            'mode': self.mode.value,
            'context_elements': [element.to_dict() for element in self.context_elements],
            'goals': [goal.to_dict() for goal in self.goals],
            'extractions': {
                domain_id: [item.to_dict() for item in items]
                for domain_id, items in self.extractions.items()
            },
            'steering_hints': self.steering_hints.to_dict() if self.steering_hints else None,
            'metadata': self.metadata,
            'last_activity_at': to_iso(self.last_activity_at),
            'created_at': to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationState":
        hints = data.get('steering_hints')
        return cls(
            id=data['id'],
            conversation_id=data['conversation_id'],
            mode=ConversationMode(data.get('mode', ConversationMode.SMALLTALK.value)),
            context_elements=[ContextElement.from_dict(e) for e in data.get('context_elements', [])],
            goals=[ConversationGoal.from_dict(g) for g in data.get('goals', [])],
            extractions={
                domain_id: [ExtractedData.from_dict(item) for item in items]
                for domain_id, items in (data.get('extractions') or {}).items()
            },
            steering_hints=SteeringHints.from_dict(hints) if hints else None,
            metadata=dict(data.get('metadata') or {}),
            last_activity_at=from_iso(data.get('last_activity_at')) or utc_now(),
            created_at=from_iso(data.get('created_at')) or utc_now(),
        )


@dataclass
class DomainCapabilities:
    extraction: bool = False
    steering: bool = False
    summarization: bool = False


@dataclass
class SteeringConfig:
    """Steering settings of one domain; `triggers` are lowercase keywords."""
    triggers: List[str] = field(default_factory=list)
    max_suggestions_per_turn: int = 3


@dataclass
class StorageConfig:
    """Where a domain's extracted facts are stored."""
    type: str = "timeseries"
    table: Optional[str] = None
    retention_days: Optional[int] = None


@dataclass
class DomainConfig:
    extraction_schema: Optional[str] = None
    confidence_threshold: Optional[float] = None
    steering: SteeringConfig = field(default_factory=SteeringConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


@dataclass
class DomainDefinition:
    """
    A registered domain (health, finance, ...).

    Higher `priority` means more influence; ordering among active domains is
    by priority descending.
    """
    id: str
    name: str
    description: str = ""
    priority: int = 0
    enabled: bool = True
    capabilities: DomainCapabilities = field(default_factory=DomainCapabilities)
    config: DomainConfig = field(default_factory=DomainConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DomainDefinition":
        """Build a definition from its declarative JSON form."""
        config_data = data.get('config', {})
        steering_data = config_data.get('steering', {})
        storage_data = config_data.get('storage', {})
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            description=data.get('description', ''),
            priority=int(data.get('priority', 0)),
            enabled=bool(data.get('enabled', True)),
            capabilities=DomainCapabilities(**data.get('capabilities', {})),
            config=DomainConfig(
                extraction_schema=config_data.get('extraction_schema'),
                confidence_threshold=config_data.get('confidence_threshold'),
                steering=SteeringConfig(
                    triggers=[t.lower() for t in steering_data.get('triggers', [])],
                    max_suggestions_per_turn=int(steering_data.get('max_suggestions_per_turn', 3)),
                ),
                storage=StorageConfig(
                    type=storage_data.get('type', 'timeseries'),
                    table=storage_data.get('table'),
                    retention_days=storage_data.get('retention_days'),
                ),
            ),
        )


@dataclass
class AgentStateRecord:
    """
    Short-lived state a plugin keeps for a (conversation, domain, state type).

    `expires_at` is `created_at + ttl`. A record is active while it is not
    resolved, not superseded by a newer save and not expired.
    """
    id: str
    conversation_id: str
    domain_id: str
    state_type: str
    data: Dict[str, Any]
    created_at: datetime
    expires_at: datetime
    resolved: bool = False
    superseded_at: Optional[datetime] = None


def is_expired(now: datetime, record: AgentStateRecord) -> bool:
    """True once the record's expiry instant has been reached."""
    return record.expires_at <= now


def is_active(now: datetime, record: AgentStateRecord) -> bool:
    return not record.resolved and record.superseded_at is None and not is_expired(now, record)


@dataclass
class TurnResult:
    """Outcome of one processed user message."""
    reply: str
    conversation_id: str
    message_id: str
    mode: ConversationMode
    modes_used: List[ConversationMode] = field(default_factory=list)
    steering_hints: Optional[SteeringHints] = None
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reply': self.reply,
            'conversation_id': self.conversation_id,
            'message_id': self.message_id,
            'mode': self.mode.value,
            'modes_used': [mode.value for mode in self.modes_used],
            'steering_hints': self.steering_hints.to_dict() if self.steering_hints else None,
            'processing_time_ms': self.processing_time_ms,
        }
