"""
Data classes shared by the log, the graph, the vector index and the
context assembler.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional, Sequence


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO string so timestamps sort lexicographically in SQLite."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


# =============================================================================
# ENUMS
# =============================================================================

class EventKind(str, Enum):
    """The closed set of interaction event kinds."""
    CODE_FIX = "code-fix"
    PREFERENCE = "preference"
    PATTERN = "pattern"
    ERROR = "error"
    SUGGESTION = "suggestion"


class Feedback(IntEnum):
    """User feedback on an event. Stored as -1/0/1."""
    REJECTED = -1
    NONE = 0
    VALIDATED = 1


class EntityKind(str, Enum):
    CONCEPT = "concept"
    SYMBOL = "symbol"
    FILE = "file"
    PATTERN = "pattern"


class PassStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"


# =============================================================================
# INTERACTION LOG
# =============================================================================

@dataclass(frozen=True)
class InteractionEvent:
    """One append-only entry in a project's interaction log."""
    id: int
    created_at: datetime
    kind: EventKind
    content: str
    feedback: Feedback = Feedback.NONE
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row) -> "InteractionEvent":
        return cls(
            id=row["id"],
            created_at=parse_iso(row["created_at"]),
            kind=EventKind(row["kind"]),
            content=row["content"],
            feedback=Feedback(row["feedback"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": iso(self.created_at),
            "kind": self.kind.value,
            "content": self.content,
            "feedback": int(self.feedback),
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class EventFilter:
    """Filter for InteractionLog.list().

    All fields are optional and combine with AND. `since` is inclusive,
    `until` is exclusive.
    """
    kinds: Optional[Sequence[EventKind]] = None
    feedback: Optional[Sequence[Feedback]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    after_id: Optional[int] = None
    limit: Optional[int] = None
    oldest_first: bool = False


@dataclass(frozen=True)
class ProjectRecord:
    """Registry row for a project in the shared metadata area."""
    namespace: str
    root_path: str
    created_at: datetime
    last_accessed_at: datetime
    last_consolidated_at: Optional[datetime] = None
    watermark: int = 0

    @classmethod
    def from_row(cls, row) -> "ProjectRecord":
        return cls(
            namespace=row["namespace"],
            root_path=row["root_path"],
            created_at=parse_iso(row["created_at"]),
            last_accessed_at=parse_iso(row["last_accessed_at"]),
            last_consolidated_at=parse_iso(row["last_consolidated_at"]),
            watermark=row["watermark"],
        )

    def to_dict(self) -> dict:
        return {
            "namespace": self.namespace,
            "root_path": self.root_path,
            "created_at": iso(self.created_at),
            "last_accessed_at": iso(self.last_accessed_at),
            "last_consolidated_at": iso(self.last_consolidated_at),
            "watermark": self.watermark,
        }


# =============================================================================
# KNOWLEDGE GRAPH
# =============================================================================

@dataclass(frozen=True)
class Entity:
    key: str
    name: str
    kind: EntityKind
    created_at: str

    def to_dict(self) -> dict:
        return {"key": self.key, "name": self.name, "kind": self.kind.value, "created_at": self.created_at}


@dataclass(frozen=True)
class Relation:
    """A directed, reinforced edge: source --label--> target."""
    source: str
    label: str
    target: str
    strength: float
    contributors: tuple
    created_at: str
    reinforced_at: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["contributors"] = list(self.contributors)
        return data


@dataclass(frozen=True)
class RelationWrite:
    """Outcome of an upsert_relation call."""
    relation: Relation
    created: bool
    reinforced: bool

    @property
    def changed(self) -> bool:
        return self.created or self.reinforced


@dataclass(frozen=True)
class RelationView:
    """A relation seen from one entity: outgoing or incoming."""
    direction: str  # "out" or "in"
    entity: str
    label: str
    strength: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PathEdge:
    source: str
    label: str
    target: str
    strength: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Triple:
    """(source, relation, target) produced by a triple extractor."""
    source: str
    relation: str
    target: str
    source_kind: EntityKind = EntityKind.CONCEPT
    target_kind: EntityKind = EntityKind.CONCEPT


# =============================================================================
# VECTOR INDEX
# =============================================================================

@dataclass(frozen=True)
class EmbeddingRecord:
    event_id: int
    text: str
    vector: list
    created_at: datetime


@dataclass(frozen=True)
class SearchHit:
    event_id: int
    text: str
    score: float
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# CONSOLIDATION + CONTEXT
# =============================================================================

@dataclass
class ConsolidationReport:
    """Summary of one sleep-cycle pass."""
    namespace: str
    watermark_before: int
    watermark_after: int = 0
    events_processed: int = 0
    graph_entries_written: int = 0
    vectors_written: int = 0
    failures: list = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def status(self) -> PassStatus:
        return PassStatus.PARTIAL if self.failures else PassStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "namespace": self.namespace,
            "status": self.status.value,
            "events_processed": self.events_processed,
            "graph_entries_written": self.graph_entries_written,
            "vectors_written": self.vectors_written,
            "failures": [f.to_dict() for f in self.failures],
            "watermark_before": self.watermark_before,
            "watermark_after": self.watermark_after,
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
        }


@dataclass(frozen=True)
class ContextBlock:
    """Rendered, budgeted memory summary. Never persisted."""
    text: str
    token_estimate: int
    max_tokens: int
    truncated: bool
    sections: dict = field(default_factory=dict)  # section title -> items rendered

    def __str__(self) -> str:
        return self.text
