"""
Board data model and column classification.

Issues live in the backing store (SQLite file or bd daemon). The board never
stores a column: it is always derived by classify() from status, readiness
and the number of open blockers.

  closed → Closed
  ready → Ready
  in_progress → In Progress
  blocked, or any open blocker → Blocked
  anything else → Blocked (catch-all)
"""
from enum import Enum, IntEnum
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from .errors import ValidationError


class IssueStatus(Enum):
    """Statuses the backing store understands."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    CLOSED = "closed"

    @classmethod
    def from_str(cls, value: str) -> "IssueStatus":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Invalid status: {value}. "
                f"Must be one of: {', '.join(s.value for s in cls)}"
            )


class BoardColumn(Enum):
    """Derived UI buckets. Never persisted."""
    READY = "ready"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    CLOSED = "closed"

    @property
    def title(self) -> str:
        return _COLUMN_TITLES[self]

    @classmethod
    def from_str(cls, value: str) -> "BoardColumn":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown column: {value}")


_COLUMN_TITLES = {
    BoardColumn.READY: "Ready",
    BoardColumn.IN_PROGRESS: "In Progress",
    BoardColumn.BLOCKED: "Blocked",
    BoardColumn.CLOSED: "Closed",
}


class DependencyType(Enum):
    PARENT_CHILD = "parent-child"
    BLOCKS = "blocks"

    @classmethod
    def from_str(cls, value: str) -> "DependencyType":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Invalid dependency type: {value}")


class CacheTier(IntEnum):
    """Client cache fidelity, totally ordered."""
    SUMMARY = 1
    ENRICHED = 2
    FULL = 3


def classify(status, is_ready: bool, blocked_by_count: int) -> BoardColumn:
    """Map an issue's status and blocking state to its board column."""
    if isinstance(status, IssueStatus):
        status = status.value
    if status == "closed":
        return BoardColumn.CLOSED
    if is_ready:
        return BoardColumn.READY
    if status == "in_progress":
        return BoardColumn.IN_PROGRESS
    if status == "blocked" or (blocked_by_count or 0) > 0:
        return BoardColumn.BLOCKED
    # open but not ready with no recorded blockers (e.g. transitively blocked)
    return BoardColumn.BLOCKED


def column_to_status(column) -> IssueStatus:
    """Status an issue takes when dropped into a column."""
    column = column if isinstance(column, BoardColumn) else BoardColumn.from_str(column)
    return {
        BoardColumn.READY: IssueStatus.OPEN,
        BoardColumn.IN_PROGRESS: IssueStatus.IN_PROGRESS,
        BoardColumn.BLOCKED: IssueStatus.BLOCKED,
        BoardColumn.CLOSED: IssueStatus.CLOSED,
    }[column]


# ── Tier projections ────────────────────────────────────────────────────────

SUMMARY_FIELDS = (
    "id", "title", "status", "priority", "issue_type",
    "is_ready", "blocked_by_count",
    "label_count", "child_count", "comment_count",
)

ENRICHED_FIELDS = SUMMARY_FIELDS + (
    "labels", "assignee", "estimated_minutes", "external_ref",
    "created_at", "updated_at", "closed_at", "due_at", "defer_until",
    "pinned", "is_template", "ephemeral",
)

# Opaque provenance/agent fields passed through untouched
METADATA_FIELDS = (
    "event_kind", "actor", "target", "payload", "sender", "mol_type",
    "role_type", "rig", "agent_state", "last_activity", "hook_bead",
    "role_bead", "await_type", "await_id", "timeout_ns", "waiters",
)

LONG_TEXT_FIELDS = ("description", "acceptance_criteria", "design", "notes")

FULL_FIELDS = ENRICHED_FIELDS + LONG_TEXT_FIELDS + (
    "parent", "children", "blocks", "blocked_by", "comments", "metadata",
)


def tier_fields(tier: CacheTier) -> tuple:
    return {
        CacheTier.SUMMARY: SUMMARY_FIELDS,
        CacheTier.ENRICHED: ENRICHED_FIELDS,
        CacheTier.FULL: FULL_FIELDS,
    }[CacheTier(tier)]


# ── Records ─────────────────────────────────────────────────────────────────

@dataclass
class DependencyInfo:
    """The other side of a dependency edge, as seen from one issue."""
    id: str
    title: str = ""
    created_at: Optional[str] = None
    created_by: Optional[str] = None
    metadata: Optional[str] = None
    thread_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "metadata": self.metadata,
            "thread_id": self.thread_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DependencyInfo":
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            created_at=data.get("created_at"),
            created_by=data.get("created_by") or "unknown",
            metadata=data.get("metadata"),
            thread_id=data.get("thread_id"),
        )


@dataclass
class Comment:
    id: Any
    issue_id: str
    author: str
    text: str
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "author": self.author,
            "text": self.text,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], issue_id: str = "") -> "Comment":
        return cls(
            id=data.get("id"),
            issue_id=data.get("issue_id") or issue_id,
            author=data.get("author") or "unknown",
            text=data.get("text") or "",
            created_at=data.get("created_at"),
        )


def _dep_list(items) -> List[Dict[str, Any]]:
    return [d.to_dict() for d in items] if items else []


@dataclass
class BoardCard:
    """One issue as shown on the board."""

    # Identity & classification
    id: str
    title: str
    status: str = IssueStatus.OPEN.value
    priority: int = 2
    issue_type: str = "task"
    is_ready: bool = False
    blocked_by_count: int = 0

    # Enriched
    labels: List[str] = field(default_factory=list)
    assignee: Optional[str] = None
    estimated_minutes: Optional[int] = None
    external_ref: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    closed_at: Optional[str] = None
    due_at: Optional[str] = None
    defer_until: Optional[str] = None
    pinned: bool = False
    is_template: bool = False
    ephemeral: bool = False

    # Full
    description: str = ""
    acceptance_criteria: str = ""
    design: str = ""
    notes: str = ""
    parent: Optional[DependencyInfo] = None
    children: List[DependencyInfo] = field(default_factory=list)
    blocks: List[DependencyInfo] = field(default_factory=list)
    blocked_by: List[DependencyInfo] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)
    comment_count: int = 0         # known total even when comments aren't loaded
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def column(self) -> BoardColumn:
        return classify(self.status, self.is_ready, self.blocked_by_count)

    def to_dict(self, tier: CacheTier = CacheTier.FULL) -> Dict[str, Any]:
        """Serialize, projected down to the requested cache tier."""
        full = {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "issue_type": self.issue_type,
            "is_ready": self.is_ready,
            "blocked_by_count": self.blocked_by_count,
            "label_count": len(self.labels),
            "child_count": len(self.children),
            "comment_count": max(self.comment_count, len(self.comments)),
            "labels": list(self.labels),
            "assignee": self.assignee,
            "estimated_minutes": self.estimated_minutes,
            "external_ref": self.external_ref,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "closed_at": self.closed_at,
            "due_at": self.due_at,
            "defer_until": self.defer_until,
            "pinned": self.pinned,
            "is_template": self.is_template,
            "ephemeral": self.ephemeral,
            "description": self.description,
            "acceptance_criteria": self.acceptance_criteria,
            "design": self.design,
            "notes": self.notes,
            "parent": self.parent.to_dict() if self.parent else None,
            "children": _dep_list(self.children),
            "blocks": _dep_list(self.blocks),
            "blocked_by": _dep_list(self.blocked_by),
            "comments": [c.to_dict() for c in self.comments],
            "metadata": dict(self.metadata),
        }
        if tier == CacheTier.FULL:
            return full
        return {k: full[k] for k in tier_fields(tier)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoardCard":
        """Deserialize from a row, a bd JSON object or a to_dict() payload."""
        labels = []
        for label in data.get("labels") or []:
            labels.append(label if isinstance(label, str) else label.get("label"))

        metadata = dict(data.get("metadata") or {})
        for key in METADATA_FIELDS:
            if data.get(key) is not None:
                metadata[key] = data[key]

        parent = data.get("parent")
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            status=data.get("status") or IssueStatus.OPEN.value,
            priority=data["priority"] if data.get("priority") is not None else 2,
            issue_type=data.get("issue_type") or "task",
            is_ready=bool(data.get("is_ready")),
            blocked_by_count=int(data.get("blocked_by_count") or 0),
            labels=[l for l in labels if l],
            assignee=data.get("assignee") or None,
            estimated_minutes=data.get("estimated_minutes"),
            external_ref=data.get("external_ref") or None,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            closed_at=data.get("closed_at") or None,
            due_at=data.get("due_at") or None,
            defer_until=data.get("defer_until") or None,
            pinned=bool(data.get("pinned")),
            is_template=bool(data.get("is_template")),
            ephemeral=bool(data.get("ephemeral")),
            description=data.get("description") or "",
            acceptance_criteria=data.get("acceptance_criteria") or "",
            design=data.get("design") or "",
            notes=data.get("notes") or "",
            parent=DependencyInfo.from_dict(parent) if parent else None,
            children=[DependencyInfo.from_dict(d) for d in data.get("children") or []],
            blocks=[DependencyInfo.from_dict(d) for d in data.get("blocks") or []],
            blocked_by=[DependencyInfo.from_dict(d) for d in data.get("blocked_by") or []],
            comments=[Comment.from_dict(c, data["id"]) for c in data.get("comments") or []],
            comment_count=int(data.get("comment_count") or 0),
            metadata=metadata,
        )


@dataclass
class ColumnPage:
    """One page of a column, as sent in board.columnData."""
    column: BoardColumn
    cards: List[BoardCard]
    offset: int
    limit: int
    total_count: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.cards) < self.total_count

    def to_dict(self, tier: CacheTier = CacheTier.ENRICHED) -> Dict[str, Any]:
        return {
            "column": self.column.value,
            "cards": [c.to_dict(tier) for c in self.cards],
            "offset": self.offset,
            "limit": self.limit,
            "totalCount": self.total_count,
            "hasMore": self.has_more,
        }


@dataclass
class BoardSnapshot:
    """Full board: every card plus optional per-column page metadata."""
    cards: List[BoardCard] = field(default_factory=list)
    column_data: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self, tier: CacheTier = CacheTier.ENRICHED) -> Dict[str, Any]:
        return {
            "columns": [{"key": c.value, "title": c.title} for c in BoardColumn],
            "cards": [c.to_dict(tier) for c in self.cards],
            "columnData": self.column_data,
        }
