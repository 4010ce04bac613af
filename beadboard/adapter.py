"""
Adapter capability contract.

Both backends (embedded SQLite file, bd daemon) implement BoardAdapter so the
message bridge never needs to know which one is active. Column membership is
always computed with schema.classify(); an unknown column is an error, never a
silent default.
"""
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ValidationError
from .schema import (
    BoardCard, BoardColumn, BoardSnapshot, Comment, DependencyInfo, IssueStatus,
)

# Fields update_issue() accepts, in the order SET clauses are built
UPDATABLE_FIELDS = (
    "title", "description", "priority", "issue_type", "assignee",
    "estimated_minutes", "acceptance_criteria", "design", "external_ref",
    "notes", "due_at", "defer_until", "status",
)


# ── Relationship maps ───────────────────────────────────────────────────────

@dataclass
class Relationships:
    parent: Dict[str, DependencyInfo] = field(default_factory=dict)
    children: Dict[str, List[DependencyInfo]] = field(default_factory=lambda: defaultdict(list))
    blocks: Dict[str, List[DependencyInfo]] = field(default_factory=lambda: defaultdict(list))
    blocked_by: Dict[str, List[DependencyInfo]] = field(default_factory=lambda: defaultdict(list))

    def apply(self, card: BoardCard) -> BoardCard:
        card.parent = self.parent.get(card.id)
        card.children = list(self.children.get(card.id, []))
        card.blocks = list(self.blocks.get(card.id, []))
        card.blocked_by = list(self.blocked_by.get(card.id, []))
        return card


# (dependent side, depended-on side, dependency type)
Edge = Tuple[DependencyInfo, DependencyInfo, str]


def build_relationships(edges: Iterable[Edge]) -> Relationships:
    """
    One pass over dependency edges.

    For parent-child the dependent is the child and the other side its parent.
    For blocks the dependent is blocked by the other side.
    """
    rel = Relationships()
    for dependent, depended_on, dep_type in edges:
        if dep_type == "parent-child":
            rel.parent[dependent.id] = depended_on
            rel.children[depended_on.id].append(dependent)
        elif dep_type == "blocks":
            rel.blocked_by[dependent.id].append(depended_on)
            rel.blocks[depended_on.id].append(dependent)
    return rel


def paginate(cards: Iterable[BoardCard], column: BoardColumn,
             offset: int, limit: int) -> List[BoardCard]:
    in_column = [c for c in cards if c.column == column]
    return in_column[offset:offset + limit]


def validate_updates(updates: dict) -> dict:
    unknown = set(updates) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown update fields: {', '.join(sorted(unknown))}")
    if "status" in updates:
        IssueStatus.from_str(updates["status"])
    return updates


# ── Contract ────────────────────────────────────────────────────────────────

class BoardAdapter(ABC):
    """Operations every backend supports. All may raise a BoardError subclass."""

    name = "adapter"

    @abstractmethod
    async def connect(self) -> None:
        """Locate and verify the backing system. Raises ConnectivityError."""

    @abstractmethod
    async def get_board(self) -> BoardSnapshot:
        ...

    @abstractmethod
    async def get_column_count(self, column: BoardColumn) -> int:
        ...

    @abstractmethod
    async def get_column_data(self, column: BoardColumn, offset: int = 0,
                              limit: int = 50) -> List[BoardCard]:
        ...

    @abstractmethod
    async def get_issue(self, issue_id: str) -> BoardCard:
        """Full detail for one issue, comments included."""

    @abstractmethod
    async def get_issue_comments(self, issue_id: str) -> List[Comment]:
        ...

    @abstractmethod
    async def create_issue(self, data: dict) -> str:
        """Create an issue and return its id."""

    @abstractmethod
    async def update_issue(self, issue_id: str, updates: dict) -> None:
        ...

    @abstractmethod
    async def set_issue_status(self, issue_id: str, status: IssueStatus) -> None:
        ...

    @abstractmethod
    async def delete_issue(self, issue_id: str) -> None:
        ...

    @abstractmethod
    async def add_comment(self, issue_id: str, text: str, author: str) -> None:
        ...

    @abstractmethod
    async def add_label(self, issue_id: str, label: str) -> None:
        ...

    @abstractmethod
    async def remove_label(self, issue_id: str, label: str) -> None:
        ...

    @abstractmethod
    async def add_dependency(self, issue_id: str, other_id: str,
                             dep_type: str = "blocks") -> None:
        ...

    @abstractmethod
    async def remove_dependency(self, issue_id: str, other_id: str) -> None:
        ...

    @abstractmethod
    async def reload(self) -> None:
        """Drop in-memory state and re-read the backing system."""

    @abstractmethod
    def is_recent_self_change(self) -> bool:
        """True shortly after this adapter itself changed the backing store."""

    @abstractmethod
    async def dispose(self) -> None:
        ...

    @staticmethod
    def _column(column) -> BoardColumn:
        return column if isinstance(column, BoardColumn) else BoardColumn.from_str(column)

    @staticmethod
    def _status(status) -> IssueStatus:
        return status if isinstance(status, IssueStatus) else IssueStatus.from_str(status)
