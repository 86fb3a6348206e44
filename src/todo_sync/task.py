"""Task data model for todo-sync.

Tasks are immutable records. Local edits produce a new ``Task`` through
``copy_with`` so the sync engine can hold working copies without worrying
about callers mutating them underneath a reconciliation pass.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .utils.datetime import ensure_aware, now_utc, parse_iso, to_iso_string


class Priority(Enum):
    """Task priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Tag:
    """A tag reference attached to a task."""
    id: int
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tag":
        return cls(id=int(data["id"]), name=str(data["name"]))


def _coerce_tags(tags: Optional[Iterable[Any]]) -> FrozenSet[Tag]:
    result = set()
    for tag in tags or ():
        if isinstance(tag, Tag):
            result.add(tag)
        elif isinstance(tag, dict):
            result.add(Tag.from_dict(tag))
        else:
            raise TypeError(f"Unsupported tag value: {tag!r}")
    return frozenset(result)


@dataclass(frozen=True)
class Task:
    """A user-owned unit of work.

    ``updated_at`` doubles as the logical clock used for conflict detection.
    ``deleted`` is a tombstone marker and only ever appears on tasks coming
    from the remote side; the local store never holds a deleted task.
    """

    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    is_completed: bool = False
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)
    due_date: Optional[datetime] = None
    tags: FrozenSet[Tag] = frozenset()
    deleted: bool = False

    def __post_init__(self):
        # Normalize inside a frozen dataclass
        object.__setattr__(self, "created_at", ensure_aware(self.created_at))
        object.__setattr__(self, "updated_at", ensure_aware(self.updated_at))
        object.__setattr__(self, "due_date", ensure_aware(self.due_date))
        object.__setattr__(self, "tags", _coerce_tags(self.tags))
        if isinstance(self.priority, str):
            object.__setattr__(self, "priority", Priority(self.priority))

        if not self.id:
            raise ValueError("Task id must not be empty")
        if not self.deleted and not (self.title or "").strip():
            raise ValueError("Task title must not be empty")

    @classmethod
    def new(cls, user_id: str, title: str, **kwargs) -> "Task":
        """Create a brand new task with a client-generated id."""
        created = now_utc()
        kwargs.setdefault("created_at", created)
        kwargs.setdefault("updated_at", created)
        return cls(id=str(uuid.uuid4()), user_id=user_id, title=title, **kwargs)

    @classmethod
    def tombstone(cls, task_id: str, user_id: str, deleted_at: Optional[datetime] = None) -> "Task":
        """Build a deletion marker for ``task_id``."""
        deleted_at = deleted_at or now_utc()
        return cls(
            id=task_id,
            user_id=user_id,
            title="",
            created_at=deleted_at,
            updated_at=deleted_at,
            deleted=True,
        )

    def copy_with(self, **changes) -> "Task":
        """Return a copy with ``changes`` applied; the id can never change."""
        if "id" in changes and changes["id"] != self.id:
            raise ValueError("Task id is immutable")
        return replace(self, **changes)

    def tag_names(self) -> List[str]:
        return sorted(tag.name for tag in self.tags)

    def is_overdue(self) -> bool:
        """Check if the task is overdue."""
        if self.due_date and not self.is_completed:
            return now_utc() > self.due_date
        return False

    def to_dict(self) -> Dict[str, Any]:
        """Convert the task to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "is_completed": self.is_completed,
            "created_at": to_iso_string(self.created_at),
            "updated_at": to_iso_string(self.updated_at),
            "due_date": to_iso_string(self.due_date),
            "tags": [tag.to_dict() for tag in sorted(self.tags, key=lambda t: t.id)],
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create a task from a dictionary produced by ``to_dict``."""
        return cls(
            id=data["id"],
            user_id=data.get("user_id", ""),
            title=data.get("title", ""),
            description=data.get("description"),
            priority=Priority(data.get("priority", "medium")),
            is_completed=bool(data.get("is_completed", False)),
            created_at=parse_iso(data.get("created_at")) or now_utc(),
            updated_at=parse_iso(data.get("updated_at")) or now_utc(),
            due_date=parse_iso(data.get("due_date")),
            tags=data.get("tags") or [],
            deleted=bool(data.get("deleted", False)),
        )


@dataclass
class TaskFilter:
    """Criteria for listing and watching tasks. ``None`` means "any"."""

    user_id: Optional[str] = None
    completed: Optional[bool] = None
    priority: Optional[Priority] = None
    tag: Optional[str] = None
    search: Optional[str] = None
    due_before: Optional[datetime] = None

    def matches(self, task: Task) -> bool:
        if self.user_id is not None and task.user_id != self.user_id:
            return False
        if self.completed is not None and task.is_completed != self.completed:
            return False
        if self.priority is not None and task.priority != self.priority:
            return False
        if self.tag is not None and self.tag not in task.tag_names():
            return False
        if self.search:
            needle = self.search.lower()
            haystack = f"{task.title} {task.description or ''}".lower()
            if needle not in haystack:
                return False
        if self.due_before is not None:
            if task.due_date is None or task.due_date >= ensure_aware(self.due_before):
                return False
        return True
