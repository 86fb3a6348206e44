"""Data models for the offline synchronization system.

This module contains the records exchanged between the change queue, the
local store, the remote gateway and the sync engine: pending changes, push
results, conflicts, engine status and per-pass results.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..task import Task
from ..utils.datetime import now_utc, parse_iso, to_iso_string


class ChangeOperation(Enum):
    """Kinds of local mutations recorded in the change queue."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeStatus(Enum):
    """Lifecycle of a queued change."""
    PENDING = "pending"
    FAILED = "failed"  # Permanently rejected by the backend


class ConflictStrategy(Enum):
    """Conflict resolution policies."""
    LAST_WRITE_WINS = "last_write_wins"
    MANUAL = "manual"


class ConflictWinner(Enum):
    """Which side survived a conflict."""
    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"


class SyncState(Enum):
    """Sync engine states."""
    IDLE = "idle"
    SYNCING = "syncing"
    CONFLICT_PENDING = "conflict_pending"
    FAILED = "failed"


class ResultStatus(Enum):
    """Outcome of a single sync pass."""
    SUCCESS = "success"
    NO_CHANGES = "no_changes"
    CONFLICT = "conflict"
    PARTIAL = "partial"
    ERROR = "error"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class PendingChange:
    """An entry in the change queue.

    ``payload`` is the full task snapshot for creates and updates and
    ``None`` (the tombstone marker) for deletes. ``base_version`` is the
    ``updated_at`` the client believed was current when the change was made;
    creates have no base.
    """

    change_id: int
    task_id: str
    operation: ChangeOperation
    payload: Optional[Task] = None
    base_version: Optional[datetime] = None
    status: ChangeStatus = ChangeStatus.PENDING
    error: Optional[str] = None
    attempts: int = 0
    queued_at: datetime = field(default_factory=now_utc)

    def __post_init__(self):
        if self.operation == ChangeOperation.DELETE:
            if self.payload is not None:
                raise ValueError("Delete changes carry no payload")
        elif self.payload is None:
            raise ValueError(f"{self.operation.value} changes require a task payload")
        elif self.payload.id != self.task_id:
            raise ValueError("Payload id does not match change task id")

    @property
    def is_failed(self) -> bool:
        return self.status == ChangeStatus.FAILED

    @property
    def is_delete(self) -> bool:
        return self.operation == ChangeOperation.DELETE

    def intended_version(self) -> Optional[datetime]:
        """Timestamp of the state this change wants to establish."""
        return self.payload.updated_at if self.payload else None

    def with_updates(self, **changes) -> "PendingChange":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "change_id": self.change_id,
            "task_id": self.task_id,
            "operation": self.operation.value,
            "payload": self.payload.to_dict() if self.payload else None,
            "base_version": to_iso_string(self.base_version),
            "status": self.status.value,
            "error": self.error,
            "attempts": self.attempts,
            "queued_at": to_iso_string(self.queued_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingChange":
        return cls(
            change_id=int(data["change_id"]),
            task_id=data["task_id"],
            operation=ChangeOperation(data["operation"]),
            payload=Task.from_dict(data["payload"]) if data.get("payload") else None,
            base_version=parse_iso(data.get("base_version")),
            status=ChangeStatus(data.get("status", "pending")),
            error=data.get("error"),
            attempts=int(data.get("attempts", 0)),
            queued_at=parse_iso(data.get("queued_at")) or now_utc(),
        )


@dataclass(frozen=True)
class Ack:
    """Backend acknowledgment that a change was durably applied."""
    change_id: int
    task_id: str
    duplicate: bool = False  # Already applied earlier (idempotent re-delivery)


@dataclass(frozen=True)
class RejectReason:
    """Backend refusal of one specific change (validation, permission...)."""
    change_id: int
    task_id: str
    reason: str
    code: Optional[str] = None


# Result type returned by RemoteGateway.push_change
PushResult = Union[Ack, RejectReason]


@dataclass
class SyncConflict:
    """A conflict between a pending local change and the remote state.

    ``local``/``remote`` are ``None`` when that side is a deletion. The record
    is kept for audit (resolved) or for manual resolution (unresolved).
    """

    task_id: str
    local: Optional[Task] = None
    remote: Optional[Task] = None
    winner: Optional[ConflictWinner] = None
    detected_at: datetime = field(default_factory=now_utc)
    resolved_at: Optional[datetime] = None

    @property
    def resolved(self) -> bool:
        return self.winner is not None

    def resolve(self, winner: ConflictWinner):
        """Mark conflict as resolved."""
        self.winner = winner
        self.resolved_at = now_utc()

    def describe(self) -> str:
        """Get human-readable description of the conflict."""
        if self.local is None:
            return f"Task {self.task_id} was deleted locally but modified remotely"
        if self.remote is None:
            return f"Task '{self.local.title}' was modified locally but deleted remotely"
        return f"Both local and remote versions of task '{self.local.title}' were modified"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "local": self.local.to_dict() if self.local else None,
            "remote": self.remote.to_dict() if self.remote else None,
            "winner": self.winner.value if self.winner else None,
            "detected_at": to_iso_string(self.detected_at),
            "resolved_at": to_iso_string(self.resolved_at),
        }


@dataclass(frozen=True)
class SyncStatus:
    """Current engine status as exposed to the UI layer."""
    state: SyncState = SyncState.IDLE
    reason: Optional[str] = None
    next_retry_at: Optional[datetime] = None

    @classmethod
    def idle(cls) -> "SyncStatus":
        return cls(SyncState.IDLE)

    @classmethod
    def syncing(cls) -> "SyncStatus":
        return cls(SyncState.SYNCING)

    @classmethod
    def conflict_pending(cls, reason: Optional[str] = None) -> "SyncStatus":
        return cls(SyncState.CONFLICT_PENDING, reason)

    @classmethod
    def failed(cls, reason: str, next_retry_at: Optional[datetime] = None) -> "SyncStatus":
        return cls(SyncState.FAILED, reason, next_retry_at)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.state.value}({self.reason})"
        return self.state.value


@dataclass
class SyncResult:
    """Result of a sync pass."""

    status: ResultStatus = ResultStatus.SUCCESS
    items_pulled: int = 0
    items_applied: int = 0
    items_pushed: int = 0
    items_failed: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    next_retry_at: Optional[datetime] = None

    def complete(self):
        """Mark sync as completed and calculate duration."""
        self.completed_at = now_utc()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()

    def add_error(self, error: str):
        """Add an error to the result."""
        self.errors.append(error)
        if self.status in (ResultStatus.SUCCESS, ResultStatus.NO_CHANGES):
            self.status = ResultStatus.ERROR

    def add_warning(self, warning: str):
        self.warnings.append(warning)

    def has_changes(self) -> bool:
        return bool(self.items_applied or self.items_pushed or self.items_failed
                    or self.conflicts_detected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "items_pulled": self.items_pulled,
            "items_applied": self.items_applied,
            "items_pushed": self.items_pushed,
            "items_failed": self.items_failed,
            "conflicts_detected": self.conflicts_detected,
            "conflicts_resolved": self.conflicts_resolved,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "started_at": to_iso_string(self.started_at),
            "completed_at": to_iso_string(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "next_retry_at": to_iso_string(self.next_retry_at),
        }
