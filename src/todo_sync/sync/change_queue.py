"""Ordered log of local mutations awaiting acknowledgment by the backend.

The queue is strictly FIFO by ``change_id``: it is the only record of what
the user intended and in which order, so changes are replayed in that order.
Entries that have not been sent yet are coalesced:

* update after update   -> one update with the latest payload
* update after create   -> the create carries the latest payload
* delete after create   -> both vanish, the task never has to exist remotely
* delete after update   -> the update becomes a delete

Entries being pushed right now ("in flight") and failed entries are never
coalesced into; a new entry is appended behind them instead.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Set

from ..task import Task
from ..utils.datetime import now_utc
from .local_store import LocalStore
from .models import ChangeOperation, ChangeStatus, PendingChange


logger = logging.getLogger(__name__)


class ChangeQueue:
    """Change queue persisted in the local store."""

    def __init__(self, store: LocalStore):
        self.store = store
        self._in_flight: Set[int] = set()
        self.logger = logging.getLogger(__name__)

    # Recording local mutations

    def record_create(self, task: Task) -> Optional[PendingChange]:
        """Store a new task and queue its create, atomically."""
        with self.store.atomic():
            if self.store.get(task.id) is not None:
                raise ValueError(f"Task {task.id} already exists")
            self.store.put(task)
            return self.store.append_change(PendingChange(
                change_id=0,
                task_id=task.id,
                operation=ChangeOperation.CREATE,
                payload=task,
            ))

    def record_update(self, task: Task, base_version: Optional[datetime]) -> PendingChange:
        """Store an updated task and queue (or coalesce) its update.

        Args:
            task: The new task snapshot
            base_version: ``updated_at`` of the task before this edit
        """
        with self.store.atomic():
            self.store.put(task)
            tail = self._coalescible_tail(task.id)

            if tail is not None and tail.operation == ChangeOperation.DELETE:
                raise ValueError(f"Task {task.id} is pending deletion")

            if tail is not None:
                # CREATE stays a create, UPDATE keeps its original base
                merged = tail.with_updates(payload=task, queued_at=now_utc())
                self.store.replace_change(merged)
                self.logger.debug(f"Coalesced update of {task.id} into change {tail.change_id}")
                return merged

            return self.store.append_change(PendingChange(
                change_id=0,
                task_id=task.id,
                operation=ChangeOperation.UPDATE,
                payload=task,
                base_version=base_version,
            ))

    def record_delete(self, task_id: str, base_version: Optional[datetime]) -> Optional[PendingChange]:
        """Delete a task locally and queue its delete.

        Returns:
            The queued delete, or None when an unsent create was cancelled out
        """
        with self.store.atomic():
            self.store.delete(task_id)
            tail = self._coalescible_tail(task_id)

            if tail is not None and tail.operation == ChangeOperation.DELETE:
                return tail

            if tail is not None and tail.operation == ChangeOperation.CREATE:
                if not self._sent_before(task_id, tail.change_id):
                    self.store.remove_change(tail.change_id)
                    self.logger.debug(f"Create and delete of {task_id} cancelled out")
                    return None

            if tail is not None:
                deleted = PendingChange(
                    change_id=tail.change_id,
                    task_id=task_id,
                    operation=ChangeOperation.DELETE,
                    base_version=tail.base_version or base_version,
                    queued_at=now_utc(),
                )
                self.store.replace_change(deleted)
                return deleted

            return self.store.append_change(PendingChange(
                change_id=0,
                task_id=task_id,
                operation=ChangeOperation.DELETE,
                base_version=base_version,
            ))

    def _coalescible_tail(self, task_id: str) -> Optional[PendingChange]:
        """Last entry for ``task_id`` if it may still be rewritten."""
        changes = self.store.changes_for_task(task_id, include_failed=True)
        if not changes:
            return None
        tail = changes[-1]
        if tail.change_id in self._in_flight or tail.status == ChangeStatus.FAILED:
            return None
        return tail

    def _sent_before(self, task_id: str, change_id: int) -> bool:
        """Whether an earlier entry for the task is still queued or in flight."""
        return any(
            change.change_id < change_id
            for change in self.store.changes_for_task(task_id, include_failed=True)
        )

    # Draining

    def pending(self, exclude_tasks: Iterable[str] = ()) -> List[PendingChange]:
        """Changes ready to push, in queue order."""
        excluded = set(exclude_tasks)
        return [c for c in self.store.all_pending() if c.task_id not in excluded]

    def pending_for(self, task_id: str) -> List[PendingChange]:
        return self.store.changes_for_task(task_id)

    def failed(self) -> List[PendingChange]:
        return self.store.failed_changes()

    def has_pending(self, task_id: str) -> bool:
        return bool(self.pending_for(task_id))

    def begin_push(self, change: PendingChange):
        """Freeze ``change`` against coalescing while it is being sent."""
        self._in_flight.add(change.change_id)

    def end_push(self, change: PendingChange):
        self._in_flight.discard(change.change_id)

    def acknowledge(self, change_ids: Iterable[int]) -> int:
        change_ids = list(change_ids)
        for change_id in change_ids:
            self._in_flight.discard(change_id)
        return self.store.drain_acknowledged(change_ids)

    def mark_failed(self, change: PendingChange, reason: str):
        self._in_flight.discard(change.change_id)
        self.store.mark_failed(change.change_id, reason)
        self.logger.warning(f"Change {change.change_id} for task {change.task_id} rejected: {reason}")

    def retry_failed(self, task_id: Optional[str] = None) -> int:
        """Requeue failed changes (all, or only those of ``task_id``)."""
        failed = [c for c in self.failed() if task_id is None or c.task_id == task_id]
        return self.store.reset_failed(c.change_id for c in failed)

    def discard(self, change_id: int) -> bool:
        """Drop a queue entry for good (e.g. a failed change the user gave up on)."""
        self._in_flight.discard(change_id)
        return self.store.remove_change(change_id)

    def rebase(self, task_id: str, base_version: Optional[datetime]):
        """Point every pending change of ``task_id`` at a new base version."""
        with self.store.atomic():
            for change in self.pending_for(task_id):
                if change.operation != ChangeOperation.CREATE:
                    self.store.replace_change(change.with_updates(base_version=base_version))

    def drop_task(self, task_id: str) -> List[PendingChange]:
        """Remove all pending (non-failed) changes of a task; returns them."""
        dropped = self.pending_for(task_id)
        with self.store.atomic():
            for change in dropped:
                self._in_flight.discard(change.change_id)
                self.store.remove_change(change.change_id)
        return dropped

    def __len__(self) -> int:
        return len(self.store.all_pending())
