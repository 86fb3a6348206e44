"""UI-facing task repository.

Mutations are applied to the local store and recorded in the change queue in
one transaction, then returned immediately (optimistic update). The sync
engine, when attached, is nudged to push them in the background.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from .sync.change_queue import ChangeQueue
from .sync.engine import SyncEngine
from .sync.local_store import LocalStore
from .sync.models import PendingChange, SyncConflict, SyncState, SyncStatus
from .task import Task, TaskFilter
from .utils.datetime import next_tick


logger = logging.getLogger(__name__)

# Fields a caller may change through an update
EDITABLE_FIELDS = {"title", "description", "priority", "is_completed", "due_date", "tags"}


class MutationKind(Enum):
    """Kinds of UI mutations."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Mutation:
    """A user-level change to a task."""

    kind: MutationKind
    task_id: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, title: str, **fields) -> "Mutation":
        return cls(MutationKind.CREATE, fields={"title": title, **fields})

    @classmethod
    def update(cls, task_id: str, **fields) -> "Mutation":
        return cls(MutationKind.UPDATE, task_id=task_id, fields=fields)

    @classmethod
    def delete(cls, task_id: str) -> "Mutation":
        return cls(MutationKind.DELETE, task_id=task_id)


class TaskRepository:
    """Reads and optimistic writes of tasks for one user."""

    def __init__(self, store: LocalStore, user_id: str,
                 engine: Optional[SyncEngine] = None,
                 queue: Optional[ChangeQueue] = None):
        self.store = store
        self.user_id = user_id
        self.engine = engine
        if queue is None:
            queue = engine.queue if engine is not None else ChangeQueue(store)
        self.queue = queue
        self.logger = logging.getLogger(__name__)

    # Reads

    def get(self, task_id: str) -> Optional[Task]:
        return self.store.get(task_id)

    def list_tasks(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        task_filter = task_filter or TaskFilter()
        if task_filter.user_id is None:
            task_filter = replace(task_filter, user_id=self.user_id)
        return self.store.list(task_filter)

    async def watch_tasks(self, task_filter: Optional[TaskFilter] = None) -> AsyncIterator[List[Task]]:
        """Yield the matching tasks now and again after every store change.

        Changes arriving faster than the consumer reads are collapsed into a
        single snapshot.
        """
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()

        def on_change():
            loop.call_soon_threadsafe(changed.set)

        self.store.add_listener(on_change)
        try:
            yield self.list_tasks(task_filter)
            while True:
                await changed.wait()
                changed.clear()
                yield self.list_tasks(task_filter)
        finally:
            self.store.remove_listener(on_change)

    # Writes

    def mutate(self, mutation: Mutation) -> Task:
        """Apply a mutation locally and queue it for sync.

        Returns:
            The optimistic task (for deletes, the task as it was)

        Raises:
            KeyError: If the task to update or delete does not exist
            ValueError: If the mutation is invalid
        """
        invalid = set(mutation.fields) - EDITABLE_FIELDS
        if invalid:
            raise ValueError(f"Fields cannot be edited: {sorted(invalid)}")

        if mutation.kind == MutationKind.CREATE:
            task = Task.new(self.user_id, **mutation.fields)
            self.queue.record_create(task)
            self.logger.info(f"Created task {task.id}")
        elif mutation.kind == MutationKind.UPDATE:
            task = self._apply_update(mutation)
        else:
            task = self._require(mutation.task_id)
            self.queue.record_delete(task.id, base_version=task.updated_at)
            self.logger.info(f"Deleted task {task.id}")

        self._nudge()
        return task

    def _apply_update(self, mutation: Mutation) -> Task:
        with self.store.atomic():
            current = self._require(mutation.task_id)
            task = current.copy_with(
                updated_at=next_tick(current.updated_at), **mutation.fields
            )
            self.queue.record_update(task, base_version=current.updated_at)
        self.logger.info(f"Updated task {task.id}")
        return task

    def _require(self, task_id: Optional[str]) -> Task:
        task = self.store.get(task_id) if task_id else None
        if task is None:
            raise KeyError(f"Task {task_id} not found")
        return task

    def _nudge(self):
        if self.engine is not None and self.engine.settings.sync_on_mutation:
            self.engine.trigger("local mutation")

    # Convenience wrappers

    def create_task(self, title: str, **fields) -> Task:
        return self.mutate(Mutation.create(title, **fields))

    def update_task(self, task_id: str, **fields) -> Task:
        return self.mutate(Mutation.update(task_id, **fields))

    def complete_task(self, task_id: str, completed: bool = True) -> Task:
        return self.mutate(Mutation.update(task_id, is_completed=completed))

    def delete_task(self, task_id: str) -> Task:
        return self.mutate(Mutation.delete(task_id))

    # Sync visibility

    def current_sync_status(self) -> SyncStatus:
        if self.engine is None:
            return SyncStatus(SyncState.IDLE, "no backend attached")
        return self.engine.current_status()

    def pending_changes(self) -> List[PendingChange]:
        return self.queue.pending()

    def failed_changes(self) -> List[PendingChange]:
        return self.queue.failed()

    def retry_failed(self, task_id: Optional[str] = None) -> int:
        count = self.queue.retry_failed(task_id)
        if count:
            self._nudge()
        return count

    def conflicts(self, resolved: Optional[bool] = False) -> List[SyncConflict]:
        return self.store.list_conflicts(resolved=resolved)
