"""Remote gateway capability interface and an in-memory backend.

The sync engine only ever talks to a ``RemoteGateway``; it neither knows nor
cares whether the implementation speaks REST, WebSocket or something else.
``InMemoryBackend`` is a complete reference backend used by the test-suite and
for offline experimentation: it keeps an ordered change log (the source of
cursors), deletion tombstones, and a per-client record of applied changes so
re-delivered changes are acknowledged without being applied twice.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from ..task import Task
from ..utils.datetime import next_tick
from .errors import TransportError
from .models import Ack, ChangeOperation, PendingChange, PushResult, RejectReason


logger = logging.getLogger(__name__)


class RemoteGateway(ABC):
    """Backend operations the sync engine depends on."""

    @abstractmethod
    async def fetch_since(self, cursor: Optional[str]) -> Tuple[List[Task], Optional[str]]:
        """Fetch remote changes after ``cursor``.

        Args:
            cursor: Opaque token from a previous fetch, or None for everything

        Returns:
            Tuple of (changed tasks including tombstones, new cursor)

        Raises:
            TransportError: If the backend cannot be reached
        """
        pass

    @abstractmethod
    async def push_change(self, change: PendingChange) -> PushResult:
        """Send one queued change.

        Returns:
            ``Ack`` when durably applied, ``RejectReason`` when refused

        Raises:
            TransportError: If the backend cannot be reached
        """
        pass

    @abstractmethod
    def subscribe(self, user_id: str) -> AsyncIterator[Task]:
        """Stream of tasks changed remotely by other clients."""
        pass

    async def close(self):
        """Release network resources."""
        pass


# Validation hook signature: returns a rejection message or None
ChangeValidator = Callable[[PendingChange], Optional[str]]


class InMemoryBackend:
    """Reference backend shared by any number of simulated clients."""

    def __init__(self, validator: Optional[ChangeValidator] = None):
        self.validator = validator
        self.online = True
        self._tasks: Dict[str, Task] = {}
        self._log: List[Tuple[int, str]] = []
        self._seq = 0
        self._applied: Dict[Tuple[str, int], Ack] = {}
        self._subscribers: List[Tuple[str, str, asyncio.Queue]] = []
        self.push_count = 0

    # Inspection helpers

    def task(self, task_id: str) -> Optional[Task]:
        """Live task by id (None if missing or deleted)."""
        task = self._tasks.get(task_id)
        return None if task is None or task.deleted else task

    def tasks(self, user_id: Optional[str] = None) -> List[Task]:
        return [
            t for t in self._tasks.values()
            if not t.deleted and (user_id is None or t.user_id == user_id)
        ]

    def is_deleted(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and task.deleted

    def seed(self, task: Task):
        """Write a task directly, as if another client had pushed it."""
        self._write(task, origin=None)

    # Operations

    def _check_online(self):
        if not self.online:
            raise TransportError("Backend unreachable")

    def fetch(self, cursor: Optional[str], user_id: Optional[str] = None) -> Tuple[List[Task], Optional[str]]:
        self._check_online()
        try:
            since = int(cursor) if cursor else 0
        except ValueError:
            raise TransportError(f"Invalid cursor: {cursor!r}")

        changed: Dict[str, None] = {}
        for seq, task_id in self._log:
            if seq > since:
                changed.pop(task_id, None)
                changed[task_id] = None

        tasks = [self._tasks[task_id] for task_id in changed]
        if user_id is not None:
            tasks = [t for t in tasks if t.user_id == user_id]
        new_cursor = str(self._seq) if self._seq else cursor
        return tasks, new_cursor

    def push(self, client_id: str, change: PendingChange) -> PushResult:
        self._check_online()
        self.push_count += 1

        key = (client_id, change.change_id)
        if key in self._applied:
            applied = self._applied[key]
            logger.debug(f"Duplicate delivery of change {change.change_id} from {client_id}")
            return Ack(applied.change_id, applied.task_id, duplicate=True)

        if self.validator is not None:
            message = self.validator(change)
            if message:
                return RejectReason(change.change_id, change.task_id, message, code="validation")

        current = self._tasks.get(change.task_id)
        if change.payload is not None and current is not None \
                and current.user_id != change.payload.user_id:
            return RejectReason(change.change_id, change.task_id, "permission denied",
                                code="permission")

        if change.operation == ChangeOperation.DELETE:
            if current is not None and not current.deleted:
                self._write(
                    Task.tombstone(current.id, current.user_id, next_tick(current.updated_at)),
                    origin=client_id,
                )
        elif current is not None and current.deleted:
            # Deletes win: updates to a deleted task are acknowledged and dropped
            logger.debug(f"Ignoring {change.operation.value} of deleted task {change.task_id}")
        else:
            self._write(change.payload, origin=client_id)

        ack = Ack(change.change_id, change.task_id)
        self._applied[key] = ack
        return ack

    def _write(self, task: Task, origin: Optional[str]):
        self._seq += 1
        self._tasks[task.id] = task
        self._log.append((self._seq, task.id))
        for client_id, user_id, queue in list(self._subscribers):
            if client_id != origin and task.user_id == user_id:
                queue.put_nowait(task)

    def add_subscriber(self, client_id: str, user_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append((client_id, user_id, queue))
        return queue

    def remove_subscriber(self, queue: asyncio.Queue):
        self._subscribers = [s for s in self._subscribers if s[2] is not queue]


class InMemoryRemoteGateway(RemoteGateway):
    """One client's connection to an ``InMemoryBackend``."""

    def __init__(self, backend: InMemoryBackend, client_id: str,
                 user_id: Optional[str] = None, latency: float = 0.0):
        self.backend = backend
        self.client_id = client_id
        self.user_id = user_id
        self.latency = latency

    async def _delay(self):
        if self.latency:
            await asyncio.sleep(self.latency)

    async def fetch_since(self, cursor: Optional[str]) -> Tuple[List[Task], Optional[str]]:
        await self._delay()
        return self.backend.fetch(cursor, self.user_id)

    async def push_change(self, change: PendingChange) -> PushResult:
        await self._delay()
        return self.backend.push(self.client_id, change)

    async def subscribe(self, user_id: str) -> AsyncIterator[Task]:
        queue = self.backend.add_subscriber(self.client_id, user_id)
        try:
            while True:
                yield await queue.get()
        finally:
            self.backend.remove_subscriber(queue)
