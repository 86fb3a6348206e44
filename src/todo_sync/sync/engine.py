"""Sync engine: reconciles the change queue, local store and remote gateway.

State machine::

    Idle --trigger--> Syncing --pull/reconcile--> push --> Idle
                         |                          |
                         |                          +--> ConflictPending (manual mode)
                         +--transport error--> Failed(reason) --> Idle (retry scheduled)

A pass first pulls remote changes since the stored cursor and runs each of
them through conflict resolution, then drains the change queue in order. Only
gateway calls suspend; local store operations are synchronous, so UI
mutations made mid-pass land in the queue and are picked up by the next pass.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, List, Optional, Set

from ..task import Task
from ..utils.datetime import max_of, next_tick, now_utc
from .change_queue import ChangeQueue
from .conflicts import ConflictResolver, Resolution, ResolutionAction, remote_is_newer
from .errors import ConflictUnresolved, StorageError, SyncError, TransportError
from .gateway import RemoteGateway
from .local_store import LocalStore
from .models import (
    Ack,
    ChangeStatus,
    ConflictWinner,
    RejectReason,
    ResultStatus,
    SyncConflict,
    SyncResult,
    SyncState,
    SyncStatus,
)
from .retry import Backoff
from .settings import SyncSettings


logger = logging.getLogger(__name__)

StatusListener = Callable[[SyncStatus], None]


class SyncEngine:
    """Main synchronization engine coordinating pull, reconcile and push."""

    def __init__(self, store: LocalStore, gateway: RemoteGateway,
                 settings: Optional[SyncSettings] = None,
                 queue: Optional[ChangeQueue] = None,
                 user_id: Optional[str] = None):
        """Initialize the engine.

        Args:
            store: Local store holding tasks and the change log
            gateway: Backend capability
            settings: Engine settings (defaults if omitted)
            queue: Change queue over ``store`` (created if omitted)
            user_id: Owner whose realtime updates are subscribed to
        """
        self.store = store
        self.gateway = gateway
        self.settings = settings or SyncSettings()
        self.queue = queue or ChangeQueue(store)
        self.user_id = user_id
        self.resolver = ConflictResolver(self.settings.conflict_strategy)
        self.backoff = Backoff(
            self.settings.retry_base_delay,
            self.settings.retry_max_delay,
            self.settings.max_retries,
        )
        self.last_result: Optional[SyncResult] = None
        self.logger = logging.getLogger(__name__)

        self._status = SyncStatus.idle()
        self._status_listeners: List[StatusListener] = []
        self._lock = asyncio.Lock()
        self._cancel_requested = False
        self._rerun_requested = False
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._trigger_event: Optional[asyncio.Event] = None
        self._runner: Optional[asyncio.Task] = None
        self._subscriber: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._connectivity = None

    # Status

    @property
    def status(self) -> SyncStatus:
        return self._status

    def current_status(self) -> SyncStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def add_status_listener(self, listener: StatusListener):
        self._status_listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener):
        if listener in self._status_listeners:
            self._status_listeners.remove(listener)

    def _set_status(self, status: SyncStatus):
        if status == self._status:
            return
        self._status = status
        self.logger.debug(f"Sync status -> {status}")
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                self.logger.error(f"Status listener failed: {e}")

    def _settled_status(self) -> SyncStatus:
        unresolved = self.store.list_conflicts(resolved=False)
        if unresolved:
            return SyncStatus.conflict_pending(f"{len(unresolved)} unresolved conflict(s)")
        return SyncStatus.idle()

    # Running a pass

    async def run(self, reason: str = "manual") -> SyncResult:
        """Run one reconciliation pass.

        Never raises for store or gateway failures; they are recorded in the
        returned result and reflected in ``status``.
        """
        if self._lock.locked():
            self._rerun_requested = True
            self.logger.debug(f"Sync already running; {reason} trigger deferred")
            return SyncResult(status=ResultStatus.SKIPPED)

        async with self._lock:
            self._cancel_requested = False
            self._cancel_retry()
            self._set_status(SyncStatus.syncing())
            self.logger.info(f"Starting sync ({reason})")
            result = SyncResult()

            try:
                await self._pull(result)
                await self._push(result)
            except TransportError as e:
                result.add_error(f"Transport error: {e}")
                self._fail(result, str(e), retry=True)
            except StorageError as e:
                result.add_error(f"Storage error: {e}")
                self._fail(result, str(e), retry=False)
            except Exception as e:
                self.logger.exception(f"Unexpected error during sync: {e}")
                result.add_error(f"Unexpected error: {e}")
                self._fail(result, str(e), retry=False)
            else:
                self.backoff.reset()
                self._finish(result)
            finally:
                result.complete()
                self.last_result = result

            self.logger.info(
                f"Sync finished: {result.status.value}, pulled {result.items_pulled}, "
                f"pushed {result.items_pushed}, failed {result.items_failed}, "
                f"conflicts {result.conflicts_detected}"
            )

        if self._rerun_requested and self._trigger_event is not None:
            self._rerun_requested = False
            self._trigger_event.set()
        return result

    def _finish(self, result: SyncResult):
        status = self._settled_status()
        self._set_status(status)
        if self._cancel_requested:
            result.status = ResultStatus.CANCELLED
        elif status.state == SyncState.CONFLICT_PENDING:
            result.status = ResultStatus.CONFLICT
        elif result.items_failed:
            result.status = ResultStatus.PARTIAL
        elif not result.has_changes():
            result.status = ResultStatus.NO_CHANGES
        else:
            result.status = ResultStatus.SUCCESS

    def _fail(self, result: SyncResult, reason: str, retry: bool):
        """Report Failed(reason), then settle so the next trigger can re-attempt.

        The reason and the scheduled retry time stay on ``last_result``.
        """
        self.logger.error(f"Sync failed: {reason}")
        if retry:
            delay = self.backoff.next_delay()
            if delay is not None and self._schedule_retry(delay):
                result.next_retry_at = now_utc() + timedelta(seconds=delay)
        self._set_status(SyncStatus.failed(reason, result.next_retry_at))
        try:
            settled = self._settled_status()
        except StorageError:
            return
        self._set_status(settled)

    async def _call(self, what: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run a gateway call with a timeout, translating failures to TransportError."""
        try:
            return await asyncio.wait_for(call(), timeout=self.settings.request_timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"{what} timed out after {self.settings.request_timeout}s")
        except SyncError:
            raise
        except Exception as e:
            raise TransportError(f"{what} failed: {e}") from e

    # Pull phase

    async def _pull(self, result: SyncResult):
        cursor = self.store.get_cursor()
        tasks, new_cursor = await self._call(
            "fetch_since", lambda: self.gateway.fetch_since(cursor)
        )
        result.items_pulled = len(tasks)
        self.logger.debug(f"Fetched {len(tasks)} remote task(s) since cursor {cursor!r}")

        for remote in tasks:
            self._reconcile(remote, result)

        if not self.store.list_conflicts(resolved=False):
            self.store.set_cursor(new_cursor)
        else:
            self.logger.info("Cursor not advanced: unresolved conflicts pending")

    def _reconcile(self, remote: Task, result: SyncResult):
        """Merge one remote task into the local store."""
        pending = self.queue.pending_for(remote.id)

        if not pending:
            if self._apply_without_conflict(remote):
                result.items_applied += 1
            return

        resolution = self.resolver.resolve(pending, remote)
        local_side = pending[-1].payload
        self.logger.debug(f"Task {remote.id}: {resolution.action.value} ({resolution.reason})")

        if resolution.action == ResolutionAction.HOLD:
            result.conflicts_detected += 1
            self.store.save_conflict(SyncConflict(
                task_id=remote.id,
                local=local_side,
                remote=remote,
            ))
            self.logger.warning(f"Sync conflict detected for task {remote.id}")
            return

        with self.store.atomic():
            if resolution.action == ResolutionAction.KEEP_LOCAL:
                if resolution.rebase_to is not None:
                    self.queue.rebase(remote.id, resolution.rebase_to)
            else:
                self.queue.drop_task(remote.id)
                if self._apply_remote(remote):
                    result.items_applied += 1

            if resolution.true_conflict:
                result.conflicts_detected += 1
                result.conflicts_resolved += 1
                self._record_resolved(remote, local_side, resolution)

    def _record_resolved(self, remote: Task, local_side: Optional[Task], resolution: Resolution):
        winner = resolution.winner or ConflictWinner.REMOTE
        if self.store.resolve_conflict_record(remote.id, winner):
            # A record parked earlier was settled automatically
            return
        conflict = SyncConflict(
            task_id=remote.id,
            local=local_side,
            remote=None if remote.deleted else remote,
        )
        conflict.resolve(winner)
        self.store.save_conflict(conflict)

    def _apply_without_conflict(self, remote: Task) -> bool:
        """Last-write-wins for tasks with no pending local change."""
        if remote.deleted:
            return self._apply_remote(remote)

        local = self.store.get(remote.id)
        if local is None and self.store.get_tombstone(remote.id) is not None:
            self.logger.debug(f"Ignoring resurrection of deleted task {remote.id}")
            return False
        if not remote_is_newer(remote, local):
            return False
        self.store.put(remote)
        return True

    def _apply_remote(self, remote: Task) -> bool:
        if remote.deleted:
            return self.store.delete(remote.id, tombstone_at=remote.updated_at)
        self.store.put(remote)
        return True

    # Push phase

    async def _push(self, result: SyncResult):
        blocked = {c.task_id for c in self.store.list_conflicts(resolved=False)}
        failed_tasks = {c.task_id for c in self.queue.failed()}

        for queued in self.queue.pending(exclude_tasks=blocked):
            if self._cancel_requested:
                self.logger.info("Sync cancelled between pushes")
                break
            # Mutations made while earlier changes were in flight may have
            # coalesced into or removed this entry
            change = self.store.get_change(queued.change_id)
            if change is None or change.status != ChangeStatus.PENDING:
                continue
            if change.task_id in failed_tasks:
                # Keep causal order behind an earlier rejected change
                continue

            self.queue.begin_push(change)
            self.store.record_attempt(change.change_id)
            try:
                outcome = await self._call("push_change", lambda: self.gateway.push_change(change))
            finally:
                self.queue.end_push(change)

            if isinstance(outcome, Ack):
                self.queue.acknowledge([change.change_id])
                result.items_pushed += 1
            elif isinstance(outcome, RejectReason):
                self.queue.mark_failed(change, outcome.reason)
                failed_tasks.add(change.task_id)
                result.items_failed += 1
                result.add_warning(f"Change {change.change_id} rejected: {outcome.reason}")
            else:
                raise TransportError(f"Unexpected push result: {outcome!r}")

    # Realtime updates

    async def apply_remote_update(self, remote: Task) -> SyncResult:
        """Reconcile a pushed update from the backend through the normal path."""
        async with self._lock:
            result = SyncResult()
            try:
                self._reconcile(remote, result)
            except StorageError as e:
                result.add_error(f"Storage error: {e}")
                self.logger.error(f"Failed to apply realtime update for {remote.id}: {e}")
            else:
                self._set_status(self._settled_status())
            result.complete()
            return result

    async def _consume_updates(self):
        while True:
            try:
                async for remote in self.gateway.subscribe(self.user_id):
                    await self.apply_remote_update(remote)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = min(self.settings.retry_max_delay, self.settings.retry_base_delay * 4)
                self.logger.warning(f"Realtime subscription dropped: {e}; resubscribing in {delay}s")
                await asyncio.sleep(delay)

    # Manual conflict resolution

    def pending_conflicts(self) -> List[SyncConflict]:
        return self.store.list_conflicts(resolved=False)

    async def resolve_conflict(self, task_id: str, winner: ConflictWinner,
                               merged: Optional[Task] = None) -> Task:
        """Settle a parked conflict and resume syncing that task.

        Args:
            task_id: Task whose conflict to resolve
            winner: LOCAL keeps the local edit, REMOTE takes the server copy,
                MERGED uses ``merged``
            merged: Caller-built task for ``ConflictWinner.MERGED``

        Returns:
            The task now stored locally
        """
        async with self._lock:
            conflict = self.store.get_conflict(task_id)
            if conflict is None:
                raise KeyError(f"No unresolved conflict for task {task_id}")
            if winner == ConflictWinner.MERGED and merged is None:
                raise ValueError("A merged task is required for ConflictWinner.MERGED")

            remote = conflict.remote
            pending = self.queue.pending_for(task_id)
            base = remote.updated_at if remote else None

            with self.store.atomic():
                if winner == ConflictWinner.REMOTE:
                    self.queue.drop_task(task_id)
                    self._apply_remote(remote)
                    kept = remote
                else:
                    current = self.store.get(task_id)
                    source = merged if winner == ConflictWinner.MERGED else current
                    if source is None:
                        raise ConflictUnresolved(task_id, "Local version no longer exists")
                    stamp = next_tick(max_of(base, current.updated_at if current else None))
                    kept = source.copy_with(updated_at=stamp)
                    self.queue.drop_task(task_id)
                    self.queue.record_update(kept, base_version=base)
                self.store.resolve_conflict_record(task_id, winner)

            self.logger.info(f"Resolved conflict for task {task_id}: {winner.value} "
                             f"({len(pending)} pending change(s) affected)")
            if self._status.state == SyncState.CONFLICT_PENDING:
                self._set_status(self._settled_status())

        self.trigger("conflict resolved")
        return kept

    # Triggers, background loop, cancellation

    def cancel(self):
        """Ask the running pass to stop before its next push."""
        if self._lock.locked():
            self._cancel_requested = True

    def trigger(self, reason: str = "manual"):
        """Request a pass without waiting for it."""
        if self._trigger_event is not None:
            self.logger.debug(f"Sync triggered: {reason}")
            self._trigger_event.set()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug(f"No running loop; {reason} trigger ignored")
            return
        task = loop.create_task(self.run(reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _schedule_retry(self, delay: float) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        self._cancel_retry()
        self._retry_handle = loop.call_later(delay, self.trigger, "retry")
        return True

    def _cancel_retry(self):
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def attach_connectivity(self, monitor):
        """Run a pass whenever ``monitor`` reports an offline -> online edge."""
        self._connectivity = monitor
        monitor.on_online(lambda: self.trigger("connectivity restored"))

    def _online(self) -> bool:
        return self._connectivity is None or self._connectivity.online

    async def start(self):
        """Start the timer/trigger loop and, if enabled, the realtime consumer."""
        if self._runner is not None:
            return
        self._trigger_event = asyncio.Event()
        self._runner = asyncio.create_task(self._loop())
        if self.settings.subscribe_realtime and self.user_id:
            self._subscriber = asyncio.create_task(self._consume_updates())
        self.logger.info("Sync engine started")

    async def _loop(self):
        while True:
            try:
                await asyncio.wait_for(self._trigger_event.wait(),
                                       timeout=self.settings.sync_interval)
                reason = "trigger"
            except asyncio.TimeoutError:
                reason = "timer"
            self._trigger_event.clear()
            if reason == "timer" and not self._online():
                continue
            try:
                await self.run(reason)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.exception(f"Sync pass ({reason}) crashed: {e}")

    async def stop(self):
        """Stop background work; an in-flight pass finishes its current push."""
        self.cancel()
        self._cancel_retry()
        tasks = [t for t in (self._runner, self._subscriber) if t is not None]
        tasks.extend(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._runner = None
        self._subscriber = None
        self._trigger_event = None
        self._background.clear()
        self.logger.info("Sync engine stopped")
