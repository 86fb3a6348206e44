"""Tests for the UI-facing task repository."""

import asyncio

import pytest

from todo_sync.repository import Mutation, MutationKind, TaskRepository
from todo_sync.sync.models import ChangeOperation, SyncState
from todo_sync.task import Priority, Tag, TaskFilter


@pytest.fixture
def repo(store):
    return TaskRepository(store, "user-1")


class TestMutations:
    """Test optimistic mutations."""

    def test_create_is_visible_immediately(self, repo):
        task = repo.create_task("Buy milk", priority=Priority.HIGH, tags=[Tag(1, "errand")])

        assert repo.get(task.id) == task
        assert repo.list_tasks() == [task]
        assert repo.pending_changes()[0].operation == ChangeOperation.CREATE

    def test_update_advances_logical_clock(self, repo):
        task = repo.create_task("Buy milk")
        updated = repo.update_task(task.id, title="Buy oat milk")

        assert updated.updated_at > task.updated_at
        assert updated.created_at == task.created_at
        assert repo.get(task.id).title == "Buy oat milk"

    def test_update_records_previous_version_as_base(self, repo, store):
        task = repo.create_task("Buy milk")
        repo.queue.acknowledge([c.change_id for c in repo.pending_changes()])

        repo.update_task(task.id, title="Buy oat milk")

        change = repo.pending_changes()[0]
        assert change.operation == ChangeOperation.UPDATE
        assert change.base_version == task.updated_at

    def test_complete_task(self, repo):
        task = repo.create_task("Buy milk")

        assert repo.complete_task(task.id).is_completed
        assert not repo.complete_task(task.id, completed=False).is_completed

    def test_delete_returns_last_state(self, repo):
        task = repo.create_task("Buy milk")

        deleted = repo.delete_task(task.id)

        assert deleted == task
        assert repo.get(task.id) is None

    def test_unknown_task(self, repo):
        with pytest.raises(KeyError):
            repo.update_task("missing", title="x")
        with pytest.raises(KeyError):
            repo.delete_task("missing")

    def test_protected_fields_cannot_be_edited(self, repo):
        task = repo.create_task("Buy milk")

        with pytest.raises(ValueError):
            repo.update_task(task.id, user_id="someone-else")
        with pytest.raises(ValueError):
            repo.mutate(Mutation(MutationKind.CREATE, fields={"title": "x", "id": "forced"}))

    def test_empty_title_is_rejected(self, repo):
        task = repo.create_task("Buy milk")

        with pytest.raises(ValueError):
            repo.update_task(task.id, title="")
        assert repo.get(task.id).title == "Buy milk"

    def test_list_tasks_scoped_to_user(self, repo, store):
        other = TaskRepository(store, "user-2")
        mine = repo.create_task("Mine")
        other.create_task("Theirs")

        assert repo.list_tasks() == [mine]
        assert repo.list_tasks(TaskFilter(completed=False)) == [mine]


class TestSyncVisibility:
    """Test sync status and failure reporting without a backend."""

    def test_status_without_engine(self, repo):
        assert repo.current_sync_status().state == SyncState.IDLE

    def test_failed_changes_and_retry(self, repo):
        task = repo.create_task("Buy milk")
        change = repo.pending_changes()[0]
        repo.queue.mark_failed(change, "rejected")

        assert [c.task_id for c in repo.failed_changes()] == [task.id]
        assert repo.retry_failed() == 1
        assert repo.failed_changes() == []

    def test_conflicts_empty(self, repo):
        assert repo.conflicts() == []


@pytest.mark.asyncio
class TestWatch:
    """Test the task stream."""

    async def test_watch_emits_initial_and_updated_lists(self, repo):
        stream = repo.watch_tasks()
        first = await stream.__anext__()
        assert first == []

        task = repo.create_task("Buy milk")
        second = await asyncio.wait_for(stream.__anext__(), timeout=1)
        assert [t.id for t in second] == [task.id]

        repo.complete_task(task.id)
        third = await asyncio.wait_for(stream.__anext__(), timeout=1)
        assert third[0].is_completed
        await stream.aclose()

    async def test_watch_applies_filter(self, repo):
        stream = repo.watch_tasks(TaskFilter(completed=False))
        await stream.__anext__()

        task = repo.create_task("Buy milk")
        assert len(await asyncio.wait_for(stream.__anext__(), timeout=1)) == 1

        repo.complete_task(task.id)
        assert await asyncio.wait_for(stream.__anext__(), timeout=1) == []
        await stream.aclose()

    async def test_watch_unregisters_listener_on_close(self, repo, store):
        stream = repo.watch_tasks()
        await stream.__anext__()
        assert len(store._listeners) == 1

        await stream.aclose()
        assert store._listeners == []
