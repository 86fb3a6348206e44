"""Tests for conflict detection and resolution rules."""

from datetime import datetime, timedelta, timezone

import pytest

from todo_sync.sync.conflicts import ConflictResolver, ResolutionAction, remote_is_newer
from todo_sync.sync.models import (
    ChangeOperation,
    ConflictStrategy,
    ConflictWinner,
    PendingChange,
)
from todo_sync.task import Task


T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes):
    return T0 + timedelta(minutes=minutes)


def task(title="Buy milk", minutes=0, **kwargs):
    return Task(id="t-1", user_id="user-1", title=title, created_at=T0,
                updated_at=at(minutes), **kwargs)


def update(payload, base_minutes):
    return PendingChange(change_id=1, task_id=payload.id, operation=ChangeOperation.UPDATE,
                         payload=payload, base_version=at(base_minutes))


def create(payload):
    return PendingChange(change_id=1, task_id=payload.id, operation=ChangeOperation.CREATE,
                         payload=payload)


def delete(base_minutes):
    return PendingChange(change_id=1, task_id="t-1", operation=ChangeOperation.DELETE,
                         base_version=at(base_minutes))


@pytest.fixture
def resolver():
    return ConflictResolver(ConflictStrategy.LAST_WRITE_WINS)


class TestLastWriteWins:
    """Test the default strategy."""

    def test_remote_unchanged_since_base_keeps_local(self, resolver):
        resolution = resolver.resolve([update(task("Local", 5), 0)], task("Remote", 0))

        assert resolution.action == ResolutionAction.KEEP_LOCAL
        assert not resolution.true_conflict

    def test_newer_local_wins(self, resolver):
        resolution = resolver.resolve([update(task("Local", 10), 0)], task("Remote", 5))

        assert resolution.action == ResolutionAction.KEEP_LOCAL
        assert resolution.true_conflict
        assert resolution.winner == ConflictWinner.LOCAL
        assert resolution.rebase_to == at(5)

    def test_newer_remote_wins(self, resolver):
        resolution = resolver.resolve([update(task("Local", 5), 0)], task("Remote", 10))

        assert resolution.action == ResolutionAction.APPLY_REMOTE
        assert resolution.winner == ConflictWinner.REMOTE

    def test_tie_goes_to_remote(self, resolver):
        resolution = resolver.resolve([update(task("Local", 5), 0)], task("Remote", 5))

        assert resolution.action == ResolutionAction.APPLY_REMOTE

    def test_echo_of_own_create_keeps_local(self, resolver):
        local = task("Local", 5)
        resolution = resolver.resolve([create(local)], local)

        assert resolution.action == ResolutionAction.KEEP_LOCAL
        assert not resolution.true_conflict

    def test_empty_pending_is_an_error(self, resolver):
        with pytest.raises(ValueError):
            resolver.resolve([], task())


class TestDeletes:
    """Test that deletions beat concurrent updates."""

    @pytest.mark.parametrize("strategy", list(ConflictStrategy))
    def test_remote_delete_beats_local_update(self, strategy):
        resolver = ConflictResolver(strategy)
        remote = Task.tombstone("t-1", "user-1", at(1))

        resolution = resolver.resolve([update(task("Local", 10), 0)], remote)

        assert resolution.action == ResolutionAction.APPLY_REMOTE
        assert resolution.winner == ConflictWinner.REMOTE

    @pytest.mark.parametrize("strategy", list(ConflictStrategy))
    def test_local_delete_beats_remote_update(self, strategy):
        resolver = ConflictResolver(strategy)

        resolution = resolver.resolve([delete(0)], task("Remote", 10))

        assert resolution.action == ResolutionAction.KEEP_LOCAL
        assert resolution.winner == ConflictWinner.LOCAL
        assert resolution.rebase_to == at(10)

    def test_deleted_on_both_sides(self, resolver):
        resolution = resolver.resolve([delete(0)], Task.tombstone("t-1", "user-1", at(3)))

        assert resolution.action == ResolutionAction.APPLY_REMOTE
        assert not resolution.true_conflict


class TestManual:
    """Test manual-resolution mode."""

    def test_true_conflict_is_held(self):
        resolver = ConflictResolver(ConflictStrategy.MANUAL)
        resolution = resolver.resolve([update(task("Local", 10), 0)], task("Remote", 5))

        assert resolution.action == ResolutionAction.HOLD
        assert resolution.true_conflict

    def test_no_conflict_is_not_held(self):
        resolver = ConflictResolver(ConflictStrategy.MANUAL)
        resolution = resolver.resolve([update(task("Local", 10), 5)], task("Remote", 5))

        assert resolution.action == ResolutionAction.KEEP_LOCAL


def test_remote_is_newer():
    assert remote_is_newer(task(minutes=1), None)
    assert remote_is_newer(task(minutes=2), task(minutes=1))
    assert not remote_is_newer(task(minutes=1), task(minutes=1))
