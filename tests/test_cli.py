"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from todo_sync import cli
from todo_sync.config import load_config
from todo_sync.sync.gateway import InMemoryBackend, InMemoryRemoteGateway
from todo_sync.sync.local_store import LocalStore


@pytest.fixture
def runner(sync_home):
    return CliRunner()


@pytest.fixture
def backend(monkeypatch):
    backend = InMemoryBackend()
    monkeypatch.setattr(
        cli, "make_gateway",
        lambda config: InMemoryRemoteGateway(backend, "cli", user_id=config.user_id),
    )
    return backend


def _tasks(sync_home):
    store = LocalStore(load_config().get_db_path())
    try:
        return store.list()
    finally:
        store.close()


class TestTaskCommands:
    """Test local task management."""

    def test_add_and_list(self, runner, sync_home):
        result = runner.invoke(cli.main, ["add", "Buy milk", "-p", "high", "-t", "errand"])
        assert result.exit_code == 0, result.output
        assert "Added" in result.output

        result = runner.invoke(cli.main, ["list"])
        assert result.exit_code == 0
        assert "Buy milk" in result.output
        assert "pending" in result.output

    def test_list_empty(self, runner):
        result = runner.invoke(cli.main, ["list"])

        assert result.exit_code == 0
        assert "No tasks found" in result.output

    def test_edit_done_and_rm(self, runner, sync_home):
        runner.invoke(cli.main, ["add", "Buy milk"])
        task_id = _tasks(sync_home)[0].id[:8]

        result = runner.invoke(cli.main, ["edit", task_id, "--title", "Buy oat milk"])
        assert result.exit_code == 0, result.output

        result = runner.invoke(cli.main, ["done", task_id])
        assert result.exit_code == 0
        task = _tasks(sync_home)[0]
        assert task.title == "Buy oat milk"
        assert task.is_completed

        result = runner.invoke(cli.main, ["rm", task_id, "--yes"])
        assert result.exit_code == 0
        assert _tasks(sync_home) == []

    def test_edit_requires_changes(self, runner, sync_home):
        runner.invoke(cli.main, ["add", "Buy milk"])
        task_id = _tasks(sync_home)[0].id[:8]

        result = runner.invoke(cli.main, ["edit", task_id])

        assert result.exit_code != 0

    def test_unknown_task_id(self, runner):
        result = runner.invoke(cli.main, ["done", "nope"])

        assert result.exit_code != 0
        assert "No task matches" in result.output

    def test_tags_reuse_ids(self, runner, sync_home):
        runner.invoke(cli.main, ["add", "One", "-t", "home"])
        runner.invoke(cli.main, ["add", "Two", "-t", "home", "-t", "work"])

        tags = {tag.name: tag.id for task in _tasks(sync_home) for tag in task.tags}
        assert tags == {"home": 1, "work": 2}


class TestSyncCommands:
    """Test sync-related commands."""

    def test_sync_without_backend(self, runner):
        result = runner.invoke(cli.main, ["sync"])

        assert result.exit_code != 0
        assert "No backend configured" in result.output

    def test_sync_pushes_tasks(self, runner, backend):
        runner.invoke(cli.main, ["add", "Buy milk"])

        result = runner.invoke(cli.main, ["sync"])

        assert result.exit_code == 0, result.output
        assert "success" in result.output
        assert [t.title for t in backend.tasks()] == ["Buy milk"]

    def test_sync_failure_exit_code(self, runner, backend):
        backend.online = False
        runner.invoke(cli.main, ["add", "Buy milk"])

        result = runner.invoke(cli.main, ["sync"])

        assert result.exit_code == 1
        assert "unreachable" in result.output

    def test_status(self, runner):
        runner.invoke(cli.main, ["add", "Buy milk"])

        result = runner.invoke(cli.main, ["status"])

        assert result.exit_code == 0
        assert "Pending changes" in result.output
        assert "not configured" in result.output

    def test_conflicts_none(self, runner):
        result = runner.invoke(cli.main, ["conflicts"])

        assert result.exit_code == 0
        assert "No conflicts" in result.output

    def test_retry_failed(self, runner, backend):
        backend.validator = lambda change: "rejected by server"
        runner.invoke(cli.main, ["add", "Buy milk"])
        runner.invoke(cli.main, ["sync"])

        status = runner.invoke(cli.main, ["status"])
        assert "rejected by server" in status.output

        backend.validator = None
        result = runner.invoke(cli.main, ["retry"])
        assert "Requeued 1 change(s)" in result.output

        runner.invoke(cli.main, ["sync"])
        assert len(backend.tasks()) == 1
