"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError

from todo_sync.config import BackendSettings, Config, ConfigModel, load_config, save_config
from todo_sync.sync.models import ConflictStrategy
from todo_sync.sync.settings import SyncSettings


class TestSyncSettings:
    """Test engine settings validation."""

    def test_defaults(self):
        settings = SyncSettings()

        assert settings.conflict_strategy == ConflictStrategy.LAST_WRITE_WINS
        assert settings.sync_on_mutation is True

    def test_strategy_from_string(self):
        assert SyncSettings(conflict_strategy="manual").conflict_strategy == ConflictStrategy.MANUAL

    @pytest.mark.parametrize("field,value", [
        ("sync_interval", 0),
        ("retry_base_delay", -1),
        ("request_timeout", 0),
        ("max_retries", 101),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            SyncSettings(**{field: value})

    def test_max_delay_not_below_base(self):
        with pytest.raises(ValidationError):
            SyncSettings(retry_base_delay=10, retry_max_delay=5)


class TestConfigFile:
    """Test the YAML-backed application config."""

    def test_default_config_is_created(self, sync_home):
        config = load_config()

        assert config.data_dir == str(sync_home)
        assert (sync_home / "config.yaml").exists()
        assert config.get_db_path() == sync_home / "todo_sync.db"

    def test_round_trip(self, sync_home):
        config = ConfigModel(data_dir=str(sync_home), user_id="alice")
        config.sync = SyncSettings(conflict_strategy=ConflictStrategy.MANUAL, sync_interval=60)
        path = sync_home / "custom.yaml"
        save_config(config, path)

        loaded = load_config(path)

        assert loaded.user_id == "alice"
        assert loaded.sync.conflict_strategy == ConflictStrategy.MANUAL
        assert loaded.sync.sync_interval == 60

    def test_unknown_keys_are_ignored(self, sync_home):
        loaded = ConfigModel.from_yaml(f"user_id: bob\ndata_dir: {sync_home}\ncolour: blue\n")

        assert loaded.user_id == "bob"

    def test_invalid_file_falls_back_to_defaults(self, sync_home):
        sync_home.mkdir(parents=True, exist_ok=True)
        path = sync_home / "config.yaml"
        path.write_text("sync:\n  sync_interval: -5\n")

        config = load_config(path)

        assert config.sync.sync_interval == SyncSettings().sync_interval

    def test_get_is_cached_until_reload(self, sync_home):
        first = Config.get()
        assert Config.get() is first
        assert Config.reload() is not first


class TestBackendSettings:
    """Test backend settings from the environment."""

    def test_not_configured_by_default(self, sync_home):
        assert not BackendSettings().configured

    def test_reads_environment(self, sync_home, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
        monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")

        settings = BackendSettings()

        assert settings.configured
        assert settings.tasks_table == "tasks"
        assert settings.cursor_column == "revision"
