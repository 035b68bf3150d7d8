from datetime import timedelta
from pathlib import Path

import pytest

from stageci.config import EngineConfig


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()

        assert config.concurrency >= 1
        assert config.cache_keep == 3
        assert config.default_stages == ("build", "test", "deploy")
        assert config.default_artifact_expiry == timedelta(days=30)

    def test_relative_state_dir_lives_in_workspace(self, tmp_path):
        config = EngineConfig(workspace=tmp_path, state_dir=Path(".stageci"))

        assert config.artifacts_root == tmp_path / ".stageci" / "artifacts"
        assert config.cache_root == tmp_path / ".stageci" / "cache"

    def test_absolute_state_dir(self, tmp_path):
        config = EngineConfig(workspace=tmp_path / "ws", state_dir=tmp_path / "state")

        assert config.work_root == tmp_path / "state" / "work"

    def test_workspace_identity(self, tmp_path):
        ws = tmp_path / "my-project"
        ws.mkdir()

        assert EngineConfig(workspace=ws).workspace_identity == "my-project"

    @pytest.mark.parametrize("field", ["concurrency", "cache_keep"])
    def test_bounds(self, field):
        with pytest.raises(ValueError):
            EngineConfig(**{field: 0})


class TestFromEnv:
    def test_reads_environment(self):
        config = EngineConfig.from_env({
            "STAGECI_WORKSPACE": "/srv/ws",
            "STAGECI_STATE_DIR": "/srv/state",
            "STAGECI_CONCURRENCY": "3",
            "STAGECI_CACHE_KEEP": "5",
            "STAGECI_ARTIFACT_EXPIRY": "2 days",
        })

        assert config.workspace == Path("/srv/ws")
        assert config.state_dir == Path("/srv/state")
        assert config.concurrency == 3
        assert config.cache_keep == 5
        assert config.default_artifact_expiry == timedelta(days=2)

    def test_overrides_win_and_none_is_ignored(self):
        config = EngineConfig.from_env({"STAGECI_CONCURRENCY": "3"}, concurrency=8, state_dir=None)

        assert config.concurrency == 8
        assert config.state_dir == Path(".stageci")

    def test_bad_number(self):
        with pytest.raises(ValueError):
            EngineConfig.from_env({"STAGECI_CONCURRENCY": "many"})
