"""Tests for the Shipwright configuration system."""

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from shipwright.config.loader import (
    expand_env,
    find_project_config,
    get_config_paths,
    load_config,
    save_config,
)
from shipwright.config.models import (
    AssistantConfig,
    ExecutionConfig,
    LoggingConfig,
    MemoryConfig,
    ServerConfig,
    ShipwrightConfig,
    parse_duration,
)
from shipwright.core.exceptions import ConfigurationError


class TestConfigModels:
    """Test configuration model validation."""

    def test_default_config(self):
        """Test creating default configuration."""
        config = ShipwrightConfig()

        assert config.state_dir == ".shipwright"
        assert config.assistant.timeout_seconds() == 1800
        assert config.execution.max_attempts == 3
        assert config.execution.max_iterations == 50
        assert config.memory.prune_interval_seconds() == 3600
        assert config.memory.max_memories_per_prompt == 10
        assert config.git.branch_prefix == "shipwright/"
        assert config.logging.level == "INFO"
        assert config.server.port == 8000

    @pytest.mark.parametrize(
        "value, seconds",
        [("30m", 1800), ("2h", 7200), ("300s", 300)],
    )
    def test_parse_duration(self, value, seconds):
        assert parse_duration(value) == seconds

    def test_invalid_durations(self):
        with pytest.raises(ValueError, match="Duration must be in format"):
            AssistantConfig(timeout="soon")
        with pytest.raises(ValueError, match="Duration must be in format"):
            MemoryConfig(prune_interval="1d")

    def test_execution_config_validation(self):
        """Test attempt and iteration bounds."""
        assert ExecutionConfig(max_attempts=10).max_attempts == 10

        with pytest.raises(ValueError, match="max_attempts must be at least 1"):
            ExecutionConfig(max_attempts=0)
        with pytest.raises(ValueError, match="max_attempts cannot exceed 10"):
            ExecutionConfig(max_attempts=11)
        with pytest.raises(ValueError, match="max_iterations must be at least 1"):
            ExecutionConfig(max_iterations=0)

    def test_memory_config_validation(self):
        with pytest.raises(ValueError, match="positive"):
            MemoryConfig(max_memories_per_prompt=0)
        with pytest.raises(ValueError, match="between 0 and 1"):
            MemoryConfig(minimum_confidence=1.5)

    def test_logging_config_validation(self):
        """Test logging configuration validation."""
        assert LoggingConfig(level="debug").level == "DEBUG"
        assert LoggingConfig(level="warn").level == "WARNING"

        with pytest.raises(ValueError, match="level must be one of"):
            LoggingConfig(level="TRACE")
        with pytest.raises(ValueError, match="format must be one of"):
            LoggingConfig(format="xml")

    def test_server_port(self):
        with pytest.raises(ValueError, match="port must be between"):
            ServerConfig(port=70000)

    def test_state_dir_resolved(self, tmp_path):
        config = ShipwrightConfig(state_dir=str(tmp_path / "a" / ".." / "state"))

        assert config.get_state_dir() == (tmp_path / "state").resolve()


class TestEnvVars:
    """Test environment variable references."""

    def test_resolves_nested(self):
        data = {"git": {"remote": "${SW_REMOTE}"}, "list": ["${SW_REMOTE:none}"]}

        with patch.dict("os.environ", {"SW_REMOTE": "upstream"}):
            resolved = expand_env(data)

        assert resolved == {"git": {"remote": "upstream"}, "list": ["upstream"]}

    def test_default_value(self):
        with patch.dict("os.environ", {}, clear=True):
            assert expand_env("${SW_MISSING:fallback}") == "fallback"
            assert expand_env("${SW_MISSING}") == ""

    def test_non_strings_untouched(self):
        assert expand_env({"port": 8000, "enabled": True}) == {"port": 8000, "enabled": True}


class TestConfigLoader:
    """Test configuration loading and saving."""

    def write(self, path: Path, data) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.dump(data))
        return path

    def test_load_defaults_when_missing(self, tmp_path):
        config = load_config(
            project_config_path=tmp_path / "none.yaml",
            global_config_path=tmp_path / "none-either.yaml",
        )

        assert config == ShipwrightConfig()

    def test_project_overrides_global(self, tmp_path):
        """Test later sources override earlier ones key by key."""
        global_path = self.write(
            tmp_path / "global.yaml",
            {"git": {"branch_prefix": "bot/", "remote": "upstream"}, "execution": {"max_attempts": 5}},
        )
        project_path = self.write(tmp_path / "project.yaml", {"git": {"branch_prefix": "feature/"}})

        config = load_config(project_config_path=project_path, global_config_path=global_path)

        assert config.git.branch_prefix == "feature/"
        assert config.git.remote == "upstream"
        assert config.execution.max_attempts == 5

    def test_env_vars_in_file(self, tmp_path):
        project_path = self.write(
            tmp_path / "project.yaml",
            {"execution": {"max_iterations": "${SW_ITERATIONS:20}"}, "server": {"port": "${SW_PORT}"}},
        )

        with patch.dict("os.environ", {"SW_PORT": "9100"}):
            config = load_config(
                project_config_path=project_path, global_config_path=tmp_path / "none.yaml"
            )

        assert config.execution.max_iterations == 20
        assert config.server.port == 9100

    def test_invalid_values(self, tmp_path):
        project_path = self.write(tmp_path / "project.yaml", {"execution": {"max_attempts": 0}})

        with pytest.raises(ConfigurationError, match="Configuration validation failed"):
            load_config(project_config_path=project_path, global_config_path=tmp_path / "none.yaml")

    def test_invalid_yaml(self, tmp_path):
        project_path = tmp_path / "project.yaml"
        project_path.write_text("git: [unclosed")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(project_config_path=project_path, global_config_path=tmp_path / "none.yaml")

    def test_non_mapping(self, tmp_path):
        project_path = self.write(tmp_path / "project.yaml", ["a", "b"])

        with pytest.raises(ConfigurationError, match="must contain a YAML object"):
            load_config(project_config_path=project_path, global_config_path=tmp_path / "none.yaml")

    def test_empty_file(self, tmp_path):
        project_path = tmp_path / "project.yaml"
        project_path.write_text("")

        config = load_config(project_config_path=project_path, global_config_path=tmp_path / "none.yaml")

        assert config == ShipwrightConfig()

    def test_save_and_reload(self, tmp_path):
        """Test a saved configuration loads back unchanged."""
        config = ShipwrightConfig(execution={"verify_commands": ["pytest -q"]})
        path = tmp_path / "out" / "config.yaml"

        save_config(config, path)
        loaded = load_config(project_config_path=path, global_config_path=tmp_path / "none.yaml")

        assert loaded.execution.verify_commands == ["pytest -q"]
        assert loaded == config

    def test_project_path_found_in_parents(self, tmp_path, monkeypatch):
        (tmp_path / ".shipwright").mkdir()
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)

        assert get_config_paths()["project"] == tmp_path.resolve() / ".shipwright" / "config.yaml"

    def test_global_path_from_xdg(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))

        assert get_config_paths()["global"] == tmp_path / "shipwright" / "config.yaml"

    def test_project_lookup_from_start_dir(self, tmp_path):
        (tmp_path / ".shipwright").mkdir()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)

        assert find_project_config(nested) == tmp_path.resolve() / ".shipwright" / "config.yaml"

    def test_env_defaults_fill_boolean_fields(self, tmp_path):
        """Test expanded strings validate into typed fields."""
        project_path = self.write(tmp_path / "project.yaml", {"git": {"push_on_phase_complete": "${SW_PUSH:false}"}})

        with patch.dict("os.environ", {}, clear=True):
            config = load_config(
                project_config_path=project_path, global_config_path=tmp_path / "none.yaml"
            )

        assert config.git.push_on_phase_complete is False
