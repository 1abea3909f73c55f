"""
Tests for configuration loading and validation.
"""

import os
from unittest.mock import patch

import pytest
import yaml

from agent_task_engine.config import (
    ConfigLoader,
    EngineConfig,
    PlanningConfig,
    create_default_config,
    load_config,
)
from agent_task_engine.exceptions import ConfigurationError


def write_yaml(path, data):
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestDefaults:
    """Test cases for default configuration values."""

    def test_defaults(self):
        config = create_default_config()

        assert config.planning.budget == [5, 3, 2]
        assert config.planning.history_window == 5
        assert config.execution.parallel is False
        assert config.execution.max_workers == 5
        assert config.execution.on_failure == "continue"
        assert config.ledger.backend == "memory"
        assert config.capabilities.enabled == ["calculator", "file", "search"]
        assert config.capabilities.search_provider == "mock"
        assert config.capabilities.search_max_results == 10
        assert config.reporting.format == "markdown"
        assert config.reporting.output_dir == "./reports"
        assert config.reporting.backup is True

    @pytest.mark.parametrize("budget", [[], [3, 0], [-1]])
    def test_invalid_budget(self, budget):
        with pytest.raises(ValueError):
            PlanningConfig(budget=budget)

    def test_temperature_is_clamped(self):
        config = ConfigLoader().load_dict({"llm": {"temperature": 1.9}})
        assert config.llm.temperature == 1.5


class TestConfigLoader:
    """Test cases for ConfigLoader."""

    def test_load_yaml(self, tmp_path):
        path = write_yaml(tmp_path / "engine.yaml", {
            "agent": {"name": "Planner"},
            "planning": {"budget": [4, 2]},
            "execution": {"parallel": True, "max_workers": 3},
        })

        config = load_config(path)

        assert config.agent.name == "Planner"
        assert config.planning.budget == [4, 2]
        assert config.execution.max_workers == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigLoader().load(tmp_path / "absent.yaml")

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert ConfigLoader().load(path) == EngineConfig()

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("planning: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigurationError) as exc_info:
            ConfigLoader().load(path)
        assert exc_info.value.error_code == "INVALID_YAML"

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            ConfigLoader().load(path)

    def test_invalid_values(self, tmp_path):
        path = write_yaml(tmp_path / "engine.yaml", {"execution": {"on_failure": "explode"}})

        with pytest.raises(ConfigurationError) as exc_info:
            ConfigLoader().load(path)
        assert exc_info.value.error_code == "INVALID_CONFIG"

    def test_base_config_merge(self, tmp_path):
        base = write_yaml(tmp_path / "base.yaml", {
            "planning": {"budget": [5, 3, 2], "timeout": 30},
            "execution": {"max_workers": 8},
        })
        override = write_yaml(tmp_path / "override.yaml", {"planning": {"budget": [2]}})

        loader = ConfigLoader()
        config = loader.load(override, base_config=base)

        assert config.planning.budget == [2]
        assert config.planning.timeout == 30
        assert config.execution.max_workers == 8
        assert loader.get_loaded_files() == {str(base), str(override)}

    def test_base_config_dict(self, tmp_path):
        path = write_yaml(tmp_path / "engine.yaml", {"agent": {"name": "B"}})
        config = ConfigLoader().load(path, base_config={"agent": {"role_description": "r"}})

        assert config.agent.name == "B"
        assert config.agent.role_description == "r"


class TestEnvSubstitution:
    """Test cases for ${VAR} substitution."""

    def test_variable_and_default(self):
        with patch.dict(os.environ, {"ENGINE_MODEL": "claude-test"}, clear=False):
            config = ConfigLoader().load_dict({
                "llm": {"model": "${ENGINE_MODEL}"},
                "ledger": {"base_dir": "${ENGINE_RECORDS_UNSET:-/tmp/records}"},
            })

        assert config.llm.model == "claude-test"
        assert config.ledger.base_dir == "/tmp/records"

    def test_unknown_variable_is_left_alone(self):
        os.environ.pop("ENGINE_NOT_SET", None)
        config = ConfigLoader().load_dict({"agent": {"name": "${ENGINE_NOT_SET}"}})
        assert config.agent.name == "${ENGINE_NOT_SET}"

    def test_required_variable(self):
        os.environ.pop("ENGINE_REQUIRED", None)

        with pytest.raises(ConfigurationError) as exc_info:
            ConfigLoader().load_dict({"llm": {"api_key": "${ENGINE_REQUIRED:?set the key}"}})
        assert exc_info.value.error_code == "MISSING_ENV"

    def test_substitution_can_be_disabled(self):
        config = ConfigLoader().load_dict({"agent": {"name": "${X:-y}"}}, env_substitution=False)
        assert config.agent.name == "${X:-y}"


class TestValidateAndExport:
    """Test cases for semantic validation and YAML export."""

    def test_validate_reports_issues(self):
        config = ConfigLoader().load_dict({
            "capabilities": {"enabled": ["calculator", "teleport"]},
            "execution": {"parallel": True, "max_workers": 1},
        })

        with patch.dict(os.environ, {}, clear=True):
            issues = ConfigLoader().validate(config)

        assert any("ANTHROPIC_API_KEY" in i for i in issues)
        assert any("teleport" in i for i in issues)
        assert any("single worker" in i for i in issues)

    def test_validate_clean_config(self):
        config = ConfigLoader().load_dict({"llm": {"api_key": "sk-test"}})
        assert ConfigLoader().validate(config) == []

    def test_validate_without_config(self):
        assert ConfigLoader().validate() == ["No configuration loaded"]

    def test_get_config_before_load(self):
        with pytest.raises(RuntimeError):
            ConfigLoader().get_config()

    def test_export_round_trip(self, tmp_path):
        loader = ConfigLoader()
        config = loader.load_dict({"planning": {"budget": [4, 1]}, "execution": {"task_timeout": None}})

        path = loader.export_to_yaml(tmp_path / "out" / "engine.yaml")
        data = yaml.safe_load(path.read_text(encoding="utf-8"))

        assert data["planning"]["budget"] == [4, 1]
        assert data["execution"]["task_timeout"] is None
        assert "api_key" not in data["llm"]
        assert load_config(path).planning.budget == config.planning.budget
        assert load_config(path).execution.task_timeout is None

    def test_export_keeps_defaults_that_are_none(self, tmp_path):
        loader = ConfigLoader()
        loader.load_dict({})

        data = yaml.safe_load(loader.export_to_yaml(tmp_path / "engine.yaml").read_text(encoding="utf-8"))

        assert data["execution"]["task_timeout"] == 300
        assert "file" not in data["logging"]
        assert "search_api_key" not in data["capabilities"]

    def test_validate_brave_without_key(self):
        config = ConfigLoader().load_dict({
            "llm": {"api_key": "sk-test"},
            "capabilities": {"search_provider": "brave"},
        })
        assert ConfigLoader().validate(config) == ["Search provider is brave but search_api_key not set"]

        config.capabilities.search_api_key = "brave-key"
        assert ConfigLoader().validate(config) == []

    def test_invalid_search_provider(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_dict({"capabilities": {"search_provider": "altavista"}})
