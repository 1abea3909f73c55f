"""
Configuration Loader for the Agent Task Engine

Provides YAML configuration parsing with Pydantic validation,
config merging and environment variable substitution.
"""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .exceptions import ConfigurationError


class LogLevel(str, Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ModelProvider(str, Enum):
    """Model provider enumeration."""
    ANTHROPIC = "anthropic"


class RetryConfig(BaseModel):
    """Retry configuration for oracle calls."""
    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1.0)

    @model_validator(mode="after")
    def max_delay_greater_than_base(self):
        """Ensure max_delay is greater than base_delay."""
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than base_delay")
        return self


class AgentConfig(BaseModel):
    """Identity of the agent running the engine."""
    name: str = "DefaultAgent"
    role_description: str = "A helpful AI assistant"


class LLMConfig(BaseModel):
    """LLM configuration."""
    provider: ModelProvider = Field(default=ModelProvider.ANTHROPIC)
    model: str = Field(default="claude-sonnet-4-20250514")
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=4096, ge=1)
    timeout: float = Field(default=60.0, ge=1)
    api_key: Optional[str] = None
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("temperature")
    @classmethod
    def valid_temperature(cls, v: float) -> float:
        """Validate temperature is reasonable."""
        if v > 1.5:
            return 1.5
        return v


class PlanningConfig(BaseModel):
    """Planning configuration.

    ``budget`` holds one subtask ceiling per recursion depth.
    """
    budget: List[int] = Field(default_factory=lambda: [5, 3, 2])
    timeout: float = Field(default=120.0, gt=0)
    history_window: int = Field(default=5, ge=0)
    length_threshold: int = Field(default=100, ge=1)
    recursive: bool = False

    @field_validator("budget")
    @classmethod
    def valid_budget(cls, v: List[int]) -> List[int]:
        """Every depth must allow at least one subtask."""
        if not v:
            raise ValueError("planning budget must have at least one level")
        if any(step < 1 for step in v):
            raise ValueError("planning budget entries must be >= 1")
        return v


class ExecutionConfig(BaseModel):
    """Execution configuration."""
    parallel: bool = False
    max_workers: int = Field(default=5, ge=1)
    task_timeout: Optional[float] = Field(default=300.0, gt=0)
    on_failure: str = Field(default="continue", pattern="^(continue|stop)$")
    raise_on_failure: bool = False
    save_output: bool = False
    output_dir: str = "./output"


class LedgerConfig(BaseModel):
    """Execution ledger configuration."""
    backend: str = Field(default="memory", pattern="^(memory|jsonl)$")
    base_dir: str = "./records"


class CapabilitiesConfig(BaseModel):
    """Built-in capability configuration."""
    enabled: List[str] = Field(default_factory=lambda: ["calculator", "file", "search"])
    file_root: str = "./workspace"
    search_provider: str = Field(default="mock", pattern="^(mock|brave)$")
    search_api_key: Optional[str] = None
    search_max_results: int = Field(default=10, ge=1, le=50)


class ReportingConfig(BaseModel):
    """Execution report configuration."""
    format: str = Field(default="markdown", pattern="^(markdown|json|text)$")
    output_dir: str = "./reports"
    backup: bool = True
    max_file_size_mb: int = Field(default=10, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = Field(default=LogLevel.INFO)
    format: str = Field(default="json", pattern="^(json|text)$")
    file: Optional[str] = None
    max_size_mb: int = Field(default=10, ge=1)
    backup_count: int = Field(default=5, ge=0)
    console: bool = True


class EngineConfig(BaseModel):
    """Root engine configuration."""
    model_config = {"extra": "allow"}

    agent: AgentConfig = Field(default_factory=AgentConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    planning: PlanningConfig = Field(default_factory=PlanningConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    capabilities: CapabilitiesConfig = Field(default_factory=CapabilitiesConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class ConfigLoader:
    """
    Configuration loader for the Agent Task Engine.

    Features:
    - YAML configuration parsing
    - Pydantic validation
    - Base config merging
    - Environment variable substitution

    Example:
        >>> loader = ConfigLoader()
        >>> config = loader.load("engine.yaml")
        >>> config.planning.budget
        [5, 3, 2]
    """

    # Environment variable pattern: ${VAR_NAME} or ${VAR_NAME:-default}
    ENV_PATTERN = re.compile(r'\$\{([^}]+)\}')

    def __init__(self):
        self._config: Optional[EngineConfig] = None
        self._loaded_files: Set[str] = set()

    def load(
        self,
        config_path: Union[str, Path],
        base_config: Optional[Union[str, Path, Dict[str, Any]]] = None,
        env_substitution: bool = True
    ) -> EngineConfig:
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to YAML config file
            base_config: Optional base config (path or dict) to merge under it
            env_substitution: Enable environment variable substitution

        Returns:
            Validated EngineConfig

        Raises:
            FileNotFoundError: If config file not found
            ConfigurationError: If config is invalid
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        merged_config: Dict[str, Any] = {}

        if base_config:
            if isinstance(base_config, (str, Path)):
                base_data = self._load_yaml_file(Path(base_config))
                self._loaded_files.add(str(base_config))
            else:
                base_data = base_config
            merged_config = self._deep_merge(merged_config, base_data)

        config_data = self._load_yaml_file(config_path)
        merged_config = self._deep_merge(merged_config, config_data)
        self._loaded_files.add(str(config_path))

        return self._build(merged_config, env_substitution)

    def load_dict(self, data: Dict[str, Any], env_substitution: bool = True) -> EngineConfig:
        """Validate configuration from an in-memory mapping."""
        return self._build(dict(data), env_substitution)

    def _build(self, data: Dict[str, Any], env_substitution: bool) -> EngineConfig:
        if env_substitution:
            data = self._substitute_env_vars(data)

        try:
            self._config = EngineConfig(**data)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                error_code="INVALID_CONFIG"
            ) from e

        return self._config

    def _load_yaml_file(self, path: Path) -> Dict[str, Any]:
        """Load YAML file and return data."""
        with open(path, 'r', encoding='utf-8') as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(
                    f"Malformed YAML in {path}: {e}",
                    error_code="INVALID_YAML"
                ) from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Top level of {path} must be a mapping",
                error_code="INVALID_YAML"
            )
        return data

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries. Lists in the override replace lists in the base."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _substitute_env_vars(self, data: Any) -> Any:
        """Substitute environment variables in data."""
        if isinstance(data, dict):
            return {k: self._substitute_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [self._substitute_env_vars(item) for item in data]
        elif isinstance(data, str):
            return self._substitute_env_string(data)
        else:
            return data

    def _substitute_env_string(self, value: str) -> str:
        """Substitute environment variables in a string."""
        def replace_var(match):
            var_expr = match.group(1)

            # VAR:-default
            if ':-' in var_expr:
                var_name, default = var_expr.split(':-', 1)
                return os.environ.get(var_name, default)

            # VAR:?error
            if ':?' in var_expr:
                var_name, error_msg = var_expr.split(':?', 1)
                if var_name not in os.environ:
                    raise ConfigurationError(
                        f"Required environment variable {var_name}: {error_msg}",
                        error_code="MISSING_ENV"
                    )
                return os.environ[var_name]

            return os.environ.get(var_expr, match.group(0))

        return self.ENV_PATTERN.sub(replace_var, value)

    def validate(self, config: Optional[EngineConfig] = None) -> List[str]:
        """
        Validate configuration and return list of issues.

        Args:
            config: Config to validate (uses loaded config if None)

        Returns:
            List of validation issues (empty if valid)
        """
        config = config or self._config
        if not config:
            return ["No configuration loaded"]

        issues = []

        if config.llm.provider == ModelProvider.ANTHROPIC:
            if not config.llm.api_key and "ANTHROPIC_API_KEY" not in os.environ:
                issues.append("LLM provider is anthropic but ANTHROPIC_API_KEY not set")

        known = {"calculator", "file", "search"}
        for name in config.capabilities.enabled:
            if name not in known:
                issues.append(f"Unknown capability '{name}'")

        capabilities = config.capabilities
        if "search" in capabilities.enabled and capabilities.search_provider == "brave" \
                and not capabilities.search_api_key:
            issues.append("Search provider is brave but search_api_key not set")

        if config.execution.parallel and config.execution.max_workers == 1:
            issues.append("Parallel execution enabled with a single worker")

        return issues

    def get_config(self) -> EngineConfig:
        """Get the loaded configuration."""
        if not self._config:
            raise RuntimeError("No configuration loaded")
        return self._config

    def get_loaded_files(self) -> Set[str]:
        """Get set of loaded configuration files."""
        return self._loaded_files.copy()

    def export_to_yaml(
        self,
        filepath: Union[str, Path],
        config: Optional[EngineConfig] = None
    ) -> Path:
        """
        Export configuration to YAML file.

        Args:
            filepath: Output file path
            config: Config to export (uses loaded config if None)

        Returns:
            Path to exported file
        """
        config = config or self._config
        if not config:
            raise RuntimeError("No configuration to export")

        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        data = self._remove_none_values(
            config.model_dump(mode="json"),
            EngineConfig().model_dump(mode="json"),
        )

        with open(filepath, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

        return filepath

    def _remove_none_values(self, data: Any, defaults: Any = None) -> Any:
        """Remove None values whose default is also None.

        A None that overrides a non-None default (such as a disabled
        ``execution.task_timeout``) is written as ``null``.
        """
        if isinstance(data, dict):
            defaults = defaults if isinstance(defaults, dict) else {}
            return {
                k: self._remove_none_values(v, defaults.get(k))
                for k, v in data.items()
                if v is not None or defaults.get(k) is not None
            }
        elif isinstance(data, list):
            return [self._remove_none_values(item) for item in data if item is not None]
        else:
            return data


def load_config(
    config_path: Union[str, Path],
    base_config: Optional[Union[str, Path]] = None
) -> EngineConfig:
    """Convenience function to load configuration."""
    loader = ConfigLoader()
    return loader.load(config_path, base_config)


def create_default_config() -> EngineConfig:
    """Create a default configuration."""
    return EngineConfig()
