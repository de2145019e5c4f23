"""Configuration loader for the Jira sync engine."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from jirasync.models.config import AppConfig

log = structlog.stdlib.get_logger()

SUPPORTED_STORAGE_TYPES = ("json", "sqlite")


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class ConfigLoader:
    """Loads and validates application configuration from YAML files and environment variables."""

    def __init__(self) -> None:
        # ${NAME} or ${NAME:-default}
        self.env_var_pattern = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """Load configuration from a YAML file with environment variable substitution.

        Args:
            config_path: Path to the configuration YAML file. If None, uses
                config/$APP_ENV.yaml, falling back to config/default.yaml

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If the file is missing, unreadable, references an
                unset environment variable, or fails validation
        """
        if config_path is None:
            config_path = self._get_default_config_path()

        log.info("loading_configuration", config_path=config_path)

        config_dict = self._load_yaml_file(config_path)
        config_dict = self._substitute_env_vars(config_dict)

        try:
            app_config = AppConfig(**config_dict)
        except ValidationError as e:
            log.error("configuration_validation_failed", error=str(e))
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

        log.info(
            "configuration_loaded_successfully",
            storage_type=app_config.storage.type,
            granularity_hours=app_config.sync.granularity_hours,
        )
        return app_config

    def _get_default_config_path(self) -> str:
        """Resolve config/<APP_ENV>.yaml relative to the repository root."""
        env = os.getenv("APP_ENV", "default")
        config_dir = Path(__file__).parent.parent.parent / "config"
        config_file = config_dir / f"{env}.yaml"

        if not config_file.exists():
            config_file = config_dir / "default.yaml"

        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}. "
                f"Please create config/default.yaml or set APP_ENV to a valid environment."
            )

        return str(config_file)

    def _load_yaml_file(self, config_path: str) -> Dict[str, Any]:
        """Read a YAML mapping from disk.

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        try:
            with open(config_path, "r") as f:
                config_dict = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Configuration file not found: {config_path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration file {config_path}: {e}") from e

        if config_dict is None:
            raise ConfigurationError(f"Configuration file is empty: {config_path}")
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

        log.debug("yaml_file_loaded", config_path=config_path)
        return config_dict

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively replace ${VAR_NAME} references with environment values."""
        if isinstance(config, dict):
            return {key: self._substitute_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_env_var_in_string(config)
        else:
            return config

    def _substitute_env_var_in_string(self, value: str) -> str:
        """Substitute environment variables in a string.

        ``${NAME:-default}`` falls back to ``default`` when NAME is unset.
        Substituted values are not scanned again.

        Raises:
            ConfigurationError: If a referenced variable without default is not set
        """

        def replace(match: re.Match) -> str:
            var_name, default = match.group(1), match.group(2)
            env_value = os.getenv(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            raise ConfigurationError(
                f"Required environment variable not set: {var_name}. "
                f"Please set {var_name} in your environment or .env file."
            )

        return self.env_var_pattern.sub(replace, value)

    def validate_config(self, config: AppConfig) -> list[str]:
        """Return warnings for settings that validate but are likely mistakes."""
        warnings = []

        if config.storage.type not in SUPPORTED_STORAGE_TYPES:
            warnings.append(
                f"storage.type '{config.storage.type}' is not supported. "
                f"Supported types: {list(SUPPORTED_STORAGE_TYPES)}"
            )

        retry = config.sync.retry
        if retry.max_delay < retry.base_delay:
            warnings.append(
                f"retry.max_delay ({retry.max_delay}) is below retry.base_delay "
                f"({retry.base_delay}); every retry will wait max_delay"
            )

        if config.sync.max_exclusion_keys == 0:
            warnings.append(
                "max_exclusion_keys is 0; boundary-hour exclusion will always be done client side"
            )

        if warnings:
            log.warning("configuration_validation_warnings", warnings=warnings)

        return warnings
