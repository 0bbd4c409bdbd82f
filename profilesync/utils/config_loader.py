"""Configuration loader for the profile sync engine."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from profilesync.models.config import AppConfig

log = structlog.stdlib.get_logger()


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class ConfigLoader:
    """Loads and validates application configuration from YAML files and environment variables."""

    def __init__(self) -> None:
        """Initialize the ConfigLoader."""
        self.env_var_pattern = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """Load configuration from YAML file with environment variable overrides.

        Args:
            config_path: Path to the configuration YAML file. If None, uses
                $PROFILESYNC_CONFIG, else config/<APP_ENV>.yaml falling back to
                config/default.yaml

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If configuration is missing, unparsable or invalid
        """
        if config_path is None:
            config_path = self._get_default_config_path()

        log.info("loading_configuration", config_path=config_path)

        config_dict = self._load_yaml_file(config_path)
        config_dict = self._substitute_env_vars(config_dict)

        try:
            app_config = AppConfig(**config_dict)
            log.info("configuration_loaded_successfully", sources=list(app_config.sources))
            return app_config
        except ValidationError as e:
            log.error("configuration_validation_failed", error=str(e))
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

    def _get_default_config_path(self) -> str:
        """Resolve the configuration file when no path is given.

        ``PROFILESYNC_CONFIG`` names a file explicitly; otherwise ``APP_ENV`` selects
        ``config/<env>.yaml`` with ``config/default.yaml`` as fallback.
        """
        explicit = os.getenv("PROFILESYNC_CONFIG")
        if explicit:
            if not Path(explicit).is_file():
                raise ConfigurationError(f"PROFILESYNC_CONFIG points to a missing file: {explicit}")
            return explicit

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
        """Load YAML configuration file.

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        try:
            with open(config_path, "r") as f:
                config_dict = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {config_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration file {config_path}: {e}")

        if config_dict is None:
            raise ConfigurationError(f"Configuration file is empty: {config_path}")
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

        log.debug("yaml_file_loaded", config_path=config_path)
        return config_dict

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively substitute ${VAR_NAME} references with environment values."""
        if isinstance(config, dict):
            return {key: self._substitute_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_env_var_in_string(config)
        else:
            return config

    def _substitute_env_var_in_string(self, value: str) -> str:
        """Substitute ``${VAR}`` and ``${VAR:-default}`` references in a string.

        Raises:
            ConfigurationError: If a referenced variable is unset and has no default
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
        """Return non-fatal warnings about a loaded configuration.

        Args:
            config: Application configuration to validate

        Returns:
            List of warning messages (empty if no warnings)
        """
        warnings = []
        sync = config.sync

        if sync.overlap_hours >= sync.cold_start_days * 24:
            warnings.append(
                f"overlap_hours ({sync.overlap_hours}) covers the whole cold start window "
                f"({sync.cold_start_days} days)"
            )

        if sync.backfill_chunk_days > sync.backfill_days:
            warnings.append(
                f"backfill_chunk_days ({sync.backfill_chunk_days}) exceeds "
                f"backfill_days ({sync.backfill_days}); backfill runs as a single chunk"
            )

        if sync.retry.max_delay * sync.retry.max_attempts > sync.time_budget_seconds:
            warnings.append(
                "worst-case retry delays exceed time_budget_seconds; "
                "invocations may stop before retries are exhausted"
            )

        if not config.sources:
            warnings.append("no sources configured; scheduled sync has nothing to run")

        for source_id, source in config.sources.items():
            warnings.extend(self._stage_warnings(source_id, source.stages))

        if warnings:
            log.warning("configuration_validation_warnings", warnings=warnings)

        return warnings

    @staticmethod
    def _stage_warnings(source_id: str, stages: list[str]) -> list[str]:
        """Warnings about one source's stage list."""
        warnings = []
        if "events" not in stages:
            warnings.append(
                f"source {source_id!r} has no events stage; its watermark never advances"
            )
        if "aggregates" in stages:
            merges = [s for s in stages if s in ("events", "properties")]
            late = [s for s in merges if stages.index(s) > stages.index("aggregates")]
            if late:
                warnings.append(
                    f"source {source_id!r} runs aggregates before {', '.join(late)}; "
                    "the engagement summary lags one run behind"
                )
        return warnings
