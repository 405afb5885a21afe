# src/cellflow/core/config.py
"""
Engine configuration schema and loading.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class EngineSettings(BaseModel):
    """Runtime knobs for compilation and execution.

    Timeout and retry are hooks, not policies: the defaults disable both,
    and any policy beyond them belongs to the surrounding transport layer.

    Example YAML:
        max_steps: 500
        join_max_workers: 8
        async_timeout_seconds: 30
        strict_manifests: true
        log_level: DEBUG
    """

    model_config = {"frozen": True, "extra": "forbid"}

    max_steps: int = Field(
        default=10_000,
        gt=0,
        description="Maximum cell transitions per run before the run is aborted as runaway",
    )
    join_max_workers: int | None = Field(
        default=None,
        gt=0,
        description="Upper bound on worker threads per parallel join (None = one per member)",
    )
    join_member_retries: int = Field(
        default=0,
        ge=0,
        description="Extra attempts for a failing join member (0 = no retry)",
    )
    async_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Max wait for an async cell to resolve (None = wait indefinitely)",
    )
    strict_manifests: bool = Field(
        default=False,
        description="Require every cell to declare on_error explicitly",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_json: bool = Field(default=False, description="Emit JSON log lines instead of console output")

    @model_validator(mode="after")
    def validate_retries_bounded(self) -> "EngineSettings":
        if self.join_member_retries > self.max_steps:
            raise ValueError("join_member_retries cannot exceed max_steps")
        return self


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original so validation reports it
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def load_settings(config_path: Path | None = None) -> EngineSettings:
    """Load engine settings from YAML with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (CELLFLOW_*) - highest priority
    2. Config file
    3. Defaults from the Pydantic schema - lowest priority

    Args:
        config_path: Path to YAML configuration file, or None for env/defaults only

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    settings_files: list[str] = []
    if config_path is not None:
        # Dynaconf silently accepts missing files
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        settings_files.append(str(config_path))

    dynaconf_settings = Dynaconf(
        envvar_prefix="CELLFLOW",
        settings_files=settings_files,
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase keys; convert to lowercase for Pydantic
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}

    raw_config = _expand_env_vars(raw_config)

    return EngineSettings(**raw_config)
