"""Engine settings.

Loaded from .typeflow/config.yaml, then overridden by TYPEFLOW_<FIELD>
environment variables (e.g. TYPEFLOW_HTTP_TIMEOUT=10).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from typeflow.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path(".typeflow")
ENV_PREFIX = "TYPEFLOW_"


class Settings(BaseModel):
    """Runtime configuration for engine, debugger and CLI."""

    state_dir: Path = DEFAULT_STATE_DIR
    db_path: Path | None = None  # Defaults to <state_dir>/state.db
    credentials_path: Path | None = None  # Defaults to <state_dir>/credentials.yaml
    log_level: str = "INFO"
    http_timeout: float = Field(default=30.0, gt=0)
    max_parallel_nodes: int = Field(default=4, ge=1)
    max_subworkflow_depth: int = Field(default=10, ge=1)
    frame_item_limit: int = Field(default=10, ge=0)
    wait_max_seconds: float = Field(default=300.0, ge=0)
    lock_timeout: float = Field(default=30.0, gt=0)
    node_paths: list[Path] = Field(default_factory=list)  # Extra declarative node dirs

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @property
    def database_path(self) -> Path:
        return self.db_path or self.state_dir / "state.db"

    @property
    def credentials_file(self) -> Path:
        return self.credentials_path or self.state_dir / "credentials.yaml"

    @property
    def lock_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def node_dirs(self) -> list[Path]:
        return [self.state_dir / "nodes", *self.node_paths]


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name, field in Settings.model_fields.items():
        key = f"{ENV_PREFIX}{name.upper()}"
        if key not in environ:
            continue
        value: Any = environ[key]
        if name == "node_paths":
            value = [p for p in value.split(os.pathsep) if p]
        overrides[name] = value
    return overrides


def load_settings(
    path: str | Path | None = None, environ: dict[str, str] | None = None
) -> Settings:
    """Load settings from YAML and environment.

    Args:
        path: Config file. Defaults to .typeflow/config.yaml; a missing
            default file is not an error.
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: unreadable YAML, explicit path missing, or invalid values
    """
    explicit = path is not None
    config_path = Path(path) if path is not None else DEFAULT_STATE_DIR / "config.yaml"

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}")
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f"Config must be a mapping, got {type(loaded).__name__} in {config_path}")
        data = loaded or {}
    elif explicit:
        raise ConfigError(f"Config file not found: {config_path}")

    data.update(_env_overrides(dict(os.environ if environ is None else environ)))

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")
    logger.debug(f"Loaded settings from {config_path if config_path.exists() else 'defaults'}")
    return settings
