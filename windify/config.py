"""Configuration loader: reads config.yaml, validates with Pydantic.

One file configures both sides: the coordinator's transport (background
worker or remote service), the deadline watchdog, and the remote transform
service that hosts the engine.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from windify.schemas import MatchOptions

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


class WorkerConfig(BaseModel):
    """Background worker process settings."""

    python: str | None = None  # interpreter for the child; defaults to sys.executable
    pythonpath: list[str] = []  # extra import roots for locating the engine
    startup_timeout: float = 10.0
    abort_policy: Literal["ignore", "terminate"] = "ignore"
    max_message_bytes: int = 16 * 1024 * 1024

    @field_validator("startup_timeout")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("startup_timeout must be positive")
        return v


class RemoteConfig(BaseModel):
    """Remote transform service settings."""

    base_url: str
    path: str = "/api/transform"
    api_key: str | None = None
    timeout: float = 30.0


class TransportConfig(BaseModel):
    """Which execution transport the coordinator uses."""

    kind: Literal["worker", "remote"] = "worker"
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    remote: RemoteConfig | None = None

    @model_validator(mode="after")
    def validate_kind(self) -> TransportConfig:
        if self.kind == "remote" and self.remote is None:
            raise ValueError("transport.remote is required when transport.kind is 'remote'")
        return self


class WatchdogConfig(BaseModel):
    """Deadline after which a pending request is cancelled. None disables it."""

    deadline_seconds: float | None = None

    @field_validator("deadline_seconds")
    @classmethod
    def must_be_positive(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError("deadline_seconds must be positive")
        return v


class ServiceConfig(BaseModel):
    """Remote transform service (the HTTP side hosting the engine)."""

    api_key: str | None = None
    allowed_origins: list[str] = ["*"]


class WindifyConfig(BaseModel):
    """Top-level configuration."""

    engine: str  # "package.module:callable"
    transport: TransportConfig = Field(default_factory=TransportConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    defaults: MatchOptions = Field(default_factory=MatchOptions)

    @field_validator("engine")
    @classmethod
    def must_be_import_path(cls, v: str) -> str:
        module, sep, attr = v.partition(":")
        if not module or not sep or not attr:
            raise ValueError(f"engine must look like 'package.module:callable', got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Module-level config cache
# ---------------------------------------------------------------------------

_config: WindifyConfig | None = None
_config_path: str = DEFAULT_CONFIG_PATH


def load_config(path: str | None = None) -> WindifyConfig:
    """Read the config file from disk, validate, and cache.

    The path defaults to $WINDIFY_CONFIG, then config.yaml.
    """
    global _config, _config_path
    _config_path = path or os.environ.get("WINDIFY_CONFIG", DEFAULT_CONFIG_PATH)

    config_file = Path(_config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file.resolve()}")

    raw = yaml.safe_load(config_file.read_text()) or {}
    _config = WindifyConfig(**raw)

    logger.info(
        f"Loaded config: engine={_config.engine}, "
        f"transport={_config.transport.kind}"
    )
    return _config


def get_config() -> WindifyConfig:
    """Return cached config. Raises if not yet loaded."""
    if _config is None:
        raise RuntimeError("Config not loaded; call load_config() first")
    return _config


def reload_config() -> WindifyConfig:
    """Re-read config from disk. Called by the service's /reload endpoint."""
    logger.info(f"Reloading config from {_config_path}")
    return load_config(_config_path)
