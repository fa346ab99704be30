from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .constants import (
    CONFIG_FILE_NAMES,
    CONFIG_SEARCH_DEPTH,
    DEFAULT_BACKEND_URL,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_HISTORY_MAX_AGE,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_REQUEST_TIMEOUT,
)
from .exceptions import ConfigError

logger = logging.getLogger(__name__)


class ProjectConfig(BaseModel):
    """Project the server operates on."""

    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None


class McpClientConfig(BaseModel):
    token: Optional[str] = None


class ServerConfig(BaseModel):
    """Backend connection settings."""

    url: str = DEFAULT_BACKEND_URL
    timeout: float = DEFAULT_REQUEST_TIMEOUT


class EnvironmentConfig(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)


class FlowDefaults(BaseModel):
    """Defaults applied to flow runs and flow history retention."""

    timeout: Optional[float] = None
    stop_on_error: bool = True
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    history_limit: int = DEFAULT_HISTORY_LIMIT
    history_max_age: float = DEFAULT_HISTORY_MAX_AGE


class GassapiConfig(BaseModel):
    """Top-level configuration model."""

    project: ProjectConfig = ProjectConfig()
    token: Optional[str] = None
    mcp_client: Optional[McpClientConfig] = Field(default=None, alias="mcpClient")
    server: ServerConfig = ServerConfig()
    environments: Dict[str, EnvironmentConfig] = Field(default_factory=dict)
    active_environment: Optional[str] = None
    flows: FlowDefaults = FlowDefaults()
    variables: Dict[str, Any] = Field(default_factory=dict)
    debug: bool = False

    model_config = {"populate_by_name": True}

    def get_token(self) -> Optional[str]:
        """Return the backend token, preferring the ``mcpClient`` section."""
        if self.mcp_client and self.mcp_client.token:
            return self.mcp_client.token
        return self.token

    def environment_variables(self, name: Optional[str] = None) -> Dict[str, str]:
        """Variables of the named (or active) environment."""
        name = name or self.active_environment
        if not name:
            return {}
        env = self.environments.get(name)
        if env is None:
            raise ConfigError(f"Unknown environment: {name}")
        return dict(env.variables)


def find_config_file(start: Optional[Path] = None) -> Optional[Path]:
    """Search ``start`` and its parents for a gassapi config file."""
    search_dir = (start or Path.cwd()).resolve()
    for _ in range(CONFIG_SEARCH_DEPTH):
        for name in CONFIG_FILE_NAMES:
            candidate = search_dir / name
            if candidate.is_file():
                logger.debug(f"Found config file at {candidate}")
                return candidate
        if search_dir.parent == search_dir:
            break
        search_dir = search_dir.parent
    return None


def load_config(path: Optional[str] = None) -> GassapiConfig:
    """Load configuration from a YAML or JSON file.

    Args:
        path: Optional path to config file. Falls back to the GASSAPI_CONFIG env
            variable, then to a gassapi config file found in the current
            directory or one of its parents.
    """

    config_path = path or os.getenv("GASSAPI_CONFIG")
    resolved = Path(config_path) if config_path else find_config_file()

    if resolved is not None and resolved.exists():
        try:
            with open(resolved) as f:
                data = yaml.safe_load(f) or {}
            config = GassapiConfig(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as exc:
            raise ConfigError(f"Failed to load config from {resolved}: {exc}") from exc
    else:
        config = GassapiConfig()

    env_token = os.getenv("GASSAPI_TOKEN")
    if env_token:
        config.token = env_token
        config.mcp_client = None
    return config
