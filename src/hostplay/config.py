"""Run configuration for hostplay.

Settings come from an optional YAML or JSON file (``--config`` or the
HOSTPLAY_CONFIG environment variable). Command-line options given
explicitly override file values.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import HostplayError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "HOSTPLAY_CONFIG"
OUTPUT_FORMATS = ("text", "json")


class ConfigError(HostplayError):
    """Configuration file is missing or invalid."""


@dataclass
class RunConfig:
    """Operator settings for a run.

    Attributes:
        forks: Maximum number of hosts worked on at once
        timeout: Overall run timeout in seconds (None = no limit)
        connect_timeout: SSH connection timeout in seconds
        command_timeout: Timeout for a single remote command in seconds
        retry: Connection retries after the first attempt
        retry_delay: Delay before the first retry in seconds
        reports_dir: Directory for rendered reports
        known_hosts: known_hosts file (None = asyncssh default)
        host_key_checking: Verify SSH host keys
        output_format: "text" or "json"
    """

    forks: int = 10
    timeout: float | None = None
    connect_timeout: float = 30.0
    command_timeout: float = 300.0
    retry: int = 0
    retry_delay: float = 5.0
    reports_dir: str = "reports"
    known_hosts: str | None = None
    host_key_checking: bool = True
    output_format: str = "text"

    def __post_init__(self) -> None:
        if self.forks < 1:
            raise ConfigError(f"forks must be at least 1, got {self.forks}")
        if self.retry < 0:
            raise ConfigError(f"retry must not be negative, got {self.retry}")
        if self.output_format not in OUTPUT_FORMATS:
            raise ConfigError(f"output_format must be one of {OUTPUT_FORMATS}, got {self.output_format!r}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunConfig":
        """Create from a dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def merge(self, **overrides: Any) -> "RunConfig":
        """Copy with the given values applied; None means "not given"."""
        data = self.to_dict()
        data.update({key: value for key, value in overrides.items() if value is not None})
        return RunConfig.from_dict(data)


def load_config(path: str | Path | None = None) -> RunConfig:
    """Load a RunConfig from a file, or defaults when there is none.

    Args:
        path: Config file; falls back to $HOSTPLAY_CONFIG

    Raises:
        ConfigError: If the file is missing or invalid
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return RunConfig()

    path = Path(path)
    try:
        content = path.read_text()
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}") from None

    try:
        data = json.loads(content) if path.suffix == ".json" else yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse config {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")

    logger.debug(f"Loaded config from {path}")
    return RunConfig.from_dict(data)
