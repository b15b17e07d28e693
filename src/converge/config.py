"""Run configuration for converge.

A ``RunConfig`` collects the knobs that shape a run: worker pool size,
timeouts, the default error policy and transport options. Values come from
(lowest to highest precedence) built-in defaults, an optional YAML/JSON
config file, ``CONVERGE_*`` environment variables and CLI flags.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_FORKS = 10
MAX_FORKS = 100
DEFAULT_TASK_TIMEOUT = 300
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_CONFIG_FILES = ("converge.yml", "converge.yaml", "converge.json")

ERROR_POLICIES = ("strict", "best_effort")

BECOME_PASSWORD_ENV = "CONVERGE_BECOME_PASSWORD"


@dataclass
class RunConfig:
    """Settings for one playbook run.

    Attributes:
        forks: Maximum number of hosts processed concurrently
        task_timeout: Seconds a single task may run on a host
        play_timeout: Seconds a whole play may run (None = unbounded)
        connect_timeout: Seconds allowed for establishing a connection
        error_policy: Default per-play policy, "strict" or "best_effort"
        become_method: Escalation wrapper (only "sudo" is supported)
        become_user: Account escalated tasks run as
        known_hosts: known_hosts path; None disables host key checking,
            empty string uses the transport default
        client_keys: Private key paths offered to SSH servers
        gather_facts: Default for plays that don't set gather_facts
    """

    forks: int = DEFAULT_FORKS
    task_timeout: int = DEFAULT_TASK_TIMEOUT
    play_timeout: int | None = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    error_policy: str = "strict"
    become_method: str = "sudo"
    become_user: str = "root"
    known_hosts: str | None = ""
    client_keys: list[str] = field(default_factory=list)
    gather_facts: bool = True

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a value is out of range
        """
        if not 1 <= self.forks <= MAX_FORKS:
            raise ConfigError(f"forks must be between 1 and {MAX_FORKS}, got {self.forks}")
        if self.task_timeout <= 0:
            raise ConfigError(f"task_timeout must be positive, got {self.task_timeout}")
        if self.play_timeout is not None and self.play_timeout <= 0:
            raise ConfigError(f"play_timeout must be positive, got {self.play_timeout}")
        if self.error_policy not in ERROR_POLICIES:
            raise ConfigError(
                f"error_policy must be one of {', '.join(ERROR_POLICIES)}, got {self.error_policy}"
            )
        if self.become_method != "sudo":
            raise ConfigError(f"Unsupported become_method: {self.become_method}")

    @property
    def become_password(self) -> str | None:
        """Escalation password, read from the environment only."""
        return os.environ.get(BECOME_PASSWORD_ENV) or None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON/YAML serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunConfig":
        """Create from dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")
        return cls(**data)

    def merged(self, **overrides: Any) -> "RunConfig":
        """Return a copy with the non-None overrides applied."""
        data = self.to_dict()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return RunConfig.from_dict(data)


_ENV_CASTS: dict[str, Any] = {
    "forks": int,
    "task_timeout": int,
    "play_timeout": int,
    "connect_timeout": float,
    "error_policy": str,
    "become_user": str,
    "known_hosts": str,
}


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Collect ``CONVERGE_<FIELD>`` overrides from the environment."""
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for name, cast in _ENV_CASTS.items():
        raw = environ.get(f"CONVERGE_{name.upper()}")
        if raw is None or raw == "":
            continue
        try:
            overrides[name] = cast(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid CONVERGE_{name.upper()}={raw!r}: {e}") from e
    return overrides


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML or JSON config document.

    Raises:
        ConfigError: If the file cannot be read or is not a mapping
    """
    path = Path(path)
    try:
        content = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    try:
        if path.suffix == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def find_config_file(search_dir: str | Path = ".") -> Path | None:
    """Return the first default config file present in ``search_dir``."""
    for name in DEFAULT_CONFIG_FILES:
        candidate = Path(search_dir) / name
        if candidate.is_file():
            return candidate
    return None


def load_config(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
    **overrides: Any,
) -> RunConfig:
    """Build a RunConfig from defaults, file, environment and overrides.

    Args:
        path: Explicit config file; when None the current directory is searched
        environ: Environment mapping (defaults to os.environ)
        **overrides: Highest-precedence values (None values are ignored)

    Returns:
        Validated RunConfig
    """
    data: dict[str, Any] = {}
    config_path = Path(path) if path else find_config_file()
    if config_path is not None:
        logger.debug(f"Loading config from {config_path}")
        data.update(load_config_file(config_path))

    data.update(env_overrides(environ))
    data.update({k: v for k, v in overrides.items() if v is not None})
    return RunConfig.from_dict(data)
