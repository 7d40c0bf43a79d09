"""Configuration file handling.

Defaults are read from ``<config dir>/config.yaml``:

    username: deploy
    key_file: ~/.ssh/id_ed25519
    max_workers: 32
    connect_timeout: 5
    command_timeout: 300
    host_key_policy: strict
    known_hosts_file: ~/.ssh/fleet_known_hosts
    parallel: true

Command line options override file values, which override built-in defaults.
"""

from pathlib import Path
from typing import Any, Optional

import yaml

from fanout.errors import ConfigurationError
from fanout.models import ExecutorConfig

CONFIG_FILE = "config.yaml"

KNOWN_KEYS = frozenset({
    "username",
    "key_file",
    "key_passphrase",
    "password",
    "port",
    "max_workers",
    "connect_timeout",
    "command_timeout",
    "round_timeout",
    "host_key_policy",
    "known_hosts_file",
    "parallel",
})


def get_config_dir() -> Path:
    """Get the configuration directory."""
    config_dir = Path.home() / ".fanout"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def load_defaults(path: Path) -> dict[str, Any]:
    """Load default settings from a YAML file.

    Args:
        path: Path to the configuration file. A missing file yields no
            defaults.

    Returns:
        Mapping of setting name to value.

    Raises:
        ConfigurationError: If the file is malformed or has unknown keys.
    """
    if not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping of settings")

    unknown = sorted(set(data) - KNOWN_KEYS)
    if unknown:
        raise ConfigurationError(f"unknown setting(s) in {path}: {', '.join(unknown)}")

    return data


def build_config(
    hosts: list[str],
    defaults: Optional[dict[str, Any]] = None,
    **overrides: Any,
) -> ExecutorConfig:
    """Merge file defaults and explicit overrides into an ExecutorConfig.

    Overrides whose value is None are treated as not given.

    Args:
        hosts: Target hosts.
        defaults: Settings loaded from the configuration file.
        **overrides: Settings given on the command line.

    Returns:
        The round configuration.
    """
    settings: dict[str, Any] = dict(defaults or {})
    settings.update({k: v for k, v in overrides.items() if v is not None})
    settings["hosts"] = hosts

    try:
        return ExecutorConfig.from_dict(settings)
    except TypeError as e:
        raise ConfigurationError(f"invalid setting: {e}") from e
