"""Configuration loading and validation."""

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError as RoundTripYAMLError

from mailindex.errors import ConfigurationError

DEFAULT_CONFIG_FILENAME = "config.yaml"
USER_CONFIG_FILENAME = ".mailindex.yaml"
CONFIG_ENV_VAR = "MAILINDEX_CONFIG"

DEFAULT_NEW_TAGS = ["inbox", "unread"]

# Keys whose values are always stored as lists
LIST_KEYS = {"new.tags"}


def find_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Optional[Path]:
    """Locate the configuration file.

    Search order:
    1. Explicit --config path
    2. $MAILINDEX_CONFIG
    3. ./config.yaml (current working directory)
    4. ~/.mailindex.yaml

    Args:
        config_path: Explicit path to config file
        environ: Environment mapping (defaults to os.environ)
        home: Home directory for the per-user fallback

    Returns:
        Path of the first existing candidate, or None

    Raises:
        ConfigurationError: If an explicitly named file does not exist
    """
    environ = os.environ if environ is None else environ

    if config_path:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        return config_path

    env_path = environ.get(CONFIG_ENV_VAR)
    if env_path:
        path = Path(env_path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path} (from ${CONFIG_ENV_VAR})")
        return path

    candidates = [Path.cwd() / DEFAULT_CONFIG_FILENAME]
    home = home if home is not None else Path.home()
    candidates.append(home / USER_CONFIG_FILENAME)

    for path in candidates:
        if path.exists():
            return path
    return None


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
    required: bool = True,
) -> Dict[str, Any]:
    """Load configuration from a YAML file.

    Args:
        config_path: Explicit path to config file
        environ: Environment mapping (defaults to os.environ)
        home: Home directory for the per-user fallback
        required: Raise if no config file can be found

    Returns:
        Configuration dictionary (empty if not required and none found)

    Raises:
        ConfigurationError: If the file is missing, unreadable or not a mapping
    """
    path = find_config(config_path, environ, home)
    if path is None:
        if required:
            raise ConfigurationError(
                f"No configuration found. Create ./{DEFAULT_CONFIG_FILENAME} "
                f"or ~/{USER_CONFIG_FILENAME}, or pass --database"
            )
        return {}

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    return config


def get_database_path(config: Dict[str, Any], override: Optional[Path] = None) -> Path:
    """Get the mail/database root directory.

    Args:
        config: Configuration dictionary
        override: Path given on the command line, wins over config

    Returns:
        Database root path

    Raises:
        ConfigurationError: If no path is configured
    """
    if override:
        return override.expanduser()

    database = config.get("database")
    if isinstance(database, dict) and database.get("path"):
        return Path(str(database["path"])).expanduser()
    # Legacy flat key
    if config.get("database_path"):
        return Path(str(config["database_path"])).expanduser()

    raise ConfigurationError("No database path configured (set database.path)")


def get_new_tags(config: Dict[str, Any]) -> List[str]:
    """Get tags applied to newly indexed messages."""
    new = config.get("new") or {}
    if not isinstance(new, dict) or "tags" not in new:
        return list(DEFAULT_NEW_TAGS)
    tags = new["tags"] or []
    if isinstance(tags, str):
        tags = tags.replace(";", ",").split(",")
    return [str(t).strip() for t in tags if str(t).strip()]


def validate_config(config: Dict[str, Any]) -> List[str]:
    """Validate configuration and return list of errors.

    Args:
        config: Configuration dictionary

    Returns:
        List of error messages (empty if valid)
    """
    errors = []

    database = config.get("database")
    if database is not None and not isinstance(database, dict):
        errors.append("'database' must be a mapping with a 'path' key")
    elif isinstance(database, dict) and "path" in database and not database["path"]:
        errors.append("'database.path' is empty")

    new = config.get("new")
    if new is not None:
        if not isinstance(new, dict):
            errors.append("'new' must be a mapping")
        elif "tags" in new and not isinstance(new["tags"], (list, str, type(None))):
            errors.append("'new.tags' must be a list of tag names")

    return errors


def get_config_value(config: Dict[str, Any], key: str) -> Any:
    """Look up a dotted key such as 'database.path'.

    Raises:
        ConfigurationError: If the key is not set
    """
    node: Any = config
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise ConfigurationError(f"Config key not set: {key}")
        node = node[part]
    return node


def _round_trip_yaml() -> YAML:
    """YAML instance that keeps comments and quoting when rewriting a file."""
    yml = YAML()
    yml.preserve_quotes = True
    return yml


def set_config_value(config_path: Path, key: str, values: List[str]) -> None:
    """Set (or with no values, remove) a dotted key in a config file.

    Comments and formatting in the file are preserved. The file is
    created if it does not exist.

    Args:
        config_path: YAML file to edit
        key: Dotted key, e.g. 'database.path'
        values: New value(s); several values or a list key store a list
    """
    yml = _round_trip_yaml()
    try:
        if config_path.exists():
            with open(config_path) as f:
                data = yml.load(f) or {}
        else:
            data = {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e
    except RoundTripYAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")

    parts = key.split(".")
    node = data
    for part in parts[:-1]:
        if part not in node:
            node[part] = {}
        elif not isinstance(node[part], dict):
            raise ConfigurationError(f"Cannot set {key}: '{part}' is not a section")
        node = node[part]

    if not values:
        node.pop(parts[-1], None)
    elif len(values) == 1 and key not in LIST_KEYS:
        node[parts[-1]] = values[0]
    else:
        node[parts[-1]] = list(values)

    try:
        with open(config_path, "w") as f:
            yml.dump(data, f)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file {config_path}: {e}") from e
