# tasker_monitor/tasker_config.py
"""
Tasker database configuration.

Resolution order (later wins):

1. built-in defaults (PostgreSQL on localhost, schema "tasker")
2. a ``.tasker.yml`` file, found by walking up from the start directory
3. TASKER_DB_* environment variables (the project ``.env`` is honoured,
   the process environment wins over it)
4. explicit keyword overrides

The merged mapping is validated and turned into a ``TaskerConfig``.
"""
from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from dotenv import dotenv_values

from tasker_monitor.config import (
    DEFAULT_REFRESH_INTERVAL,
    DOTENV_FILE_PATH,
    EXCLUDED_STAGE_NAMES,
    MAX_REFRESH_INTERVAL,
    MIN_QUERY_INTERVAL,
    MIN_REFRESH_INTERVAL,
    TASKER_CONFIG_FILENAME,
    TASKER_CONFIG_MAX_DEPTH,
)

logger = logging.getLogger(__name__)

VALID_DRIVERS = ("postgresql", "sqlite", "mysql")

ENV_KEYS = {
    "TASKER_DB_HOST": "host",
    "TASKER_DB_PORT": "port",
    "TASKER_DB_NAME": "dbname",
    "TASKER_DB_USER": "user",
    "TASKER_DB_PASSWORD": "password",
    "TASKER_DB_SCHEMA": "schema",
    "TASKER_DB_DRIVER": "driver",
}

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


class TaskerConfigError(ValueError):
    """Raised when the tasker configuration is missing, unreadable or invalid."""


@dataclass(frozen=True)
class DatabaseConfig:
    driver: str = "postgresql"
    host: Optional[str] = "localhost"
    port: Optional[int] = 5432
    dbname: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    schema: Optional[str] = "tasker"

    @property
    def uses_schema(self) -> bool:
        """Only PostgreSQL qualifies table names with a schema."""
        return self.driver == "postgresql" and bool(self.schema)

    def describe(self) -> str:
        if self.driver == "sqlite":
            return f"sqlite:{self.dbname}"
        return f"{self.user}@{self.host}:{self.port}/{self.dbname}"


@dataclass(frozen=True)
class TaskerConfig:
    database: DatabaseConfig
    log_dir: Optional[str] = None
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    min_query_interval: float = MIN_QUERY_INTERVAL
    exclude_stages: Tuple[str, ...] = EXCLUDED_STAGE_NAMES
    loaded_from: Optional[Path] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


# -----------------------
# File discovery / loading
# -----------------------

def find_config_file(
    start_dir: str | Path | None = None,
    filename: str = TASKER_CONFIG_FILENAME,
    max_depth: int = TASKER_CONFIG_MAX_DEPTH,
) -> Optional[Path]:
    """
    Walk from start_dir up through its parents looking for filename.

    Returns the resolved path of the first match, or None when nothing is
    found within max_depth directories or the filesystem root is reached.
    """
    current = Path(start_dir or Path.cwd()).resolve()

    for _ in range(max_depth):
        candidate = current / filename
        if candidate.is_file():
            return candidate.resolve()

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def expand_env_vars(value: Any, environ: Optional[Mapping[str, str]] = None) -> Any:
    """Recursively replace ${VAR} in strings; unset variables become ''."""
    env = os.environ if environ is None else environ

    if isinstance(value, dict):
        return {k: expand_env_vars(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(v, env) for v in value]
    if isinstance(value, str):
        return _ENV_VAR_PATTERN.sub(lambda m: env.get(m.group(1), ""), value)
    return value


def load_yaml_config(path: str | Path, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise TaskerConfigError(
            f"Failed to parse configuration file '{path}': {e}"
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise TaskerConfigError(
            f"Failed to parse configuration file '{path}': top level must be a mapping"
        )
    return expand_env_vars(data, environ)


def load_env_config(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Database overrides from TASKER_DB_* variables.

    When environ is None the project .env file is read first and the
    process environment is layered on top of it.
    """
    if environ is None:
        env: Dict[str, str] = {
            k: v for k, v in dotenv_values(DOTENV_FILE_PATH).items() if v is not None
        }
        env.update(os.environ)
    else:
        env = dict(environ)

    database: Dict[str, Any] = {}
    for var, key in ENV_KEYS.items():
        value = env.get(var, "")
        if value == "":
            continue
        if key == "port":
            try:
                database[key] = int(value)
            except ValueError as e:
                raise TaskerConfigError(f"{var} must be an integer, got {value!r}") from e
        else:
            database[key] = value

    return {"database": database}


def merge_configs(base: Dict[str, Any], overlay: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Recursive merge; None values in overlay never overwrite base."""
    merged = copy.deepcopy(base)
    if not overlay:
        return merged

    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = merge_configs(merged[key], value)
        elif value is not None:
            merged[key] = copy.deepcopy(value)
    return merged


# -----------------------
# Validation
# -----------------------

def validate_config(config: Mapping[str, Any]) -> None:
    database = config.get("database")
    if not isinstance(database, Mapping):
        raise TaskerConfigError("Configuration must contain a 'database' section")

    _validate_monitor(config.get("monitor"))

    driver = database.get("driver")
    if driver not in VALID_DRIVERS:
        raise TaskerConfigError(
            f"Invalid driver: {driver!r}. Must be one of: {', '.join(VALID_DRIVERS)}"
        )

    if driver == "sqlite":
        if not database.get("dbname"):
            raise TaskerConfigError("Missing required database field for SQLite: dbname")
        return

    missing = [k for k in ("host", "port", "dbname", "user") if not database.get(k)]
    if missing:
        raise TaskerConfigError(
            f"Missing required database fields: {', '.join(missing)}"
        )

    port = database.get("port")
    try:
        port = int(port)
    except (TypeError, ValueError) as e:
        raise TaskerConfigError(f"Invalid port: {port!r}") from e
    if not 1 <= port <= 65535:
        raise TaskerConfigError(f"Invalid port: {port}. Must be between 1 and 65535")


def _validate_monitor(monitor: Any) -> None:
    if monitor is None:
        return
    if not isinstance(monitor, Mapping):
        raise TaskerConfigError("'monitor' section must be a mapping")

    interval = monitor.get("min_query_interval")
    if interval is not None:
        try:
            seconds = float(interval)
        except (TypeError, ValueError) as e:
            raise TaskerConfigError(f"Invalid min_query_interval: {interval!r}") from e
        if seconds < 0:
            raise TaskerConfigError(f"Invalid min_query_interval: {interval!r}. Must not be negative")

    exclude = monitor.get("exclude_stages")
    if exclude is not None and not isinstance(exclude, (list, tuple)):
        raise TaskerConfigError(
            f"Invalid exclude_stages: {exclude!r}. Must be a list of stage names"
        )


def _default_config() -> Dict[str, Any]:
    return {
        "database": {
            "host": "localhost",
            "port": 5432,
            "dbname": None,
            "user": os.environ.get("USER") or None,
            "password": None,
            "schema": "tasker",
            "driver": "postgresql",
        }
    }


def _clamp_refresh(value: Any) -> int:
    try:
        interval = int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid refresh_interval %r", value)
        return DEFAULT_REFRESH_INTERVAL
    return max(MIN_REFRESH_INTERVAL, min(MAX_REFRESH_INTERVAL, interval))


def build_tasker_config(merged: Dict[str, Any], loaded_from: Optional[Path] = None) -> TaskerConfig:
    """Validate a merged mapping and convert it into a TaskerConfig."""
    validate_config(merged)

    db = merged["database"]
    port = db.get("port")
    database = DatabaseConfig(
        driver=db["driver"],
        host=db.get("host"),
        port=int(port) if port not in (None, "") else None,
        dbname=db.get("dbname"),
        user=db.get("user"),
        password=db.get("password"),
        schema=db.get("schema"),
    )

    monitor = merged.get("monitor") or {}
    logging_section = merged.get("logging") or {}
    log_dir = monitor.get("log_dir") or logging_section.get("log_dir")
    exclude = monitor.get("exclude_stages")
    if exclude is None:
        exclude = EXCLUDED_STAGE_NAMES

    return TaskerConfig(
        database=database,
        log_dir=log_dir or None,
        refresh_interval=_clamp_refresh(monitor.get("refresh_interval", DEFAULT_REFRESH_INTERVAL)),
        min_query_interval=float(monitor.get("min_query_interval", MIN_QUERY_INTERVAL)),
        exclude_stages=tuple(str(s) for s in exclude),
        loaded_from=loaded_from,
        raw=merged,
    )


def load_tasker_config(
    config_file: str | Path | None = None,
    start_dir: str | Path | None = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> TaskerConfig:
    """
    Resolve the tasker configuration.

    Keyword overrides (host, port, dbname, user, password, schema, driver)
    win over everything else. Raises TaskerConfigError when no file,
    environment or override provides a configuration, or when the result
    is invalid.
    """
    if config_file is None:
        config_file = find_config_file(start_dir=start_dir)
    elif not Path(config_file).is_file():
        raise TaskerConfigError(f"Configuration file not found: {config_file}")

    env_config = load_env_config(environ)
    explicit = {k: v for k, v in overrides.items() if v is not None}
    env_db = env_config["database"]
    has_env_config = bool(env_db.get("dbname")) and (
        bool(env_db.get("host")) or env_db.get("driver") == "sqlite"
    )

    if config_file is None and not explicit and not has_env_config:
        raise TaskerConfigError(
            "No tasker configuration found. Create "
            f"{TASKER_CONFIG_FILENAME} in your project root, set TASKER_DB_* "
            "environment variables (at minimum TASKER_DB_HOST and TASKER_DB_NAME), "
            f"or pass explicit parameters. Searched from: {start_dir or Path.cwd()}"
        )

    merged = _default_config()
    loaded_from: Optional[Path] = None

    if config_file is not None:
        loaded_from = Path(config_file).resolve()
        yaml_config = load_yaml_config(loaded_from, environ)
        merged = merge_configs(merged, yaml_config)

        # `environment:` entries are exported for the processes the config describes
        env_section = yaml_config.get("environment")
        if isinstance(env_section, dict) and environ is None:
            for name, value in env_section.items():
                os.environ[str(name)] = str(value)

    merged = merge_configs(merged, env_config)

    if "port" in explicit:
        explicit["port"] = int(explicit["port"])
    merged = merge_configs(merged, {"database": explicit})

    config = build_tasker_config(merged, loaded_from=loaded_from)

    logger.info("tasker configuration loaded (%s)", config.database.describe())
    if loaded_from is not None:
        logger.info("Config file: %s", loaded_from)
    return config
