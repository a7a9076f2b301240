"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → encrypted secrets → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

Connection defaults mirror a plain ``ssh`` login: the current OS user, and
when no password is given, the key and ``known_hosts`` file under
``~/.ssh``.  An explicit empty ``known_hosts_file`` turns strict host-key
checking off.
"""

from __future__ import annotations

import getpass
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"

DEFAULT_DESTINATION_FILE = "sftpsink.csv"
DEFAULT_ROLL_COUNT = 10000


def _default_username() -> str:
    try:
        return getpass.getuser()
    except Exception:
        return os.environ.get("USER", "")


def _ssh_dir() -> Path:
    return Path.home() / ".ssh"


@dataclass(frozen=True)
class ConnectionConfig:
    """SSH/SFTP connection settings.

    ``private_key_file`` and ``known_hosts_file`` are ``None`` when password
    authentication is used.  An empty ``known_hosts_file`` disables strict
    host-key checking.
    """

    host: str = "localhost"
    port: int = 22
    username: str = ""
    password: str = ""
    private_key_file: Optional[str] = None
    private_key_passphrase: Optional[str] = None
    known_hosts_file: Optional[str] = None
    connect_timeout_s: float = 15.0

    @property
    def strict_host_key_checking(self) -> bool:
        return bool(self.known_hosts_file)


@dataclass(frozen=True)
class DestinationConfig:
    """Where and how batches are written."""

    folder: str = ""
    file: str = DEFAULT_DESTINATION_FILE
    roll_count: int = DEFAULT_ROLL_COUNT
    staging_dir: str = field(default_factory=tempfile.gettempdir)


@dataclass(frozen=True)
class SourceConfig:
    """Input reader and channel sizing."""

    batch_size: int = 100
    channel_capacity: int = 10000
    transaction_capacity: int = 100


@dataclass(frozen=True)
class RunnerConfig:
    """Driver loop settings."""

    backoff_ms: int = 1000


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/sftp-batch-sink/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*password*", "*passphrase*", "*secret*", "*token*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    destination: DestinationConfig = field(default_factory=DestinationConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(
    value: str,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if secrets and var_name in secrets:
            return secrets[var_name]
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment, "
            f"CLI overrides, or encrypted secrets"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(
    obj: Any,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides, secrets)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides, secrets) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides, secrets) for item in obj]
    return obj


def _pick(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys of *raw* that are fields of dataclass *cls*."""
    return {k: raw[k] for k in raw if k in cls.__dataclass_fields__}


def _connection_from_dict(raw: dict[str, Any]) -> ConnectionConfig:
    username = raw.get("username") or _default_username()
    password = raw.get("password") or ""

    private_key_file = raw.get("private_key_file")
    known_hosts_file = raw.get("known_hosts_file")
    if password:
        # Password login: key and known_hosts are only used when given explicitly.
        private_key_file = private_key_file or None
    else:
        if private_key_file is None:
            private_key_file = str(_ssh_dir() / "id_rsa")
        if known_hosts_file is None:
            known_hosts_file = str(_ssh_dir() / "known_hosts")

    return ConnectionConfig(
        host=raw.get("host", "localhost"),
        port=int(raw.get("port", 22)),
        username=username,
        password=password,
        private_key_file=private_key_file,
        private_key_passphrase=raw.get("private_key_passphrase") or None,
        known_hosts_file=known_hosts_file,
        connect_timeout_s=float(raw.get("connect_timeout_s", 15.0)),
    )


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    connection = _connection_from_dict(raw.get("connection", {}))
    destination_raw = raw.get("destination", {})
    logging_raw = raw.get("logging", {})
    log_file_raw = logging_raw.get("file", {})

    destination = DestinationConfig(
        folder=destination_raw.get("folder") or f"/home/{connection.username}/",
        file=destination_raw.get("file", DEFAULT_DESTINATION_FILE),
        roll_count=int(destination_raw.get("roll_count", DEFAULT_ROLL_COUNT)),
        staging_dir=destination_raw.get("staging_dir") or tempfile.gettempdir(),
    )
    if destination.roll_count < 1:
        raise ValueError(f"destination.roll_count must be >= 1, got {destination.roll_count}")

    return AppConfig(
        connection=connection,
        destination=destination,
        source=SourceConfig(**_pick(SourceConfig, raw.get("source", {}))),
        runner=RunnerConfig(**_pick(RunnerConfig, raw.get("runner", {}))),
        logging=LoggingConfig(
            level=logging_raw.get("level", "info"),
            file=LogFileConfig(**_pick(LogFileConfig, log_file_raw)),
            redact_patterns=logging_raw.get(
                "redact_patterns",
                ["*password*", "*passphrase*", "*secret*", "*token*"],
            ),
        ),
    )


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    secrets:
        Values from the encrypted secrets file.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved or a value is out of range.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw: dict[str, Any] = orjson.loads(Path(path).read_bytes())

    interpolated = _walk_and_interpolate(raw, overrides=overrides, secrets=secrets)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s — skipping validation", sp)

    return _dict_to_config(interpolated)
