"""Click CLI for SFTP Batch Sink.

Entry point registered in ``pyproject.toml`` as ``sftp-batch-sink``.

Subcommands::

    sftp-batch-sink -i events.txt         # run the pipeline (default input: stdin)
    sftp-batch-sink check                 # connect, probe destination, disconnect
    sftp-batch-sink secrets init          # create encrypted secrets file
    sftp-batch-sink secrets set KEY       # store a secret
    sftp-batch-sink secrets list          # list secret names
    sftp-batch-sink secrets rekey         # re-encrypt with a new key
"""

from __future__ import annotations

import dataclasses
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import BinaryIO, Optional

import click
import orjson

from sftp_batch_sink import __version__
from sftp_batch_sink.channel import MemoryChannel
from sftp_batch_sink.config import AppConfig, LogFileConfig, load_config
from sftp_batch_sink.errors import ConnectionFailure
from sftp_batch_sink.lifecycle import SinkController
from sftp_batch_sink.models import ProbeResult
from sftp_batch_sink.redactor import SecretRedactingFilter, collect_secret_values
from sftp_batch_sink.runner import SinkRunner
from sftp_batch_sink.source import LineSource
from sftp_batch_sink.transfer import SFTPTransferClient

logger = logging.getLogger("sftp_batch_sink")

DEFAULT_CONFIG = "/etc/sftp-batch-sink/config.json"
DEFAULT_SECRETS_FILE = "/etc/sftp-batch-sink/.secrets.enc"


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger: JSON on stderr, optional rotating file, redaction."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # paramiko's transport chatter drowns out the sink at INFO.
    logging.getLogger("paramiko").setLevel(logging.WARNING)

    redactor = SecretRedactingFilter(secret_values)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_JsonFormatter())
    stderr_handler.addFilter(redactor)
    root.addHandler(stderr_handler)

    if log_file_config and log_file_config.enabled:
        from logging.handlers import RotatingFileHandler

        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        )
        file_handler.setFormatter(_JsonFormatter())
        file_handler.addFilter(redactor)
        root.addHandler(file_handler)


def _load_secrets_if_available() -> dict[str, str]:
    key_file = os.environ.get("SFTP_SINK_KEY_FILE")
    secrets_file = os.environ.get("SFTP_SINK_SECRETS_FILE", DEFAULT_SECRETS_FILE)
    if key_file and Path(key_file).exists() and Path(secrets_file).exists():
        from sftp_batch_sink.secrets import load_secrets
        return load_secrets(secrets_file, key_file)
    return {}


def _load_app_config(config_path: Optional[str], overrides: dict[str, str]) -> AppConfig:
    cfg_path = config_path or os.environ.get("SFTP_SINK_CONFIG", DEFAULT_CONFIG)
    try:
        return load_config(cfg_path, overrides=overrides, secrets=_load_secrets_if_available())
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("-i", "--input", "input_path", default="-", show_default=True,
              help="Newline-delimited input file, or '-' for stdin.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--roll-count", type=click.IntRange(min=1), default=None,
              help="Override records per batch.")
@click.option("--staging-dir", default=None, help="Override local staging directory.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.option("--sftp-host", default=None, help="Override ${SFTP_HOST}.")
@click.option("--sftp-password", default=None, help="Override ${SFTP_PASSWORD}.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    input_path: str,
    log_level: Optional[str],
    roll_count: Optional[int],
    staging_dir: Optional[str],
    validate_only: bool,
    sftp_host: Optional[str],
    sftp_password: Optional[str],
) -> None:
    """SFTP Batch Sink: newline-delimited records to count-rolled files over SFTP."""
    overrides: dict[str, str] = {}
    if sftp_host:
        overrides["SFTP_HOST"] = sftp_host
    if sftp_password:
        overrides["SFTP_PASSWORD"] = sftp_password
    ctx.obj = {"config_path": config_path, "overrides": overrides, "log_level": log_level}

    if ctx.invoked_subcommand is not None:
        return  # defer to subcommand

    cfg = _load_app_config(config_path, overrides)

    destination = cfg.destination
    if roll_count:
        destination = dataclasses.replace(destination, roll_count=roll_count)
    staging_dir = staging_dir or os.environ.get("SFTP_SINK_STAGING_DIR")
    if staging_dir:
        destination = dataclasses.replace(destination, staging_dir=staging_dir)
    cfg.destination = destination

    effective_level = log_level or os.environ.get("SFTP_SINK_LOG_LEVEL") or cfg.logging.level
    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    _setup_logging(effective_level, secret_values, cfg.logging.file)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting sftp-batch-sink %s (host=%s, folder=%s, roll_count=%d)",
        __version__,
        cfg.connection.host,
        cfg.destination.folder,
        cfg.destination.roll_count,
    )

    if input_path == "-":
        stats = _run_pipeline(cfg, sys.stdin.buffer)
    else:
        with open(input_path, "rb") as stream:
            stats = _run_pipeline(cfg, stream)

    if stats.failed:
        logger.warning("%d sink step(s) failed during the run", stats.failed)


# ── pipeline ────────────────────────────────────────────────────────


def _run_pipeline(cfg: AppConfig, stream: BinaryIO):
    """source → channel → sink, until the input is drained or a signal arrives."""
    channel = MemoryChannel(
        capacity=cfg.source.channel_capacity,
        transaction_capacity=cfg.source.transaction_capacity,
    )
    source = LineSource(stream, channel, batch_size=cfg.source.batch_size)
    controller = SinkController(cfg.connection, cfg.destination, channel)

    try:
        controller.start()
    except ConnectionFailure as exc:
        logger.error("Cannot start sink: %s", exc)
        raise SystemExit(1) from exc

    runner = SinkRunner(
        controller.process,
        backoff_ms=cfg.runner.backoff_ms,
        source_finished=lambda: source.finished,
    )

    def _handle_signal(signum, frame) -> None:
        logger.info("Received shutdown signal %d", signum)
        runner.request_shutdown()

    previous = {sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGTERM, signal.SIGINT)}

    source.start()
    try:
        return runner.run()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        source.stop()
        controller.stop()
        logger.info(
            "Pipeline shut down (read=%d, left in channel=%d)", source.count, len(channel)
        )


# ── check subcommand ────────────────────────────────────────────────


@main.command("check")
@click.pass_context
def check(ctx: click.Context) -> None:
    """Connect, probe the destination folder, and disconnect."""
    cfg = _load_app_config(ctx.obj["config_path"], ctx.obj["overrides"])
    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    _setup_logging(ctx.obj["log_level"] or cfg.logging.level, secret_values)

    client = SFTPTransferClient(cfg.connection)
    try:
        client.connect()
    except ConnectionFailure as exc:
        click.echo(f"Connection failed: {exc}", err=True)
        raise SystemExit(1) from exc
    try:
        result = client.probe(cfg.destination.folder)
    finally:
        client.disconnect()

    click.echo(f"Connected to {cfg.connection.host}:{cfg.connection.port}")
    click.echo(f"Destination {cfg.destination.folder}: {result.value.lower()}")
    if result is ProbeResult.INDETERMINATE:
        raise SystemExit(1)


# ── secrets subcommand group ────────────────────────────────────────


def _secrets_file() -> str:
    return os.environ.get("SFTP_SINK_SECRETS_FILE", DEFAULT_SECRETS_FILE)


@main.group()
def secrets() -> None:
    """Manage the encrypted secrets file."""


@secrets.command("init")
@click.option("--output", default=None, help="Path for the encrypted file.")
@click.option("--key-file", required=True, help="Path for the master key.")
def secrets_init(output: Optional[str], key_file: str) -> None:
    """Create an empty encrypted secrets file and key."""
    from sftp_batch_sink.secrets import SecretsStore
    path = output or _secrets_file()
    SecretsStore(path, key_file).init()
    click.echo(f"Initialized: {path} (key: {key_file})")


@secrets.command("set")
@click.argument("key")
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_set(key: str, value: str, key_file: str) -> None:
    """Store a secret in the encrypted file."""
    from sftp_batch_sink.secrets import SecretsStore
    SecretsStore(_secrets_file(), key_file).set(key, value)
    click.echo(f"Set: {key}")


@secrets.command("list")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_list(key_file: str) -> None:
    """List stored secret names (values are never shown)."""
    from sftp_batch_sink.secrets import SecretsStore
    for name in SecretsStore(_secrets_file(), key_file).names():
        click.echo(name)


@secrets.command("rekey")
@click.option("--key-file", required=True, help="Current master key path.")
@click.option("--new-key-file", required=True, help="New master key path.")
def secrets_rekey(key_file: str, new_key_file: str) -> None:
    """Re-encrypt the secrets store with a new key."""
    from sftp_batch_sink.secrets import SecretsStore
    SecretsStore(_secrets_file(), key_file).rekey(new_key_file)
    click.echo(f"Re-keyed with: {new_key_file}")
