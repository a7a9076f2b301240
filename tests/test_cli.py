"""Tests for the click CLI."""

from pathlib import Path
from unittest.mock import patch

import orjson
import pytest
from click.testing import CliRunner

from conftest import LocalTransferClient
from sftp_batch_sink import __version__
from sftp_batch_sink.cli import main
from sftp_batch_sink.errors import ConnectionFailure


@pytest.fixture(autouse=True)
def _no_log_handlers():
    # Handlers bound to CliRunner's stderr would outlive each invocation.
    with patch("sftp_batch_sink.cli._setup_logging"):
        yield


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.json"
    path.write_bytes(orjson.dumps({
        "connection": {"host": "sftp.example.com", "username": "u", "password": "pw"},
        "destination": {
            "folder": "sftpdata",
            "file": "events.csv",
            "roll_count": 2,
            "staging_dir": str(tmp_path / "staging"),
        },
        "runner": {"backoff_ms": 0},
    }))
    return path


def test_help_lists_subcommands() -> None:
    """--help lists check and secrets."""
    result = CliRunner().invoke(main, ["--help"])
    assert result.exit_code == 0
    assert "check" in result.output
    assert "secrets" in result.output


def test_version() -> None:
    """--version prints the package version."""
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_validate_config(config_file: Path) -> None:
    """--validate-config succeeds on a valid file."""
    result = CliRunner().invoke(main, ["-c", str(config_file), "--validate-config"])
    assert result.exit_code == 0
    assert "Configuration is valid." in result.output


def test_missing_config_exits_1(tmp_path: Path) -> None:
    """A missing config file exits with status 1."""
    result = CliRunner().invoke(main, ["-c", str(tmp_path / "nope.json"), "--validate-config"])
    assert result.exit_code == 1
    assert "Config error" in result.output


def test_run_uploads_full_batches(config_file: Path, tmp_path: Path) -> None:
    """A run ships full batches and leaves the remainder staged."""
    remote_root = tmp_path / "remote"
    remote_root.mkdir()
    remote = LocalTransferClient(remote_root)
    input_file = tmp_path / "in.txt"
    input_file.write_text("first-message\nsecond-message\nthird-message\n")

    with patch("sftp_batch_sink.lifecycle.SFTPTransferClient", lambda cfg: remote):
        result = CliRunner().invoke(main, ["-c", str(config_file), "-i", str(input_file)])

    assert result.exit_code == 0, result.output
    assert remote.read("sftpdata/0_events.csv") == "first-message\nsecond-message\n"
    assert remote.read("sftpdata/1_events.csv") == ""
    assert (tmp_path / "staging" / "1_events.csv").read_text() == "third-message\n"
    assert not remote.connected


def test_roll_count_override(config_file: Path, tmp_path: Path) -> None:
    """--roll-count overrides the configured batch size."""
    remote_root = tmp_path / "remote"
    remote_root.mkdir()
    remote = LocalTransferClient(remote_root)
    input_file = tmp_path / "in.txt"
    input_file.write_text("a\nb\n")

    with patch("sftp_batch_sink.lifecycle.SFTPTransferClient", lambda cfg: remote):
        result = CliRunner().invoke(
            main, ["-c", str(config_file), "-i", str(input_file), "--roll-count", "1"]
        )

    assert result.exit_code == 0, result.output
    assert remote.read("sftpdata/0_events.csv") == "a\n"
    assert remote.read("sftpdata/1_events.csv") == "b\n"


def test_run_connection_failure_exits_1(config_file: Path, tmp_path: Path) -> None:
    """A failed connect at start-up exits with status 1."""
    class Refusing(LocalTransferClient):
        def connect(self) -> None:
            raise ConnectionFailure("auth failed")

    input_file = tmp_path / "in.txt"
    input_file.write_text("a\n")
    with patch("sftp_batch_sink.lifecycle.SFTPTransferClient", lambda cfg: Refusing(tmp_path)):
        result = CliRunner().invoke(main, ["-c", str(config_file), "-i", str(input_file)])

    assert result.exit_code == 1


def test_check_reports_destination(config_file: Path, tmp_path: Path) -> None:
    """check prints the probe result and disconnects."""
    remote_root = tmp_path / "remote"
    (remote_root / "sftpdata").mkdir(parents=True)
    remote = LocalTransferClient(remote_root)

    with patch("sftp_batch_sink.cli.SFTPTransferClient", lambda cfg: remote):
        result = CliRunner().invoke(main, ["-c", str(config_file), "check"])

    assert result.exit_code == 0, result.output
    assert "Destination sftpdata: exists" in result.output
    assert not remote.connected


def test_secrets_round_trip(tmp_path: Path) -> None:
    """secrets init, set and list work together."""
    runner = CliRunner(env={"SFTP_SINK_SECRETS_FILE": str(tmp_path / "s.enc")})
    key = str(tmp_path / "master.key")

    assert runner.invoke(main, ["secrets", "init", "--key-file", key]).exit_code == 0
    result = runner.invoke(
        main, ["secrets", "set", "SFTP_PASSWORD", "--value", "pw", "--key-file", key]
    )
    assert result.exit_code == 0
    result = runner.invoke(main, ["secrets", "list", "--key-file", key])
    assert result.exit_code == 0
    assert result.output.strip() == "SFTP_PASSWORD"
