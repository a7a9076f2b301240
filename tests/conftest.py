"""Shared fixtures: a channel, a staging dir, and a local-directory stand-in for SFTP."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from sftp_batch_sink.channel import MemoryChannel
from sftp_batch_sink.errors import RemoteDirectoryFailure, RemoteUploadFailure
from sftp_batch_sink.models import ProbeResult, Record

EVENTS_CSV = "events.csv"
SFTPDATA = "sftpdata"


class LocalTransferClient:
    """Implements the transfer-client calls against a directory on disk.

    Remote paths are resolved under *root*.  ``fail_uploads`` and
    ``fail_mkdir`` make the next N calls raise.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.fail_uploads = 0
        self.fail_mkdir = 0
        self.probe_result: ProbeResult | None = None
        self.uploads: list[str] = []
        self.mkdirs: list[str] = []
        self.probes: list[str] = []
        self.connected = False

    def connect(self) -> None:
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    def probe(self, path: str) -> ProbeResult:
        self.probes.append(path)
        if self.probe_result is not None:
            return self.probe_result
        return ProbeResult.EXISTS if self._resolve(path).is_dir() else ProbeResult.ABSENT

    def mkdir(self, path: str) -> None:
        self.mkdirs.append(path)
        if self.fail_mkdir:
            self.fail_mkdir -= 1
            raise RemoteDirectoryFailure(f"mkdir refused: {path}")
        self._resolve(path).mkdir(parents=True, exist_ok=True)

    def upload(self, local_path, remote_path: str) -> None:
        if self.fail_uploads:
            self.fail_uploads -= 1
            raise RemoteUploadFailure(f"put refused: {remote_path}")
        shutil.copyfile(local_path, self._resolve(remote_path))
        self.uploads.append(remote_path)

    def read(self, remote_path: str) -> str:
        """Content of a remote file, or ``""`` if it does not exist."""
        target = self._resolve(remote_path)
        return target.read_text(encoding="utf-8") if target.exists() else ""

    def _resolve(self, path: str) -> Path:
        return self.root / path.lstrip("/")


def put_records(channel: MemoryChannel, *bodies: str) -> None:
    """Commit *bodies* to *channel* in one put-transaction."""
    txn = channel.begin_transaction()
    for body in bodies:
        txn.put(Record.from_text(body))
    txn.commit()
    txn.close()


@pytest.fixture
def channel() -> MemoryChannel:
    return MemoryChannel(capacity=100, transaction_capacity=10)


@pytest.fixture
def remote(tmp_path: Path) -> LocalTransferClient:
    root = tmp_path / "remote"
    root.mkdir()
    return LocalTransferClient(root)


@pytest.fixture
def staging_dir(tmp_path: Path) -> Path:
    return tmp_path / "staging"
