"""SFTP session used to ship finalized batches.

Wraps a ``paramiko.SSHClient`` and the SFTP channel opened on top of it.
Host-key policy::

    known_hosts_file set   → load it if present, reject unknown hosts
    known_hosts_file empty → accept any host key (strict checking off)

All network calls block; there is no timeout beyond ``connect_timeout_s``.
"""

from __future__ import annotations

import errno
import logging
import os
from pathlib import Path
from typing import Optional, Protocol

import paramiko

from sftp_batch_sink.config import ConnectionConfig
from sftp_batch_sink.errors import (
    ConnectionFailure,
    RemoteDirectoryFailure,
    RemoteUploadFailure,
)
from sftp_batch_sink.models import ProbeResult

logger = logging.getLogger(__name__)


class TransferClient(Protocol):
    """What the engine needs from a connected session."""

    def probe(self, path: str) -> ProbeResult: ...

    def mkdir(self, path: str) -> None: ...

    def upload(self, local_path: str | Path, remote_path: str) -> None: ...


class SFTPTransferClient:
    """A single SSH session plus its SFTP channel.

    Parameters
    ----------
    config:
        Connection settings (host, credentials, host-key trust store).
    """

    def __init__(self, config: ConnectionConfig) -> None:
        self._config = config
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    @property
    def is_connected(self) -> bool:
        if self._ssh is None or self._sftp is None:
            return False
        transport = self._ssh.get_transport()
        return transport is not None and transport.is_active()

    def connect(self) -> None:
        """Authenticate and open the SFTP channel.

        Raises
        ------
        ConnectionFailure
            On any network, host-key, or authentication error.
        """
        cfg = self._config
        if not cfg.host:
            raise ConnectionFailure("SFTP connection is missing a host")

        logger.info(
            "Connecting to %s@%s:%d (private_key=%s, known_hosts=%s)",
            cfg.username,
            cfg.host,
            cfg.port,
            cfg.private_key_file,
            cfg.known_hosts_file,
        )

        ssh = paramiko.SSHClient()
        try:
            if cfg.strict_host_key_checking:
                if os.path.isfile(cfg.known_hosts_file):
                    ssh.load_host_keys(cfg.known_hosts_file)
                else:
                    logger.warning(
                        "Known hosts file %s not found, no host key will be trusted",
                        cfg.known_hosts_file,
                    )
                ssh.set_missing_host_key_policy(paramiko.RejectPolicy())
            else:
                logger.info("Known hosts path is not set, strict host key checking is off")
                ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            ssh.connect(
                hostname=cfg.host,
                port=cfg.port,
                username=cfg.username,
                password=cfg.password or None,
                key_filename=self._key_filename(),
                passphrase=cfg.private_key_passphrase,
                allow_agent=False,
                look_for_keys=False,
                timeout=cfg.connect_timeout_s,
                banner_timeout=cfg.connect_timeout_s,
                auth_timeout=cfg.connect_timeout_s,
            )
            sftp = ssh.open_sftp()
        except (paramiko.SSHException, OSError) as exc:
            ssh.close()
            raise ConnectionFailure(
                f"Failed to connect to {cfg.host}:{cfg.port} as {cfg.username}: {exc}"
            ) from exc

        self._ssh = ssh
        self._sftp = sftp
        logger.info("Connected to SFTP server %s:%d", cfg.host, cfg.port)

    def probe(self, path: str) -> ProbeResult:
        """Stat *path* on the server.

        A missing path is ``ABSENT``; any other stat error is
        ``INDETERMINATE``.
        """
        try:
            self._channel().stat(path)
        except FileNotFoundError:
            return ProbeResult.ABSENT
        except (IOError, paramiko.SSHException) as exc:
            if getattr(exc, "errno", None) == errno.ENOENT:
                return ProbeResult.ABSENT
            logger.debug("stat(%s) failed: %s", path, exc)
            return ProbeResult.INDETERMINATE
        return ProbeResult.EXISTS

    def mkdir(self, path: str) -> None:
        try:
            self._channel().mkdir(path)
        except (IOError, paramiko.SSHException) as exc:
            raise RemoteDirectoryFailure(
                f"Failed to create remote directory over SFTP: {path}: {exc}"
            ) from exc
        logger.info("Created remote directory %s", path)

    def upload(self, local_path: str | Path, remote_path: str) -> None:
        """Put *local_path* at *remote_path*, replacing any existing file."""
        try:
            self._channel().put(str(local_path), remote_path)
        except (IOError, paramiko.SSHException) as exc:
            raise RemoteUploadFailure(
                f"Failed to transfer {local_path} to {remote_path} over SFTP: {exc}"
            ) from exc

    def disconnect(self) -> None:
        """Close the SFTP channel and the SSH session, logging any error."""
        sftp, self._sftp = self._sftp, None
        ssh, self._ssh = self._ssh, None
        if sftp is not None:
            try:
                sftp.close()
            except Exception as exc:
                logger.warning("Error closing SFTP channel: %s", exc)
        if ssh is not None:
            try:
                ssh.close()
            except Exception as exc:
                logger.warning("Error closing SSH session: %s", exc)

    # ── helpers ─────────────────────────────────────────────────────

    def _key_filename(self) -> Optional[str]:
        key = self._config.private_key_file
        if key and Path(key).expanduser().exists():
            return str(Path(key).expanduser())
        if key and not self._config.password:
            logger.warning("Private key file %s not found", key)
        return None

    def _channel(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            raise RemoteUploadFailure("SFTP session is not connected")
        return self._sftp
