"""Encrypted store for SFTP passwords and key passphrases.

Lets the config reference ``${SFTP_PASSWORD}`` without the value appearing in
plain text anywhere on disk.

File format::

    [8 bytes:  magic "SFTPSECR"]
    [1 byte:   version = 0x01]
    [16 bytes: salt (used as GCM associated data)]
    [12 bytes: nonce]
    [N bytes:  ciphertext + 16-byte GCM tag]

The 32-byte AES-256 key lives in a separate key file (mode 0600).
"""

from __future__ import annotations

import os
from pathlib import Path

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"SFTPSECR"
VERSION = 0x01
KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12
_HEADER_LEN = len(MAGIC) + 1 + SALT_LEN + NONCE_LEN


class SecretsError(ValueError):
    """The secrets or key file is missing, malformed, or does not match."""


class SecretsStore:
    """Read/modify/write access to one encrypted secrets file.

    Parameters
    ----------
    path:
        The encrypted store.
    key_file:
        The raw 32-byte key.
    """

    def __init__(self, path: str | Path, key_file: str | Path) -> None:
        self.path = Path(path)
        self.key_file = Path(key_file)

    def init(self) -> None:
        """Create an empty store, generating the key file if needed."""
        _ensure_key_file(self.key_file)
        self.save({})

    def load(self) -> dict[str, str]:
        key = _read_key(self.key_file)
        data = self.path.read_bytes()
        if len(data) < _HEADER_LEN or data[: len(MAGIC)] != MAGIC:
            raise SecretsError(f"{self.path} is not a secrets file")
        if data[len(MAGIC)] != VERSION:
            raise SecretsError(f"Unsupported secrets file version: {data[len(MAGIC)]}")

        offset = len(MAGIC) + 1
        salt = data[offset: offset + SALT_LEN]
        nonce = data[offset + SALT_LEN: _HEADER_LEN]
        try:
            plaintext = AESGCM(key).decrypt(nonce, data[_HEADER_LEN:], salt)
        except InvalidTag as exc:
            raise SecretsError(f"Key {self.key_file} does not open {self.path}") from exc
        return orjson.loads(plaintext)

    def save(self, store: dict[str, str]) -> None:
        key = _read_key(self.key_file)
        salt = os.urandom(SALT_LEN)
        nonce = os.urandom(NONCE_LEN)
        ciphertext = AESGCM(key).encrypt(nonce, orjson.dumps(store), salt)

        with open(self.path, "wb") as fh:
            fh.write(MAGIC + bytes([VERSION]) + salt + nonce + ciphertext)
        os.chmod(self.path, 0o600)

    def set(self, name: str, value: str) -> None:
        store = self.load()
        store[name] = value
        self.save(store)

    def names(self) -> list[str]:
        return sorted(self.load())

    def rekey(self, new_key_file: str | Path) -> None:
        """Re-encrypt the store under *new_key_file* (generated if missing)."""
        store = self.load()
        _ensure_key_file(Path(new_key_file))
        self.key_file = Path(new_key_file)
        self.save(store)


def load_secrets(secrets_file: str | Path, key_file: str | Path) -> dict[str, str]:
    """Decrypt and return the full secrets dict."""
    return SecretsStore(secrets_file, key_file).load()


def _ensure_key_file(path: Path) -> None:
    if not path.exists():
        path.write_bytes(os.urandom(KEY_LEN))
        os.chmod(path, 0o600)


def _read_key(path: Path) -> bytes:
    if not path.exists():
        raise SecretsError(f"Key file not found: {path}")
    key = path.read_bytes()
    if len(key) != KEY_LEN:
        raise SecretsError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key
