"""Keep SFTP credentials out of log output.

The resolved configuration is scanned for string values whose *key* matches
one of ``logging.redact_patterns`` (case-insensitive shell globs such as
``*password*``).  :class:`SecretRedactingFilter` then rewrites every log
record, replacing those values with ``[REDACTED]``.
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Any, Iterable

REDACTED = "[REDACTED]"

# Single characters would mangle ordinary text.
_MIN_SECRET_LEN = 2


class SecretRedactingFilter(logging.Filter):
    """A :class:`logging.Filter` that scrubs known secret values."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        self._secrets: list[str] = []
        for value in secret_values or []:
            self.add_secret(value)

    @property
    def secrets_count(self) -> int:
        return len(self._secrets)

    def add_secret(self, value: str) -> None:
        if value and len(value) >= _MIN_SECRET_LEN and value not in self._secrets:
            self._secrets.append(value)
            # Longest first so a secret containing another is fully masked.
            self._secrets.sort(key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        record.msg = self.redact(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self.redact(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self.redact(a) for a in record.args)
        return True

    def redact(self, value: Any) -> Any:
        """Return *value* with every secret substring masked.

        Exceptions are rendered to ``str`` first so credentials echoed in
        error messages are also masked; other non-strings pass through.
        """
        if isinstance(value, BaseException):
            value = str(value)
        if not isinstance(value, str):
            return value
        for secret in self._secrets:
            value = value.replace(secret, REDACTED)
        return value


def collect_secret_values(
    config_dict: dict[str, Any],
    patterns: list[str] | None = None,
) -> list[str]:
    """Collect string values in *config_dict* whose keys match *patterns*."""
    if not patterns:
        return []
    lowered = [p.lower() for p in patterns]
    found: list[str] = []

    def _walk(obj: Any) -> None:
        if isinstance(obj, dict):
            for key, val in obj.items():
                if isinstance(val, str) and any(
                    fnmatch.fnmatch(str(key).lower(), p) for p in lowered
                ):
                    found.append(val)
                _walk(val)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                _walk(item)

    _walk(config_dict)
    return found
