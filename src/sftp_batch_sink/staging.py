"""Local staging of the batch currently being accumulated.

StagingWriter
    Appends records to ``{staging_dir}/{sequence}_{template}``.  The file is
    opened lazily on the first record of a batch and closed by
    :meth:`StagingWriter.finalize_current` when the batch is complete.  At most
    one file is open at a time.  The sink does **not** delete staged files;
    a finalized file stays on disk after upload.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import BinaryIO, Optional

from sftp_batch_sink.errors import LocalIOFailure
from sftp_batch_sink.models import Record

logger = logging.getLogger(__name__)


def batch_file_name(sequence: int, template: str) -> str:
    """Return the file name for batch *sequence*.

    The same name is used locally and on the remote server.
    """
    return f"{sequence}_{template}"


class StagingWriter:
    """Append-only writer for the staging file of the current batch.

    Parameters
    ----------
    staging_dir:
        Directory for staging files.  Created if missing.
    file_template:
        Base file name; the batch sequence number is prefixed to it.
    start_sequence:
        Sequence number of the first batch.
    """

    def __init__(
        self,
        staging_dir: str | Path,
        file_template: str,
        start_sequence: int = 0,
    ) -> None:
        self._staging_dir = Path(staging_dir)
        self._staging_dir.mkdir(parents=True, exist_ok=True)
        self._template = file_template
        self._sequence = start_sequence

        self._fh: Optional[BinaryIO] = None
        self._size = 0

    # ── public API ──────────────────────────────────────────────────

    @property
    def sequence(self) -> int:
        """Sequence number of the batch currently being staged."""
        return self._sequence

    @property
    def is_open(self) -> bool:
        return self._fh is not None

    def current_file_name(self) -> str:
        return batch_file_name(self._sequence, self._template)

    def current_path(self) -> Path:
        return self._staging_dir / self.current_file_name()

    def append(self, record: Record) -> int:
        """Write *record* as one newline-terminated line.

        Returns
        -------
        int
            The staging file size before this write.  Pass it to
            :meth:`rewind` to undo the write.

        Raises
        ------
        LocalIOFailure
            If the file cannot be opened or written.
        """
        if self._fh is None:
            self._open()

        mark = self._size
        data = (record.text() + "\n").encode("utf-8")
        try:
            self._fh.write(data)
            self._fh.flush()
        except OSError as exc:
            self._discard_from(mark)
            raise LocalIOFailure(
                f"Failed to write to staging file {self.current_path()}: {exc}"
            ) from exc
        self._size += len(data)
        return mark

    def finalize_current(self) -> Path:
        """Flush and close the open staging file and return its path.

        The handle is released even if the flush fails.

        Raises
        ------
        LocalIOFailure
            If no file is open, or flushing/closing fails.
        """
        path = self.current_path()
        if self._fh is None:
            raise LocalIOFailure(f"No staging file open for batch {self._sequence}")

        fh, self._fh = self._fh, None
        try:
            fh.flush()
            os.fsync(fh.fileno())
        except OSError as exc:
            raise LocalIOFailure(f"Failed to flush staging file {path}: {exc}") from exc
        finally:
            try:
                fh.close()
            except OSError as exc:
                raise LocalIOFailure(f"Failed to close staging file {path}: {exc}") from exc

        logger.info("Finalized %s (%d bytes)", path.name, self._size)
        return path

    def rewind(self, mark: int) -> None:
        """Truncate the current staging file back to *mark* bytes.

        Works whether or not the file is still open.
        """
        path = self.current_path()
        try:
            if self._fh is not None:
                self._fh.flush()
                self._fh.truncate(mark)
            elif path.exists():
                os.truncate(path, mark)
        except OSError as exc:
            raise LocalIOFailure(f"Failed to truncate staging file {path}: {exc}") from exc
        self._size = mark
        logger.debug("Rewound %s to %d bytes", path.name, mark)

    def advance(self) -> int:
        """Move on to the next batch and return its sequence number."""
        if self._fh is not None:
            raise LocalIOFailure(
                f"Cannot advance past batch {self._sequence}: staging file still open"
            )
        self._sequence += 1
        self._size = 0
        return self._sequence

    def close(self) -> None:
        """Flush and release the open handle without finalizing the batch."""
        if self._fh is not None and not self._fh.closed:
            self._fh.flush()
            self._fh.close()
            logger.info(
                "Closed %s with %d bytes staged", self.current_file_name(), self._size
            )
        self._fh = None

    # ── internal ────────────────────────────────────────────────────

    def _open(self) -> None:
        path = self.current_path()
        try:
            self._size = path.stat().st_size if path.exists() else 0
            self._fh = open(path, "ab")
        except OSError as exc:
            raise LocalIOFailure(f"Failed to open staging file {path}: {exc}") from exc
        logger.debug("Opened staging file %s at %d bytes", path.name, self._size)

    def _discard_from(self, mark: int) -> None:
        """Drop the handle after a failed write and cut the file back to *mark*.

        Closing may still push buffered bytes of the failed write to disk, so
        the truncate runs after it.  The next append reopens the file.
        """
        path = self.current_path()
        fh, self._fh = self._fh, None
        try:
            fh.close()
        except OSError as exc:
            logger.warning("Error closing staging file %s after failed write: %s", path.name, exc)
        try:
            if path.exists():
                os.truncate(path, mark)
        except OSError as exc:
            logger.error("Could not truncate %s to %d bytes: %s", path.name, mark, exc)
        self._size = mark
