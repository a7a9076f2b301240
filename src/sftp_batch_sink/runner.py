"""Driver loop that invokes the sink until it is told to stop.

``READY`` → call again at once.  ``BACKOFF`` or a delivery error → wait
``backoff_ms`` (cut short by :meth:`SinkRunner.request_shutdown`).  With a
finite source the loop also ends once the source is finished and the
channel reports no more work.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from sftp_batch_sink.errors import EventDeliveryError
from sftp_batch_sink.models import Status

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    """Invocation counts for one run."""

    ready: int = 0
    backoff: int = 0
    failed: int = 0


class SinkRunner:
    """Polls *process* until shutdown.

    Parameters
    ----------
    process:
        One sink step, normally :meth:`SinkController.process`.
    backoff_ms:
        Wait after ``BACKOFF`` or a failed step.
    source_finished:
        Optional predicate; when it returns True and a step reports
        ``BACKOFF`` the runner exits.
    """

    def __init__(
        self,
        process: Callable[[], Status],
        backoff_ms: int = 1000,
        source_finished: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._process = process
        self._backoff_s = backoff_ms / 1000.0
        self._source_finished = source_finished
        self._shutdown = threading.Event()
        self.stats = RunStats()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def run(self) -> RunStats:
        while not self._shutdown.is_set():
            # Sampled before the step so a last commit by the source is not missed.
            finished = self._source_finished is not None and self._source_finished()
            try:
                status = self._process()
            except EventDeliveryError as exc:
                self.stats.failed += 1
                logger.warning("Sink step failed, backing off: %s", exc)
                self._shutdown.wait(self._backoff_s)
                continue

            if status is Status.READY:
                self.stats.ready += 1
                continue

            self.stats.backoff += 1
            if finished:
                logger.info("Source drained — stopping")
                break
            self._shutdown.wait(self._backoff_s)

        logger.info(
            "Runner stopped (ready=%d, backoff=%d, failed=%d)",
            self.stats.ready,
            self.stats.backoff,
            self.stats.failed,
        )
        return self.stats
