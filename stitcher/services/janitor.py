from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from stitcher.storage.repository import JobRepository


class JobStatusSweeper:
    """Background thread evicting job records older than ``ttl``.

    Only the in-memory status is dropped; output files on disk are kept.
    """

    def __init__(
        self,
        repo: JobRepository,
        ttl: timedelta,
        interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = datetime.utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repo = repo
        self._ttl = ttl
        self._interval = interval_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.log = logger or logging.getLogger(__name__)

    def sweep(self) -> List[str]:
        cutoff = self._clock() - self._ttl
        evicted = self._repo.evict(lambda job: job.start_time < cutoff)
        for job_id in evicted:
            self.log.info("cleaned up old job status", extra={"job_id": job_id})
        return evicted

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="job-status-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.sweep()
            except Exception:  # pragma: no cover - keep the sweeper alive
                self.log.exception("job status sweep failed")
