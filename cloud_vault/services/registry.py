"""TTL-indexed job registries and the timer that sweeps them."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Generic, Iterator, List, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)


class TrackedJob(Protocol):
    @property
    def started_at(self) -> datetime: ...

    @property
    def is_active(self) -> bool: ...


JobT = TypeVar("JobT", bound=TrackedJob)


class TTLRegistry(Generic[JobT]):
    """Thread-safe map of job id to job with retention-based eviction.

    ``sweep`` drops entries whose ``started_at`` is older than the retention
    window. Entries that still report ``is_active`` are kept whatever their age.
    """

    def __init__(self, name: str, retention: timedelta) -> None:
        self.name = name
        self.retention = retention
        self._entries: Dict[str, JobT] = {}
        self._lock = threading.RLock()

    def register(self, job_id: str, job: JobT) -> JobT:
        with self._lock:
            self._entries[job_id] = job
        return job

    def get(self, job_id: str) -> Optional[JobT]:
        with self._lock:
            return self._entries.get(job_id)

    def update(self, job_id: str, mutate: Callable[[JobT], None]) -> Optional[JobT]:
        with self._lock:
            job = self._entries.get(job_id)
            if job is not None:
                mutate(job)
            return job

    def values(self) -> List[JobT]:
        with self._lock:
            return list(self._entries.values())

    def count(self, predicate: Callable[[JobT], bool]) -> int:
        with self._lock:
            return sum(1 for job in self._entries.values() if predicate(job))

    def register_if(self, job_id: str, job: JobT, admit: Callable[[List[JobT]], bool]) -> bool:
        """Register ``job`` only when ``admit`` accepts the current entries."""
        with self._lock:
            if not admit(list(self._entries.values())):
                return False
            self._entries[job_id] = job
            return True

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        cutoff = (now or datetime.now(timezone.utc)) - self.retention
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._entries.items()
                if job.started_at < cutoff and not job.is_active
            ]
            for job_id in expired:
                del self._entries[job_id]
        if expired:
            logger.debug("Swept %d expired entries from %s registry", len(expired), self.name)
        return expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._entries

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._entries))


class PeriodicSweeper:
    """Daemon thread that calls ``sweep`` every ``interval_seconds`` until stopped."""

    def __init__(self, name: str, sweep: Callable[[], object], interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._sweep = sweep
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"sweeper-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self._sweep()
            except Exception:
                logger.exception("Registry sweep %s failed", self.name)
