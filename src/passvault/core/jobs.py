"""Background job execution for backup and sync bodies.

Triggers (create backup, initiate sync, restore) return the ``initiated``
record immediately; the body runs on its own daemon thread. Job
bookkeeping lives in a ``JobStore``: a process-wide, time-boxed cache with
a single owner (one sweeper thread) instead of ad hoc dict mutation from
several call sites.

How it works:
    1. ``JobRunner.submit(kind, resource_id, fn)`` records a ``JobInfo`` in
       the store and starts a daemon thread running ``fn``.
    2. The thread marks the job ``done`` or ``error`` when ``fn`` returns
       or raises. Bodies capture their own failures into the record's
       terminal state; an exception escaping ``fn`` is only logged.
    3. The sweeper thread expires finished entries older than the TTL.

Key design:
    - Thread-safe (RLock)
    - Injected store (``get/put/expire``) so tests can drive expiry directly
    - ``wait()`` / ``wait_all()`` let tests and shutdown join running jobs
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)


# ── Tuning ──────────────────────────────────────────────────────────

DEFAULT_JOB_TTL = 3600          # seconds a finished job stays queryable
DEFAULT_SWEEP_INTERVAL = 60     # seconds between sweeper passes

JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_ERROR = "error"


# ── Data Models ─────────────────────────────────────────────────────


@dataclass
class JobInfo:
    """Bookkeeping for one background job."""

    job_id: str
    kind: str                   # backup / restore / sync
    resource_id: str            # backup_id or sync_log_id
    state: str = JOB_RUNNING
    error: str = ""
    started_at: str = ""
    finished_at: str = ""
    finished_mono: float = 0.0  # monotonic time, drives expiry
    done_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def __post_init__(self):
        if not self.started_at:
            self.started_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "resource_id": self.resource_id,
            "state": self.state,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


# ── Job Store ───────────────────────────────────────────────────────


class JobStore:
    """Time-boxed in-memory job cache with a single sweeper thread.

    Args:
        ttl: Seconds a finished job is kept before ``expire()`` drops it.
        sweep_interval: Seconds between background sweeps.
    """

    def __init__(
        self,
        ttl: int = DEFAULT_JOB_TTL,
        sweep_interval: int = DEFAULT_SWEEP_INTERVAL,
    ):
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._lock = threading.RLock()
        self._jobs: Dict[str, JobInfo] = {}

        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def get(self, job_id: str) -> Optional[JobInfo]:
        with self._lock:
            return self._jobs.get(job_id)

    def put(self, job: JobInfo) -> None:
        with self._lock:
            self._jobs[job.job_id] = job

    def find(self, resource_id: str) -> List[JobInfo]:
        with self._lock:
            return [j for j in self._jobs.values() if j.resource_id == resource_id]

    def running(self) -> List[JobInfo]:
        with self._lock:
            return [j for j in self._jobs.values() if j.state == JOB_RUNNING]

    def expire(self, now: Optional[float] = None) -> int:
        """Drop finished jobs older than the TTL. Returns how many were dropped."""
        now = time.monotonic() if now is None else now
        with self._lock:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.state != JOB_RUNNING and now - job.finished_mono >= self._ttl
            ]
            for job_id in stale:
                del self._jobs[job_id]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    # ── Sweeper lifecycle ────────────────────────────────────────

    def start(self) -> None:
        """Start the background sweeper thread."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sweep_loop,
            name="job-store-sweeper",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(timeout=self._sweep_interval):
            try:
                dropped = self.expire()
                if dropped:
                    logger.debug("Expired %d finished jobs", dropped)
            except Exception:
                logger.debug("Job sweep error", exc_info=True)


# ── Runner ──────────────────────────────────────────────────────────


class JobRunner:
    """Runs backup/sync bodies on daemon threads, tracked in a JobStore."""

    def __init__(self, store: Optional[JobStore] = None):
        self._store = store or JobStore()

    @property
    def store(self) -> JobStore:
        return self._store

    def submit(self, kind: str, resource_id: str, fn: Callable[[], None]) -> str:
        """Start ``fn`` in the background. Returns the job id."""
        job = JobInfo(job_id=uuid4().hex, kind=kind, resource_id=resource_id)
        self._store.put(job)
        thread = threading.Thread(
            target=self._run,
            args=(job, fn),
            name=f"{kind}-{resource_id[:8]}",
            daemon=True,
        )
        thread.start()
        return job.job_id

    def _run(self, job: JobInfo, fn: Callable[[], None]) -> None:
        try:
            fn()
            job.state = JOB_DONE
        except Exception as exc:
            job.state = JOB_ERROR
            job.error = str(exc)
            logger.error("Background %s job %s crashed", job.kind, job.resource_id,
                         exc_info=True)
        finally:
            job.finished_at = datetime.now(timezone.utc).isoformat()
            job.finished_mono = time.monotonic()
            job.done_event.set()

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until a job finishes. Returns False on timeout or unknown id."""
        job = self._store.get(job_id)
        if job is None:
            return False
        return job.done_event.wait(timeout)

    def wait_for_resource(self, resource_id: str, timeout: Optional[float] = None) -> bool:
        """Block until every job touching ``resource_id`` finishes."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for job in self._store.find(resource_id):
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not job.done_event.wait(remaining):
                return False
        return True

    def wait_all(self, timeout: Optional[float] = None) -> bool:
        """Block until every running job finishes."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for job in self._store.running():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not job.done_event.wait(remaining):
                return False
        return True


# ── Singleton ────────────────────────────────────────────────────────

_runner: Optional[JobRunner] = None


def get_job_runner() -> JobRunner:
    global _runner
    if _runner is None:
        from .config import get_config
        _runner = JobRunner(JobStore(ttl=get_config().job_ttl_seconds))
    return _runner


def set_job_runner(runner: Optional[JobRunner]) -> None:
    global _runner
    _runner = runner
