"""In-memory job table for conversions, one job per media id.

State machine per id::

    queued --start--> running --progress--> running --finish--> done
                              \\--fail--> error

``done`` and ``error`` are terminal. Every transition publishes a JobEvent
snapshot on the EventBus from the calling thread, right after the state
change. One engine thread drives each id, so an id's events arrive in order.
Jobs are never persisted.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from vhoster.domain.errors import AlreadyExists, InvalidTransition
from vhoster.domain.events import JobCompleted, JobEvent, JobFailed, JobProgressUpdated, JobQueued, JobStarted
from vhoster.domain.models import JobStatus, TranscodeJob
from vhoster.infrastructure.event_bus import EventBus

NONE_STATUS = {"status": "none"}


class ProgressEstimator:
    """Elapsed/ETA arithmetic shared by every progress update."""

    @staticmethod
    def compute(started_at: float, now: float, percent: int) -> Tuple[int, Optional[int]]:
        """Returns ``(elapsed_seconds, eta_seconds)``; ETA is None until percent > 0."""
        elapsed = max(0, round(now - started_at))
        if percent <= 0:
            return elapsed, None
        return elapsed, max(0, round(elapsed * (100 / percent) - elapsed))


class JobRegistry:
    """Thread-safe table of TranscodeJob keyed by media id.

    Args:
        event_bus: receives a JobEvent snapshot for every transition.
        clock: returns epoch seconds; injectable for tests.
    """

    def __init__(self, event_bus: EventBus, clock: Callable[[], float] = time.time):
        self.event_bus = event_bus
        self.clock = clock
        self._jobs: Dict[str, TranscodeJob] = {}
        self._started: Dict[str, float] = {}
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)

    def get(self, job_id: str) -> Optional[TranscodeJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job else None

    def snapshot(self, job_id: str) -> dict:
        """JSON payload of the job, or ``{"status": "none"}`` when absent."""
        job = self.get(job_id)
        return job.to_payload() if job else dict(NONE_STATUS)

    def create(self, job_id: str) -> TranscodeJob:
        """Registers a queued job; a live job for the same id raises AlreadyExists."""
        with self._lock:
            existing = self._jobs.get(job_id)
            if existing is not None and not existing.status.is_terminal:
                raise AlreadyExists(f"Job for {job_id} is already {existing.status.value}")
            job = TranscodeJob(id=job_id)
            self._jobs[job_id] = job
            self._started.pop(job_id, None)
            snapshot = job.model_copy()
        self._publish(JobQueued(job=snapshot))
        return snapshot

    def _require(self, job_id: str, *allowed: JobStatus) -> TranscodeJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise InvalidTransition(f"No job for {job_id}")
        if job.status not in allowed:
            raise InvalidTransition(f"Job {job_id} is {job.status.value}")
        return job

    def start(self, job_id: str, message: str = "starting") -> TranscodeJob:
        with self._lock:
            job = self._require(job_id, JobStatus.QUEUED)
            now = self.clock()
            self._started[job_id] = now
            job.status = JobStatus.RUNNING
            job.message = message
            job.started_at = int(now * 1000)
            job.progress_percent = 0
            snapshot = job.model_copy()
        self._publish(JobStarted(job=snapshot))
        return snapshot

    def annotate(self, job_id: str, message: str) -> TranscodeJob:
        """Changes the phase message of a running job."""
        with self._lock:
            job = self._require(job_id, JobStatus.RUNNING)
            job.message = message
            snapshot = job.model_copy()
        self._publish(JobStarted(job=snapshot))
        return snapshot

    def progress(self, job_id: str, percent: int, timemark: Optional[str] = None, estimated: bool = True) -> TranscodeJob:
        """Records progress; percent is clamped to 0-100 and never moves backwards."""
        with self._lock:
            job = self._require(job_id, JobStatus.RUNNING)
            percent = max(0, min(100, int(percent)))
            job.progress_percent = max(job.progress_percent, percent)
            job.estimated = estimated
            if timemark:
                job.timemark = timemark
            job.elapsed_seconds, job.eta_seconds = ProgressEstimator.compute(
                self._started[job_id], self.clock(), job.progress_percent
            )
            snapshot = job.model_copy()
        self._publish(JobProgressUpdated(job=snapshot))
        return snapshot

    def finish(self, job_id: str, message: str = "finished") -> TranscodeJob:
        with self._lock:
            job = self._require(job_id, JobStatus.RUNNING)
            job.status = JobStatus.DONE
            job.message = message
            job.progress_percent = 100
            job.elapsed_seconds, _ = ProgressEstimator.compute(self._started[job_id], self.clock(), 100)
            job.eta_seconds = 0
            snapshot = job.model_copy()
        self._publish(JobCompleted(job=snapshot))
        return snapshot

    def fail(self, job_id: str, message: str) -> TranscodeJob:
        """Marks a queued or running job as failed."""
        with self._lock:
            job = self._require(job_id, JobStatus.QUEUED, JobStatus.RUNNING)
            job.status = JobStatus.ERROR
            job.message = message
            job.eta_seconds = None
            started = self._started.get(job_id)
            if started is not None:
                job.elapsed_seconds, _ = ProgressEstimator.compute(started, self.clock(), 0)
            snapshot = job.model_copy()
        self._publish(JobFailed(job=snapshot, error_message=message))
        return snapshot

    def _publish(self, event: JobEvent) -> None:
        job = event.job
        self.logger.debug(f"JOB_STATE: {job.id} {job.status.value} {job.progress_percent}% {job.message}")
        self.event_bus.publish(event)
