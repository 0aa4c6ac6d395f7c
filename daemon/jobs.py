"""Thread-backed job registry for the control daemon.

Each job owns a ``threading.Event`` that is handed to the backfill as its
cancellation signal; killing a job sets the event and the backfill stops at
its next window boundary.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from backfill.scheduler import BackfillCancelled

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_STOPPING = "stopping"
STATUS_DONE = "done"
STATUS_ERROR = "error"
STATUS_CANCELLED = "cancelled"

JobTarget = Callable[[threading.Event], Any]


@dataclass(slots=True)
class Job:
    id: str
    command: str
    args: Dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    status: str = STATUS_RUNNING
    error: Optional[str] = None
    finished_at: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    thread: Optional[threading.Thread] = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status in (STATUS_RUNNING, STATUS_STOPPING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "command": self.command,
            "args": dict(self.args),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "status": self.status,
            "error": self.error,
            "result": self.result,
        }


class JobRegistry:
    """Tracks daemon jobs by id and runs each one on its own thread."""

    def __init__(self, max_finished: int = 100) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()
        self.max_finished = max(0, max_finished)

    def submit(self, command: str, target: JobTarget, args: Optional[Dict[str, Any]] = None) -> Job:
        job = Job(id=uuid.uuid4().hex[:12], command=command, args=dict(args or {}))
        thread = threading.Thread(target=self._run, args=(job, target), name=f"job-{job.id}", daemon=True)
        job.thread = thread
        with self._lock:
            self._jobs[job.id] = job
        logger.info("Starting job %s (%s) %s", job.id, command, job.args)
        thread.start()
        return job

    def _run(self, job: Job, target: JobTarget) -> None:
        try:
            outcome = target(job.cancel_event)
        except BackfillCancelled:
            self._finish(job, STATUS_CANCELLED)
            logger.info("Job %s cancelled", job.id)
        except Exception as exc:
            self._finish(job, STATUS_ERROR, error=str(exc))
            logger.exception("Job %s failed", job.id)
        else:
            result = outcome.to_dict() if hasattr(outcome, "to_dict") else (
                outcome if isinstance(outcome, dict) else {"value": outcome}
            )
            self._finish(job, STATUS_DONE, result=result)
            logger.info("Job %s finished", job.id)

    def _finish(self, job: Job, status: str, error: Optional[str] = None,
                result: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            job.status = status
            job.error = error
            job.result = result
            job.finished_at = time.time()
            self._prune_finished()

    def _prune_finished(self) -> None:
        """Drop the oldest finished jobs beyond ``max_finished``. Caller holds the lock."""
        finished = sorted(
            (job for job in self._jobs.values() if not job.is_active),
            key=lambda job: job.finished_at or 0.0,
        )
        for job in finished[:max(0, len(finished) - self.max_finished)]:
            del self._jobs[job.id]
            logger.debug("Pruned finished job %s", job.id)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def list(self) -> List[Job]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda job: job.started_at)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.is_active)

    def cancel(self, job_id: str) -> Optional[Job]:
        """Signal a job to stop; returns None when the id is unknown."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.status == STATUS_RUNNING:
                job.status = STATUS_STOPPING
        job.cancel_event.set()
        logger.info("Job %s asked to stop", job_id)
        return job

    def cancel_all(self) -> int:
        cancelled = 0
        for job in self.list():
            if job.is_active:
                self.cancel(job.id)
                cancelled += 1
        return cancelled

    def join_all(self, timeout: Optional[float] = None) -> None:
        for job in self.list():
            if job.thread is not None:
                job.thread.join(timeout)
