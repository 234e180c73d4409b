"""Single-slot generation queue with artifact retention."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from .config import ARTIFACT_RETENTION_S, QUEUE_COOLDOWN_MS
from .errors import CancellationError
from .models import Job, JobState, ProgressEvent, Stage
from .progress import ProgressBus

LOGGER = logging.getLogger(__name__)

JobRunner = Callable[[Job], Any]


class GenerationQueue:
    """Runs at most one job at a time; later submissions wait in arrival order."""

    def __init__(
        self,
        runner: JobRunner,
        bus: ProgressBus,
        cooldown_ms: int = QUEUE_COOLDOWN_MS,
        retention_s: float = ARTIFACT_RETENTION_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.runner = runner
        self.bus = bus
        self.cooldown_ms = cooldown_ms
        self.retention_s = retention_s
        self.clock = clock
        self._cond = threading.Condition()
        self._jobs: Dict[str, Job] = {}
        self._pending: Deque[Job] = deque()
        self._active: Optional[Job] = None
        self._cooling = False
        self._closed = False
        self._janitor: Optional[threading.Thread] = None
        self._janitor_stop = threading.Event()

    @property
    def active(self) -> Optional[Job]:
        with self._cond:
            return self._active

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    def submit(self, job: Job) -> str:
        self.purge_expired()
        with self._cond:
            if self._closed:
                raise CancellationError("Generation queue is shut down.")
            self._jobs[job.id] = job
            start_now = self._active is None and not self._cooling and not self._pending
            if start_now:
                self._active = job
                message = "Starting"
            else:
                self._pending.append(job)
                message = f"Waiting for {len(self._pending)} job(s) ahead"
            self._publish(job, Stage.QUEUED, message)

        LOGGER.info("Job %s submitted (%d rows); %s", job.id, job.total, message.lower())
        if start_now:
            self._start(job)
        return job.id

    def position(self, job_id: str) -> Optional[int]:
        """0 for the running job, n for the n-th queued job, None otherwise."""
        with self._cond:
            if self._active is not None and self._active.id == job_id:
                return 0
            for position, job in enumerate(self._pending, start=1):
                if job.id == job_id:
                    return position
        return None

    def get(self, job_id: str) -> Optional[Job]:
        self.purge_expired()
        with self._cond:
            return self._jobs.get(job_id)

    def cancel_active(self) -> Dict[str, int]:
        """Ask the running job to stop at its next chunk boundary and reject every queued job."""
        with self._cond:
            active = self._active
            if active is not None:
                active.request_cancel()
            rejected = list(self._pending)
            self._pending.clear()
            for job in rejected:
                self._reject(job, CancellationError("Generation stopped before this job started."))
            self._cond.notify_all()

        if active is not None:
            LOGGER.info("Cancellation requested for job %s", active.id)
        if rejected:
            LOGGER.info("Rejected %d queued job(s)", len(rejected))
        return {"cancelledActive": int(active is not None), "rejectedQueued": len(rejected)}

    def discard(self, job_id: str) -> bool:
        """Delete a finished job's artifact and forget the job."""
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if not job.state.terminal:
                raise ValueError(f"Job {job_id} has not finished.")
            del self._jobs[job_id]
        self._delete_artifact(job)
        self.bus.forget(job_id)
        return True

    def purge_expired(self) -> int:
        now = self.clock()
        with self._cond:
            expired = [
                job.id
                for job in self._jobs.values()
                if job.state.terminal
                and job.finished_at is not None
                and job.finished_at + self.retention_s <= now
            ]
        purged = 0
        for job_id in expired:
            if self.discard(job_id):
                purged += 1
        if purged:
            LOGGER.info("Purged %d expired job(s)", purged)
        return purged

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(
                lambda: self._active is None and not self._pending and not self._cooling,
                timeout,
            )

    def start_janitor(self, interval_s: float = 60.0) -> None:
        if self._janitor is not None:
            return
        self._janitor_stop.clear()
        self._janitor = threading.Thread(
            target=self._janitor_loop,
            args=(interval_s,),
            name="artifact-janitor",
            daemon=True,
        )
        self._janitor.start()

    def shutdown(self) -> None:
        with self._cond:
            self._closed = True
        self.cancel_active()
        self._janitor_stop.set()
        if self._janitor is not None:
            self._janitor.join(timeout=2)
            self._janitor = None

    def jobs(self) -> List[Job]:
        with self._cond:
            return list(self._jobs.values())

    def _janitor_loop(self, interval_s: float) -> None:
        while not self._janitor_stop.wait(interval_s):
            try:
                self.purge_expired()
            except Exception:
                LOGGER.exception("Artifact cleanup failed")

    def _start(self, job: Job) -> None:
        worker = threading.Thread(
            target=self._run_job,
            args=(job,),
            name=f"generation-{job.id[:8]}",
            daemon=True,
        )
        worker.start()

    def _run_job(self, job: Job) -> None:
        try:
            self.runner(job)
        except Exception:
            LOGGER.exception("Runner for job %s raised", job.id)
        finally:
            job.mark_done()
            self._on_job_finished(job)

    def _on_job_finished(self, job: Job) -> None:
        with self._cond:
            if self._active is job:
                self._active = None
            if self._pending and not self._closed:
                self._cooling = True
                timer = threading.Timer(self.cooldown_ms / 1000.0, self._admit_next)
                timer.daemon = True
                timer.start()
            self._cond.notify_all()

    def _admit_next(self) -> None:
        with self._cond:
            self._cooling = False
            if self._closed or self._active is not None or not self._pending:
                self._cond.notify_all()
                return
            job = self._pending.popleft()
            self._active = job
        self._start(job)

    def _reject(self, job: Job, reason: CancellationError) -> None:
        job.transition(JobState.CANCELLED, str(reason))
        self._publish(job, Stage.CANCELLED, str(reason))
        job.mark_done()

    def _publish(self, job: Job, stage: Stage, message: str) -> None:
        self.bus.publish(
            job.id,
            ProgressEvent(
                job_id=job.id,
                stage=stage,
                current=job.processed_count,
                total=job.total,
                percent=job.percent,
                message=message,
            ),
        )

    def _delete_artifact(self, job: Job) -> None:
        path, job.artifact_path = job.artifact_path, None
        if path and os.path.exists(path):
            try:
                os.remove(path)
            except OSError:
                LOGGER.warning("Could not delete artifact %s", path)
