"""In-memory background job store for AI grading requests.

One job grades one submission on a daemon thread. A failed job leaves its
submission at `submitted`, so queueing another job for the same submission
is how grading is retried; every job records which try it was, counted
over the jobs still held for that submission.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

_LOGGER = logging.getLogger("gradeflow.grading_jobs")

ACTIVE = ("queued", "running")
DONE = ("succeeded", "failed")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class GradingQueueFull(RuntimeError):
    """Every held job is still queued or running and the store is at capacity."""


class GradingJobStore:
    def __init__(self, max_jobs: int = 500, ttl_seconds: int = 24 * 3600):
        self._jobs: dict[str, dict] = {}
        # submission id -> job id of its queued/running job
        self._active: dict[int, str] = {}
        self._lock = threading.Lock()
        self._max_jobs = max_jobs
        self._ttl_seconds = ttl_seconds

    def submit(self, *, submission_id: int, request_id: str, worker: Callable[[int], dict]) -> dict:
        """Queue grading for `submission_id`.

        While a job for the submission is still queued or running, that job
        is returned instead of starting a second request to the grader.
        Raises `GradingQueueFull` when `max_jobs` jobs are already in flight.
        """
        self._cleanup()
        with self._lock:
            active_id = self._active.get(submission_id)
            if active_id is not None:
                job = self._jobs[active_id]
                return {"job_id": active_id, "status": job["status"], "attempt": job["attempt"]}
            if len(self._active) >= self._max_jobs:
                raise GradingQueueFull(f"{len(self._active)} grading jobs already in flight")
            tries = [j["attempt"] for j in self._jobs.values() if j["submission_id"] == submission_id]
            job = {
                "job_id": uuid.uuid4().hex,
                "submission_id": submission_id,
                "attempt": max(tries, default=0) + 1,
                "status": "queued",
                "created_at": _now(),
                "started_at": None,
                "finished_at": None,
                "request_id": request_id,
                "result": None,
                "error": None,
            }
            self._jobs[job["job_id"]] = job
            self._active[submission_id] = job["job_id"]
            self._evict_overflow()

        threading.Thread(target=self._run_job, args=(job["job_id"], worker), daemon=True).start()
        return {"job_id": job["job_id"], "status": "queued", "attempt": job["attempt"]}

    def get(self, job_id: str) -> Optional[dict]:
        self._cleanup()
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job else None

    def _run_job(self, job_id: str, worker: Callable[[int], dict]) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job["status"] = "running"
            job["started_at"] = _now()
            submission_id = job["submission_id"]
        try:
            result = worker(submission_id)
        except Exception as exc:
            _LOGGER.exception("grading_job_failed job_id=%s submission_id=%s", job_id, submission_id)
            self._finish(job_id, status="failed", error=str(exc))
        else:
            self._finish(job_id, status="succeeded", result=result)

    def _finish(self, job_id: str, **fields) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.update(fields, finished_at=_now())
            if self._active.get(job["submission_id"]) == job_id:
                del self._active[job["submission_id"]]

    def _evict_overflow(self) -> None:
        # caller holds the lock; oldest finished jobs go first
        excess = len(self._jobs) - self._max_jobs
        if excess <= 0:
            return
        finished = sorted((j for j in self._jobs.values() if j["status"] in DONE), key=lambda j: j["finished_at"])
        for job in finished[:excess]:
            del self._jobs[job["job_id"]]

    def _cleanup(self) -> None:
        cutoff = time.time() - self._ttl_seconds
        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job["finished_at"] and datetime.fromisoformat(job["finished_at"]).timestamp() < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
