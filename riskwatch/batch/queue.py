from __future__ import annotations

"""
In-process reprocessing queue: a job channel drained by a fixed worker pool.

Design intent:
- Enqueue never blocks the caller (the live session stop path).
- At most one pending/processing job per (session_id, job type).
- Failed executions retry with exponential backoff; a job that exhausts its
  attempts is marked failed and stays visible, never retried again.
- Shutdown fails any job still waiting on a retry timer (QUEUE_SHUTDOWN).
"""

import datetime as _dt
import logging
import queue
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional

from riskwatch.internal_core import audit
from riskwatch.internal_core.contracts import BatchJob, JobStatusView
from riskwatch.internal_core.errors import BatchJobError, UnsupportedJobTypeError
from riskwatch.internal_core.store import InMemoryClinicalStore

logger = logging.getLogger(__name__)

JobHandler = Callable[[BatchJob], Optional[Dict[str, Any]]]


def _now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _to_view(job: BatchJob) -> JobStatusView:
    return JobStatusView(
        job_id=job.id,
        session_id=job.session_id,
        type=job.type,
        status=job.status,
        attempts=job.attempts,
        error=job.error,
        result=job.result,
    )


class BatchReprocessingQueue:
    def __init__(
        self,
        store: InMemoryClinicalStore,
        handlers: Mapping[str, JobHandler],
        *,
        concurrency: int = 2,
        max_attempts: int = 3,
        backoff_base_sec: float = 1.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self._handlers = dict(handlers)
        self._concurrency = concurrency
        self._max_attempts = max_attempts
        self._backoff_base_sec = backoff_base_sec
        self._channel: "queue.Queue[Optional[str]]" = queue.Queue()
        self._lock = threading.Lock()
        self._active: Dict[tuple[str, str], str] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._workers: List[threading.Thread] = []
        self._started = False
        self._closed = False

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
            for index in range(self._concurrency):
                worker = threading.Thread(target=self._worker_loop, name=f"riskwatch-batch-{index}", daemon=True)
                self._workers.append(worker)
                worker.start()
        logger.info(
            "batch_queue_started concurrency=%s max_attempts=%s backoff_base_sec=%s",
            self._concurrency,
            self._max_attempts,
            self._backoff_base_sec,
        )

    def enqueue(
        self,
        session_id: str,
        team_id: str,
        job_type: str,
        input: Optional[Dict[str, Any]] = None,
    ) -> str:
        if job_type not in self._handlers:
            raise UnsupportedJobTypeError(job_type)
        with self._lock:
            if self._closed:
                raise BatchJobError("QUEUE_CLOSED", "reprocessing queue is shut down")
            key = (session_id, job_type)
            existing = self._active.get(key)
            if existing is not None:
                logger.info("job_enqueue_deduplicated session_id=%s type=%s job_id=%s", session_id, job_type, existing)
                return existing
            now = _now_iso()
            job = BatchJob(
                id=str(uuid.uuid4()),
                session_id=session_id,
                team_id=team_id,
                type=job_type,
                input=dict(input or {}),
                created_at=now,
                updated_at=now,
            )
            self._store.put_job(job)
            self._active[key] = job.id
        self._channel.put(job.id)
        audit.log_event(self._store, session_id, "JOB_ENQUEUED", "JOB_ENQUEUE", f"job_id={job.id} type={job_type}")
        logger.info("job_enqueued session_id=%s type=%s job_id=%s", session_id, job_type, job.id)
        return job.id

    def status(self, job_id: str) -> JobStatusView:
        job = self._store.get_job(job_id)
        if job is None:
            raise BatchJobError("JOB_NOT_FOUND", f"Unknown job_id: {job_id}", job_id)
        return _to_view(job)

    def jobs_for_session(self, session_id: str) -> List[JobStatusView]:
        return [_to_view(job) for job in self._store.list_jobs(session_id=session_id)]

    def failed_jobs(self) -> List[JobStatusView]:
        return [_to_view(job) for job in self._store.list_jobs(status="failed")]

    def wait_until_idle(self, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if not self._active:
                    return True
            time.sleep(0.01)
        return False

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            timers = list(self._timers.items())
            self._timers.clear()
            workers = list(self._workers)
        for job_id, timer in timers:
            timer.cancel()
            self._fail_on_shutdown(job_id)
        for _ in workers:
            self._channel.put(None)
        if wait:
            for worker in workers:
                worker.join()
        logger.info("batch_queue_stopped pending_retries_cancelled=%s", len(timers))

    # workers

    def _worker_loop(self) -> None:
        while True:
            job_id = self._channel.get()
            if job_id is None:
                return
            try:
                self._execute(job_id)
            except Exception:
                logger.exception("job_execution_crashed job_id=%s", job_id)

    def _execute(self, job_id: str) -> None:
        job = self._store.get_job(job_id)
        if job is None or job.status != "pending":
            return
        attempts = job.attempts + 1
        job = self._store.update_job(job_id, status="processing", attempts=attempts, next_attempt_at=None)
        started = time.monotonic()
        try:
            result = self._handlers[job.type](job)
        except Exception as exc:
            self._handle_failure(job, exc)
            return
        duration_ms = int((time.monotonic() - started) * 1000)
        self._store.update_job(job_id, status="completed", result=dict(result or {}), error=None)
        self._release(job)
        audit.log_event(
            self._store,
            job.session_id,
            "JOB_COMPLETED",
            "JOB_COMPLETE",
            f"job_id={job_id} attempts={attempts}",
            duration_ms,
        )
        logger.info("job_completed job_id=%s session_id=%s attempts=%s", job_id, job.session_id, attempts)

    def _handle_failure(self, job: BatchJob, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"
        if job.attempts >= self._max_attempts:
            self._store.update_job(job.id, status="failed", error=error)
            self._release(job)
            audit.log_event(
                self._store, job.session_id, "JOB_FAILED", "JOB_ATTEMPTS_EXHAUSTED", f"job_id={job.id} {error}"
            )
            logger.error(
                "job_failed job_id=%s session_id=%s attempts=%s error=%s", job.id, job.session_id, job.attempts, error
            )
            return

        delay_sec = self._backoff_base_sec * (2 ** job.attempts)
        next_at = _dt.datetime.now(_dt.timezone.utc) + _dt.timedelta(seconds=delay_sec)
        self._store.update_job(job.id, status="pending", error=error, next_attempt_at=next_at.isoformat())
        with self._lock:
            closed = self._closed
            if not closed:
                timer = threading.Timer(delay_sec, self._resubmit, args=(job.id,))
                timer.daemon = True
                self._timers[job.id] = timer
                timer.start()
        if closed:
            self._fail_on_shutdown(job.id)
            return
        audit.log_event(
            self._store,
            job.session_id,
            "JOB_RETRY_SCHEDULED",
            "JOB_RETRY",
            f"job_id={job.id} attempts={job.attempts} delay_sec={delay_sec:.2f}",
        )
        logger.warning(
            "job_retry_scheduled job_id=%s attempts=%s delay_sec=%.2f error=%s", job.id, job.attempts, delay_sec, error
        )

    def _resubmit(self, job_id: str) -> None:
        # Put under the lock so a resubmitted id always lands ahead of the shutdown sentinels.
        with self._lock:
            self._timers.pop(job_id, None)
            closed = self._closed
            if not closed:
                self._channel.put(job_id)
        if closed:
            self._fail_on_shutdown(job_id)

    def _fail_on_shutdown(self, job_id: str) -> None:
        job = self._store.get_job(job_id)
        if job is None or job.status != "pending":
            return
        error = "QUEUE_SHUTDOWN: retry cancelled"
        if job.error:
            error = f"{error}; last error {job.error}"
        self._store.update_job(job_id, status="failed", error=error, next_attempt_at=None)
        self._release(job)
        audit.log_event(self._store, job.session_id, "JOB_FAILED", "QUEUE_SHUTDOWN", f"job_id={job_id} {error}")
        logger.error(
            "job_failed job_id=%s session_id=%s attempts=%s error=%s", job_id, job.session_id, job.attempts, error
        )

    def _release(self, job: BatchJob) -> None:
        with self._lock:
            key = (job.session_id, job.type)
            if self._active.get(key) == job.id:
                self._active.pop(key, None)
