"""
Durable, priority-ordered transcription job queue.

Job bookkeeping (state, attempts, progress) lives in the job repo; the
actual delivery to workers is done by a dispatcher: Celery in production,
an in-process bounded pool in local mode.
"""

import itertools
import logging
import queue
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional, Union

from transcribe_pipeline.config import (
    DEFAULT_PRIORITY,
    MAX_ATTEMPTS,
    RETRY_BASE_DELAY_SECONDS,
    WORKER_CONCURRENCY,
)
from transcribe_pipeline.errors import InvalidResourceIdError
from transcribe_pipeline.repos.redis_jobs import job_id_for
from transcribe_pipeline.schemas.job import BackoffOptions, JobOptions, JobRecord, JobStatus

logger = logging.getLogger(__name__)

MEETING_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY_SECONDS
    kind: str = "exponential"

    @classmethod
    def for_job(cls, record: JobRecord) -> "RetryPolicy":
        return cls(
            max_attempts=record.maxAttempts,
            base_delay=record.backoff.delay,
            kind=record.backoff.type,
        )

    def delay_for(self, attempts_made: int) -> float:
        """Wait before the next attempt, given how many attempts already failed."""
        if self.kind == "fixed":
            return self.base_delay
        return self.base_delay * (2 ** max(attempts_made - 1, 0))

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts


@dataclass(frozen=True)
class JobHandle:
    jobId: str
    meetingId: str
    state: str
    created: bool


def validate_meeting_id(meetingId) -> str:
    if not isinstance(meetingId, str) or not MEETING_ID_RE.match(meetingId.strip()):
        raise InvalidResourceIdError(f"Invalid meeting id: {meetingId!r}")
    return meetingId.strip()


class JobQueue:
    def __init__(
        self,
        repo,
        dispatcher,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        default_priority: int = DEFAULT_PRIORITY,
    ):
        self.repo = repo
        self.dispatcher = dispatcher
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_priority = default_priority
        self._closed = False

    def submit(self, meetingId: str, options: Union[JobOptions, dict, None] = None) -> JobHandle:
        """
        Enqueue transcription of ``meetingId``.

        Idempotent: while a job for the meeting is queued, active or completed
        the existing handle is returned. A failed job is started afresh.
        """
        meetingId = validate_meeting_id(meetingId)
        if self._closed:
            raise RuntimeError("Job queue is closed")

        if not isinstance(options, JobOptions):
            options = JobOptions.model_validate(options or {})

        record = JobRecord(
            jobId=job_id_for(meetingId),
            meetingId=meetingId,
            priority=options.priority or self.default_priority,
            maxAttempts=options.attempts or self.retry_policy.max_attempts,
            backoff=options.backoff or BackoffOptions(
                type=self.retry_policy.kind, delay=self.retry_policy.base_delay
            ),
            queuedAt=time.time(),
        )

        stored, created = self.repo.create(record)
        if not created:
            if stored.state != "failed":
                logger.info("Job %s already %s, returning existing handle", stored.jobId, stored.state)
                return JobHandle(stored.jobId, stored.meetingId, stored.state, created=False)

            if not self.repo.restart_if_failed(record):
                # another submit restarted it first
                current = self.repo.get(record.jobId) or stored
                logger.info("Job %s already restarted, returning existing handle", current.jobId)
                return JobHandle(current.jobId, current.meetingId, current.state, created=False)
            logger.info("Job %s previously failed, starting a fresh run", stored.jobId)

        try:
            self.dispatcher.dispatch(record)
        except Exception as e:
            logger.error("Failed to dispatch job %s: %s", record.jobId, e)
            self.repo.fail(record.jobId, f"dispatch failed: {e}")
            raise

        logger.info("Transcription job added to queue: %s (priority %d)", record.jobId, record.priority)
        return JobHandle(record.jobId, record.meetingId, record.state, created=True)

    def get(self, jobId: str) -> Optional[JobRecord]:
        return self.repo.get(jobId)

    def status(self, jobId: str) -> Optional[JobStatus]:
        record = self.repo.get(jobId)
        return JobStatus.from_record(record) if record else None

    def reap(self) -> int:
        return self.repo.reap()

    def close(self) -> None:
        """Stop accepting work and wait for in-flight jobs to finish."""
        if self._closed:
            return
        self._closed = True
        self.dispatcher.close()
        self.repo.close()
        logger.info("Transcription queue closed")


# -------------------------------------------------
# Local dispatcher (no broker)
# -------------------------------------------------
def parse_rate_limit(rate: Optional[str]):
    """'5/m' -> (5, 60.0). None or empty disables limiting."""
    if not rate:
        return None
    count, _, unit = rate.partition("/")
    seconds = {"s": 1.0, "m": 60.0, "h": 3600.0}.get(unit or "s")
    if seconds is None:
        raise ValueError(f"Invalid rate limit: {rate!r}")
    return int(count), seconds


class LocalDispatcher:
    """
    Bounded in-process worker pool, ordered by job priority.

    ``runner(jobId)`` runs one attempt and returns an outcome with ``retry``
    and ``delay`` attributes; retries wait out the backoff on the same slot.
    """

    _STOP = object()

    def __init__(
        self,
        runner: Callable[[str], object],
        *,
        concurrency: int = WORKER_CONCURRENCY,
        rate_limit: Optional[str] = None,
    ):
        self.runner = runner
        self.concurrency = concurrency
        self._rate = parse_rate_limit(rate_limit)
        self._starts = deque()
        self._rate_lock = threading.Lock()

        self._queue: "queue.PriorityQueue" = queue.PriorityQueue()
        self._seq = itertools.count()
        self._stop = threading.Event()
        self._threads = []
        for i in range(concurrency):
            thread = threading.Thread(target=self._work_loop, name=f"TranscriptionWorker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def dispatch(self, record: JobRecord) -> None:
        self._queue.put((record.priority, next(self._seq), record.jobId))

    def _wait_for_rate_slot(self) -> None:
        if self._rate is None:
            return
        limit, window = self._rate
        while not self._stop.is_set():
            with self._rate_lock:
                now = time.monotonic()
                while self._starts and now - self._starts[0] >= window:
                    self._starts.popleft()
                if len(self._starts) < limit:
                    self._starts.append(now)
                    return
                wait = window - (now - self._starts[0])
            self._stop.wait(wait)

    def _work_loop(self) -> None:
        while True:
            _, _, jobId = self._queue.get()
            try:
                if jobId is self._STOP:
                    return
                self._run_until_settled(jobId)
            finally:
                self._queue.task_done()

    def _run_until_settled(self, jobId: str) -> None:
        while True:
            self._wait_for_rate_slot()
            try:
                outcome = self.runner(jobId)
            except Exception:
                logger.exception("Worker crashed while running job %s", jobId)
                return
            if not getattr(outcome, "retry", False):
                return
            delay = getattr(outcome, "delay", 0) or 0
            logger.info("Retrying job %s in %.1fs", jobId, delay)
            self._stop.wait(delay)

    def close(self) -> None:
        # drain: everything already dispatched runs to completion first
        self._queue.join()
        for _ in self._threads:
            self._queue.put((float("inf"), next(self._seq), self._STOP))
        for thread in self._threads:
            thread.join()
