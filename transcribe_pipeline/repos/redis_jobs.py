# transcribe_pipeline/repos/redis_jobs.py
import logging
import threading
import time
from typing import Dict, Optional, Tuple

from redis.exceptions import WatchError

from transcribe_pipeline.config import (
    REDIS_URL,
    REDIS_PREFIX,
    USE_CELERY,
    KEEP_COMPLETED_COUNT,
    KEEP_COMPLETED_SECONDS,
    KEEP_FAILED_COUNT,
    KEEP_FAILED_SECONDS,
)
from transcribe_pipeline.schemas.job import JobRecord

logger = logging.getLogger(__name__)

# job records live until reaped; queued/active ones are never reaped
RETENTION = {
    "completed": (KEEP_COMPLETED_COUNT, KEEP_COMPLETED_SECONDS),
    "failed": (KEEP_FAILED_COUNT, KEEP_FAILED_SECONDS),
}


def job_id_for(meeting_id: str) -> str:
    """Deterministic id: one job per meeting."""
    return f"transcription-{meeting_id}"


# -------------------------------------------------
# In-memory fallback (LOCAL DEV / TESTS)
# -------------------------------------------------
class InMemoryJobRepo:
    def __init__(self, retention: Optional[Dict[str, Tuple[int, int]]] = None):
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()
        self.retention = retention or RETENTION

    def create(self, record: JobRecord) -> Tuple[JobRecord, bool]:
        """Insert unless the id exists. Returns (stored record, created)."""
        with self._lock:
            existing = self._jobs.get(record.jobId)
            if existing is not None:
                return existing.model_copy(), False
            self._jobs[record.jobId] = record.model_copy()
            return record.model_copy(), True

    def restart_if_failed(self, record: JobRecord) -> bool:
        """Swap in ``record`` only while the stored job is failed."""
        with self._lock:
            existing = self._jobs.get(record.jobId)
            if existing is None or existing.state != "failed":
                return False
            self._jobs[record.jobId] = record.model_copy()
            return True

    def get(self, jobId: str) -> Optional[JobRecord]:
        with self._lock:
            record = self._jobs.get(jobId)
            return record.model_copy() if record else None

    def update(self, jobId: str, **fields) -> Optional[JobRecord]:
        with self._lock:
            record = self._jobs.get(jobId)
            if record is None:
                return None
            record = record.model_copy(update=fields)
            self._jobs[jobId] = record
            return record.model_copy()

    def mark_active(self, jobId: str) -> Optional[JobRecord]:
        with self._lock:
            record = self._jobs.get(jobId)
            if record is None:
                return None
            record = record.model_copy(update={
                "state": "active",
                "attempts": record.attempts + 1,
                "processedAt": time.time(),
            })
            self._jobs[jobId] = record
            return record.model_copy()

    def complete(self, jobId: str) -> None:
        self.update(jobId, state="completed", progress=100, stage="completed", finishedAt=time.time())
        self.reap()

    def fail(self, jobId: str, error: str) -> None:
        self.update(jobId, state="failed", failedReason=error, finishedAt=time.time())
        self.reap()

    def requeue(self, jobId: str, error: str) -> None:
        self.update(jobId, state="queued", failedReason=error)

    def reap(self, now: Optional[float] = None) -> int:
        """Drop terminal records past their age or beyond the count cap."""
        now = now or time.time()
        removed = 0
        with self._lock:
            for state, (keep_count, keep_seconds) in self.retention.items():
                finished = sorted(
                    (r for r in self._jobs.values() if r.state == state),
                    key=lambda r: r.finishedAt or 0,
                    reverse=True,
                )
                for idx, record in enumerate(finished):
                    too_old = now - (record.finishedAt or now) > keep_seconds
                    if idx >= keep_count or too_old:
                        del self._jobs[record.jobId]
                        removed += 1
        return removed

    def close(self) -> None:
        pass


# -------------------------------------------------
# Redis-backed repo (PRODUCTION)
# -------------------------------------------------
class RedisJobRepo:
    def __init__(self, client=None, retention: Optional[Dict[str, Tuple[int, int]]] = None):
        if client is None:
            import redis  # lazy import
            if not REDIS_URL:
                raise RuntimeError("REDIS_URL is required in production")
            client = redis.from_url(REDIS_URL, decode_responses=True)

        self.client = client
        self.retention = retention or RETENTION

    def _key(self, jobId: str) -> str:
        return f"{REDIS_PREFIX}job:{jobId}"

    def _finished_key(self, state: str) -> str:
        return f"{REDIS_PREFIX}finished:{state}"

    def create(self, record: JobRecord) -> Tuple[JobRecord, bool]:
        # SET NX makes concurrent submits for the same meeting collapse to one
        created = self.client.set(self._key(record.jobId), record.model_dump_json(), nx=True)
        if created:
            return record, True
        existing = self.get(record.jobId)
        if existing is None:
            # expired between SET NX and GET
            self._write(record)
            return record, True
        return existing, False

    def restart_if_failed(self, record: JobRecord) -> bool:
        """Compare-and-set on the failed state; concurrent restarts collapse to one."""
        key = self._key(record.jobId)
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if not raw or JobRecord.model_validate_json(raw).state != "failed":
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    # no TTL: a restarted job is live again
                    pipe.set(key, record.model_dump_json())
                    for state in self.retention:
                        pipe.zrem(self._finished_key(state), record.jobId)
                    pipe.execute()
                    return True
                except WatchError:
                    logger.info("Job %s changed during restart, re-checking", record.jobId)

    def get(self, jobId: str) -> Optional[JobRecord]:
        raw = self.client.get(self._key(jobId))
        return JobRecord.model_validate_json(raw) if raw else None

    def _write(self, record: JobRecord, ttl: Optional[int] = None) -> None:
        if ttl is None:
            self.client.set(self._key(record.jobId), record.model_dump_json(), keepttl=True)
        else:
            self.client.set(self._key(record.jobId), record.model_dump_json(), ex=ttl)

    def update(self, jobId: str, **fields) -> Optional[JobRecord]:
        record = self.get(jobId)
        if record is None:
            return None
        record = record.model_copy(update=fields)
        self._write(record)
        return record

    def mark_active(self, jobId: str) -> Optional[JobRecord]:
        record = self.get(jobId)
        if record is None:
            return None
        return self.update(
            jobId,
            state="active",
            attempts=record.attempts + 1,
            processedAt=time.time(),
        )

    def _finish(self, jobId: str, state: str, **fields) -> None:
        record = self.get(jobId)
        if record is None:
            return
        finished_at = time.time()
        record = record.model_copy(update={"state": state, "finishedAt": finished_at, **fields})

        _, keep_seconds = self.retention[state]
        self._write(record, ttl=keep_seconds)
        self.client.zadd(self._finished_key(state), {jobId: finished_at})
        self.reap()

    def complete(self, jobId: str) -> None:
        self._finish(jobId, "completed", progress=100, stage="completed")

    def fail(self, jobId: str, error: str) -> None:
        self._finish(jobId, "failed", failedReason=error)

    def requeue(self, jobId: str, error: str) -> None:
        self.update(jobId, state="queued", failedReason=error)

    def reap(self, now: Optional[float] = None) -> int:
        now = now or time.time()
        removed = 0
        for state, (keep_count, keep_seconds) in self.retention.items():
            zkey = self._finished_key(state)
            expired = self.client.zrangebyscore(zkey, "-inf", now - keep_seconds)
            overflow = self.client.zrange(zkey, 0, -(keep_count + 1)) if keep_count >= 0 else []
            doomed = set(expired) | set(overflow)
            if not doomed:
                continue
            pipe = self.client.pipeline()
            for jobId in doomed:
                pipe.delete(self._key(jobId))
                pipe.zrem(zkey, jobId)
            pipe.execute()
            removed += len(doomed)
        if removed:
            logger.info("Reaped %d finished job records", removed)
        return removed

    def close(self) -> None:
        self.client.close()


# -------------------------------------------------
# Factory
# -------------------------------------------------
def get_job_repo():
    if USE_CELERY:
        return RedisJobRepo()
    return InMemoryJobRepo()
