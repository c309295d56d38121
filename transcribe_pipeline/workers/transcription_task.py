import logging

from transcribe_pipeline.workers.celery import celery
from transcribe_pipeline.config import WORKER_RATE_LIMIT
from transcribe_pipeline.schemas.job import JobRecord

logger = logging.getLogger(__name__)


# --------------------------------------------------
# Celery / Local Task Wrapper
# --------------------------------------------------
@celery.task(bind=True, name="transcribe_meeting", rate_limit=WORKER_RATE_LIMIT, max_retries=None)
def transcribe_meeting(self, jobId: str, meetingId: str = None):
    """
    One attempt of a transcription job.

    The worker decides whether a failure is retried; Celery only schedules
    the next attempt after the backoff the worker asked for.
    """
    from transcribe_pipeline import wiring

    outcome = wiring.worker().run(jobId)

    if outcome.retry:
        logger.info("Rescheduling %s for meeting %s in %.1fs", jobId, meetingId, outcome.delay)
        raise self.retry(countdown=outcome.delay)

    return {
        "jobId": outcome.jobId,
        "meetingId": outcome.meetingId,
        "state": outcome.state,
        "error": outcome.error,
        "quarantinePath": outcome.quarantinePath,
    }


@celery.task(name="reap_finished_jobs")
def reap_finished_jobs():
    from transcribe_pipeline import wiring

    return wiring.job_repo().reap()


# --------------------------------------------------
# Dispatcher used by the job queue in Celery mode
# --------------------------------------------------
def broker_priority(priority: int) -> int:
    """Job priority 1 (high) .. 10 (low) -> Redis priority step 0 .. 9."""
    return min(max(priority - 1, 0), 9)


class CeleryDispatcher:
    def dispatch(self, record: JobRecord) -> None:
        transcribe_meeting.apply_async(
            kwargs={"jobId": record.jobId, "meetingId": record.meetingId},
            task_id=record.jobId,
            priority=broker_priority(record.priority),
        )

    def close(self) -> None:
        # Celery workers drain their own in-flight tasks on warm shutdown
        pass
