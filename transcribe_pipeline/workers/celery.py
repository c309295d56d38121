from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from transcribe_pipeline.config import (
    USE_CELERY,
    REDIS_URL,
    JOB_TIMEOUT_SECONDS,
    WORKER_CONCURRENCY,
    KEEP_COMPLETED_SECONDS,
)

# -------------------------------------------------
# LOCAL MODE (NO REDIS, NO WORKER)
# -------------------------------------------------
if not USE_CELERY:
    celery = Celery("transcription_local")

    celery.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
    )

# -------------------------------------------------
# PRODUCTION MODE (REDIS + WORKER)
# -------------------------------------------------
else:
    celery = Celery(
        "transcription_worker",
        broker=REDIS_URL,
        backend=REDIS_URL,
    )

    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_track_started=True,
        task_default_queue="transcription_queue",
        result_expires=KEEP_COMPLETED_SECONDS,
        # a job is claimed by one worker slot and acked only once it settles
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=WORKER_CONCURRENCY,
        # the worker enforces JOB_TIMEOUT_SECONDS itself; these are backstops
        task_soft_time_limit=JOB_TIMEOUT_SECONDS + 60,
        task_time_limit=JOB_TIMEOUT_SECONDS + 120,
        task_default_priority=4,
    )

    celery.conf.broker_transport_options = {
        "priority_steps": list(range(10)),
        "sep": ":",
        "queue_order_strategy": "priority",
        "visibility_timeout": JOB_TIMEOUT_SECONDS * 2,
    }

    celery.conf.beat_schedule = {
        "reap-finished-transcription-jobs": {
            "task": "reap_finished_jobs",
            "schedule": crontab(minute="*/10"),
            "args": (),
        },
    }


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    # keep celery from installing its own root handlers
    from transcribe_pipeline.logging_setup import configure_logging

    configure_logging("worker")


# -------------------------------------------------
# FORCE task registration
# -------------------------------------------------
import transcribe_pipeline.workers.transcription_task  # noqa: F401,E402
