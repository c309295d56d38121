"""
Process-wide collaborators, built lazily and shared.

Routes receive these through FastAPI ``Depends``; tests override them with
in-memory versions.
"""

from functools import lru_cache

from transcribe_pipeline.config import USE_CELERY, WORKER_CONCURRENCY, WORKER_RATE_LIMIT
from transcribe_pipeline.repos.meeting_repo import get_meeting_repo
from transcribe_pipeline.repos.redis_jobs import get_job_repo
from transcribe_pipeline.services.bot_service import get_bot_service
from transcribe_pipeline.services.bot_sessions import BotSessionManager, get_session_store
from transcribe_pipeline.services.job_queue import JobQueue, LocalDispatcher
from transcribe_pipeline.services.notifier import get_notifier
from transcribe_pipeline.services.storage import get_storage
from transcribe_pipeline.services.transcription_client import get_transcription_client
from transcribe_pipeline.workers.transcription_worker import TranscriptionWorker


@lru_cache
def job_repo():
    return get_job_repo()


@lru_cache
def meeting_repo():
    return get_meeting_repo()


@lru_cache
def object_storage():
    return get_storage()


@lru_cache
def notifier():
    return get_notifier()


@lru_cache
def transcription_client():
    return get_transcription_client()


@lru_cache
def worker() -> TranscriptionWorker:
    return TranscriptionWorker(
        job_repo(),
        meeting_repo(),
        object_storage(),
        transcription_client(),
        notifier(),
    )


@lru_cache
def job_queue() -> JobQueue:
    if USE_CELERY:
        from transcribe_pipeline.workers.transcription_task import CeleryDispatcher

        dispatcher = CeleryDispatcher()
    else:
        dispatcher = LocalDispatcher(
            worker().run,
            concurrency=WORKER_CONCURRENCY,
            rate_limit=WORKER_RATE_LIMIT,
        )
    return JobQueue(job_repo(), dispatcher)


@lru_cache
def bot_sessions() -> BotSessionManager:
    return BotSessionManager(
        get_session_store(),
        meeting_repo(),
        notifier(),
        transcription_client(),
        bot_service=get_bot_service(),
    )
