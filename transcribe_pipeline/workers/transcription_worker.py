"""
Transcription worker: runs one attempt of one job.

The worker owns the meeting's processing state for the duration of the
attempt. It drives the external transcription stream, turns every service
event into one log entry plus one progress event, and decides what happens
on failure (retry with backoff, or terminal failure plus quarantine).
Retry scheduling itself belongs to whoever called ``run``; the returned
``JobOutcome`` says whether and when to run the job again.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from transcribe_pipeline.config import HEARTBEAT_INTERVAL_SECONDS, JOB_TIMEOUT_SECONDS
from transcribe_pipeline.errors import (
    ArtifactNotFoundError,
    JobTimeoutError,
    MeetingNotFoundError,
    PipelineError,
    TranscriptionServiceError,
    is_retryable,
)
from transcribe_pipeline.schemas.job import JobRecord
from transcribe_pipeline.schemas.meeting import ChunkInfo, Meeting, ProcessingLogEntry
from transcribe_pipeline.schemas.progress import (
    ServiceComplete,
    ServiceError,
    ServiceProgress,
    ServiceTranscriptChunk,
)
from transcribe_pipeline.services.heartbeat import Heartbeat
from transcribe_pipeline.services.job_queue import RetryPolicy
from transcribe_pipeline.services.progress import ProgressTracker
from transcribe_pipeline.services.progress_model import (
    StageTable,
    TRANSCRIPTION_STAGES,
    translate_service_progress,
)
from transcribe_pipeline.services.quarantine import Quarantine
from transcribe_pipeline.services.results import shape_result
from transcribe_pipeline.services.storage import recording_key
from transcribe_pipeline.services.transcription_client import validate_result

logger = logging.getLogger(__name__)

COMPLETE_EVENT = "transcription_complete"
FAILED_EVENT = "transcription_failed"


@dataclass
class JobOutcome:
    jobId: str
    meetingId: Optional[str]
    state: str  # completed | retry | failed | skipped
    delay: float = 0.0
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    quarantinePath: Optional[str] = None

    @property
    def retry(self) -> bool:
        return self.state == "retry"


class TranscriptionWorker:
    def __init__(
        self,
        jobs,
        meetings,
        storage,
        client,
        notifier,
        *,
        quarantine: Optional[Quarantine] = None,
        timeout: float = JOB_TIMEOUT_SECONDS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        table: StageTable = TRANSCRIPTION_STAGES,
    ):
        self.jobs = jobs
        self.meetings = meetings
        self.storage = storage
        self.client = client
        self.notifier = notifier
        self.quarantine = quarantine or Quarantine(storage)
        self.timeout = timeout
        self.heartbeat_interval = heartbeat_interval
        self.table = table

    def run(self, jobId: str) -> JobOutcome:
        """Synchronous entry point for pool threads and Celery tasks."""
        return asyncio.run(self.process(jobId))

    async def process(self, jobId: str) -> JobOutcome:
        record = await asyncio.to_thread(self.jobs.get, jobId)
        if record is None:
            logger.warning("Job %s not found (reaped or never submitted), skipping", jobId)
            return JobOutcome(jobId, None, "skipped", error="job not found")
        if record.state not in ("queued", "active"):
            logger.warning("Job %s is already %s, skipping", jobId, record.state)
            return JobOutcome(jobId, record.meetingId, "skipped")

        meetingId = record.meetingId
        logger.info("Processing transcription job for meeting: %s", meetingId)

        meeting = await asyncio.to_thread(self.meetings.get, meetingId)

        # duplicate delivery guard
        if meeting is not None and meeting.status == "completed":
            logger.warning("Meeting %s already completed, skipping transcription", meetingId)
            await asyncio.to_thread(self.jobs.complete, jobId)
            return JobOutcome(jobId, meetingId, "skipped")

        record = await asyncio.to_thread(self.jobs.mark_active, jobId) or record

        tracker = ProgressTracker(
            meetingId,
            self.meetings,
            self.notifier,
            table=self.table,
            on_progress=lambda stage, progress: self.jobs.update(jobId, stage=stage, progress=progress),
        )

        try:
            if meeting is None:
                raise MeetingNotFoundError(f"Meeting not found: {meetingId}")

            async with Heartbeat(self.notifier, meetingId, interval=self.heartbeat_interval) as heartbeat:
                try:
                    result = await asyncio.wait_for(
                        self._transcribe(record, meeting, tracker, heartbeat),
                        timeout=self.timeout,
                    )
                except asyncio.TimeoutError:
                    raise JobTimeoutError(f"Job exceeded {self.timeout:.0f}s execution timeout")

            await tracker.report("completed", "Transcription completed", progress=100)
            await asyncio.to_thread(self.meetings.set_status, meetingId, "completed")
            await asyncio.to_thread(self.jobs.complete, jobId)
        except Exception as e:
            logger.exception("Transcription job failed for meeting %s", meetingId)
            return await self._handle_failure(record, meeting, e)

        await asyncio.to_thread(self.notifier.notify, meetingId, COMPLETE_EVENT, {"meetingId": meetingId})
        logger.info("Transcription completed successfully for meeting: %s", meetingId)
        return JobOutcome(jobId, meetingId, "completed", result=result)

    # ---------------------------------------------------
    # One attempt
    # ---------------------------------------------------
    async def _transcribe(
        self,
        record: JobRecord,
        meeting: Meeting,
        tracker: ProgressTracker,
        heartbeat: Heartbeat,
    ) -> Dict[str, Any]:
        meetingId = meeting.id

        # first attempt of a fresh job starts the retry counter over
        await asyncio.to_thread(
            self.meetings.start_processing, meetingId, record.jobId, reset_retries=record.attempts == 1
        )
        if meeting.processing.queuedAt is None:
            queued_at = datetime.fromtimestamp(record.queuedAt, timezone.utc)
            await asyncio.to_thread(self.meetings.update_processing, meetingId, queuedAt=queued_at)

        await tracker.report("starting", "Starting transcription")

        if meeting.originalFile is None or not meeting.originalFile.filename:
            raise ArtifactNotFoundError(f"Meeting {meetingId} has no recording")

        heartbeat.set_stage("downloading")
        await tracker.report("downloading", "Downloading audio from storage")
        key = recording_key(meeting.originalFile.filename)
        audio = await asyncio.to_thread(self.storage.get, key)
        logger.info("File downloaded for meeting %s: %d bytes", meetingId, len(audio))

        heartbeat.set_stage("transcribing")
        await tracker.report("transcribing", "Transcribing audio")

        result = None
        stream = self.client.stream_transcription(
            audio,
            meeting.originalFile.originalName or meeting.originalFile.filename,
            meetingId,
            num_speakers=0,
        )
        async with contextlib.aclosing(stream) as events:
            async for event in events:
                if isinstance(event, ServiceProgress):
                    await self._on_service_progress(meetingId, event, tracker, heartbeat)
                elif isinstance(event, ServiceTranscriptChunk):
                    logger.debug("Meeting %s: transcript chunk %d received", meetingId, event.chunk_index)
                elif isinstance(event, ServiceError):
                    raise TranscriptionServiceError(event.error)
                elif isinstance(event, ServiceComplete):
                    result = event.result

        if result is None:
            raise TranscriptionServiceError("Transcription stream ended without a result")
        validate_result(result)

        heartbeat.set_stage("saving")
        fields = shape_result(meeting, result)
        await tracker.report("saving", "Saving results", fraction=0.9)
        await asyncio.to_thread(self.meetings.update_fields, meetingId, **fields)
        return result

    async def _on_service_progress(
        self,
        meetingId: str,
        event: ServiceProgress,
        tracker: ProgressTracker,
        heartbeat: Heartbeat,
    ) -> None:
        stage, progress = translate_service_progress(event, tracker.last_progress, self.table)
        if stage == "completed":
            # completion is reported once the results are saved
            return

        heartbeat.set_stage(stage)

        if event.chunk is not None and event.total_chunks:
            logger.info("Chunk progress: %d/%d - %s", event.chunk, event.total_chunks, event.message)
            info = ChunkInfo(current=event.chunk, total=event.total_chunks, chunkingEnabled=True)
            await asyncio.to_thread(self.meetings.update_processing, meetingId, chunkInfo=info.model_dump())

        await tracker.report(
            stage,
            event.message or f"{stage}...",
            progress=progress,
            chunk=event.chunk,
            total_chunks=event.total_chunks,
        )

    # ---------------------------------------------------
    # Failure handling
    # ---------------------------------------------------
    async def _record(self, meetingId: str, fn, *args, **kwargs):
        """Failure bookkeeping must not mask the original error."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except PipelineError as e:
            logger.error("Could not update meeting %s after failure: %s", meetingId, e)
            return None

    async def _log(self, meetingId: str, message: str, stage: Optional[str] = None) -> None:
        entry = ProcessingLogEntry(message=message, stage=stage)
        await self._record(meetingId, self.meetings.append_log, meetingId, entry)

    async def _handle_failure(
        self,
        record: JobRecord,
        meeting: Optional[Meeting],
        exc: Exception,
    ) -> JobOutcome:
        jobId, meetingId = record.jobId, record.meetingId
        message = str(exc) or exc.__class__.__name__

        async def _failed(will_retry: bool) -> None:
            await asyncio.to_thread(self.notifier.notify, meetingId, FAILED_EVENT, {
                "meetingId": meetingId,
                "error": message,
                "willRetry": will_retry,
            })

        if meeting is None:
            await _failed(False)
            await asyncio.to_thread(self.jobs.fail, jobId, message)
            return JobOutcome(jobId, meetingId, "failed", error=message)

        await self._log(meetingId, f"Error: {message}", stage="error")

        if is_retryable(exc):
            retry_count = await self._record(meetingId, self.meetings.increment_retry, meetingId)
            if retry_count is None:
                retry_count = record.attempts

            if retry_count < record.maxAttempts:
                delay = RetryPolicy.for_job(record).delay_for(record.attempts)
                await _failed(True)
                await asyncio.to_thread(self.jobs.requeue, jobId, message)
                await self._log(meetingId, f"Retrying in {delay:.0f}s (attempt {retry_count + 1}/{record.maxAttempts})")
                logger.info("Job %s will retry in %.1fs (%d/%d failed)", jobId, delay, retry_count, record.maxAttempts)
                return JobOutcome(jobId, meetingId, "retry", delay=delay, error=message)

            await self._log(meetingId, "Processing failed after several attempts")

        await self._record(meetingId, self.meetings.set_status, meetingId, "failed", message)
        await _failed(False)

        quarantine_path = await self._quarantine(meetingId)
        await asyncio.to_thread(self.jobs.fail, jobId, message)

        logger.error("Job %s failed permanently for meeting %s: %s", jobId, meetingId, message)
        return JobOutcome(jobId, meetingId, "failed", error=message, quarantinePath=quarantine_path)

    async def _quarantine(self, meetingId: str) -> Optional[str]:
        current = await self._record(meetingId, self.meetings.get, meetingId)
        if current is None or current.originalFile is None:
            return None
        if current.processing.quarantinePath:
            return current.processing.quarantinePath

        key = recording_key(current.originalFile.filename)
        try:
            if not await asyncio.to_thread(self.storage.exists, key):
                logger.warning("Nothing to quarantine for meeting %s: %s is gone", meetingId, key)
                return None
            path = await asyncio.to_thread(self.quarantine.copy_to_quarantine, key)
        except PipelineError as e:
            logger.error("Error moving file to quarantine for meeting %s: %s", meetingId, e)
            return None

        await self._record(meetingId, self.meetings.update_processing, meetingId, quarantinePath=path)
        logger.info("Moved failed meeting file to quarantine: %s", path)
        return path

