# transcribe_pipeline/services/progress.py
import asyncio
import logging
from typing import Callable, Optional

from transcribe_pipeline.schemas.meeting import ProcessingLogEntry
from transcribe_pipeline.schemas.progress import ProgressEvent
from transcribe_pipeline.services.notifier import PROGRESS_EVENT
from transcribe_pipeline.services.progress_model import StageTable, TRANSCRIPTION_STAGES

logger = logging.getLogger(__name__)


class ProgressTracker:
    """
    Single writer of progress for one meeting during one job attempt.

    Each report appends one processing log entry and then emits one
    progress event, so polling and subscribed clients see the same thing.
    Reported progress never goes down; a new attempt starts a new tracker.
    """

    def __init__(
        self,
        meetingId: str,
        meetings,
        notifier,
        *,
        table: StageTable = TRANSCRIPTION_STAGES,
        on_progress: Optional[Callable[[str, int], None]] = None,
    ):
        self.meetingId = meetingId
        self.meetings = meetings
        self.notifier = notifier
        self.table = table
        self.on_progress = on_progress

        self.stage: Optional[str] = None
        self.last_progress = 0

    def record(
        self,
        stage: str,
        message: str,
        *,
        progress: Optional[int] = None,
        fraction: float = 0.0,
        chunk: Optional[int] = None,
        total_chunks: Optional[int] = None,
    ) -> ProgressEvent:
        """Blocking form of ``report`` for callers outside an event loop."""
        if progress is None:
            progress = self.table.progress(stage, fraction)
        progress = max(self.last_progress, min(100, int(progress)))

        self.stage = stage
        self.last_progress = progress

        entry = ProcessingLogEntry(message=message, progress=progress, stage=stage)
        self.meetings.append_log(self.meetingId, entry)

        event = ProgressEvent(
            meetingId=self.meetingId,
            stage=stage,
            progress=progress,
            message=message,
            chunk=chunk,
            totalChunks=total_chunks,
            timestamp=entry.timestamp,
        )
        self.notifier.notify(self.meetingId, PROGRESS_EVENT, event)

        if self.on_progress is not None:
            self.on_progress(stage, progress)

        logger.info("[Meeting %s] %s (%s, %d%%)", self.meetingId, message, stage, progress)
        return event

    async def report(
        self,
        stage: str,
        message: str,
        *,
        progress: Optional[int] = None,
        fraction: float = 0.0,
        chunk: Optional[int] = None,
        total_chunks: Optional[int] = None,
    ) -> ProgressEvent:
        return await asyncio.to_thread(
            self.record,
            stage,
            message,
            progress=progress,
            fraction=fraction,
            chunk=chunk,
            total_chunks=total_chunks,
        )
