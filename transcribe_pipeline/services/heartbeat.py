# transcribe_pipeline/services/heartbeat.py
import asyncio
import contextlib
import os
import socket
from typing import Optional

from transcribe_pipeline.config import HEARTBEAT_INTERVAL_SECONDS
from transcribe_pipeline.schemas.meeting import utcnow
from transcribe_pipeline.services.notifier import HEARTBEAT_EVENT


def worker_identity() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class Heartbeat:
    """
    Periodic liveness signal for one job, tagged with the current stage.

    Notify-only: it never writes the meeting's processing state, so it cannot
    race the stage updates. Runs as its own asyncio task and keeps beating
    while the job awaits slow network calls.
    """

    def __init__(
        self,
        notifier,
        meetingId: str,
        *,
        interval: float = HEARTBEAT_INTERVAL_SECONDS,
        stage: str = "starting",
        worker_id: Optional[str] = None,
    ):
        self.notifier = notifier
        self.meetingId = meetingId
        self.interval = interval
        self.stage = stage
        self.worker_id = worker_id or worker_identity()
        self.beats = 0
        self._task: Optional[asyncio.Task] = None

    def set_stage(self, stage: str) -> None:
        self.stage = stage

    def beat(self) -> bool:
        self.beats += 1
        return self.notifier.notify(self.meetingId, HEARTBEAT_EVENT, {
            "meetingId": self.meetingId,
            "stage": self.stage,
            "workerId": self.worker_id,
            "timestamp": utcnow().isoformat(),
        })

    async def _run(self) -> None:
        while True:
            # publish off the loop
            await asyncio.to_thread(self.beat)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"heartbeat-{self.meetingId}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def __aenter__(self) -> "Heartbeat":
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()
