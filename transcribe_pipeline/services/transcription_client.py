# transcribe_pipeline/services/transcription_client.py
import asyncio
import json
import logging
import threading
import time
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Iterator, List, Optional

import httpx

from transcribe_pipeline.config import (
    WHISPERX_API_URL,
    WHISPERX_TIMEOUT_SECONDS,
    PREVIEW_TIMEOUT_SECONDS,
)
from transcribe_pipeline.errors import CallCancelledError, TranscriptionServiceError
from transcribe_pipeline.schemas.progress import (
    ServiceComplete,
    ServiceError,
    ServiceEvent,
    ServiceProgress,
    ServiceTranscriptChunk,
)

logger = logging.getLogger(__name__)


# --------------------------------------------------
# Cancellation
# --------------------------------------------------
class CancelToken:
    """Thread-safe cancel flag; registered callbacks abort in-flight calls."""

    def __init__(self):
        self._event = threading.Event()
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CallCancelledError("call cancelled")


# --------------------------------------------------
# SSE decoding
# --------------------------------------------------
class SSEDecoder:
    """Turns ``event:`` / ``data:`` lines into typed service events."""

    def __init__(self):
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[ServiceEvent]:
        line = line.rstrip("\r\n")

        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None

    def flush(self) -> Optional[ServiceEvent]:
        return self._dispatch()

    def _dispatch(self) -> Optional[ServiceEvent]:
        name, raw = self._event, "\n".join(self._data)
        self._event, self._data = None, []
        if not raw:
            return None

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Dropping undecodable SSE payload: %.200s", raw)
            return None
        if not isinstance(data, dict):
            return None

        return to_service_event(name or data.get("type"), data)


def to_service_event(name: Optional[str], data: Dict[str, Any]) -> Optional[ServiceEvent]:
    if name == "progress":
        return ServiceProgress.model_validate(data)
    if name == "transcript_chunk":
        return ServiceTranscriptChunk.model_validate(data)
    if name == "complete":
        result = data.get("result", data)
        return ServiceComplete(result=result)
    if name == "error":
        return ServiceError(error=str(data.get("error") or data.get("message") or "unknown error"))

    logger.debug("Ignoring unknown SSE event %r", name)
    return None


def parse_sse(lines: Iterable[str]) -> Iterator[ServiceEvent]:
    decoder = SSEDecoder()
    for line in lines:
        event = decoder.feed(line)
        if event is not None:
            yield event
    event = decoder.flush()
    if event is not None:
        yield event


def validate_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """The final payload must carry segments, transcript, speakers and metadata."""
    if not result:
        raise TranscriptionServiceError("Transcription result is empty")

    errors = []
    if not isinstance(result.get("segments"), list):
        errors.append("missing or invalid segments array")
    if not isinstance(result.get("transcript"), str):
        errors.append("missing or invalid transcript string")
    if not isinstance(result.get("speakers"), list):
        errors.append("missing or invalid speakers array")
    if not isinstance(result.get("metadata"), dict):
        errors.append("missing or invalid metadata")

    if errors:
        raise TranscriptionServiceError(f"Invalid transcription result: {', '.join(errors)}")
    return result


# --------------------------------------------------
# Client
# --------------------------------------------------
class TranscriptionClient:
    def __init__(
        self,
        base_url: str = WHISPERX_API_URL,
        *,
        timeout: float = WHISPERX_TIMEOUT_SECONDS,
        preview_timeout: float = PREVIEW_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.preview_timeout = preview_timeout
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        # one client per call: workers run each job in a fresh event loop
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=self._transport,
        )

    async def _cancellable(self, coro, cancel: Optional[CancelToken]):
        if cancel is None:
            return await coro

        if cancel.cancelled:
            coro.close()
            raise CallCancelledError("call cancelled")
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(coro)

        def _abort():
            loop.call_soon_threadsafe(task.cancel)

        cancel.add_callback(_abort)
        try:
            return await task
        except asyncio.CancelledError:
            if cancel.cancelled:
                raise CallCancelledError("call cancelled")
            raise
        finally:
            cancel.remove_callback(_abort)

    async def _post_json(self, path: str, timeout: float, **kwargs) -> Dict[str, Any]:
        try:
            async with self._client(timeout) as http:
                resp = await http.post(path, **kwargs)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as e:
            raise TranscriptionServiceError(
                f"Transcription service error {e.response.status_code}: {e.response.text[:500]}"
            )
        except httpx.HTTPError as e:
            raise TranscriptionServiceError(f"Transcription service connection error: {e}")
        except ValueError as e:
            raise TranscriptionServiceError(f"Transcription service returned invalid JSON: {e}")

    async def stream_transcription(
        self,
        audio: bytes,
        filename: str,
        meetingId: str,
        *,
        num_speakers: int = 0,
        enable_summary: bool = True,
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[ServiceEvent]:
        """
        Upload ``audio`` and yield service events as they arrive.

        The stream may end without a ``complete`` event; callers must treat
        that as a failure.
        """
        files = {"file": (filename, audio, "application/octet-stream")}
        data = {
            "meeting_id": meetingId,
            "num_speakers": str(num_speakers),
            "enable_summary": "true" if enable_summary else "false",
        }

        logger.info("Streaming %s (%d bytes) to transcription service for meeting %s",
                    filename, len(audio), meetingId)
        try:
            async with self._client(self.timeout) as http:
                async with http.stream("POST", "/transcribe/stream", files=files, data=data) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise TranscriptionServiceError(
                            f"Transcription service error {resp.status_code}: {body[:500]}"
                        )

                    decoder = SSEDecoder()
                    async for line in resp.aiter_lines():
                        if cancel is not None:
                            cancel.raise_if_cancelled()
                        event = decoder.feed(line)
                        if event is not None:
                            yield event

                    event = decoder.flush()
                    if event is not None:
                        yield event
        except httpx.HTTPError as e:
            raise TranscriptionServiceError(f"Transcription service connection error: {e}")

    async def preview_chunk(
        self,
        audio: bytes,
        sessionId: str,
        chunkIndex: int,
        cancel: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        """Quick text-only transcription of one live chunk (no diarization)."""
        files = {"file": (f"bot_chunk_{chunkIndex}.webm", audio, "audio/webm")}
        data = {"session_id": sessionId, "is_final": "false"}
        return await self._cancellable(
            self._post_json("/transcribe/realtime", self.preview_timeout, files=files, data=data),
            cancel,
        )

    async def finalize_audio(
        self,
        audio: bytes,
        sessionId: str,
        *,
        num_speakers: Optional[int] = None,
        language: Optional[str] = None,
        enable_ai_notes: bool = True,
        cancel: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        """Full transcription + diarization of a finished live recording."""
        files = {"file": ("bot_recording.webm", audio, "audio/webm")}
        data = {
            "session_id": sessionId,
            "num_speakers": str(num_speakers) if num_speakers else "",
            "language": language or "",
            "enable_ai_notes": "true" if enable_ai_notes else "false",
        }
        started = time.monotonic()
        result = await self._cancellable(
            self._post_json("/transcribe/realtime/final", self.timeout, files=files, data=data),
            cancel,
        )
        logger.info("Final transcription for session %s took %.1fs", sessionId, time.monotonic() - started)
        return result

    async def analyze(self, transcript: str) -> Dict[str, Any]:
        """Regenerate AI notes (summary, highlights, action items) from plain text."""
        started = time.monotonic()
        result = await self._post_json("/analyze", self.timeout, json={"transcript": transcript})
        logger.info("Analyze transcript completed in %.1fs, keys=%s",
                    time.monotonic() - started, ",".join(result.keys()))
        return result

    async def health(self) -> Dict[str, Any]:
        try:
            async with self._client(5.0) as http:
                resp = await http.get("/health")
                resp.raise_for_status()
                return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Transcription service health check failed: %s", e)
            return {"status": "unhealthy", "error": str(e)}


def get_transcription_client() -> TranscriptionClient:
    return TranscriptionClient()
