"""
Live capture sessions.

A meeting captured by a bot has one ``BotSession`` that moves through

    pending -> bot_joining -> bot_in_meeting -> recording -> processing -> completed | failed

while the bot pushes audio chunks and scraped captions. Finalizing either
re-processes the complete recording with the transcription service or falls
back to the caption stream. Sessions live in a swappable key-value store and
are evicted by age whatever their status.
"""

import asyncio
import logging
import threading
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from transcribe_pipeline.config import (
    BOT_SESSION_MAX_AGE_MINUTES,
    BOT_SESSION_STORE,
    BOT_SESSION_SWEEP_MINUTES,
    REDIS_PREFIX,
    REDIS_URL,
)
from transcribe_pipeline.errors import (
    CallCancelledError,
    InvalidTransitionError,
    PipelineError,
    SessionConflictError,
    SessionNotFoundError,
    TranscriptionServiceError,
)
from transcribe_pipeline.schemas.bot import (
    AudioChunkInfo,
    BotJoinRequest,
    BotSession,
    CaptionSegment,
    FinalizeRequest,
    FinalizeResult,
    PreviewText,
)
from transcribe_pipeline.schemas.meeting import ProcessingLogEntry, utcnow
from transcribe_pipeline.services import caption_fallback
from transcribe_pipeline.services.progress import ProgressTracker
from transcribe_pipeline.services.progress_model import BOT_STAGES
from transcribe_pipeline.services.results import action_items
from transcribe_pipeline.services.transcription_client import CancelToken

logger = logging.getLogger(__name__)

STATUS_EVENT = "bot_status"
PREVIEW_EVENT = "bot_preview"
CAPTION_EVENT = "caption_added"

DEFAULT_BOT_NAME = "Meeting Bot"
ANALYSIS_MIN_CHARS = 50
CAPTIONS_MIRRORED_TO_LOG = 3
TEXT_ONLY_CHUNK_SECONDS = 10

# allowed moves; finalize may start from any live status
TRANSITIONS = {
    "pending": {"bot_joining", "bot_in_meeting", "recording", "processing", "failed"},
    "bot_joining": {"bot_in_meeting", "recording", "processing", "failed"},
    "bot_in_meeting": {"recording", "processing", "failed"},
    "recording": {"processing", "failed"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}

LIVE_STATUSES = frozenset({"pending", "bot_joining", "bot_in_meeting"})

# bot session status -> meeting status
MEETING_STATUS = {
    "pending": "bot_joining",
    "bot_joining": "bot_joining",
    "recording": "recording",
    "processing": "processing",
    "completed": "completed",
    "failed": "failed",
}


# -------------------------------------------------
# Session stores
# -------------------------------------------------
class InMemorySessionStore:
    """Process-local store. Does not survive restarts or span instances."""

    def __init__(self, max_age_seconds: float = BOT_SESSION_MAX_AGE_MINUTES * 60):
        self.max_age_seconds = max_age_seconds
        self._sessions: Dict[str, BotSession] = {}
        self._lock = threading.Lock()

    def _expired(self, session: BotSession, now) -> bool:
        return now - session.createdAt > timedelta(seconds=self.max_age_seconds)

    def get(self, meetingId: str) -> Optional[BotSession]:
        with self._lock:
            session = self._sessions.get(meetingId)
            if session is None:
                return None
            if self._expired(session, utcnow()):
                del self._sessions[meetingId]
                return None
            return session.model_copy(deep=True)

    def add(self, session: BotSession) -> bool:
        """Insert unless a session for the meeting exists."""
        with self._lock:
            current = self._sessions.get(session.meetingId)
            if current is not None and not self._expired(current, utcnow()):
                return False
            self._sessions[session.meetingId] = session.model_copy(deep=True)
            return True

    def put(self, session: BotSession) -> None:
        with self._lock:
            self._sessions[session.meetingId] = session.model_copy(deep=True)

    def delete(self, meetingId: str) -> bool:
        with self._lock:
            return self._sessions.pop(meetingId, None) is not None

    def all(self) -> List[BotSession]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sessions.values()]

    def sweep(self, now=None) -> List[str]:
        now = now or utcnow()
        with self._lock:
            stale = [m for m, s in self._sessions.items() if self._expired(s, now)]
            for meetingId in stale:
                del self._sessions[meetingId]
        return stale


class RedisSessionStore:
    """Shared store: sessions are JSON documents that expire on their own."""

    def __init__(self, client=None, max_age_seconds: float = BOT_SESSION_MAX_AGE_MINUTES * 60):
        if client is None:
            import redis  # lazy import
            client = redis.from_url(REDIS_URL, decode_responses=True)
        self.client = client
        self.max_age_seconds = int(max_age_seconds)

    def _key(self, meetingId: str) -> str:
        return f"{REDIS_PREFIX}bot:session:{meetingId}"

    def get(self, meetingId: str) -> Optional[BotSession]:
        raw = self.client.get(self._key(meetingId))
        return BotSession.model_validate_json(raw) if raw else None

    def add(self, session: BotSession) -> bool:
        return bool(self.client.set(
            self._key(session.meetingId), session.model_dump_json(), nx=True, ex=self.max_age_seconds
        ))

    def put(self, session: BotSession) -> None:
        key = self._key(session.meetingId)
        # keep the original expiry so age-based eviction is unaffected by updates
        if not self.client.set(key, session.model_dump_json(), xx=True, keepttl=True):
            self.client.set(key, session.model_dump_json(), ex=self.max_age_seconds)

    def delete(self, meetingId: str) -> bool:
        return bool(self.client.delete(self._key(meetingId)))

    def all(self) -> List[BotSession]:
        sessions = []
        for key in self.client.scan_iter(match=self._key("*")):
            raw = self.client.get(key)
            if raw:
                sessions.append(BotSession.model_validate_json(raw))
        return sessions

    def sweep(self, now=None) -> List[str]:
        # keys expire by TTL; nothing to do
        return []


def get_session_store():
    if BOT_SESSION_STORE == "redis":
        return RedisSessionStore()
    return InMemorySessionStore()


# -------------------------------------------------
# Session manager
# -------------------------------------------------
def session_summary(session: BotSession) -> Dict[str, Any]:
    return {
        "sessionId": session.sessionId,
        "meetingId": session.meetingId,
        "status": session.status,
        "chunksReceived": session.totalChunksReceived,
        "captionCount": len(session.captions),
        "previewLength": len(session.accumulatedText),
        "createdAt": session.createdAt,
        "startedAt": session.startedAt,
        "completedAt": session.completedAt,
        "error": session.error,
    }


class BotSessionManager:
    def __init__(
        self,
        store,
        meetings,
        notifier,
        client,
        *,
        bot_service=None,
    ):
        self.store = store
        self.meetings = meetings
        self.notifier = notifier
        self.client = client
        self.bot_service = bot_service

        self._lock = threading.RLock()
        self._tokens: Dict[str, CancelToken] = {}

    # ---------------------------------------------------
    # Helpers
    # ---------------------------------------------------
    def _require(self, meetingId: str) -> BotSession:
        session = self.store.get(meetingId)
        if session is None:
            raise SessionNotFoundError(f"No live session for meeting {meetingId}")
        return session

    def _token(self, meetingId: str) -> CancelToken:
        with self._lock:
            return self._tokens.setdefault(meetingId, CancelToken())

    def _is_current(self, meetingId: str, sessionId: str) -> bool:
        current = self.store.get(meetingId)
        return current is not None and current.sessionId == sessionId

    def _apply_status(self, session: BotSession, status: str, message: str = "") -> bool:
        """Move ``session`` to ``status``. Returns False when it already was there."""
        if session.status == status:
            return False
        if status not in TRANSITIONS[session.status]:
            raise InvalidTransitionError(f"Cannot move bot session from {session.status} to {status}")

        session.status = status
        if status == "recording" and session.startedAt is None:
            session.startedAt = utcnow()
        if session.is_terminal:
            session.completedAt = utcnow()
            if status == "failed":
                session.error = message or session.error
        logger.info("[BotSession] Meeting %s status: %s %s", session.meetingId, status, message)
        return True

    def _mirror(self, meetingId: str, status: str, message: str = "", error: Optional[str] = None) -> None:
        """Reflect a session status on the meeting. The meeting may not exist."""
        tracker = ProgressTracker(meetingId, self.meetings, self.notifier, table=BOT_STAGES)
        try:
            if status in MEETING_STATUS:
                self.meetings.set_status(meetingId, MEETING_STATUS[status], error)
            if status == "pending":
                tracker.record("bot_connecting", message or "Connecting bot to meeting")
            elif status == "bot_joining":
                tracker.record("bot_joining", message or "Bot is joining the meeting")
            elif status == "recording":
                tracker.record("bot_recording", message or "Bot is recording")
            elif status == "completed":
                tracker.record("completed", message or "Live transcript saved", progress=100)
            elif message:
                self.meetings.append_log(meetingId, ProcessingLogEntry(message=message))
        except PipelineError as e:
            logger.warning("[BotSession] Could not update meeting %s: %s", meetingId, e)

    def _emit_status(self, session: BotSession, **extra) -> None:
        self.notifier.notify(session.meetingId, STATUS_EVENT, {
            "meetingId": session.meetingId,
            "sessionId": session.sessionId,
            "status": session.status,
            **extra,
        })

    def _start_recording(self, session: BotSession) -> bool:
        if session.status in LIVE_STATUSES:
            return self._apply_status(session, "recording")
        return False

    # ---------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------
    def create(
        self,
        meetingId: str,
        *,
        userId: Optional[str] = None,
        meetingUrl: Optional[str] = None,
        botName: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> BotSession:
        """Open a live session. A live one for the same meeting is a conflict."""
        session = BotSession(
            sessionId=str(uuid.uuid4()),
            meetingId=meetingId,
            userId=userId,
            meetingUrl=meetingUrl,
            botName=botName or DEFAULT_BOT_NAME,
            maxDuration=duration or 120,
        )

        with self._lock:
            if not self.store.add(session):
                existing = self.store.get(meetingId)
                if existing is not None and not existing.is_terminal:
                    raise SessionConflictError(
                        f"Meeting {meetingId} already has a live session ({existing.status})"
                    )
                self.store.put(session)
            old = self._tokens.pop(meetingId, None)
            self._tokens[meetingId] = CancelToken()
        if old is not None:
            old.cancel()

        logger.info("[BotSession] Created session %s for meeting %s", session.sessionId, meetingId)
        self._mirror(meetingId, "pending")
        self._emit_status(session)
        return session

    def join(self, req: BotJoinRequest) -> BotSession:
        """Create the session and ask the bot service to send a bot in."""
        session = self.create(
            req.meetingId,
            userId=req.userId,
            meetingUrl=req.meetingUrl,
            botName=req.botName,
            duration=req.duration,
        )
        if self.bot_service is None:
            return session

        try:
            self.bot_service.join(req.meetingId, req.meetingUrl, session.maxDuration, session.botName)
        except PipelineError as e:
            logger.warning("[BotSession] Bot service unavailable for meeting %s: %s", req.meetingId, e)
            self.update_status(req.meetingId, "failed", "Bot service unavailable")
            raise

        return self.update_status(req.meetingId, "bot_joining")

    def stop(self, meetingId: str, reason: str = "user_requested") -> Dict[str, Any]:
        """Ask the bot to leave. The session waits for the bot's finalize call."""
        self._require(meetingId)
        if self.bot_service is None:
            return {}
        try:
            return self.bot_service.stop(meetingId, reason)
        except PipelineError:
            logger.warning("[BotSession] Failed to stop bot for meeting %s, dropping session", meetingId)
            self.cancel(meetingId)
            raise

    def update_status(self, meetingId: str, status: str, message: str = "") -> BotSession:
        with self._lock:
            session = self._require(meetingId)
            changed = self._apply_status(session, status, message)
            if changed:
                self.store.put(session)

        if changed:
            self._mirror(meetingId, status, message, error=message if status == "failed" else None)
            self._emit_status(session, message=message)
        return session

    def cancel(self, meetingId: str) -> bool:
        """
        Drop the session and its buffers. Calls already in flight are
        aborted where possible; their late results are discarded.
        """
        with self._lock:
            session = self.store.get(meetingId)
            token = self._tokens.pop(meetingId, None)
            removed = self.store.delete(meetingId)
        if token is not None:
            token.cancel()
        if session is None:
            return False

        logger.info("[BotSession] Session cancelled: %s", meetingId)
        self.notifier.notify(meetingId, STATUS_EVENT, {
            "meetingId": meetingId,
            "sessionId": session.sessionId,
            "status": "cancelled",
        })
        return removed

    def sweep(self) -> List[str]:
        """Evict sessions past the maximum age, whatever their status."""
        stale = self.store.sweep()
        with self._lock:
            # stores may also evict on read or by TTL
            gone = [m for m in self._tokens if m in stale or self.store.get(m) is None]
            tokens = [self._tokens.pop(m) for m in gone]
        for token in tokens:
            token.cancel()
        for meetingId in stale:
            logger.info("[BotSession] Cleaning up stale session: %s", meetingId)
        return stale

    # ---------------------------------------------------
    # Ingestion
    # ---------------------------------------------------
    def _index_chunk(self, meetingId: str, chunkIndex: int, size: int):
        """Record one chunk on the session. Returns (session, token), or (None, None) when ignored."""
        with self._lock:
            session = self._require(meetingId)
            if session.status not in LIVE_STATUSES and session.status != "recording":
                logger.info("[BotSession] Ignoring chunk %d for %s session %s",
                            chunkIndex, session.status, session.sessionId)
                return None, None

            session.audioChunks.append(AudioChunkInfo(index=chunkIndex, size=size))
            session.totalChunksReceived = len(session.audioChunks)
            started = self._start_recording(session)
            self.store.put(session)
            token = self._token(meetingId)

        if started:
            self._mirror(meetingId, "recording")
            self._emit_status(session)
        return session, token

    def _apply_preview(self, meetingId: str, sessionId: str, chunkIndex: int, data: Dict[str, Any]) -> Dict[str, Any]:
        text = (data.get("text") or "").strip()
        with self._lock:
            session = self.store.get(meetingId)
            if session is None or session.sessionId != sessionId:
                logger.info("[BotSession] Discarding late preview for chunk %d of session %s", chunkIndex, sessionId)
                return {"success": False, "discarded": True, "chunkIndex": chunkIndex}

            if text:
                session.previewTexts.append(PreviewText(
                    index=chunkIndex,
                    text=text,
                    processingTime=data.get("processing_time"),
                ))
                session.previewTexts.sort(key=lambda p: p.index)
                session.accumulatedText = " ".join(p.text for p in session.previewTexts)
                self.store.put(session)

        if text:
            self.notifier.notify(meetingId, PREVIEW_EVENT, {
                "meetingId": meetingId,
                "chunkIndex": chunkIndex,
                "text": text,
                "accumulatedText": session.accumulatedText,
            })

        return {
            "success": True,
            "chunkIndex": chunkIndex,
            "text": text,
            "processingTime": data.get("processing_time"),
            "accumulatedText": session.accumulatedText,
        }

    async def ingest_audio_chunk(
        self,
        meetingId: str,
        audio: bytes,
        chunkIndex: int,
        *,
        preview: bool = True,
    ) -> Dict[str, Any]:
        """Index one chunk and request a quick text preview for it."""
        session, token = await asyncio.to_thread(self._index_chunk, meetingId, chunkIndex, len(audio))
        if session is None:
            return {"success": False, "ignored": True, "chunkIndex": chunkIndex}

        if not preview:
            return {"success": True, "chunkIndex": chunkIndex}

        try:
            data = await self.client.preview_chunk(audio, session.sessionId, chunkIndex, cancel=token)
        except CallCancelledError:
            return {"success": False, "discarded": True, "chunkIndex": chunkIndex}
        except TranscriptionServiceError as e:
            logger.error("[BotSession] Chunk processing error: %s", e)
            return {"success": False, "error": str(e), "chunkIndex": chunkIndex}

        return await asyncio.to_thread(self._apply_preview, meetingId, session.sessionId, chunkIndex, data)

    def ingest_captions(self, meetingId: str, segments: List[CaptionSegment]) -> int:
        """Append scraped captions. Returns how many were accepted."""
        if not segments:
            return 0

        with self._lock:
            session = self._require(meetingId)
            if session.status not in LIVE_STATUSES and session.status != "recording":
                logger.info("[BotSession] Ignoring %d captions for %s session", len(segments), session.status)
                return 0
            session.captions.extend(segments)
            started = self._start_recording(session)
            self.store.put(session)

        if started:
            self._mirror(meetingId, "recording")
            self._emit_status(session)

        for caption in segments[-CAPTIONS_MIRRORED_TO_LOG:]:
            entry = ProcessingLogEntry(message=f"{caption.speaker}: {caption.text}", stage="bot_recording")
            try:
                self.meetings.append_log(meetingId, entry)
            except PipelineError as e:
                logger.warning("[BotSession] Could not log captions for meeting %s: %s", meetingId, e)
                break

        for caption in segments:
            self.notifier.notify(meetingId, CAPTION_EVENT, caption.model_dump())
        self._emit_status(
            session,
            segmentCount=len(segments),
            latestCaption=(segments[-1].text or "")[:100],
        )
        logger.info("[BotSession] Meeting %s received %d caption segments", meetingId, len(segments))
        return len(segments)

    def store_complete_audio(self, meetingId: str, audio: bytes) -> int:
        with self._lock:
            session = self._require(meetingId)
            if session.is_terminal:
                raise InvalidTransitionError(f"Session for meeting {meetingId} is already {session.status}")
            session.completeAudio = audio
            self.store.put(session)
        logger.info("[BotSession] Stored complete audio for meeting %s: %d bytes", meetingId, len(audio))
        return len(audio)

    # ---------------------------------------------------
    # Queries
    # ---------------------------------------------------
    def get(self, meetingId: str) -> Optional[BotSession]:
        return self.store.get(meetingId)

    def status(self, meetingId: str) -> Dict[str, Any]:
        return session_summary(self._require(meetingId))

    def preview(self, meetingId: str) -> Dict[str, Any]:
        session = self._require(meetingId)
        elapsed = 0
        if session.startedAt is not None:
            elapsed = int((utcnow() - session.startedAt).total_seconds())
        return {
            "meetingId": meetingId,
            "sessionId": session.sessionId,
            "status": session.status,
            "accumulatedText": session.accumulatedText,
            "chunksProcessed": len(session.previewTexts),
            "totalChunks": session.totalChunksReceived,
            "duration": elapsed,
        }

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [session_summary(s) for s in self.store.all()]

    # ---------------------------------------------------
    # Finalize
    # ---------------------------------------------------
    def _begin_finalize(self, meetingId: str, req: FinalizeRequest):
        """Move the session to processing. Returns (session, token); token is None for a no-op."""
        with self._lock:
            session = self._require(meetingId)
            if req.sessionId and req.sessionId != session.sessionId:
                raise SessionConflictError(
                    f"Session {req.sessionId} is not the live session for meeting {meetingId}"
                )
            if session.status in ("processing", "completed"):
                logger.info("[BotSession] Finalize for %s session %s is a no-op", session.status, session.sessionId)
                return session, None
            if session.status == "failed":
                raise InvalidTransitionError(f"Session for meeting {meetingId} has failed: {session.error}")

            if req.segments:
                # the bot sends the full caption list on finalize
                session.captions = list(req.segments)
            self._apply_status(session, "processing")
            self.store.put(session)
            token = self._token(meetingId)

        self._mirror(meetingId, "processing", "Finalizing live transcript")
        self._emit_status(session)
        return session, token

    def _fail_finalize(self, session: BotSession, error: Exception) -> None:
        meetingId = session.meetingId
        logger.error("[BotSession] Finalization error for meeting %s: %s", meetingId, error)
        with self._lock:
            if self._is_current(meetingId, session.sessionId):
                self._apply_status(session, "failed", str(error))
                self.store.put(session)
        self._mirror(meetingId, "failed", f"Error: {error}", error=str(error))
        self._emit_status(session, error=str(error))

    def _complete_finalize(self, session: BotSession, result: FinalizeResult) -> BotSession:
        meetingId = session.meetingId
        with self._lock:
            if not self._is_current(meetingId, session.sessionId):
                logger.info("[BotSession] Discarding late finalize result for session %s", session.sessionId)
                raise SessionNotFoundError(f"Session for meeting {meetingId} was cancelled during finalize")
            session.result = result
            session.accumulatedText = result.transcript
            session.completeAudio = None
            self._apply_status(session, "completed")
            self.store.put(session)

        self._persist(result)
        self._mirror(meetingId, "completed")
        self._emit_status(
            session,
            mode=result.mode,
            segmentCount=len(result.segments),
            duration=result.duration,
            transcript=result.transcript,
        )
        logger.info("[BotSession] Meeting %s finalized (%s, %d segments)", meetingId, result.mode, len(result.segments))
        return session

    async def finalize(self, meetingId: str, req: Optional[FinalizeRequest] = None) -> BotSession:
        """
        Produce the final transcript for a live session.

        Safe to repeat: a session that is already processing or completed is
        returned unchanged. Any failure while building the result leaves the
        session failed, never stuck in processing.
        """
        req = req or FinalizeRequest()

        session, token = await asyncio.to_thread(self._begin_finalize, meetingId, req)
        if token is None:
            return session

        started = time.monotonic()
        try:
            result = await self._build_result(session, req, token)
        except CallCancelledError:
            raise SessionNotFoundError(f"Session for meeting {meetingId} was cancelled during finalize")
        except PipelineError as e:
            await asyncio.to_thread(self._fail_finalize, session, e)
            raise
        except Exception as e:
            error = TranscriptionServiceError(f"Unusable finalize response: {e}")
            await asyncio.to_thread(self._fail_finalize, session, error)
            raise error from e

        if not result.processingTime:
            result.processingTime = round(time.monotonic() - started, 3)

        return await asyncio.to_thread(self._complete_finalize, session, result)

    async def _build_result(self, session: BotSession, req: FinalizeRequest, token: CancelToken) -> FinalizeResult:
        if session.completeAudio:
            data = await self.client.finalize_audio(
                session.completeAudio,
                session.sessionId,
                num_speakers=req.numSpeakers,
                language=req.language,
                enable_ai_notes=req.enableAiNotes,
                cancel=token,
            )
            segments = data.get("segments") or []
            stats = caption_fallback.speaker_stats([
                {
                    "speaker": s.get("speaker") or "Unknown",
                    "text": s.get("text") or "",
                    "start": float(s.get("start") or 0),
                    "end": float(s.get("end") or 0),
                }
                for s in segments
            ])
            speakers = data.get("speakers")
            if not isinstance(speakers, dict):
                speakers = {s.speaker: s.estimatedSeconds for s in stats}
            return FinalizeResult(
                meetingId=session.meetingId,
                sessionId=session.sessionId,
                mode="full_processing",
                transcript=data.get("transcript") or "",
                segments=segments,
                speakers=speakers,
                speakerStats=stats,
                numSpeakers=data.get("num_speakers") or len(stats),
                duration=data.get("duration") or req.duration or 0,
                language=data.get("language"),
                diarizationMethod=data.get("diarization_method"),
                aiNotes=data.get("ai_notes"),
                processingTime=data.get("processing_time") or 0,
            )

        if caption_fallback.usable_captions(session.captions):
            segments = caption_fallback.estimate_segments(session.captions)
            stats = caption_fallback.speaker_stats(segments)
            duration = req.duration or (segments[-1]["end"] if segments else 0)
            return FinalizeResult(
                meetingId=session.meetingId,
                sessionId=session.sessionId,
                mode="captions",
                transcript=caption_fallback.caption_transcript(session.captions),
                segments=segments,
                speakers={s.speaker: s.estimatedSeconds for s in stats},
                speakerStats=stats,
                numSpeakers=req.numSpeakers or len(stats),
                duration=duration,
                language=req.language,
                diarizationMethod="captions",
            )

        # nothing but live previews: one unattributed speaker
        elapsed = 0.0
        if session.startedAt is not None:
            elapsed = float(int((utcnow() - session.startedAt).total_seconds()))
        duration = req.duration or elapsed
        segments = [
            {
                "speaker": "SPEAKER_0",
                "text": p.text,
                "start": i * TEXT_ONLY_CHUNK_SECONDS,
                "end": (i + 1) * TEXT_ONLY_CHUNK_SECONDS,
            }
            for i, p in enumerate(session.previewTexts)
        ]
        return FinalizeResult(
            meetingId=session.meetingId,
            sessionId=session.sessionId,
            mode="text_only",
            transcript=session.accumulatedText,
            segments=segments,
            speakers={"SPEAKER_0": duration},
            speakerStats=caption_fallback.speaker_stats(segments),
            numSpeakers=1,
            duration=duration,
            language=req.language,
        )

    def _persist(self, result: FinalizeResult) -> None:
        fields: Dict[str, Any] = {
            "transcription": {
                "language": result.language,
                "transcript": result.transcript,
                "segments": result.segments,
                "speakers": [s.model_dump() for s in result.speakerStats],
                "summary": (result.aiNotes or {}).get("summary", ""),
                "highlights": (result.aiNotes or {}).get("highlights", {}),
                "conclusion": (result.aiNotes or {}).get("conclusion", ""),
                "diarizationMethod": result.diarizationMethod,
                "numSpeakers": result.numSpeakers,
                "processingTime": result.processingTime,
            },
            "summarySnippet": result.transcript[:200],
            "duration": int(result.duration or 0),
            "endedAt": utcnow(),
        }
        if result.speakerStats:
            fields["participants"] = len(result.speakerStats)
        try:
            self.meetings.update_fields(result.meetingId, **fields)
        except PipelineError as e:
            logger.warning("[BotSession] Meeting %s not updated with live transcript: %s", result.meetingId, e)

    # ---------------------------------------------------
    # AI analysis (background)
    # ---------------------------------------------------
    @staticmethod
    def needs_analysis(session: BotSession) -> bool:
        result = session.result
        return (
            result is not None
            and result.mode != "full_processing"
            and len(result.transcript) > ANALYSIS_MIN_CHARS
        )

    def claim_analysis(self, session: BotSession) -> bool:
        """True exactly once per finalized session that should get AI notes."""
        if not self.needs_analysis(session):
            return False
        with self._lock:
            current = self.store.get(session.meetingId)
            if current is None or current.sessionId != session.sessionId or current.analysisClaimedAt is not None:
                return False
            current.analysisClaimedAt = utcnow()
            self.store.put(current)
        session.analysisClaimedAt = current.analysisClaimedAt
        return True

    async def run_ai_analysis(self, meetingId: str, transcript: str) -> bool:
        """Merge AI notes into the meeting. Never touches the finalized session."""
        try:
            logger.info("[BotSession] Starting AI analysis for meeting %s", meetingId)
            ai = await self.client.analyze(transcript)

            fields: Dict[str, Any] = {}
            for key in ("summary", "highlights", "conclusion"):
                if ai.get(key):
                    fields[f"transcription.{key}"] = ai[key]
            items = ai.get("actionItems") or ai.get("action_items")
            if isinstance(items, list):
                fields["actionItems"] = action_items([
                    {**i, "assigneeName": i.get("assignee") or i.get("assigneeName")}
                    for i in items if isinstance(i, dict)
                ])
            if ai.get("suggestedTitle"):
                fields["suggestedTitle"] = ai["suggestedTitle"]
            if ai.get("summary"):
                fields["summarySnippet"] = str(ai["summary"])[:200]

            if fields:
                await asyncio.to_thread(self.meetings.update_fields, meetingId, **fields)
        except Exception as e:
            logger.error("[BotSession] AI analysis failed for meeting %s: %s", meetingId, e)
            return False

        await asyncio.to_thread(self.notifier.notify, meetingId, STATUS_EVENT, {
            "meetingId": meetingId,
            "status": "ai_completed",
            "hasSummary": bool(ai.get("summary")),
            "actionItemsCount": len(fields.get("actionItems", [])),
        })
        logger.info("[BotSession] AI analysis completed for meeting %s", meetingId)
        return True


# -------------------------------------------------
# Background sweeper
# -------------------------------------------------
class SessionSweeper:
    """Daemon thread that evicts stale sessions on a fixed interval."""

    def __init__(self, manager: BotSessionManager, *, interval: float = BOT_SESSION_SWEEP_MINUTES * 60):
        self._manager = manager
        self._interval = interval
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread is not None:
            logger.warning("SessionSweeper already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._sweep_loop, name="SessionSweeper", daemon=True)
        self._thread.start()
        logger.info("SessionSweeper started (every %.0fs)", self._interval)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=5.0)
        self._thread = None
        logger.info("SessionSweeper stopped")

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                removed = self._manager.sweep()
                if removed:
                    logger.info("SessionSweeper evicted %d sessions", len(removed))
            except Exception:
                logger.exception("SessionSweeper error")