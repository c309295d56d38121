"""Live capture sessions: state machine, ingestion and finalize paths."""
import asyncio
import threading
from datetime import timedelta

import httpx
import pytest

from conftest import FakeTranscriptionClient
from transcribe_pipeline.errors import (
    BotServiceUnavailableError,
    InvalidTransitionError,
    SessionConflictError,
    SessionNotFoundError,
    TranscriptionServiceError,
)
from transcribe_pipeline.repos.meeting_repo import InMemoryMeetingRepo
from transcribe_pipeline.schemas.bot import BotJoinRequest, CaptionSegment, FinalizeRequest
from transcribe_pipeline.schemas.meeting import Meeting, utcnow
from transcribe_pipeline.services.bot_sessions import (
    CAPTION_EVENT,
    PREVIEW_EVENT,
    STATUS_EVENT,
    BotSessionManager,
    InMemorySessionStore,
)
from transcribe_pipeline.services.transcription_client import TranscriptionClient

CAPTIONS = [
    CaptionSegment(speaker="Alice", text="Good morning everyone, let's get started."),
    CaptionSegment(speaker="Bob", text="Morning."),
    CaptionSegment(speaker="Alice", text="First item is the release date."),
    CaptionSegment(speaker="Carol", text="We are still waiting on QA sign off for two tickets."),
    CaptionSegment(speaker="Bob", text="I can chase those today."),
]


class FakeBotService:
    def __init__(self, fail=False):
        self.fail = fail
        self.joined = []
        self.stopped = []

    def join(self, meetingId, meetingUrl, duration, botName):
        if self.fail:
            raise BotServiceUnavailableError("connection refused")
        self.joined.append(meetingId)
        return {"success": True}

    def stop(self, meetingId, reason="user_requested"):
        if self.fail:
            raise BotServiceUnavailableError("connection refused")
        self.stopped.append((meetingId, reason))
        return {"success": True}


@pytest.fixture
def client():
    return FakeTranscriptionClient(previews={0: "hello there", 1: "general kenobi"})


@pytest.fixture
def manager(meetings, notifier, client):
    meetings.save(Meeting(id="M1", title="Standup"))
    return BotSessionManager(InMemorySessionStore(), meetings, notifier, client)


def statuses(notifier, meetingId="M1"):
    return [e["data"]["status"] for e in notifier.events(meetingId, STATUS_EVENT)]


def test_create_and_conflict(manager):
    session = manager.create("M1", meetingUrl="https://meet.example.com/abc")
    assert session.status == "pending"

    with pytest.raises(SessionConflictError):
        manager.create("M1")


def test_terminal_session_is_replaced(manager):
    first = manager.create("M1")
    manager.update_status("M1", "failed", "bot kicked")

    second = manager.create("M1")
    assert second.sessionId != first.sessionId
    assert manager.get("M1").status == "pending"


def test_join_calls_bot_service(meetings, notifier, client):
    meetings.save(Meeting(id="M1"))
    bots = FakeBotService()
    manager = BotSessionManager(InMemorySessionStore(), meetings, notifier, client, bot_service=bots)

    session = manager.join(BotJoinRequest(meetingId="M1", meetingUrl="https://meet.example.com/abc"))

    assert session.status == "bot_joining"
    assert bots.joined == ["M1"]
    assert meetings.get("M1").status == "bot_joining"


def test_join_failure_marks_session_failed(meetings, notifier, client):
    meetings.save(Meeting(id="M1"))
    manager = BotSessionManager(
        InMemorySessionStore(), meetings, notifier, client, bot_service=FakeBotService(fail=True)
    )

    with pytest.raises(BotServiceUnavailableError):
        manager.join(BotJoinRequest(meetingId="M1", meetingUrl="https://meet.example.com/abc"))

    session = manager.get("M1")
    assert session.status == "failed"
    assert session.error == "Bot service unavailable"
    assert meetings.get("M1").status == "failed"


def test_stop_failure_drops_session(meetings, notifier, client):
    meetings.save(Meeting(id="M1"))
    manager = BotSessionManager(InMemorySessionStore(), meetings, notifier, client, bot_service=FakeBotService())
    manager.create("M1")
    manager.bot_service.fail = True

    with pytest.raises(BotServiceUnavailableError):
        manager.stop("M1")
    assert manager.get("M1") is None


def test_status_transitions(manager, meetings):
    manager.create("M1")
    manager.update_status("M1", "bot_joining")
    manager.update_status("M1", "bot_in_meeting")
    session = manager.update_status("M1", "recording")

    assert session.startedAt is not None
    assert meetings.get("M1").status == "recording"

    with pytest.raises(InvalidTransitionError):
        manager.update_status("M1", "bot_joining")


def test_unknown_session(manager):
    with pytest.raises(SessionNotFoundError):
        manager.update_status("nope", "recording")
    with pytest.raises(SessionNotFoundError):
        manager.status("nope")
    assert manager.cancel("nope") is False


def test_audio_chunks_build_preview(manager, notifier, client):
    manager.create("M1")

    # out-of-order delivery still yields ordered text
    asyncio.run(manager.ingest_audio_chunk("M1", b"b" * 10, 1))
    response = asyncio.run(manager.ingest_audio_chunk("M1", b"a" * 10, 0))

    assert response["success"] is True
    assert response["accumulatedText"] == "hello there general kenobi"

    session = manager.get("M1")
    assert session.status == "recording"
    assert session.totalChunksReceived == 2
    assert [p.index for p in session.previewTexts] == [0, 1]

    previews = notifier.events("M1", PREVIEW_EVENT)
    assert [p["data"]["chunkIndex"] for p in previews] == [1, 0]

    preview = manager.preview("M1")
    assert preview["chunksProcessed"] == 2
    assert preview["totalChunks"] == 2


def test_late_preview_after_cancel_is_discarded(manager, notifier):
    manager.create("M1")

    class CancelsMidCall(FakeTranscriptionClient):
        async def preview_chunk(self, audio, sessionId, chunkIndex, cancel=None):
            manager.cancel("M1")
            return {"text": "too late"}

    manager.client = CancelsMidCall()
    response = asyncio.run(manager.ingest_audio_chunk("M1", b"x", 0))

    assert response["discarded"] is True
    assert manager.get("M1") is None
    assert notifier.events("M1", PREVIEW_EVENT) == []
    assert statuses(notifier)[-1] == "cancelled"


def test_cancel_aborts_in_flight_preview(meetings, notifier):
    meetings.save(Meeting(id="M1"))

    async def slow_handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"text": "never"})

    client = TranscriptionClient("http://whisperx.test", transport=httpx.MockTransport(slow_handler))
    manager = BotSessionManager(InMemorySessionStore(), meetings, notifier, client)
    manager.create("M1")

    async def scenario():
        task = asyncio.create_task(manager.ingest_audio_chunk("M1", b"audio", 0))
        await asyncio.sleep(0.05)
        assert manager.cancel("M1") is True
        return await asyncio.wait_for(task, timeout=2)

    response = asyncio.run(scenario())
    assert response == {"success": False, "discarded": True, "chunkIndex": 0}


def test_captions_are_mirrored_and_broadcast(manager, meetings, notifier):
    manager.create("M1")

    received = manager.ingest_captions("M1", CAPTIONS)

    assert received == 5
    assert manager.get("M1").status == "recording"
    assert len(notifier.events("M1", CAPTION_EVENT)) == 5

    logged = [e.message for e in meetings.get("M1").processingLogs if e.stage == "bot_recording"]
    assert logged[-3:] == [f"{c.speaker}: {c.text}" for c in CAPTIONS[-3:]]


def test_finalize_from_captions(manager, meetings):
    manager.create("M1")
    for caption in CAPTIONS:
        manager.ingest_captions("M1", [caption])

    session = asyncio.run(manager.finalize("M1"))

    result = session.result
    assert session.status == "completed"
    assert result.mode == "captions"
    assert result.transcript == "\n".join(f"{c.speaker}: {c.text}" for c in CAPTIONS)
    assert sum(s.percentage for s in result.speakerStats) == pytest.approx(100, abs=0.05)
    assert [s.speaker for s in result.speakerStats] == ["Alice", "Carol", "Bob"]
    assert result.numSpeakers == 3

    meeting = meetings.get("M1")
    assert meeting.status == "completed"
    assert meeting.transcription["transcript"] == result.transcript
    assert meeting.participants == 3


def test_finalize_segments_replace_captions(manager):
    manager.create("M1")
    manager.ingest_captions("M1", [CaptionSegment(speaker="Zed", text="draft")])

    req = FinalizeRequest(segments=CAPTIONS[:2], duration=42)
    session = asyncio.run(manager.finalize("M1", req))

    assert session.result.transcript.startswith("Alice:")
    assert "Zed" not in session.result.transcript
    assert session.result.duration == 42


def test_finalize_is_idempotent(manager, notifier):
    manager.create("M1")
    manager.ingest_captions("M1", CAPTIONS)

    first = asyncio.run(manager.finalize("M1"))
    second = asyncio.run(manager.finalize("M1"))

    assert second.sessionId == first.sessionId
    assert second.result == first.result
    assert statuses(notifier).count("completed") == 1


def test_finalize_rejects_other_session(manager):
    manager.create("M1")
    with pytest.raises(SessionConflictError):
        asyncio.run(manager.finalize("M1", FinalizeRequest(sessionId="someone-else")))


def test_finalize_with_complete_audio(manager, client, meetings):
    client.final = {
        "transcript": "Hi all. Hello.",
        "segments": [
            {"speaker": "SPEAKER_00", "text": "Hi all.", "start": 0, "end": 1.5},
            {"speaker": "SPEAKER_01", "text": "Hello.", "start": 1.5, "end": 2.0},
        ],
        "duration": 2.0,
        "language": "en",
        "diarization_method": "pyannote",
        "ai_notes": {"summary": "Greetings were exchanged."},
    }
    manager.create("M1")
    manager.store_complete_audio("M1", b"\x00" * 512)

    session = asyncio.run(manager.finalize("M1"))

    assert client.final_calls == 1
    assert session.result.mode == "full_processing"
    assert session.completeAudio is None
    assert manager.needs_analysis(session) is False
    assert meetings.get("M1").transcription["summary"] == "Greetings were exchanged."


def test_finalize_text_only(manager):
    manager.create("M1")
    asyncio.run(manager.ingest_audio_chunk("M1", b"a", 0))
    asyncio.run(manager.ingest_audio_chunk("M1", b"b", 1))

    session = asyncio.run(manager.finalize("M1"))

    result = session.result
    assert result.mode == "text_only"
    assert result.transcript == "hello there general kenobi"
    assert result.numSpeakers == 1
    assert [s["start"] for s in result.segments] == [0, 10]


def test_finalize_chunks_after_completion_are_ignored(manager):
    manager.create("M1")
    manager.ingest_captions("M1", CAPTIONS)
    asyncio.run(manager.finalize("M1"))

    response = asyncio.run(manager.ingest_audio_chunk("M1", b"late", 7))
    assert response["ignored"] is True
    assert manager.ingest_captions("M1", CAPTIONS) == 0


def test_ai_analysis_runs_once(manager, meetings, client, notifier):
    client.analysis = {
        "summary": "Release is blocked on QA.",
        "actionItems": [{"title": "Chase QA tickets", "assignee": "Bob"}],
        "suggestedTitle": "Release sync",
    }
    manager.create("M1")
    manager.ingest_captions("M1", CAPTIONS)
    session = asyncio.run(manager.finalize("M1"))

    assert manager.claim_analysis(session) is True
    assert manager.claim_analysis(session) is False

    assert asyncio.run(manager.run_ai_analysis("M1", session.result.transcript)) is True

    meeting = meetings.get("M1")
    assert meeting.transcription["summary"] == "Release is blocked on QA."
    assert meeting.transcription["transcript"] == session.result.transcript
    assert meeting.actionItems[0]["assigneeName"] == "Bob"
    assert meeting.suggestedTitle == "Release sync"
    assert statuses(notifier)[-1] == "ai_completed"


def test_ai_analysis_failure_is_contained(manager, client):
    async def broken(transcript):
        raise RuntimeError("analysis down")

    client.analyze = broken
    assert asyncio.run(manager.run_ai_analysis("M1", "x" * 100)) is False


def test_sweep_evicts_old_sessions(meetings, notifier, client):
    store = InMemorySessionStore(max_age_seconds=60)
    manager = BotSessionManager(store, meetings, notifier, client)
    manager.create("old")
    manager.create("new")

    old = store.get("old")
    old.createdAt = utcnow() - timedelta(minutes=5)
    store.put(old)

    assert manager.sweep() == ["old"]
    assert store.get("old") is None
    assert store.get("new") is not None


def test_list_sessions(manager):
    manager.create("M1")
    manager.create("M2")
    sessions = manager.list_sessions()
    assert {s["meetingId"] for s in sessions} == {"M1", "M2"}
    assert all(s["status"] == "pending" for s in sessions)


def test_malformed_finalize_response_fails_session(manager, client, meetings, notifier):
    # speakers must map names to seconds
    client.final = {"transcript": "Hi all.", "segments": [], "speakers": {"S0": {"duration": 1.0}}}
    manager.create("M1")
    manager.store_complete_audio("M1", b"\x00" * 64)

    with pytest.raises(TranscriptionServiceError):
        asyncio.run(manager.finalize("M1"))

    assert manager.get("M1").status == "failed"
    assert meetings.get("M1").status == "failed"
    assert statuses(notifier)[-1] == "failed"

    with pytest.raises(InvalidTransitionError):
        asyncio.run(manager.finalize("M1"))


def test_analysis_claim_lives_on_the_session(manager):
    manager.create("M1")
    manager.ingest_captions("M1", CAPTIONS)
    session = asyncio.run(manager.finalize("M1"))

    assert manager.claim_analysis(session) is True
    assert manager.get("M1").analysisClaimedAt is not None

    # a second manager over the same store sees the claim
    other = BotSessionManager(manager.store, manager.meetings, manager.notifier, manager.client)
    assert other.claim_analysis(manager.get("M1")) is False


def test_sweep_drops_tokens_of_evicted_sessions(meetings, notifier, client):
    store = InMemorySessionStore(max_age_seconds=60)
    manager = BotSessionManager(store, meetings, notifier, client)
    for meetingId in ("a", "b"):
        manager.create(meetingId)
        asyncio.run(manager.ingest_audio_chunk(meetingId, b"x", 0))

    for meetingId in ("a", "b"):
        aged = store.get(meetingId)
        aged.createdAt = utcnow() - timedelta(minutes=5)
        store.put(aged)
    # lazy eviction on read leaves nothing for the store sweep to report
    assert store.get("a") is None

    assert manager.sweep() == ["b"]
    assert manager._tokens == {}


class ThreadRecordingMeetings(InMemoryMeetingRepo):
    def __init__(self):
        super().__init__()
        self.threads = []

    def _update(self, meetingId, fields):
        self.threads.append(threading.current_thread())
        super()._update(meetingId, fields)

    def append_log(self, meetingId, entry):
        self.threads.append(threading.current_thread())
        super().append_log(meetingId, entry)


def test_finalize_writes_run_off_the_event_loop(notifier, client):
    meetings = ThreadRecordingMeetings()
    meetings.save(Meeting(id="M1"))
    client.analysis = {"summary": "Release is blocked on QA."}
    manager = BotSessionManager(InMemorySessionStore(), meetings, notifier, client)
    manager.create("M1")
    manager.ingest_captions("M1", CAPTIONS)
    meetings.threads.clear()

    session = asyncio.run(manager.finalize("M1"))
    asyncio.run(manager.run_ai_analysis("M1", session.result.transcript))

    assert meetings.threads
    assert threading.main_thread() not in meetings.threads
