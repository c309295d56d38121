import asyncio
import sys
from pathlib import Path

import pytest

# Ensure repo root is on sys.path so `import transcribe_pipeline...` works in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from transcribe_pipeline.repos.meeting_repo import InMemoryMeetingRepo  # noqa: E402
from transcribe_pipeline.repos.redis_jobs import InMemoryJobRepo  # noqa: E402
from transcribe_pipeline.schemas.meeting import Meeting, OriginalFile  # noqa: E402
from transcribe_pipeline.schemas.progress import ServiceComplete, ServiceError, ServiceProgress  # noqa: E402
from transcribe_pipeline.services.notifier import InMemoryNotifier  # noqa: E402
from transcribe_pipeline.services.storage import LocalObjectStorage  # noqa: E402


def valid_result(**overrides):
    result = {
        "transcript": "Alice: hello everyone. Bob: thanks for joining.",
        "segments": [
            {"speaker": "SPEAKER_00", "text": "hello everyone", "start": 0.0, "end": 2.5},
            {"speaker": "SPEAKER_01", "text": "thanks for joining", "start": 2.5, "end": 5.0},
        ],
        "speakers": ["SPEAKER_00", "SPEAKER_01"],
        "language": "en",
        "summary": "## Kickoff\nThe team agreed on the plan.",
        "metadata": {"duration": 4.2, "total_speakers": 2, "diarization_mode": "pyannote"},
    }
    result.update(overrides)
    return result


def chunk_events(total=4):
    return [
        ServiceProgress(stage="chunk_progress", chunk=i, total_chunks=total, message=f"chunk {i}/{total}")
        for i in range(total + 1)
    ]


class FakeTranscriptionClient:
    """
    Scripted stand-in for the transcription service.

    ``streams`` holds one entry per expected attempt: a list of service
    events to yield, or an exception to raise before yielding anything.
    """

    def __init__(self, streams=None, *, previews=None, final=None, analysis=None, stream_delay=0.0):
        self.streams = list(streams or [])
        self.previews = dict(previews or {})
        self.final = final
        self.analysis = analysis if analysis is not None else {}
        self.stream_delay = stream_delay

        self.stream_calls = 0
        self.preview_calls = []
        self.final_calls = 0
        self.analyze_calls = []

    async def stream_transcription(self, audio, filename, meetingId, *, num_speakers=0, enable_summary=True, cancel=None):
        self.stream_calls += 1
        script = self.streams.pop(0) if self.streams else []
        if self.stream_delay:
            await asyncio.sleep(self.stream_delay)
        if isinstance(script, Exception):
            raise script
        for event in script:
            yield event

    async def preview_chunk(self, audio, sessionId, chunkIndex, cancel=None):
        self.preview_calls.append(chunkIndex)
        return {"text": self.previews.get(chunkIndex, ""), "processing_time": 0.2}

    async def finalize_audio(self, audio, sessionId, *, num_speakers=None, language=None, enable_ai_notes=True, cancel=None):
        self.final_calls += 1
        return self.final or {}

    async def analyze(self, transcript):
        self.analyze_calls.append(transcript)
        return self.analysis

    async def health(self):
        return {"status": "healthy"}


def complete_stream(result=None, chunks=0):
    events = chunk_events(chunks) if chunks else []
    return events + [ServiceComplete(result=result or valid_result())]


def error_stream(message="model crashed"):
    return [ServiceProgress(stage="transcribing", progress=0.1), ServiceError(error=message)]


@pytest.fixture
def meetings():
    return InMemoryMeetingRepo()


@pytest.fixture
def jobs():
    return InMemoryJobRepo()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "storage")


@pytest.fixture
def make_meeting(meetings, storage):
    def _make(meetingId="M1", *, filename="m1.webm", audio=b"\x00" * 2048, **fields):
        original = OriginalFile(filename=filename, originalName="team-sync.webm") if filename else None
        meeting = Meeting(id=meetingId, title="Meeting recording", originalFile=original, **fields)
        meetings.save(meeting)
        if filename and audio is not None:
            storage.put(f"recordings/{filename}", audio)
        return meeting

    return _make
