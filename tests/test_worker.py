"""End-to-end worker behaviour against in-memory collaborators."""
import threading

import pytest

from conftest import (
    FakeTranscriptionClient,
    chunk_events,
    complete_stream,
    error_stream,
    valid_result,
)
from transcribe_pipeline.errors import TranscriptionServiceError
from transcribe_pipeline.repos.redis_jobs import job_id_for
from transcribe_pipeline.schemas.progress import ServiceComplete, ServiceProgress
from transcribe_pipeline.services.job_queue import JobQueue
from transcribe_pipeline.services.notifier import HEARTBEAT_EVENT, PROGRESS_EVENT, InMemoryNotifier
from transcribe_pipeline.workers.transcription_worker import (
    COMPLETE_EVENT,
    FAILED_EVENT,
    TranscriptionWorker,
)


class InlineDispatcher:
    """Runs attempts on the caller's thread, honouring retry outcomes without sleeping."""

    def __init__(self):
        self.runner = None
        self.outcomes = []

    def dispatch(self, record):
        while True:
            outcome = self.runner(record.jobId)
            self.outcomes.append(outcome)
            if not outcome.retry:
                return

    def close(self):
        pass


@pytest.fixture
def pipeline(jobs, meetings, storage, notifier):
    def _build(client, **worker_kwargs):
        worker_kwargs.setdefault("heartbeat_interval", 0.01)
        worker = TranscriptionWorker(jobs, meetings, storage, client, notifier, **worker_kwargs)
        dispatcher = InlineDispatcher()
        dispatcher.runner = worker.run
        return JobQueue(jobs, dispatcher), worker, dispatcher

    return _build


def progress_values(notifier, meetingId, stage=None):
    events = notifier.events(meetingId, PROGRESS_EVENT)
    return [e["data"]["progress"] for e in events if stage is None or e["data"]["stage"] == stage]


def test_four_chunk_progress(pipeline, make_meeting, meetings, notifier):
    make_meeting("M1", audio=b"\x01" * (40 * 1024))
    client = FakeTranscriptionClient([complete_stream(chunks=4)])
    queue, _, dispatcher = pipeline(client)

    handle = queue.submit("M1")

    assert dispatcher.outcomes[-1].state == "completed"
    assert progress_values(notifier, "M1", "transcribing") == [20, 20, 32, 45, 57, 69]

    stages = [e["data"]["stage"] for e in notifier.events("M1", PROGRESS_EVENT)]
    assert stages.index("saving") > stages.index("transcribing")
    assert stages[-1] == "completed"

    values = progress_values(notifier, "M1")
    assert values == sorted(values)
    assert values[-1] == 100

    meeting = meetings.get("M1")
    assert meeting.status == "completed"
    assert meeting.processing.chunkInfo.total == 4
    assert meeting.processing.chunkInfo.chunkingEnabled is True

    status = queue.status(handle.jobId)
    assert status.state == "completed"
    assert status.progressPercent == 100
    assert status.attemptsMade == 1
    assert len(notifier.events("M1", COMPLETE_EVENT)) == 1


def test_every_progress_event_has_a_log_entry(pipeline, make_meeting, meetings, notifier):
    make_meeting("M1")
    queue, _, _ = pipeline(FakeTranscriptionClient([complete_stream(chunks=2)]))
    queue.submit("M1")

    logged = [entry.progress for entry in meetings.get("M1").processingLogs if entry.progress is not None]
    assert logged == progress_values(notifier, "M1")


def test_results_are_stored_on_the_meeting(pipeline, make_meeting, meetings):
    make_meeting("M1")
    result = valid_result(
        suggestedTitle="Q3 planning",
        tags=["planning"],
        action_items=[{"title": "Send notes", "dueDate": "2026-11-02"}],
    )
    queue, _, _ = pipeline(FakeTranscriptionClient([complete_stream(result)]))
    queue.submit("M1")

    meeting = meetings.get("M1")
    assert meeting.title == "Q3 planning"
    assert meeting.suggestedTitle == "Q3 planning"
    assert meeting.tags == ["planning"]
    assert meeting.description == "Kickoff"
    assert meeting.participants == 2
    assert meeting.duration == 5
    assert meeting.transcription["diarizationMethod"] == "pyannote"
    assert meeting.transcription["speakers"][1] == {"speaker": "SPEAKER_01", "start": 2.5, "end": 5.0}
    assert meeting.actionItems[0]["status"] == "todo"
    assert meeting.actionItems[0]["priority"] == "medium"
    assert meeting.summarySnippet.startswith("## Kickoff")


def test_two_failures_then_success(pipeline, make_meeting, meetings, notifier, storage):
    make_meeting("M1")
    client = FakeTranscriptionClient([error_stream(), error_stream(), complete_stream()])
    queue, _, dispatcher = pipeline(client)

    handle = queue.submit("M1")

    assert [o.state for o in dispatcher.outcomes] == ["retry", "retry", "completed"]
    assert [o.delay for o in dispatcher.outcomes[:2]] == [5, 10]

    status = queue.status(handle.jobId)
    assert status.state == "completed"
    assert status.attemptsMade == 3

    meeting = meetings.get("M1")
    assert meeting.status == "completed"
    assert meeting.retryCount == 2
    assert meeting.processing.quarantinePath is None
    assert storage.exists("recordings/m1.webm")

    failures = notifier.events("M1", FAILED_EVENT)
    assert [f["data"]["willRetry"] for f in failures] == [True, True]


def test_three_failures_quarantine_artifact(pipeline, make_meeting, meetings, notifier, storage):
    make_meeting("M1", audio=b"original audio")
    client = FakeTranscriptionClient([error_stream(), error_stream(), error_stream("still broken")])
    queue, _, dispatcher = pipeline(client)

    handle = queue.submit("M1")

    outcome = dispatcher.outcomes[-1]
    assert outcome.state == "failed"
    assert outcome.quarantinePath.startswith("quarantine/")
    assert storage.get(outcome.quarantinePath) == b"original audio"
    assert not storage.exists("recordings/m1.webm")

    status = queue.status(handle.jobId)
    assert status.state == "failed"
    assert status.attemptsMade == 3
    assert status.failedReason == "still broken"

    meeting = meetings.get("M1")
    assert meeting.status == "failed"
    assert meeting.errorMessage == "still broken"
    assert meeting.retryCount == 3
    assert meeting.processing.quarantinePath == outcome.quarantinePath
    messages = [entry.message for entry in meeting.processingLogs]
    assert "Processing failed after several attempts" in messages

    assert notifier.events("M1", FAILED_EVENT)[-1]["data"]["willRetry"] is False


def test_missing_recording_fails_without_retry(pipeline, make_meeting, meetings):
    make_meeting("M1", audio=None)
    client = FakeTranscriptionClient([complete_stream()])
    queue, _, dispatcher = pipeline(client)

    queue.submit("M1")

    assert [o.state for o in dispatcher.outcomes] == ["failed"]
    assert dispatcher.outcomes[0].quarantinePath is None
    assert client.stream_calls == 0

    meeting = meetings.get("M1")
    assert meeting.status == "failed"
    assert meeting.retryCount == 0


def test_missing_meeting_fails_job(pipeline, notifier):
    queue, _, dispatcher = pipeline(FakeTranscriptionClient())

    handle = queue.submit("ghost")

    assert dispatcher.outcomes[0].state == "failed"
    assert queue.status(handle.jobId).state == "failed"
    assert notifier.events("ghost", FAILED_EVENT)[0]["data"]["willRetry"] is False


def test_stream_without_complete_is_a_failure(pipeline, make_meeting):
    make_meeting("M1")
    ended_early = [ServiceProgress(stage="transcribing", progress=0.5)]
    client = FakeTranscriptionClient([ended_early, ended_early, ended_early])
    queue, _, dispatcher = pipeline(client)

    queue.submit("M1")

    assert [o.state for o in dispatcher.outcomes] == ["retry", "retry", "failed"]
    assert "without a result" in dispatcher.outcomes[-1].error


def test_invalid_result_is_retried(pipeline, make_meeting):
    make_meeting("M1")
    bad = [ServiceComplete(result={"transcript": "only text"})]
    client = FakeTranscriptionClient([bad, complete_stream()])
    queue, _, dispatcher = pipeline(client)

    queue.submit("M1")

    assert [o.state for o in dispatcher.outcomes] == ["retry", "completed"]
    assert "Invalid transcription result" in dispatcher.outcomes[0].error


def test_connection_error_is_retried(pipeline, make_meeting):
    make_meeting("M1")
    client = FakeTranscriptionClient([TranscriptionServiceError("connection refused"), complete_stream()])
    queue, _, dispatcher = pipeline(client)

    queue.submit("M1")

    assert [o.state for o in dispatcher.outcomes] == ["retry", "completed"]


def test_timeout_counts_as_failed_attempt(pipeline, make_meeting):
    make_meeting("M1")
    client = FakeTranscriptionClient([complete_stream()], stream_delay=1.0)
    queue, _, dispatcher = pipeline(client, timeout=0.05)

    queue.submit("M1", {"attempts": 1})

    assert dispatcher.outcomes[0].state == "failed"
    assert "timeout" in dispatcher.outcomes[0].error


def test_already_completed_meeting_is_skipped(jobs, meetings, storage, notifier, make_meeting):
    make_meeting("M1", status="completed")
    client = FakeTranscriptionClient([complete_stream()])
    worker = TranscriptionWorker(jobs, meetings, storage, client, notifier)
    queue = JobQueue(jobs, InlineDispatcher())
    queue.dispatcher.runner = worker.run

    queue.submit("M1")

    assert queue.dispatcher.outcomes[0].state == "skipped"
    assert client.stream_calls == 0
    assert jobs.get(job_id_for("M1")).state == "completed"


def test_reaped_job_is_skipped(jobs, meetings, storage, notifier):
    worker = TranscriptionWorker(jobs, meetings, storage, FakeTranscriptionClient(), notifier)
    outcome = worker.run("transcription-unknown")
    assert outcome.state == "skipped"
    assert outcome.retry is False


def test_heartbeat_is_emitted_while_transcribing(pipeline, make_meeting, meetings, notifier):
    make_meeting("M1")
    client = FakeTranscriptionClient([chunk_events(2) + [ServiceComplete(result=valid_result())]], stream_delay=0.1)
    queue, _, _ = pipeline(client, heartbeat_interval=0.01)

    queue.submit("M1")

    beats = notifier.events("M1", HEARTBEAT_EVENT)
    assert len(beats) >= 2
    assert {"stage", "workerId", "timestamp"} <= set(beats[0]["data"])
    assert any(b["data"]["stage"] == "transcribing" for b in beats)

    # heartbeats never touch the persisted stage
    assert meetings.get("M1").processing.currentStage == "completed"


class ThreadRecordingNotifier(InMemoryNotifier):
    def __init__(self):
        super().__init__()
        self.threads = {}

    def notify(self, meetingId, event, payload=None):
        self.threads.setdefault(event, set()).add(threading.current_thread())
        return super().notify(meetingId, event, payload)


def test_broadcasts_are_published_off_the_event_loop(jobs, meetings, storage, make_meeting):
    notifier = ThreadRecordingNotifier()
    make_meeting("M1")
    client = FakeTranscriptionClient([complete_stream()], stream_delay=0.05)
    worker = TranscriptionWorker(jobs, meetings, storage, client, notifier, heartbeat_interval=0.01)
    dispatcher = InlineDispatcher()
    dispatcher.runner = worker.run

    JobQueue(jobs, dispatcher).submit("M1")

    assert dispatcher.outcomes[-1].state == "completed"
    # attempts run on this thread, so the event loop does too
    for event in (HEARTBEAT_EVENT, PROGRESS_EVENT, COMPLETE_EVENT):
        assert notifier.threads[event]
        assert threading.main_thread() not in notifier.threads[event]
