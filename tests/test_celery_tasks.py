"""Celery task wrapper and dispatcher, run through the eager local app."""
import pytest

from transcribe_pipeline import wiring
from transcribe_pipeline.repos.redis_jobs import InMemoryJobRepo, job_id_for
from transcribe_pipeline.schemas.job import JobRecord
from transcribe_pipeline.workers.transcription_task import (
    CeleryDispatcher,
    broker_priority,
    reap_finished_jobs,
    transcribe_meeting,
)
from transcribe_pipeline.workers.transcription_worker import JobOutcome


class ScriptedWorker:
    def __init__(self, *states):
        self.states = list(states)
        self.runs = []

    def run(self, jobId):
        self.runs.append(jobId)
        state = self.states.pop(0)
        delay = 5.0 if state == "retry" else 0.0
        return JobOutcome(jobId, "M1", state, delay=delay, error="boom" if state != "completed" else None)


@pytest.fixture
def scripted(monkeypatch):
    def _install(*states):
        worker = ScriptedWorker(*states)
        monkeypatch.setattr(wiring, "worker", lambda: worker)
        return worker

    return _install


def test_broker_priority_mapping():
    assert broker_priority(1) == 0
    assert broker_priority(5) == 4
    assert broker_priority(10) == 9
    assert broker_priority(42) == 9


def test_dispatcher_uses_job_id_as_task_id(monkeypatch):
    sent = []
    monkeypatch.setattr(transcribe_meeting, "apply_async", lambda **kwargs: sent.append(kwargs))

    record = JobRecord(jobId=job_id_for("M1"), meetingId="M1", priority=2, queuedAt=0)
    CeleryDispatcher().dispatch(record)

    assert sent == [{
        "kwargs": {"jobId": "transcription-M1", "meetingId": "M1"},
        "task_id": "transcription-M1",
        "priority": 1,
    }]


def test_task_returns_outcome(scripted):
    worker = scripted("completed")

    result = transcribe_meeting.apply(kwargs={"jobId": "transcription-M1", "meetingId": "M1"}).get()

    assert worker.runs == ["transcription-M1"]
    assert result == {
        "jobId": "transcription-M1",
        "meetingId": "M1",
        "state": "completed",
        "error": None,
        "quarantinePath": None,
    }


def test_task_reschedules_retry_outcomes(scripted):
    worker = scripted("retry", "retry", "completed")

    result = transcribe_meeting.apply(kwargs={"jobId": "transcription-M1", "meetingId": "M1"}).get()

    assert worker.runs == ["transcription-M1"] * 3
    assert result["state"] == "completed"


def test_task_stops_on_terminal_failure(scripted):
    worker = scripted("retry", "failed")

    result = transcribe_meeting.apply(kwargs={"jobId": "transcription-M1", "meetingId": "M1"}).get()

    assert len(worker.runs) == 2
    assert result["state"] == "failed"
    assert result["error"] == "boom"


def test_reap_task_uses_job_repo(monkeypatch):
    repo = InMemoryJobRepo(retention={"completed": (0, 3600), "failed": (10, 60)})
    repo.create(JobRecord(jobId=job_id_for("M1"), meetingId="M1", queuedAt=0))
    repo.update(job_id_for("M1"), state="completed", finishedAt=1.0)
    monkeypatch.setattr(wiring, "job_repo", lambda: repo)

    assert reap_finished_jobs.apply().get() == 1
    assert repo.get(job_id_for("M1")) is None
