"""Shaping of a finished transcription into meeting fields."""
from conftest import valid_result
from transcribe_pipeline.schemas.meeting import Meeting, OriginalFile, utcnow
from transcribe_pipeline.services.results import (
    action_items,
    description_from_summary,
    is_placeholder_title,
    shape_result,
    speaker_ranges,
)


def test_placeholder_titles():
    assert is_placeholder_title(Meeting(id="m"))
    assert is_placeholder_title(Meeting(id="m", title="Meeting 2026-10-18"))
    assert is_placeholder_title(Meeting(id="m", title="audio_1234"))
    assert is_placeholder_title(Meeting(
        id="m", title="board-review", originalFile=OriginalFile(filename="x.mp4", originalName="Board-Review.mp4"),
    ))
    assert not is_placeholder_title(Meeting(id="m", title="Quarterly review"))


def test_description_from_summary():
    assert description_from_summary("\n\n# **Budget** talk\nmore") == "Budget talk"
    assert len(description_from_summary("x" * 900)) == 500


def test_speaker_ranges():
    segments = [
        {"speaker": "A", "start": 0, "end": 1},
        {"speaker": "B", "start": 1, "end": 2},
        {"speaker": "A", "start": 2, "end": 3},
    ]
    assert speaker_ranges(segments, ["A", "B", "C"]) == [
        {"speaker": "A", "start": 0, "end": 3},
        {"speaker": "B", "start": 1, "end": 2},
    ]


def test_action_items_defaults():
    items = action_items([{"text": "Book room", "dueDate": "next friday"}, "junk"])
    assert items == [{
        "title": "Book room",
        "description": "",
        "priority": "medium",
        "dueDate": None,
        "dueDateRaw": "next friday",
        "assigneeName": None,
        "labels": None,
        "status": "todo",
    }]


def test_user_title_is_kept():
    meeting = Meeting(id="m", title="Quarterly review", description="Set by user", startedAt=utcnow())
    fields = shape_result(meeting, valid_result(suggestedTitle="Something else"))

    assert "title" not in fields
    assert "description" not in fields
    assert "startedAt" not in fields
    assert fields["suggestedTitle"] == "Something else"


def test_chunking_metadata_is_recorded():
    result = valid_result(metadata={"chunking": {"total_chunks": 6, "chunking_used": True}})
    fields = shape_result(Meeting(id="m"), result)

    assert fields["processing.chunkInfo"] == {"current": 6, "total": 6, "chunkingEnabled": True}
    assert fields["transcription"]["diarizationMethod"] == "light-heuristic"
    assert "duration" not in fields
