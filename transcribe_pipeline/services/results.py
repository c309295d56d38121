# transcribe_pipeline/services/results.py
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from transcribe_pipeline.schemas.meeting import Meeting, utcnow

SNIPPET_LENGTH = 200
DESCRIPTION_LENGTH = 500

PLACEHOLDER_MARKERS = ("Meeting", "Upload", "video_", "audio_")


def speaker_ranges(segments: List[Dict[str, Any]], speakers: List[str]) -> List[Dict[str, Any]]:
    """First start / last end per speaker, in the order the service listed them."""
    ranges = []
    for speaker in speakers:
        own = [s for s in segments if s.get("speaker") == speaker]
        if own:
            ranges.append({"speaker": speaker, "start": own[0].get("start"), "end": own[-1].get("end")})
    return ranges


def is_placeholder_title(meeting: Meeting) -> bool:
    title = meeting.title
    if not title:
        return True
    if any(marker in title for marker in PLACEHOLDER_MARKERS):
        return True
    original = meeting.originalFile.originalName if meeting.originalFile else None
    return bool(original and original.lower().startswith(title.lower()))


def description_from_summary(summary: str) -> str:
    first = next((line for line in summary.split("\n") if line.strip()), "")
    clean = first.replace("**", "").replace("__", "").replace("*", "")
    clean = re.sub(r"^#+\s", "", clean).strip()
    return clean[:DESCRIPTION_LENGTH]


def _parse_due_date(value) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError:
        return None


def action_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    shaped = []
    for item in items:
        if not isinstance(item, dict):
            continue
        due = _parse_due_date(item.get("dueDate")) or _parse_due_date(item.get("dueDateRaw"))
        shaped.append({
            "title": item.get("title") or item.get("text") or "Untitled Task",
            "description": item.get("description") or "",
            "priority": item.get("priority") or "medium",
            "dueDate": due.isoformat() if due else None,
            "dueDateRaw": item.get("dueDateRaw") or item.get("dueDate"),
            "assigneeName": item.get("assigneeName"),
            "labels": item.get("labels"),
            "status": "todo",
        })
    return shaped


def chunk_info(result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    chunking = (result.get("metadata") or {}).get("chunking")
    if not chunking:
        return None
    total = int(chunking.get("total_chunks") or 1)
    return {"current": total, "total": total, "chunkingEnabled": bool(chunking.get("chunking_used"))}


def shape_result(meeting: Meeting, result: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the partial update that stores a validated transcription result
    on ``meeting``. Only fields that should change are returned.
    """
    metadata = result.get("metadata") or {}
    segments = result.get("segments") or []
    summary = result.get("summary") or ""
    transcript = result.get("transcript") or ""
    ranges = speaker_ranges(segments, result.get("speakers") or [])

    fields: Dict[str, Any] = {
        "transcription": {
            "language": result.get("language"),
            "transcript": transcript,
            "segments": segments,
            "speakers": ranges,
            "summary": summary,
            "highlights": result.get("highlights") or {},
            "conclusion": result.get("conclusion") or "",
            "diarizationMethod": metadata.get("diarization_mode") or "light-heuristic",
            "numSpeakers": metadata.get("total_speakers") or 0,
            "processingTime": result.get("processingTime"),
        },
        "summarySnippet": str(summary or transcript)[:SNIPPET_LENGTH],
        "endedAt": utcnow(),
    }

    suggested = result.get("suggestedTitle")
    if suggested:
        fields["suggestedTitle"] = suggested
        if is_placeholder_title(meeting):
            fields["title"] = suggested

    if isinstance(result.get("tags"), list):
        fields["tags"] = result["tags"]

    if result.get("suggestedDescription"):
        fields["description"] = result["suggestedDescription"]
    elif not meeting.description and summary:
        fields["description"] = description_from_summary(summary)

    if isinstance(result.get("action_items"), list):
        fields["actionItems"] = action_items(result["action_items"])

    if ranges:
        fields["participants"] = len(ranges)

    if not meeting.startedAt:
        fields["startedAt"] = utcnow()

    duration = metadata.get("duration") or result.get("duration")
    if duration:
        fields["duration"] = math.ceil(duration)

    chunks = chunk_info(result)
    if chunks:
        fields["processing.chunkInfo"] = chunks

    return fields
