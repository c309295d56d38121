import asyncio
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile

from transcribe_pipeline import wiring
from transcribe_pipeline.config import API_PREFIX
from transcribe_pipeline.schemas.bot import (
    BotJoinRequest,
    BotStateUpdate,
    BotStopRequest,
    FinalizeRequest,
    SegmentsRequest,
)
from transcribe_pipeline.schemas.job import JobOptions, JobStatus, SubmitResponse
from transcribe_pipeline.services.job_queue import validate_meeting_id

router = APIRouter(prefix=API_PREFIX)


# --------------------------------------------------
# Submit transcription
# --------------------------------------------------
@router.post("/meetings/{meetingId}/transcribe", status_code=202, response_model=SubmitResponse)
def submit_transcription(
    meetingId: str,
    options: Optional[JobOptions] = None,
    queue=Depends(wiring.job_queue),
    meetings=Depends(wiring.meeting_repo),
):
    meetingId = validate_meeting_id(meetingId)

    meeting = meetings.get(meetingId)
    if meeting is None:
        raise HTTPException(status_code=404, detail="Meeting not found")
    if meeting.originalFile is None:
        raise HTTPException(status_code=400, detail="Meeting has no recording to transcribe")

    handle = queue.submit(meetingId, options)

    return SubmitResponse(jobId=handle.jobId, meetingId=handle.meetingId, status=handle.state)


# --------------------------------------------------
# Job Status
# --------------------------------------------------
@router.get("/jobs/{jobId}", response_model=JobStatus)
def job_status(jobId: str, queue=Depends(wiring.job_queue)):
    status = queue.status(jobId)

    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")

    return status


@router.get("/meetings/{meetingId}/processing")
def processing_state(meetingId: str, meetings=Depends(wiring.meeting_repo)):
    meeting = meetings.get(meetingId)
    if meeting is None:
        raise HTTPException(status_code=404, detail="Meeting not found")

    logs = meeting.processingLogs
    with_progress = [entry for entry in logs if entry.progress is not None]

    return {
        "meetingId": meeting.id,
        "status": meeting.status,
        "retryCount": meeting.retryCount,
        "errorMessage": meeting.errorMessage,
        "processing": meeting.processing,
        "progress": with_progress[-1].progress if with_progress else 0,
        "latestLog": logs[-1] if logs else None,
    }


# --------------------------------------------------
# Live capture (bot)
# --------------------------------------------------
@router.post("/bot/join")
def bot_join(req: BotJoinRequest, bots=Depends(wiring.bot_sessions)):
    validate_meeting_id(req.meetingId)
    session = bots.join(req)

    return {
        "sessionId": session.sessionId,
        "meetingId": session.meetingId,
        "status": session.status,
    }


@router.post("/bot/{meetingId}/stop")
def bot_stop(meetingId: str, req: Optional[BotStopRequest] = None, bots=Depends(wiring.bot_sessions)):
    data = bots.stop(meetingId, (req or BotStopRequest()).reason)
    return {"meetingId": meetingId, "stopped": True, "botService": data}


@router.get("/bot/sessions")
def bot_sessions(bots=Depends(wiring.bot_sessions)):
    sessions = bots.list_sessions()
    return {"sessions": sessions, "count": len(sessions)}


@router.get("/bot/{meetingId}/status")
def bot_status(meetingId: str, bots=Depends(wiring.bot_sessions)):
    return bots.status(meetingId)


@router.post("/bot/{meetingId}/state")
def bot_state(meetingId: str, req: BotStateUpdate, bots=Depends(wiring.bot_sessions)):
    session = bots.update_status(meetingId, req.status, req.message)
    return {"meetingId": meetingId, "sessionId": session.sessionId, "status": session.status}


@router.post("/bot/{meetingId}/audio-chunk")
async def bot_audio_chunk(
    meetingId: str,
    file: UploadFile = File(...),
    chunkIndex: int = Form(...),
    bots=Depends(wiring.bot_sessions),
):
    audio = await file.read()
    if not audio:
        raise HTTPException(status_code=400, detail="Empty audio chunk")

    return await bots.ingest_audio_chunk(meetingId, audio, chunkIndex)


@router.post("/bot/{meetingId}/complete-audio")
async def bot_complete_audio(
    meetingId: str,
    file: UploadFile = File(...),
    bots=Depends(wiring.bot_sessions),
):
    audio = await file.read()
    if not audio:
        raise HTTPException(status_code=400, detail="Empty recording")

    size = await asyncio.to_thread(bots.store_complete_audio, meetingId, audio)
    return {"meetingId": meetingId, "size": size}


@router.post("/bot/{meetingId}/segments")
def bot_segments(meetingId: str, req: SegmentsRequest, bots=Depends(wiring.bot_sessions)):
    received = bots.ingest_captions(meetingId, req.segments or [])
    return {"meetingId": meetingId, "received": received}


@router.get("/bot/{meetingId}/preview")
def bot_preview(meetingId: str, bots=Depends(wiring.bot_sessions)):
    return bots.preview(meetingId)


@router.post("/bot/{meetingId}/finalize")
async def bot_finalize(
    meetingId: str,
    background: BackgroundTasks,
    req: Optional[FinalizeRequest] = None,
    bots=Depends(wiring.bot_sessions),
):
    session = await bots.finalize(meetingId, req)

    if await asyncio.to_thread(bots.claim_analysis, session):
        background.add_task(bots.run_ai_analysis, meetingId, session.result.transcript)

    return {
        "meetingId": meetingId,
        "sessionId": session.sessionId,
        "status": session.status,
        "result": session.result,
    }


@router.post("/bot/{meetingId}/cancel")
def bot_cancel(meetingId: str, bots=Depends(wiring.bot_sessions)):
    if not bots.cancel(meetingId):
        raise HTTPException(status_code=404, detail="Bot session not found")
    return {"meetingId": meetingId, "cancelled": True}
