# transcribe_pipeline/schemas/progress.py
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, Union

from transcribe_pipeline.schemas.meeting import utcnow


class ProgressEvent(BaseModel):
    """Pushed to observers and mirrored as a processing log entry."""

    meetingId: str
    stage: str
    progress: int = Field(..., ge=0, le=100)
    message: str
    chunk: Optional[int] = None
    totalChunks: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)


# --------------------------------------------------
# Events streamed back by the transcription service
# --------------------------------------------------
class ServiceProgress(BaseModel):
    stage: str
    progress: Optional[float] = None
    message: str = ""
    chunk: Optional[int] = None
    total_chunks: Optional[int] = None


class ServiceTranscriptChunk(BaseModel):
    chunk_index: int
    text: Optional[str] = None


class ServiceComplete(BaseModel):
    result: Dict[str, Any]


class ServiceError(BaseModel):
    error: str


ServiceEvent = Union[ServiceProgress, ServiceTranscriptChunk, ServiceComplete, ServiceError]
