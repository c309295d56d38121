# transcribe_pipeline/schemas/meeting.py
from datetime import datetime, timezone
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal

MeetingStatus = Literal[
    "pending",
    "processing",
    "bot_joining",
    "recording",
    "completed",
    "failed",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChunkInfo(BaseModel):
    current: int = 0
    total: int = 0
    chunkingEnabled: bool = False


class ProcessingState(BaseModel):
    """
    Progress record for one meeting.
    Written only by the worker that currently holds the job,
    always through partial updates.
    """

    jobId: Optional[str] = None
    queuedAt: Optional[datetime] = None
    processingStartedAt: Optional[datetime] = None
    lastUpdatedAt: Optional[datetime] = None
    lastHeartbeat: Optional[datetime] = None
    currentStage: Optional[str] = None
    chunkInfo: ChunkInfo = Field(default_factory=ChunkInfo)
    quarantinePath: Optional[str] = None


class ProcessingLogEntry(BaseModel):
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    progress: Optional[int] = None
    stage: Optional[str] = None


class OriginalFile(BaseModel):
    filename: str
    originalName: Optional[str] = None


class Meeting(BaseModel):
    id: str
    userId: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    status: MeetingStatus = "pending"
    errorMessage: Optional[str] = None

    originalFile: Optional[OriginalFile] = None

    retryCount: int = 0
    processing: ProcessingState = Field(default_factory=ProcessingState)
    processingLogs: List[ProcessingLogEntry] = Field(default_factory=list)

    transcription: Optional[Dict[str, Any]] = None
    summarySnippet: Optional[str] = None
    suggestedTitle: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    actionItems: List[Dict[str, Any]] = Field(default_factory=list)
    participants: Optional[int] = None
    duration: Optional[int] = None

    startedAt: Optional[datetime] = None
    endedAt: Optional[datetime] = None
