# transcribe_pipeline/schemas/bot.py
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal

from transcribe_pipeline.schemas.meeting import utcnow

BotSessionStatus = Literal[
    "pending",
    "bot_joining",
    "bot_in_meeting",
    "recording",
    "processing",
    "completed",
    "failed",
]

TERMINAL_STATUSES = frozenset({"completed", "failed"})


class AudioChunkInfo(BaseModel):
    index: int
    size: int
    timestamp: datetime = Field(default_factory=utcnow)


class PreviewText(BaseModel):
    index: int
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    processingTime: Optional[float] = None


class CaptionSegment(BaseModel):
    speaker: str = "Unknown"
    text: str = ""
    start: Optional[float] = None
    end: Optional[float] = None


class SpeakerStat(BaseModel):
    speaker: str
    words: int
    talks: int
    estimatedSeconds: float
    percentage: float


class FinalizeResult(BaseModel):
    meetingId: str
    sessionId: str
    mode: Literal["full_processing", "captions", "text_only"]
    transcript: str
    segments: List[Dict[str, Any]] = Field(default_factory=list)
    speakers: Dict[str, float] = Field(default_factory=dict)
    speakerStats: List[SpeakerStat] = Field(default_factory=list)
    numSpeakers: int = 0
    duration: float = 0
    language: Optional[str] = None
    diarizationMethod: Optional[str] = None
    aiNotes: Optional[Dict[str, Any]] = None
    processingTime: float = 0


class BotSession(BaseModel):
    # complete audio is carried base64 encoded when the session is stored as JSON
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    sessionId: str
    meetingId: str
    userId: Optional[str] = None
    meetingUrl: Optional[str] = None
    botName: str = "Meeting Bot"
    maxDuration: int = 120  # minutes

    status: BotSessionStatus = "pending"

    audioChunks: List[AudioChunkInfo] = Field(default_factory=list)
    totalChunksReceived: int = 0
    previewTexts: List[PreviewText] = Field(default_factory=list)
    accumulatedText: str = ""
    captions: List[CaptionSegment] = Field(default_factory=list)
    completeAudio: Optional[bytes] = None

    result: Optional[FinalizeResult] = None
    error: Optional[str] = None

    createdAt: datetime = Field(default_factory=utcnow)
    startedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    analysisClaimedAt: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# --------------------------------------------------
# Request bodies
# --------------------------------------------------
class BotJoinRequest(BaseModel):
    meetingId: str
    meetingUrl: str
    userId: Optional[str] = None
    duration: Optional[int] = None
    botName: Optional[str] = None


class BotStopRequest(BaseModel):
    reason: str = "user_requested"


class BotStateUpdate(BaseModel):
    status: BotSessionStatus
    message: str = ""


class SegmentsRequest(BaseModel):
    segments: Optional[List[CaptionSegment]] = None


class FinalizeRequest(BaseModel):
    sessionId: Optional[str] = None
    segments: Optional[List[CaptionSegment]] = None
    duration: Optional[float] = None
    numSpeakers: Optional[int] = None
    language: Optional[str] = None
    enableAiNotes: bool = True
