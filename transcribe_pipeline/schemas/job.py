# transcribe_pipeline/schemas/job.py
from pydantic import BaseModel, Field
from typing import Optional, Literal

JobState = Literal["queued", "active", "completed", "failed"]


class BackoffOptions(BaseModel):
    type: Literal["exponential", "fixed"] = "exponential"
    delay: float = Field(5.0, ge=0, description="Base delay in seconds")


class JobOptions(BaseModel):
    """Optional overrides accepted by submit()."""

    priority: Optional[int] = Field(None, ge=1, le=10)
    attempts: Optional[int] = Field(None, ge=1, le=10)
    backoff: Optional[BackoffOptions] = None


class JobRecord(BaseModel):
    jobId: str
    meetingId: str

    state: JobState = "queued"
    priority: int = 5
    progress: int = 0
    stage: Optional[str] = None

    attempts: int = 0
    maxAttempts: int = 3
    backoff: BackoffOptions = Field(default_factory=BackoffOptions)

    failedReason: Optional[str] = None

    # epoch seconds
    queuedAt: float
    processedAt: Optional[float] = None
    finishedAt: Optional[float] = None


class JobStatus(BaseModel):
    jobId: str
    meetingId: str

    state: JobState
    progressPercent: int = 0
    stage: Optional[str] = None
    attemptsMade: int = 0
    failedReason: Optional[str] = None

    queuedAt: Optional[float] = None
    processedAt: Optional[float] = None
    finishedAt: Optional[float] = None

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobStatus":
        return cls(
            jobId=record.jobId,
            meetingId=record.meetingId,
            state=record.state,
            progressPercent=record.progress,
            stage=record.stage,
            attemptsMade=record.attempts,
            failedReason=record.failedReason,
            queuedAt=record.queuedAt,
            processedAt=record.processedAt,
            finishedAt=record.finishedAt,
        )


class SubmitResponse(BaseModel):
    jobId: str
    meetingId: str
    status: JobState
