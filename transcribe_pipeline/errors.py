"""Failure taxonomy for the processing pipeline.

The worker decides retry vs. terminal failure purely from the exception
class: ``TransientError`` consumes an attempt and is retried with backoff,
``ValidationError`` fails the job immediately since retrying cannot help.
"""


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


# -------------------------------------------------
# Transient (retried)
# -------------------------------------------------
class TransientError(PipelineError):
    pass


class TranscriptionServiceError(TransientError):
    """The external transcription service failed or returned garbage."""


class StorageError(TransientError):
    pass


class JobTimeoutError(TransientError):
    pass


# -------------------------------------------------
# Validation (never retried)
# -------------------------------------------------
class ValidationError(PipelineError):
    pass


class InvalidResourceIdError(ValidationError):
    pass


class MeetingNotFoundError(ValidationError):
    pass


class ArtifactNotFoundError(ValidationError):
    pass


# -------------------------------------------------
# Misc
# -------------------------------------------------
class QuarantineError(PipelineError):
    """Copy into quarantine failed. The original artifact is untouched."""


class CallCancelledError(PipelineError):
    pass


# -------------------------------------------------
# Live capture
# -------------------------------------------------
class SessionNotFoundError(PipelineError):
    pass


class SessionConflictError(PipelineError):
    pass


class InvalidTransitionError(PipelineError):
    pass


class BotServiceUnavailableError(PipelineError):
    """The meeting bot service could not be reached or refused the request."""


def is_retryable(exc: BaseException) -> bool:
    """Validation failures are terminal; anything else is worth another attempt."""
    return not isinstance(exc, ValidationError)
