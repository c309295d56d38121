import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from transcribe_pipeline import wiring
from transcribe_pipeline.config import APP_NAME
from transcribe_pipeline.errors import (
    BotServiceUnavailableError,
    InvalidResourceIdError,
    InvalidTransitionError,
    PipelineError,
    SessionConflictError,
    SessionNotFoundError,
    TransientError,
    ValidationError,
)
from transcribe_pipeline.logging_setup import configure_logging
from transcribe_pipeline.routes import router
from transcribe_pipeline.services.bot_sessions import SessionSweeper

logger = logging.getLogger(__name__)

# most specific first
ERROR_STATUS = (
    (InvalidResourceIdError, 400),
    (ValidationError, 404),
    (SessionNotFoundError, 404),
    (SessionConflictError, 409),
    (InvalidTransitionError, 409),
    (BotServiceUnavailableError, 503),
    (TransientError, 503),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging("server")

    sweeper = SessionSweeper(wiring.bot_sessions())
    sweeper.start()
    try:
        yield
    finally:
        sweeper.stop()
        if wiring.job_queue.cache_info().currsize:
            wiring.job_queue().close()
        logger.info("%s shut down", APP_NAME)


app = FastAPI(
    title=APP_NAME,
    version="1.0.0",
    lifespan=lifespan,
)

# ---------------------------
# Routes
# ---------------------------
app.include_router(router)


# ---------------------------
# Pipeline errors -> HTTP
# ---------------------------
@app.exception_handler(PipelineError)
async def pipeline_error(request: Request, exc: PipelineError):
    for cls, status_code in ERROR_STATUS:
        if isinstance(exc, cls):
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    logger.exception("Unhandled pipeline error on %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


# ---------------------------
# Health check
# ---------------------------
@app.get("/", tags=["health"])
def health():
    return {
        "status": "ok",
        "service": APP_NAME
    }


@app.get("/health/transcription", tags=["health"])
async def transcription_health():
    return await wiring.transcription_client().health()
