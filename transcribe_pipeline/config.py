import os
from dotenv import load_dotenv

load_dotenv()

# --------------------------------------------------
# App
# --------------------------------------------------
APP_NAME = "Meeting Transcription Pipeline"
API_PREFIX = "/v1"

ENV = os.getenv("ENV", "local")  # local | production
IS_PROD = ENV == "production"

# --------------------------------------------------
# Feature Flags
# --------------------------------------------------
USE_CELERY = os.getenv("USE_CELERY", "false").lower() == "true"

# --------------------------------------------------
# Redis / Celery
# --------------------------------------------------
REDIS_URL = os.getenv("REDIS_URL")
REDIS_PREFIX = os.getenv("REDIS_PREFIX", "transcription:")

if USE_CELERY and not REDIS_URL:
    raise RuntimeError("REDIS_URL is required when USE_CELERY=true")

# --------------------------------------------------
# Firestore (OPTIONAL)
# --------------------------------------------------
FIRESTORE_PROJECT = os.getenv("FIRESTORE_PROJECT")
FIRESTORE_COLLECTION = os.getenv("FIRESTORE_COLLECTION", "meetings")

if IS_PROD and not FIRESTORE_PROJECT:
    raise RuntimeError("FIRESTORE_PROJECT is required in production")

# --------------------------------------------------
# Object storage
# --------------------------------------------------
STORAGE_PATH = os.getenv("STORAGE_PATH", os.path.join(os.getcwd(), "storage"))
RECORDINGS_NAMESPACE = os.getenv("RECORDINGS_NAMESPACE", "recordings")
QUARANTINE_NAMESPACE = os.getenv("QUARANTINE_NAMESPACE", "quarantine")

# --------------------------------------------------
# External services
# --------------------------------------------------
WHISPERX_API_URL = os.getenv("WHISPERX_API_URL", "http://localhost:5005")
WHISPERX_TIMEOUT_SECONDS = int(os.getenv("WHISPERX_TIMEOUT_SECONDS", "1800"))
PREVIEW_TIMEOUT_SECONDS = int(os.getenv("PREVIEW_TIMEOUT_SECONDS", "30"))
BOT_SERVICE_URL = os.getenv("BOT_SERVICE_URL", "http://localhost:3001")

# --------------------------------------------------
# Queue policy
# --------------------------------------------------
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY_SECONDS = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "5"))
JOB_TIMEOUT_SECONDS = int(os.getenv("JOB_TIMEOUT_SECONDS", "900"))  # 15 minutes
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "2"))
WORKER_RATE_LIMIT = os.getenv("WORKER_RATE_LIMIT", "5/m")
DEFAULT_PRIORITY = int(os.getenv("DEFAULT_PRIORITY", "5"))

KEEP_COMPLETED_COUNT = int(os.getenv("KEEP_COMPLETED_COUNT", "100"))
KEEP_COMPLETED_SECONDS = int(os.getenv("KEEP_COMPLETED_SECONDS", str(60 * 60 * 24)))
KEEP_FAILED_COUNT = int(os.getenv("KEEP_FAILED_COUNT", "200"))
KEEP_FAILED_SECONDS = int(os.getenv("KEEP_FAILED_SECONDS", str(60 * 60 * 48)))

HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "15"))

# in-process broadcast keeps only this many recent messages
NOTIFIER_HISTORY = int(os.getenv("NOTIFIER_HISTORY", "1000"))

# --------------------------------------------------
# Live capture (bot sessions)
# --------------------------------------------------
BOT_SESSION_STORE = os.getenv("BOT_SESSION_STORE", "memory")  # memory | redis
BOT_SESSION_MAX_AGE_MINUTES = int(os.getenv("BOT_SESSION_MAX_AGE_MINUTES", "180"))
BOT_SESSION_SWEEP_MINUTES = int(os.getenv("BOT_SESSION_SWEEP_MINUTES", "30"))
CAPTION_WORDS_PER_SECOND = float(os.getenv("CAPTION_WORDS_PER_SECOND", "2.5"))

if BOT_SESSION_STORE == "redis" and not REDIS_URL:
    raise RuntimeError("REDIS_URL is required when BOT_SESSION_STORE=redis")

# --------------------------------------------------
# Logging
# --------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))

for _name, _value in (
    ("MAX_ATTEMPTS", MAX_ATTEMPTS),
    ("JOB_TIMEOUT_SECONDS", JOB_TIMEOUT_SECONDS),
    ("WORKER_CONCURRENCY", WORKER_CONCURRENCY),
    ("HEARTBEAT_INTERVAL_SECONDS", HEARTBEAT_INTERVAL_SECONDS),
    ("NOTIFIER_HISTORY", NOTIFIER_HISTORY),
    ("BOT_SESSION_MAX_AGE_MINUTES", BOT_SESSION_MAX_AGE_MINUTES),
):
    if _value <= 0:
        raise RuntimeError(f"{_name} must be > 0")
