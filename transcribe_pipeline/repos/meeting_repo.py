# transcribe_pipeline/repos/meeting_repo.py
import copy
import logging
import threading
from typing import Any, Dict, Optional

from transcribe_pipeline.config import FIRESTORE_PROJECT, FIRESTORE_COLLECTION
from transcribe_pipeline.errors import MeetingNotFoundError
from transcribe_pipeline.schemas.meeting import Meeting, ProcessingLogEntry, utcnow

logger = logging.getLogger(__name__)


class FirestoreMeetingRepo:
    """
    Meeting documents in Firestore.

    Every write below is a partial update (dotted field paths, ArrayUnion,
    transactions) so the worker and live-ingest writers never overwrite each
    other's fields.
    """

    def __init__(self, client=None, collection: str = FIRESTORE_COLLECTION):
        from google.cloud import firestore

        self._firestore = firestore
        self._db = client or firestore.Client(project=FIRESTORE_PROJECT)
        self._collection = collection

    def _ref(self, meetingId: str):
        return self._db.collection(self._collection).document(meetingId)

    def enabled(self) -> bool:
        return self._db is not None

    # ---------------------------------------------------
    # Reads / full writes
    # ---------------------------------------------------
    def get(self, meetingId: str) -> Optional[Meeting]:
        doc = self._ref(meetingId).get()
        if not doc.exists:
            return None
        return Meeting.model_validate({**doc.to_dict(), "id": doc.id})

    def save(self, meeting: Meeting) -> None:
        data = meeting.model_dump(exclude={"id"})
        self._ref(meeting.id).set(data)

    # ---------------------------------------------------
    # Partial updates
    # ---------------------------------------------------
    def _update(self, meetingId: str, fields: Dict[str, Any]) -> None:
        from google.api_core.exceptions import NotFound

        try:
            self._ref(meetingId).update(fields)
        except NotFound:
            raise MeetingNotFoundError(f"Meeting not found: {meetingId}")

    def update_fields(self, meetingId: str, **fields) -> None:
        self._update(meetingId, fields)

    def update_processing(self, meetingId: str, **fields) -> None:
        payload = {f"processing.{k}": v for k, v in fields.items()}
        payload["processing.lastUpdatedAt"] = utcnow()
        self._update(meetingId, payload)

    def start_processing(self, meetingId: str, jobId: str, reset_retries: bool = False) -> None:
        now = utcnow()
        payload = {
            "status": "processing",
            "errorMessage": None,
            "processing.jobId": jobId,
            "processing.processingStartedAt": now,
            "processing.lastUpdatedAt": now,
            "processing.lastHeartbeat": now,
            "processing.currentStage": "starting",
        }
        if reset_retries:
            payload["retryCount"] = 0
        self._update(meetingId, payload)

    def append_log(self, meetingId: str, entry: ProcessingLogEntry) -> None:
        payload = {
            "processingLogs": self._firestore.ArrayUnion([entry.model_dump()]),
            "processing.lastUpdatedAt": utcnow(),
        }
        if entry.stage:
            payload["processing.currentStage"] = entry.stage
        self._update(meetingId, payload)

    def increment_retry(self, meetingId: str) -> int:
        ref = self._ref(meetingId)
        transaction = self._db.transaction()

        @self._firestore.transactional
        def _bump(transaction, ref):
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                raise MeetingNotFoundError(f"Meeting not found: {meetingId}")
            count = int((snapshot.to_dict() or {}).get("retryCount") or 0) + 1
            transaction.update(ref, {"retryCount": count})
            return count

        return _bump(transaction, ref)

    def set_status(self, meetingId: str, status: str, error: Optional[str] = None) -> None:
        fields: Dict[str, Any] = {"status": status}
        if error is not None:
            fields["errorMessage"] = error
        self._update(meetingId, fields)


# -------------------------------------------------
# In-memory fallback (LOCAL DEV / TESTS)
# -------------------------------------------------
def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = value


class InMemoryMeetingRepo:
    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def enabled(self) -> bool:
        return True

    def get(self, meetingId: str) -> Optional[Meeting]:
        with self._lock:
            doc = self._docs.get(meetingId)
            if doc is None:
                return None
            return Meeting.model_validate({**copy.deepcopy(doc), "id": meetingId})

    def save(self, meeting: Meeting) -> None:
        with self._lock:
            self._docs[meeting.id] = meeting.model_dump(exclude={"id"})

    def _update(self, meetingId: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            doc = self._docs.get(meetingId)
            if doc is None:
                raise MeetingNotFoundError(f"Meeting not found: {meetingId}")
            for path, value in fields.items():
                _set_path(doc, path, value)

    def update_fields(self, meetingId: str, **fields) -> None:
        self._update(meetingId, fields)

    def update_processing(self, meetingId: str, **fields) -> None:
        payload = {f"processing.{k}": v for k, v in fields.items()}
        payload["processing.lastUpdatedAt"] = utcnow()
        self._update(meetingId, payload)

    def start_processing(self, meetingId: str, jobId: str, reset_retries: bool = False) -> None:
        now = utcnow()
        payload = {
            "status": "processing",
            "errorMessage": None,
            "processing.jobId": jobId,
            "processing.processingStartedAt": now,
            "processing.lastUpdatedAt": now,
            "processing.lastHeartbeat": now,
            "processing.currentStage": "starting",
        }
        if reset_retries:
            payload["retryCount"] = 0
        self._update(meetingId, payload)

    def append_log(self, meetingId: str, entry: ProcessingLogEntry) -> None:
        with self._lock:
            doc = self._docs.get(meetingId)
            if doc is None:
                raise MeetingNotFoundError(f"Meeting not found: {meetingId}")
            doc.setdefault("processingLogs", []).append(entry.model_dump())
            _set_path(doc, "processing.lastUpdatedAt", utcnow())
            if entry.stage:
                _set_path(doc, "processing.currentStage", entry.stage)

    def increment_retry(self, meetingId: str) -> int:
        with self._lock:
            doc = self._docs.get(meetingId)
            if doc is None:
                raise MeetingNotFoundError(f"Meeting not found: {meetingId}")
            doc["retryCount"] = int(doc.get("retryCount") or 0) + 1
            return doc["retryCount"]

    def set_status(self, meetingId: str, status: str, error: Optional[str] = None) -> None:
        fields: Dict[str, Any] = {"status": status}
        if error is not None:
            fields["errorMessage"] = error
        self._update(meetingId, fields)


# -------------------------------------------------
# Factory
# -------------------------------------------------
def get_meeting_repo():
    if not FIRESTORE_PROJECT:
        logger.info("Firestore disabled: FIRESTORE_PROJECT not set, using in-memory meetings")
        return InMemoryMeetingRepo()

    from google.auth.exceptions import DefaultCredentialsError

    try:
        return FirestoreMeetingRepo()
    except DefaultCredentialsError as e:
        logger.warning("Firestore credentials error, using in-memory meetings: %s", e)
        return InMemoryMeetingRepo()
