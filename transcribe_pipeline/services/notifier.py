"""
Fire-and-forget progress broadcast.

Events are scoped to the meeting's channel, except overall progress and
worker heartbeats which are also published on a global channel so that
operational dashboards can watch every meeting at once. A failed publish is
logged and swallowed; it must never abort the job that emitted it.
"""

import json
import logging
import threading
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from pydantic import BaseModel

from transcribe_pipeline.config import NOTIFIER_HISTORY, REDIS_URL, REDIS_PREFIX, USE_CELERY

logger = logging.getLogger(__name__)

PROGRESS_EVENT = "transcription_progress"
HEARTBEAT_EVENT = "worker_heartbeat"
GLOBAL_EVENTS = frozenset({PROGRESS_EVENT, HEARTBEAT_EVENT})

GLOBAL_CHANNEL = f"{REDIS_PREFIX}events:global"

Payload = Union[BaseModel, Dict[str, Any]]


def meeting_channel(meetingId: str) -> str:
    return f"{REDIS_PREFIX}events:meeting:{meetingId}"


def _as_dict(payload: Payload) -> Dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return dict(payload)


class BaseNotifier:
    def _publish(self, channel: str, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    def notify(self, meetingId: str, event: str, payload: Optional[Payload] = None) -> bool:
        """Broadcast ``event`` for ``meetingId``. Returns False if it could not be delivered."""
        try:
            message = {"event": event, "meetingId": str(meetingId), "data": _as_dict(payload or {})}
            self._publish(meeting_channel(meetingId), message)
            if event in GLOBAL_EVENTS:
                self._publish(GLOBAL_CHANNEL, message)
            return True
        except Exception as e:
            logger.warning("Failed to emit %s for meeting %s: %s", event, meetingId, e)
            return False


class RedisNotifier(BaseNotifier):
    def __init__(self, client=None):
        if client is None:
            import redis  # lazy import
            client = redis.from_url(REDIS_URL, decode_responses=True, socket_timeout=2)
        self.client = client

    def _publish(self, channel: str, message: Dict[str, Any]) -> None:
        self.client.publish(channel, json.dumps(message, default=str))


class InMemoryNotifier(BaseNotifier):
    """Keeps the most recent messages and fans out to in-process subscribers."""

    def __init__(self, history: int = NOTIFIER_HISTORY):
        self.messages: Deque[Dict[str, Any]] = deque(maxlen=history)
        self._subscribers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, channel: str, callback: Callable[[Dict[str, Any]], None]) -> None:
        with self._lock:
            self._subscribers[channel].append(callback)

    def _publish(self, channel: str, message: Dict[str, Any]) -> None:
        with self._lock:
            self.messages.append({"channel": channel, **message})
            callbacks = list(self._subscribers.get(channel, []))
        for callback in callbacks:
            callback(message)

    def events(self, meetingId: Optional[str] = None, event: Optional[str] = None) -> List[Dict[str, Any]]:
        """Messages seen on the meeting channels, optionally filtered."""
        with self._lock:
            found = [m for m in self.messages if m["channel"] != GLOBAL_CHANNEL]
        if meetingId is not None:
            found = [m for m in found if m["meetingId"] == str(meetingId)]
        if event is not None:
            found = [m for m in found if m["event"] == event]
        return found


def get_notifier() -> BaseNotifier:
    if USE_CELERY and REDIS_URL:
        return RedisNotifier()
    return InMemoryNotifier()
