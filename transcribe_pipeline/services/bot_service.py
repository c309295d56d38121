# transcribe_pipeline/services/bot_service.py

import requests
from typing import Any, Dict, Optional

from transcribe_pipeline.config import BOT_SERVICE_URL
from transcribe_pipeline.errors import BotServiceUnavailableError

JOIN_TIMEOUT_SECONDS = 15
STOP_TIMEOUT_SECONDS = 10


class BotServiceClient:
    """Thin client for the service that sends a bot into an online meeting."""

    def __init__(self, base_url: str = BOT_SERVICE_URL, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _call(self, method: str, path: str, timeout: int, **kwargs) -> Dict[str, Any]:
        try:
            resp = self.session.request(method, f"{self.base_url}{path}", timeout=timeout, **kwargs)
            resp.raise_for_status()
            return resp.json() if resp.content else {}

        except (requests.exceptions.RequestException, ValueError) as e:
            raise BotServiceUnavailableError(f"Bot service call {method} {path} failed: {e}")

    def join(self, meetingId: str, meetingUrl: str, duration: int, botName: str) -> Dict[str, Any]:
        return self._call(
            "POST",
            "/api/bot/join",
            JOIN_TIMEOUT_SECONDS,
            json={
                "meetingUrl": meetingUrl,
                "meetingId": meetingId,
                "duration": duration,
                "botName": botName,
            },
        )

    def stop(self, meetingId: str, reason: str = "user_requested") -> Dict[str, Any]:
        return self._call("POST", f"/api/bot/{meetingId}/stop", STOP_TIMEOUT_SECONDS, json={"reason": reason})


def get_bot_service() -> BotServiceClient:
    return BotServiceClient()
