import json

import pytest
import requests

from transcribe_pipeline.errors import BotServiceUnavailableError
from transcribe_pipeline.services.bot_service import BotServiceClient


def _response(status_code, payload=None):
    resp = requests.Response()
    resp.status_code = status_code
    resp._content = json.dumps(payload).encode("utf-8") if payload is not None else b""
    return resp


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, timeout, kwargs))
        if self.error:
            raise self.error
        return self.response


def test_join_posts_meeting_details():
    session = FakeSession(_response(200, {"success": True, "botId": "b1"}))
    client = BotServiceClient("http://bots.test/", session=session)

    data = client.join("M1", "https://meet.example.com/abc", 90, "Notetaker")

    method, url, timeout, kwargs = session.calls[0]
    assert (method, url, timeout) == ("POST", "http://bots.test/api/bot/join", 15)
    assert kwargs["json"]["duration"] == 90
    assert data["botId"] == "b1"


def test_stop_path():
    session = FakeSession(_response(200))
    client = BotServiceClient("http://bots.test", session=session)

    assert client.stop("M1") == {}

    assert session.calls[0][:3] == ("POST", "http://bots.test/api/bot/M1/stop", 10)
    assert session.calls[0][3]["json"] == {"reason": "user_requested"}


def test_connection_error_is_unavailable():
    client = BotServiceClient("http://bots.test", session=FakeSession(error=requests.ConnectionError("refused")))
    with pytest.raises(BotServiceUnavailableError):
        client.join("M1", "https://meet.example.com/abc", 60, "Bot")


def test_error_status_is_unavailable():
    client = BotServiceClient("http://bots.test", session=FakeSession(_response(500, {"error": "no capacity"})))
    with pytest.raises(BotServiceUnavailableError, match="500"):
        client.stop("M1")
