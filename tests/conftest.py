import json
from datetime import datetime

import pytest

from oura_server.app import create_app

TEST_CONFIG = {
    "OURA_ACCESS_TOKEN": "test-token",
    "OURA_API_BASE": "https://oura.test/v2/usercollection",
    "HTTP_TIMEOUT_SECONDS": None,
    "FIRESTORE_PROJECT_ID": None,
    "DASHBOARD_PROXY_URL": None,
}


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else json.dumps(body)

    @property
    def ok(self):
        return 200 <= self.status_code < 400  # same rule as requests.Response.ok

    def json(self):
        if self._body is None:
            return json.loads(self.text)
        return self._body


def fixed_clock():
    return datetime(2024, 1, 15, 8, 30, 0)


SLEEP_BODY = {
    "data": [
        {
            "day": "2024-01-15",
            "bedtime_start": "2024-01-14T23:10:00+09:00",
            "bedtime_end": "2024-01-15T07:10:00+09:00",
            "total_sleep_duration": 25200,
            "rem_sleep_duration": 5400,
            "deep_sleep_duration": 3600,
            "light_sleep_duration": 16200,
            "awake_duration": 3600,
            "latency": 600,
        }
    ]
}

DAILY_BODY = {
    "data": [
        {"day": "2024-01-14", "score": 70},
        {"day": "2024-01-15", "score": 82, "efficiency": 0.88},
    ]
}


@pytest.fixture
def app():
    app = create_app(dict(TEST_CONFIG))
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def upstream(monkeypatch):
    """
    Stub requests.get for the Oura collections. Tests set ``routes`` to map a
    collection name to a FakeResponse (or an exception to raise).
    """
    state = {"calls": [], "routes": {
        "sleep": FakeResponse(200, SLEEP_BODY),
        "daily_sleep": FakeResponse(200, DAILY_BODY),
    }}

    def fake_get(url, headers=None, params=None, timeout=None):
        collection = url.rsplit("/", 1)[-1]
        state["calls"].append({"url": url, "headers": headers, "params": params, "timeout": timeout})
        result = state["routes"][collection]
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr("oura_server.oura_client.requests.get", fake_get)
    return state
