import pytest
import requests

from oura_server.app import create_app
from oura_server.errors import ConfigurationError, UpstreamError
from oura_server.oura_client import OuraClient

from conftest import DAILY_BODY, SLEEP_BODY, TEST_CONFIG, FakeResponse

URL = "/api/oura/sleep"


class TestValidation:
    def test_missing_end_is_400(self, client, upstream):
        res = client.get(URL, query_string={"start": "2024-01-14"})
        assert res.status_code == 400
        assert "error" in res.get_json()
        assert upstream["calls"] == []

    def test_missing_both_is_400(self, client, upstream):
        res = client.get(URL)
        assert res.status_code == 400
        assert res.get_json()["error"] == "start/end query required (YYYY-MM-DD)"

    def test_malformed_date_is_400(self, client, upstream):
        res = client.get(URL, query_string={"start": "2024-1-14", "end": "2024-01-15"})
        assert res.status_code == 400
        assert "detail" in res.get_json()

    def test_impossible_date_is_400(self, client, upstream):
        res = client.get(URL, query_string={"start": "2024-02-30", "end": "2024-03-01"})
        assert res.status_code == 400

    def test_start_after_end_is_400(self, client, upstream):
        res = client.get(URL, query_string={"start": "2024-01-16", "end": "2024-01-15"})
        assert res.status_code == 400
        assert upstream["calls"] == []

    def test_missing_token_is_500(self, upstream):
        app = create_app(dict(TEST_CONFIG, OURA_ACCESS_TOKEN=None))
        res = app.test_client().get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"})
        assert res.status_code == 500
        assert res.get_json() == {"error": "Missing OURA token"}
        assert upstream["calls"] == []


class TestPassThrough:
    def test_combines_both_collections(self, client, upstream):
        res = client.get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"})
        assert res.status_code == 200
        assert res.get_json() == {"sleep": SLEEP_BODY, "daily": DAILY_BODY}

    def test_upstream_requests(self, client, upstream):
        client.get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"})
        urls = sorted(c["url"] for c in upstream["calls"])
        assert urls == [
            "https://oura.test/v2/usercollection/daily_sleep",
            "https://oura.test/v2/usercollection/sleep",
        ]
        for call in upstream["calls"]:
            assert call["headers"] == {"Authorization": "Bearer test-token"}
            assert call["params"] == {"start_date": "2024-01-14", "end_date": "2024-01-15"}
            assert call["timeout"] is None

    def test_cors_on_api(self, client, upstream):
        res = client.get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"},
                         headers={"Origin": "http://localhost:3000"})
        assert res.headers.get("Access-Control-Allow-Origin") == "*"


class TestUpstreamFailures:
    def test_sleep_503_is_forwarded(self, client, upstream):
        upstream["routes"]["sleep"] = FakeResponse(503, text="upstream down")
        res = client.get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"})
        assert res.status_code == 503
        assert res.get_json() == {"error": "Sleep fetch failed", "detail": "upstream down"}

    def test_both_calls_made_even_when_one_fails(self, client, upstream):
        upstream["routes"]["sleep"] = FakeResponse(503, text="upstream down")
        client.get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"})
        assert len(upstream["calls"]) == 2

    def test_daily_failure_is_forwarded(self, client, upstream):
        upstream["routes"]["daily_sleep"] = FakeResponse(401, text='{"detail":"bad token"}')
        res = client.get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"})
        assert res.status_code == 401
        body = res.get_json()
        assert body["error"] == "Daily sleep fetch failed"
        assert body["detail"] == '{"detail":"bad token"}'

    def test_sleep_failure_reported_before_daily(self, client, upstream):
        upstream["routes"]["sleep"] = FakeResponse(429, text="slow down")
        upstream["routes"]["daily_sleep"] = FakeResponse(500, text="boom")
        res = client.get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"})
        assert res.status_code == 429

    def test_network_error_is_500(self, client, upstream):
        upstream["routes"]["daily_sleep"] = requests.ConnectionError("connection refused")
        res = client.get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"})
        assert res.status_code == 500
        body = res.get_json()
        assert body["error"] == "Unexpected error"
        assert "connection refused" in body["detail"]

    def test_sleep_redirect_is_not_success(self, client, upstream):
        upstream["routes"]["sleep"] = FakeResponse(300, {"data": []})
        res = client.get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"})
        assert res.status_code == 300
        assert res.get_json()["error"] == "Sleep fetch failed"

    def test_malformed_json_is_500(self, client, upstream):
        upstream["routes"]["sleep"] = FakeResponse(200, text="<html>not json</html>")
        res = client.get(URL, query_string={"start": "2024-01-14", "end": "2024-01-15"})
        assert res.status_code == 500
        assert res.get_json()["error"] == "Unexpected error"


class TestOuraClient:
    def test_requires_token(self):
        client = OuraClient(None)
        with pytest.raises(ConfigurationError, match="Missing OURA token") as exc:
            client.fetch_range("2024-01-14", "2024-01-15")
        assert exc.value.status_code == 500

    def test_upstream_error_carries_status(self, upstream):
        upstream["routes"]["sleep"] = FakeResponse(503, text="down")
        client = OuraClient("tok", base_url="https://oura.test/v2/usercollection/")
        with pytest.raises(UpstreamError) as exc:
            client.fetch_range("2024-01-14", "2024-01-15")
        assert exc.value.status_code == 503
        assert exc.value.to_dict() == {"error": "Sleep fetch failed", "detail": "down"}

    def test_daily_3xx_raises_with_status(self, upstream):
        upstream["routes"]["daily_sleep"] = FakeResponse(302, text="moved")
        client = OuraClient("tok", base_url="https://oura.test/v2/usercollection")
        with pytest.raises(UpstreamError) as exc:
            client.fetch_range("2024-01-14", "2024-01-15")
        assert exc.value.status_code == 302
        assert exc.value.to_dict() == {"error": "Daily sleep fetch failed", "detail": "moved"}
