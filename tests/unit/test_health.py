import pytest
import requests

from herd import health


class FakeResponse:
    def __init__(self, payload=None, status_code=200, bad_json=False):
        self.payload = payload
        self.status_code = status_code
        self.bad_json = bad_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        if self.bad_json:
            raise ValueError("not json")
        return self.payload


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr(health.time, "sleep", lambda seconds: None)


class TestProbe:
    """Test the HTTP health probe."""

    def test_returns_status_body(self, monkeypatch, no_sleep):
        body = {"serverInformation": {"serverName": "herd"}}
        monkeypatch.setattr(health.requests, "get", lambda url, timeout: FakeResponse(body))

        assert health.probe("http://127.0.0.1:1/api/status") == body

    def test_retries_connection_errors(self, monkeypatch, no_sleep):
        calls = []

        def fake_get(url, timeout):
            calls.append(url)
            if len(calls) < 3:
                raise requests.exceptions.ConnectionError("refused")
            return FakeResponse({"serverName": "herd"})

        monkeypatch.setattr(health.requests, "get", fake_get)

        assert health.probe("http://127.0.0.1:1/api/status", retries=5) == {"serverName": "herd"}
        assert len(calls) == 3

    def test_gives_up_after_retries(self, monkeypatch, no_sleep):
        calls = []

        def fake_get(url, timeout):
            calls.append(url)
            return FakeResponse(status_code=503)

        monkeypatch.setattr(health.requests, "get", fake_get)

        assert health.probe("http://127.0.0.1:1/api/status", retries=2) is None
        assert len(calls) == 2

    def test_invalid_json_is_not_retried(self, monkeypatch, no_sleep):
        calls = []

        def fake_get(url, timeout):
            calls.append(url)
            return FakeResponse(bad_json=True)

        monkeypatch.setattr(health.requests, "get", fake_get)

        assert health.probe("http://127.0.0.1:1/api/status", retries=3) is None
        assert len(calls) == 1


def test_wait_until_serving_times_out(monkeypatch, no_sleep):
    monkeypatch.setattr(health, "probe", lambda url, retries, timeout: None)

    assert health.wait_until_serving("http://127.0.0.1:1/", timeout=0.05) is False


def test_wait_until_serving_succeeds(monkeypatch, no_sleep):
    monkeypatch.setattr(health, "probe", lambda url, retries, timeout: {"serverName": "herd"})

    assert health.wait_until_serving("http://127.0.0.1:1/") is True
