from __future__ import annotations

import threading

import pytest

from stickysync import http_client
from stickysync.errors import AuthError, SyncCancelled, SyncError, TransportError, ValidationError


class _ConnRequestFails:
    def __init__(self, *args, **kwargs) -> None:
        self.closed = False

    def request(self, method, path, body=None, headers=None) -> None:
        raise RuntimeError("boom")

    def close(self) -> None:
        self.closed = True


class _ConnReadFails:
    def __init__(self, *args, **kwargs) -> None:
        self.closed = False

    def request(self, method, path, body=None, headers=None) -> None:
        return

    def getresponse(self):
        return _RespReadFails()

    def close(self) -> None:
        self.closed = True


class _RespReadFails:
    status = 200

    def read(self) -> bytes:
        raise RuntimeError("read failed")


def test_request_json_closes_connection_when_request_raises(monkeypatch) -> None:
    conn = _ConnRequestFails()
    monkeypatch.setattr(http_client, "HTTPConnection", lambda *a, **k: conn)

    with pytest.raises(RuntimeError, match="boom"):
        http_client.request_json("GET", "http://127.0.0.1:8765/api/get_notes")

    assert conn.closed is True


def test_request_json_closes_connection_when_response_read_raises(monkeypatch) -> None:
    conn = _ConnReadFails()
    monkeypatch.setattr(http_client, "HTTPConnection", lambda *a, **k: conn)

    with pytest.raises(RuntimeError, match="read failed"):
        http_client.request_json("GET", "http://127.0.0.1:8765/api/get_notes")

    assert conn.closed is True


def test_build_base_url() -> None:
    assert http_client.build_base_url("example.com:8765/") == "http://example.com:8765"
    assert http_client.build_base_url("https://sync.example") == "https://sync.example"
    assert http_client.build_base_url("  ") == ""


class _Scripted:
    """Stand-in for ``request_json`` replaying canned answers."""

    def __init__(self, answers: list) -> None:
        self.answers = list(answers)
        self.calls: list[tuple[str, str, dict, bytes | None]] = []

    def __call__(self, method, url, *, headers=None, body=None, body_bytes=None, timeout_s=10.0):
        self.calls.append((method, url, dict(headers or {}), body_bytes))
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer


def _client(monkeypatch, answers: list, **kwargs) -> tuple[http_client.SyncApiClient, _Scripted, list]:
    scripted = _Scripted(answers)
    sleeps: list[float] = []
    monkeypatch.setattr(http_client, "request_json", scripted)
    client = http_client.SyncApiClient(
        "http://sync.example", "tok", sleep=sleeps.append, **kwargs
    )
    return client, scripted, sleeps


def test_transport_failures_are_retried_with_delay(monkeypatch) -> None:
    client, scripted, sleeps = _client(
        monkeypatch,
        [
            ConnectionRefusedError("refused"),
            (503, {"success": False, "error": "down"}),
            (200, {"success": True, "notes": {"https://a.example/": []}}),
        ],
    )

    assert client.download() == {"https://a.example/": []}
    assert len(scripted.calls) == 3
    assert sleeps == [1.0, 1.0]


def test_retries_stop_after_attempt_limit(monkeypatch) -> None:
    client, scripted, sleeps = _client(monkeypatch, [OSError("a"), OSError("b"), OSError("c")])

    with pytest.raises(TransportError):
        client.get_notes()
    assert len(scripted.calls) == 3
    assert len(sleeps) == 2


def test_auth_failure_is_not_retried(monkeypatch) -> None:
    client, scripted, sleeps = _client(
        monkeypatch, [(401, {"success": False, "error": "Invalid token"})]
    )

    with pytest.raises(AuthError, match="Invalid token"):
        client.upload({})
    assert len(scripted.calls) == 1
    assert sleeps == []


def test_validation_failure_is_not_retried(monkeypatch) -> None:
    client, scripted, _ = _client(
        monkeypatch, [(400, {"success": False, "error": "Invalid action"})]
    )

    with pytest.raises(ValidationError):
        client.delete_all()
    assert len(scripted.calls) == 1


def test_requests_carry_bearer_token(monkeypatch) -> None:
    client, scripted, _ = _client(monkeypatch, [(200, {"success": True})])

    client.update_notes("https://a.example/", [{"id": "n1"}])

    method, url, headers, body = scripted.calls[0]
    assert method == "POST"
    assert url == "http://sync.example/api/update_notes"
    assert headers["Authorization"] == "Bearer tok"
    assert b'"url": "https://a.example/"' in body


def test_authenticate_stores_token_without_sending_one(monkeypatch) -> None:
    scripted = _Scripted([(200, {"success": True, "user_token": "fresh", "email": "a@x"})])
    monkeypatch.setattr(http_client, "request_json", scripted)
    client = http_client.SyncApiClient("http://sync.example", sleep=lambda _s: None)

    payload = client.authenticate("g", "a@x", name="A")

    assert payload["user_token"] == "fresh"
    assert client.token == "fresh"
    assert "Authorization" not in scripted.calls[0][2]


def test_calls_without_token_fail_fast(monkeypatch) -> None:
    scripted = _Scripted([])
    monkeypatch.setattr(http_client, "request_json", scripted)
    client = http_client.SyncApiClient("http://sync.example")

    with pytest.raises(AuthError):
        client.get_notes()
    assert scripted.calls == []


def test_unsuccessful_200_and_bad_notes_shape(monkeypatch) -> None:
    client, _, _ = _client(
        monkeypatch,
        [
            (200, {"success": False, "error": "nope"}),
            (200, {"success": True, "notes": "bad"}),
            (200, {"success": True, "notes": []}),
        ],
    )

    with pytest.raises(SyncError, match="nope"):
        client.get_notes()
    with pytest.raises(SyncError, match="invalid notes format"):
        client.get_notes()
    assert client.get_notes() == {}


def test_cancel_event_stops_retries(monkeypatch) -> None:
    cancel = threading.Event()
    scripted = _Scripted([OSError("down")])
    monkeypatch.setattr(http_client, "request_json", scripted)
    client = http_client.SyncApiClient(
        "http://sync.example", "tok", sleep=lambda _s: cancel.set(), cancel_event=cancel
    )

    with pytest.raises(SyncCancelled):
        client.download()
    assert len(scripted.calls) == 1


class _ConnHtmlResponse:
    def __init__(self, *args, **kwargs) -> None:
        self.closed = False

    def request(self, method, path, body=None, headers=None) -> None:
        return

    def getresponse(self):
        return _RespHtml()

    def close(self) -> None:
        self.closed = True


class _RespHtml:
    status = 200

    def read(self) -> bytes:
        return b"<html>captive portal</html>"


def test_non_json_body_is_an_invalid_response(monkeypatch) -> None:
    conn = _ConnHtmlResponse()
    monkeypatch.setattr(http_client, "HTTPConnection", lambda *a, **k: conn)

    assert http_client.request_json("GET", "http://127.0.0.1:8765/api/get_notes") == (200, None)
    assert conn.closed is True

    client = http_client.SyncApiClient("http://127.0.0.1:8765", "tok", sleep=lambda _s: None)
    with pytest.raises(SyncError, match="invalid response from sync api"):
        client.get_notes()
