from __future__ import annotations

import httpx

from stickysync.identity import GoogleTokenVerifier

TOKENINFO_URL = "https://tokeninfo.example/v2/tokeninfo"


def _verifier(handler) -> GoogleTokenVerifier:
    return GoogleTokenVerifier(TOKENINFO_URL, timeout_s=2, transport=httpx.MockTransport(handler))


def test_verify_returns_email_and_sends_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"email": "a@example.com", "expires_in": 3599})

    assert _verifier(handler).verify("ya29.token") == "a@example.com"
    assert seen[0].url.params["access_token"] == "ya29.token"
    assert str(seen[0].url).startswith(TOKENINFO_URL)


def test_verify_rejected_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_token"})

    assert _verifier(handler).verify("expired") is None


def test_verify_non_json_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    assert _verifier(handler).verify("token") is None


def test_verify_missing_or_blank_email() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["access_token"] == "no-email":
            return httpx.Response(200, json={"scope": "profile"})
        return httpx.Response(200, json={"email": ""})

    verifier = _verifier(handler)
    assert verifier.verify("no-email") is None
    assert verifier.verify("blank-email") is None


def test_verify_transport_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert _verifier(handler).verify("token") is None


def test_verify_empty_token_makes_no_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"email": "a@example.com"})

    assert _verifier(handler).verify("") is None
    assert calls == []
