from __future__ import annotations

import http.client
import json
import logging
import threading
import time
from collections.abc import Callable
from http.client import HTTPConnection, HTTPSConnection
from typing import Any
from urllib.parse import urlparse

from .errors import (
    AuthError,
    MethodError,
    SyncCancelled,
    SyncError,
    TransportError,
    ValidationError,
)
from .notes import NoteCollection, NoteCorpus

logger = logging.getLogger(__name__)

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_S = 1.0


def build_base_url(address: str) -> str:
    """Normalize a configured server address; bare hosts default to http."""

    trimmed = address.strip().rstrip("/")
    if not trimmed:
        return ""
    if urlparse(trimmed).scheme:
        return trimmed
    return f"http://{trimmed}"


def _decode_payload(raw: bytes) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.debug("sync api returned a non-json body: %r", raw[:120])
        return None
    if not isinstance(payload, dict):
        logger.debug("sync api returned json %s, expected an object", type(payload).__name__)
        return None
    return payload


def request_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    body: dict[str, Any] | None = None,
    body_bytes: bytes | None = None,
    timeout_s: float = 10.0,
) -> tuple[int, dict[str, Any] | None]:
    """Send one request and return ``(status, json object or None)``.

    A body that is empty, not JSON, or not a JSON object comes back as None;
    deciding what that means for a given status is left to the caller.
    """

    parsed = urlparse(url)
    if not parsed.hostname:
        raise ValueError(f"invalid sync api url: {url!r}")
    connection_cls = HTTPSConnection if parsed.scheme == "https" else HTTPConnection
    default_port = 443 if parsed.scheme == "https" else 80
    conn = connection_cls(parsed.hostname, parsed.port or default_port, timeout=timeout_s)
    target = parsed.path or "/"
    if parsed.query:
        target = f"{target}?{parsed.query}"
    if body_bytes is None and body is not None:
        body_bytes = json.dumps(body, ensure_ascii=False).encode("utf-8")
    request_headers = {"Accept": "application/json"}
    if body_bytes is not None:
        request_headers["Content-Type"] = "application/json"
        request_headers["Content-Length"] = str(len(body_bytes))
    if headers:
        request_headers.update(headers)
    try:
        conn.request(method, target, body=body_bytes, headers=request_headers)
        resp = conn.getresponse()
        status = int(resp.status)
        raw = resp.read()
    finally:
        conn.close()
    return status, _decode_payload(raw)


def _error_detail(payload: dict[str, Any] | None) -> str | None:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    return error if isinstance(error, str) and error else None


def _raise_for_status(status: int, payload: dict[str, Any] | None) -> None:
    detail = _error_detail(payload)
    if status == 200:
        if payload is None or payload.get("success") is not True:
            raise SyncError(detail or "invalid response from sync api", status=status)
        return
    message = f"{detail} ({status})" if detail else f"request failed ({status})"
    if status == 401:
        raise AuthError(message)
    if status == 405:
        raise MethodError(message)
    if status in {400, 413}:
        raise ValidationError(message, status=status)
    if status >= 500:
        raise TransportError(message, status=status)
    raise SyncError(message, status=status)


class SyncApiClient:
    """Client for the note sync API.

    Every call is retried on transport failures and 5xx answers, up to
    ``retry_attempts`` attempts in total with ``retry_delay_s`` between them.
    Authentication and validation failures are raised on the first attempt.
    Setting ``cancel_event`` stops any further attempts.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
        timeout_s: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.base_url = build_base_url(base_url)
        self.token = token
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay_s = retry_delay_s
        self.timeout_s = timeout_s
        self.sleep = sleep
        self.cancel_event = cancel_event

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _call(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        auth: bool = True,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers: dict[str, str] = {}
        if auth:
            if not self.token:
                raise AuthError("not signed in")
            headers["Authorization"] = f"Bearer {self.token}"
        body_bytes = None
        if body is not None:
            body_bytes = json.dumps(body, ensure_ascii=False).encode("utf-8")
        last_error: SyncError | None = None
        for attempt in range(1, self.retry_attempts + 1):
            if self._cancelled():
                raise SyncCancelled("sync cancelled")
            try:
                status, payload = request_json(
                    method,
                    url,
                    headers=headers,
                    body_bytes=body_bytes,
                    timeout_s=self.timeout_s,
                )
                _raise_for_status(status, payload)
                assert payload is not None
                return payload
            except SyncError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
            except (OSError, http.client.HTTPException) as exc:
                last_error = TransportError(f"{method} {path}: {exc}")
            if attempt < self.retry_attempts:
                logger.warning(
                    "sync request failed, retrying attempt=%d/%d: %s",
                    attempt,
                    self.retry_attempts,
                    last_error.message,
                )
                self.sleep(self.retry_delay_s)
        assert last_error is not None
        raise last_error

    def authenticate(
        self,
        google_token: str,
        email: str,
        name: str | None = None,
        picture: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"google_token": google_token, "email": email}
        if name is not None:
            body["name"] = name
        if picture is not None:
            body["picture"] = picture
        payload = self._call("POST", "/api/auth", body, auth=False)
        token = payload.get("user_token")
        if not isinstance(token, str) or not token:
            raise SyncError("auth response missing user_token")
        self.token = token
        return payload

    def get_notes(self) -> NoteCorpus:
        payload = self._call("GET", "/api/get_notes")
        return _corpus_from(payload)

    def upload(self, corpus: NoteCorpus) -> None:
        self._call("POST", "/api/sync", {"action": "upload", "notes": corpus})

    def download(self) -> NoteCorpus:
        payload = self._call("POST", "/api/sync", {"action": "download"})
        return _corpus_from(payload)

    def delete_all(self) -> None:
        self._call("POST", "/api/sync", {"action": "delete_all"})

    def update_notes(self, url: str, notes: NoteCollection) -> None:
        self._call("POST", "/api/update_notes", {"url": url, "notes": notes})


def _corpus_from(payload: dict[str, Any]) -> NoteCorpus:
    notes = payload.get("notes")
    # Some servers encode an empty map as [] rather than {}.
    if notes in (None, []):
        return {}
    if not isinstance(notes, dict):
        raise SyncError("invalid notes format received from server")
    return notes
