from __future__ import annotations

import datetime as dt
import json
import logging
import os
import re
from collections.abc import Callable
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from .db import DEFAULT_DB_PATH
from .errors import (
    AuthError,
    MethodError,
    NotFoundError,
    PayloadTooLarge,
    SyncError,
    ValidationError,
)
from .identity import GoogleTokenVerifier, IdentityVerifier
from .store import NoteStore

logger = logging.getLogger(__name__)

API_VERSION = "1.0"
BEARER_RE = re.compile(r"Bearer\s+(.+)")
CORS_ALLOW_HEADERS = "Content-Type, Authorization"


def _safe_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


MAX_BODY_BYTES = _safe_int_env("STICKYSYNC_MAX_BODY_BYTES", 5 * 1048576)

Route = Callable[[NoteStore, IdentityVerifier, dict[str, Any], str | None], dict[str, Any]]


def _read_body(handler: BaseHTTPRequestHandler) -> bytes:
    length = int(handler.headers.get("Content-Length", "0") or 0)
    if length <= 0:
        return b""
    if length > MAX_BODY_BYTES:
        raise PayloadTooLarge("Payload too large")
    return handler.rfile.read(length)


def _parse_json_body(raw: bytes) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _send_json(
    handler: BaseHTTPRequestHandler,
    payload: dict[str, Any] | None,
    status: int = 200,
    *,
    methods: str = "GET, POST, PUT, OPTIONS",
) -> None:
    body = b"" if payload is None else json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Access-Control-Allow-Origin", "*")
    handler.send_header("Access-Control-Allow-Methods", methods)
    handler.send_header("Access-Control-Allow-Headers", CORS_ALLOW_HEADERS)
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    if body and handler.command != "HEAD":
        handler.wfile.write(body)


def _bearer_token(handler: BaseHTTPRequestHandler) -> str | None:
    header = handler.headers.get("Authorization") or ""
    match = BEARER_RE.match(header.strip())
    if not match:
        return None
    return match.group(1).strip() or None


def _authorized_email(store: NoteStore, token: str | None) -> str:
    if not token:
        raise AuthError("Missing authorization token")
    email = store.resolve_token(token)
    if not email:
        raise AuthError("Invalid token")
    return email


def _validate_collection(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list) or not all(isinstance(note, dict) for note in value):
        raise ValidationError("Invalid notes data")
    return value


def _validate_corpus(value: Any) -> dict[str, list[dict[str, Any]]]:
    if not isinstance(value, dict):
        raise ValidationError("Invalid notes data")
    for url, notes in value.items():
        if not isinstance(url, str) or not url:
            raise ValidationError("Invalid notes data")
        _validate_collection(notes)
    return value


def handle_auth(
    store: NoteStore, verifier: IdentityVerifier, data: dict[str, Any], token: str | None
) -> dict[str, Any]:
    google_token = data.get("google_token")
    email = data.get("email")
    if not isinstance(google_token, str) or not google_token:
        raise ValidationError("Missing required fields")
    if not isinstance(email, str) or not email:
        raise ValidationError("Missing required fields")
    name = data.get("name")
    picture = data.get("picture")
    verified_email = verifier.verify(google_token)
    if not verified_email or verified_email != email:
        raise AuthError("Invalid Google token")
    user = store.upsert_user(
        email,
        name if isinstance(name, str) and name else "Unknown User",
        picture if isinstance(picture, str) else "",
    )
    return {
        "success": True,
        "user_token": user.user_token,
        "email": user.email,
        "name": user.name,
    }


def handle_get_notes(
    store: NoteStore, verifier: IdentityVerifier, data: dict[str, Any], token: str | None
) -> dict[str, Any]:
    email = _authorized_email(store, token)
    return {"success": True, "notes": store.get_corpus(email), "email": email}


def handle_sync(
    store: NoteStore, verifier: IdentityVerifier, data: dict[str, Any], token: str | None
) -> dict[str, Any]:
    email = _authorized_email(store, token)
    action = data.get("action") or ""
    if action == "upload":
        if "notes" not in data:
            raise ValidationError("Missing notes data")
        store.replace_all(email, _validate_corpus(data["notes"]))
        return {"success": True, "message": "Notes uploaded successfully"}
    if action == "download":
        return {"success": True, "notes": store.get_corpus(email)}
    if action == "delete_all":
        store.delete_all(email)
        return {"success": True, "message": "All notes deleted successfully"}
    raise ValidationError("Invalid action")


def handle_update_notes(
    store: NoteStore, verifier: IdentityVerifier, data: dict[str, Any], token: str | None
) -> dict[str, Any]:
    email = _authorized_email(store, token)
    url = data.get("url")
    if not isinstance(url, str) or not url or "notes" not in data:
        raise ValidationError("Missing required fields (url, notes)")
    store.replace_subset(email, url, _validate_collection(data["notes"]))
    return {"success": True, "message": "Notes updated successfully"}


def api_index() -> dict[str, Any]:
    bearer = {"Authorization": "Bearer {user_token}"}
    return {
        "name": "Sticky Notes Cloud Storage API",
        "version": API_VERSION,
        "endpoints": {
            "authentication": {
                "url": "/api/auth",
                "method": "POST",
                "body": {
                    "google_token": "string (required)",
                    "email": "string (required)",
                    "name": "string (optional)",
                    "picture": "string (optional)",
                },
            },
            "sync": {
                "url": "/api/sync",
                "method": "POST",
                "headers": bearer,
                "actions": ["upload", "download", "delete_all"],
            },
            "get_notes": {"url": "/api/get_notes", "method": "GET", "headers": bearer},
            "update_notes": {
                "url": "/api/update_notes",
                "method": "POST",
                "headers": bearer,
                "body": {"url": "string (required)", "notes": "array (required)"},
            },
        },
        "status": "online",
        "timestamp": dt.datetime.now(dt.UTC).isoformat(),
    }


ROUTES: dict[str, tuple[frozenset[str], Route]] = {
    "/api/auth": (frozenset({"POST"}), handle_auth),
    "/api/get_notes": (frozenset({"GET"}), handle_get_notes),
    "/api/sync": (frozenset({"POST"}), handle_sync),
    "/api/update_notes": (frozenset({"POST", "PUT"}), handle_update_notes),
}


def _normalize_path(path: str) -> str:
    trimmed = path.rstrip("/") or "/"
    if trimmed.endswith(".php"):
        trimmed = trimmed[: -len(".php")]
    if trimmed == "/api/index":
        return "/api"
    return trimmed


def build_sync_handler(
    db_path: Path | None = None,
    verifier: IdentityVerifier | None = None,
):
    resolved_db = Path(db_path or os.environ.get("STICKYSYNC_DB") or DEFAULT_DB_PATH)
    resolved_verifier: IdentityVerifier = verifier or GoogleTokenVerifier()

    class SyncHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: object) -> None:  # noqa: A003
            if os.environ.get("STICKYSYNC_SERVER_LOGS") == "1":
                logger.info("%s - %s", self.address_string(), format % args)

        def _store(self) -> NoteStore:
            return NoteStore(resolved_db)

        def _allowed_methods(self, path: str) -> str:
            route = ROUTES.get(path)
            methods = sorted(route[0]) if route else ["GET"]
            return ", ".join([*methods, "OPTIONS"])

        def _dispatch(self, method: str) -> None:
            path = _normalize_path(urlparse(self.path).path)
            methods = self._allowed_methods(path)
            try:
                if path == "/api":
                    if method != "GET":
                        raise MethodError("Method not allowed")
                    _send_json(self, api_index(), methods=methods)
                    return
                route = ROUTES.get(path)
                if route is None:
                    raise NotFoundError("Not found")
                allowed, func = route
                if method not in allowed:
                    raise MethodError("Method not allowed")
                data: dict[str, Any] = {}
                if method != "GET":
                    # Unparseable bodies count as empty; routes check auth before fields.
                    data = _parse_json_body(_read_body(self)) or {}
                store = self._store()
                try:
                    payload = func(store, resolved_verifier, data, _bearer_token(self))
                finally:
                    store.close()
            except SyncError as exc:
                if exc.status >= 500:
                    logger.error("request failed path=%s: %s", path, exc.message)
                _send_json(
                    self, {"success": False, "error": exc.message}, exc.status, methods=methods
                )
                return
            except Exception:
                logger.exception("unexpected error path=%s", path)
                _send_json(
                    self, {"success": False, "error": "Internal server error"}, 500, methods=methods
                )
                return
            _send_json(self, payload, methods=methods)

        def do_OPTIONS(self) -> None:  # noqa: N802
            path = _normalize_path(urlparse(self.path).path)
            _send_json(self, None, methods=self._allowed_methods(path))

        def do_GET(self) -> None:  # noqa: N802
            self._dispatch("GET")

        def do_POST(self) -> None:  # noqa: N802
            self._dispatch("POST")

        def do_PUT(self) -> None:  # noqa: N802
            self._dispatch("PUT")

        def do_DELETE(self) -> None:  # noqa: N802
            self._dispatch("DELETE")

        def do_PATCH(self) -> None:  # noqa: N802
            self._dispatch("PATCH")

        def do_HEAD(self) -> None:  # noqa: N802
            self._dispatch("HEAD")

        def send_error(self, code: int, message: str | None = None, explain: str | None = None) -> None:
            # Verbs without a do_* method land here as 501.
            if code == HTTPStatus.NOT_IMPLEMENTED and self.command:
                path = _normalize_path(urlparse(self.path).path)
                _send_json(
                    self,
                    {"success": False, "error": "Method not allowed"},
                    405,
                    methods=self._allowed_methods(path),
                )
                return
            super().send_error(code, message, explain)

    return SyncHandler
