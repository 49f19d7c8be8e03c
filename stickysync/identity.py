from __future__ import annotations

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TOKENINFO_URL = "https://www.googleapis.com/oauth2/v2/tokeninfo"


class IdentityVerifier(Protocol):
    def verify(self, google_token: str) -> str | None:
        """Return the email bound to ``google_token`` or None."""
        ...


class GoogleTokenVerifier:
    """Resolves an access token to its email through the tokeninfo endpoint."""

    def __init__(
        self,
        tokeninfo_url: str = DEFAULT_TOKENINFO_URL,
        timeout_s: float = 10.0,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.tokeninfo_url = tokeninfo_url
        self.timeout_s = timeout_s
        self.transport = transport

    def verify(self, google_token: str) -> str | None:
        if not google_token:
            return None
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
                resp = client.get(self.tokeninfo_url, params={"access_token": google_token})
        except httpx.HTTPError as exc:
            logger.warning("token introspection failed: %s", exc)
            return None
        if resp.status_code != 200:
            logger.info("token introspection rejected status=%s", resp.status_code)
            return None
        try:
            payload = resp.json()
        except ValueError:
            logger.warning("token introspection returned non-json body")
            return None
        email = payload.get("email") if isinstance(payload, dict) else None
        return email if isinstance(email, str) and email else None
