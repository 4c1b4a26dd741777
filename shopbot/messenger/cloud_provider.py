from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from shopbot.core.config import GRAPH_API_VERSION
from shopbot.messenger.base import MessengerSendResult, sanitize_payload, split_text
from shopbot.models.facebook_page import FacebookPage

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.facebook.com"


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _error_message(response: httpx.Response) -> str:
    try:
        error = (response.json() or {}).get("error") or {}
    except json.JSONDecodeError:
        return f"Messenger error {response.status_code}: {response.text[:200]}"
    return (
        f"Messenger error {response.status_code}: {error.get('message')} "
        f"(code {error.get('code')}, subcode {error.get('error_subcode') or 'n/a'})"
    )


class CloudMessengerProvider:
    name = "cloud"
    MAX_RETRIES = 3
    TIMEOUT_SECONDS = 20.0

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self._transport = transport

    def send_text(
        self,
        *,
        page: FacebookPage | None,
        recipient_psid: str,
        text: str,
    ) -> MessengerSendResult:
        if page is None or not page.access_token:
            return MessengerSendResult(status="failed", error="Facebook page credentials missing")

        result = MessengerSendResult(status="failed", error="empty message")
        for chunk in split_text(text):
            payload = {"recipient": {"id": recipient_psid}, "message": {"text": chunk}}
            result = self._send(page, payload)
            if not result.ok:
                break
        return result

    def _send(self, page: FacebookPage, payload: dict[str, Any]) -> MessengerSendResult:
        url = f"{GRAPH_API_BASE_URL}/{GRAPH_API_VERSION}/{page.id}/messages"
        params = {"access_token": page.access_token}
        last_error: str | None = None

        for attempt in range(1, self.MAX_RETRIES + 1):
            try:
                with httpx.Client(timeout=self.TIMEOUT_SECONDS, transport=self._transport) as client:
                    response = client.post(url, params=params, json=payload)
            except httpx.HTTPError as exc:
                # the request URL carries the page token, so only the class name is kept
                last_error = f"{type(exc).__name__} talking to Graph API"
                logger.warning(
                    "Messenger send attempt failed",
                    extra={"error": last_error, "attempt": attempt, "page_id": page.id},
                )
                continue

            if 200 <= response.status_code < 300:
                try:
                    data = response.json()
                except json.JSONDecodeError:
                    data = {"raw": response.text}
                return MessengerSendResult(
                    status="sent",
                    provider_message_id=data.get("message_id"),
                    response_payload=sanitize_payload(data),
                )

            last_error = _error_message(response)
            logger.warning(
                "Messenger send rejected",
                extra={"error": last_error, "status_code": response.status_code, "page_id": page.id},
            )
            if not _is_retryable(response.status_code):
                break

        return MessengerSendResult(status="failed", error=last_error)
