from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from shopbot.models.facebook_page import FacebookPage

# Graph API rejects text messages longer than this
MAX_TEXT_LENGTH = 2000


@dataclass
class MessengerSendResult:
    status: str
    provider_message_id: str | None = None
    error: str | None = None
    response_payload: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


class MessengerProvider(Protocol):
    name: str

    def send_text(
        self,
        *,
        page: FacebookPage | None,
        recipient_psid: str,
        text: str,
    ) -> MessengerSendResult:
        ...


def split_text(text: str, limit: int = MAX_TEXT_LENGTH) -> list[str]:
    """Splits on line breaks where possible so each chunk fits one message."""
    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) <= limit:
            current = candidate
            continue
        if current:
            chunks.append(current)
        while len(line) > limit:
            chunks.append(line[:limit])
            line = line[limit:]
        current = line
    if current:
        chunks.append(current)
    return chunks


SENSITIVE_KEYS = {"access_token", "verify_token", "app_secret", "authorization", "token"}


def _mask_value(value: Any) -> Any:
    if value is None:
        return None
    text = str(value)
    if len(text) <= 4:
        return "****"
    return f"****{text[-4:]}"


def sanitize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            return {key: _sanitize_value(key, inner) for key, inner in value.items()}
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    def _sanitize_value(key: str, value: Any) -> Any:
        if key.lower() in SENSITIVE_KEYS:
            return _mask_value(value)
        return _sanitize(value)

    return _sanitize(payload)
