from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any

SIGNATURE_PREFIX = "sha256="


@dataclass
class MessengerEvent:
    entry_id: str
    page_id: str
    sender_psid: str
    timestamp: int
    message_id: str | None = None
    text: str = ""
    attachments: list[dict[str, Any]] = field(default_factory=list)
    image_url: str | None = None
    postback_payload: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_postback(self) -> bool:
        return self.postback_payload is not None

    @property
    def message_type(self) -> str:
        if self.is_postback:
            return "postback"
        return "attachment" if self.attachments else "text"


def verify_signature(raw_body: bytes, signature: str | None, app_secret: str) -> bool:
    if not signature or not signature.startswith(SIGNATURE_PREFIX) or not app_secret:
        return False
    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature[len(SIGNATURE_PREFIX):], expected)


def generate_event_id(entry_id: str, timestamp: int, message_id: str) -> str:
    return hashlib.sha256(f"{entry_id}:{timestamp}:{message_id}".encode("utf-8")).hexdigest()


def _image_url(attachments: list[dict[str, Any]]) -> str | None:
    for attachment in attachments:
        if attachment.get("type") == "image":
            url = (attachment.get("payload") or {}).get("url")
            if url:
                return url
    return None


def parse_messenger_webhook(payload: dict[str, Any]) -> list[MessengerEvent]:
    """Flattens a page webhook into message and postback events; echoes and receipts are dropped."""
    if payload.get("object") != "page":
        return []

    events: list[MessengerEvent] = []
    for entry in payload.get("entry", []) or []:
        entry_id = str(entry.get("id") or "")
        for item in entry.get("messaging", []) or []:
            sender = str((item.get("sender") or {}).get("id") or "")
            page_id = str((item.get("recipient") or {}).get("id") or entry_id)
            timestamp = int(item.get("timestamp") or 0)
            if not sender:
                continue

            postback = item.get("postback")
            if postback and postback.get("payload"):
                events.append(
                    MessengerEvent(
                        entry_id=entry_id,
                        page_id=page_id,
                        sender_psid=sender,
                        timestamp=timestamp,
                        message_id=postback.get("mid"),
                        text=postback.get("title") or "",
                        postback_payload=str(postback["payload"]),
                        raw=item,
                    )
                )
                continue

            message = item.get("message") or {}
            if not message.get("mid") or message.get("is_echo"):
                continue
            attachments = list(message.get("attachments") or [])
            events.append(
                MessengerEvent(
                    entry_id=entry_id,
                    page_id=page_id,
                    sender_psid=sender,
                    timestamp=timestamp,
                    message_id=message["mid"],
                    text=(message.get("text") or "").strip(),
                    attachments=attachments,
                    image_url=_image_url(attachments),
                    raw=item,
                )
            )
    return events


def event_id_for(event: MessengerEvent) -> str:
    message_id = event.message_id or f"postback:{event.sender_psid}:{event.postback_payload}"
    return generate_event_id(event.entry_id, event.timestamp, message_id)
