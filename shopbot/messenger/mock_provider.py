from __future__ import annotations

import logging
import uuid

from shopbot.messenger.base import MessengerSendResult
from shopbot.models.facebook_page import FacebookPage

logger = logging.getLogger(__name__)


class MockMessengerProvider:
    name = "mock"

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []

    def send_text(
        self,
        *,
        page: FacebookPage | None,
        recipient_psid: str,
        text: str,
    ) -> MessengerSendResult:
        page_id = page.id if page is not None else ""
        self.sent.append({"page_id": page_id, "recipient_psid": recipient_psid, "text": text})
        logger.info("Mock messenger send", extra={"page_id": page_id})
        return MessengerSendResult(status="sent", provider_message_id=f"mock-{uuid.uuid4().hex[:10]}")
