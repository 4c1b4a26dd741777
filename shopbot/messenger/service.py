from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from shopbot.core.config import MESSENGER_FALLBACK_TO_MOCK, MESSENGER_PROVIDER
from shopbot.messenger.base import MessengerProvider, MessengerSendResult
from shopbot.messenger.cloud_provider import CloudMessengerProvider
from shopbot.messenger.mock_provider import MockMessengerProvider
from shopbot.models.facebook_page import FacebookPage

logger = logging.getLogger(__name__)


class MessengerService:
    def __init__(
        self,
        *,
        provider_name: str = MESSENGER_PROVIDER,
        fallback_to_mock: bool = MESSENGER_FALLBACK_TO_MOCK,
        cloud_provider: MessengerProvider | None = None,
        mock_provider: MessengerProvider | None = None,
    ) -> None:
        self.provider_name = provider_name
        self.fallback_to_mock = fallback_to_mock
        self._cloud_provider = cloud_provider or CloudMessengerProvider()
        self._mock_provider = mock_provider or MockMessengerProvider()

    def get_page(self, db: Session, page_id: str) -> FacebookPage | None:
        return db.get(FacebookPage, page_id)

    def _select_provider(self, page: FacebookPage | None) -> MessengerProvider:
        if self.provider_name == "cloud" and page is not None and page.access_token:
            return self._cloud_provider
        return self._mock_provider

    def send_text(self, db: Session, *, page_id: str, recipient_psid: str, text: str) -> MessengerSendResult:
        page = self.get_page(db, page_id)
        provider = self._select_provider(page)
        result = provider.send_text(page=page, recipient_psid=recipient_psid, text=text)

        if not result.ok and provider is not self._mock_provider and self.fallback_to_mock:
            logger.warning(
                "Messenger send failed, using mock provider",
                extra={"error": result.error, "page_id": page_id},
            )
            result = self._mock_provider.send_text(page=page, recipient_psid=recipient_psid, text=text)

        if not result.ok:
            logger.warning("Messenger send failed", extra={"error": result.error, "page_id": page_id})
        return result


messenger_service = MessengerService()
