from __future__ import annotations

import logging
from functools import lru_cache

from shopbot.ai.base import LLMProvider
from shopbot.ai.mock_provider import MockLLMProvider
from shopbot.ai.openai_provider import OpenAIProvider
from shopbot.core.config import AI_PROVIDER, OPENAI_API_KEY

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def _build_provider(name: str, has_key: bool) -> LLMProvider:
    if name == "openai":
        if has_key:
            return OpenAIProvider()
        logger.warning("OPENAI_API_KEY missing, falling back to mock LLM provider")
    elif name != "mock":
        logger.warning("Unknown AI_PROVIDER %r, using mock", name)
    return MockLLMProvider()


def get_provider(name: str | None = None) -> LLMProvider:
    provider = (name or AI_PROVIDER or "mock").strip().lower()
    return _build_provider(provider, bool(OPENAI_API_KEY))
