from __future__ import annotations

import json
import re
from typing import Any

from shopbot.ai.base import CompletionResult, TokenUsage, VisionResult

_CURRENT_MESSAGE_RE = re.compile(r"\*\*USER'S CURRENT MESSAGE:\*\*\n\"(.*)\"", re.DOTALL)

_HELP_WORDS = ("help", "sahajjo", "সাহায্য")
_RESET_WORDS = ("cancel", "reset", "বাতিল", "start over")
_SEARCH_WORDS = ("ache", "আছে", "have", "khujchi", "খুঁজছি", "search", "lagbe", "লাগবে")


def _current_message(user_prompt: str) -> str:
    match = _CURRENT_MESSAGE_RE.search(user_prompt or "")
    return (match.group(1) if match else user_prompt or "").strip()


def _search_query(text: str) -> str:
    query = text.lower()
    for word in _SEARCH_WORDS:
        query = query.replace(word, " ")
    query = re.sub(r"[?!.,]", " ", query)
    return " ".join(query.split())


class MockLLMProvider:
    """Keyword-driven stand-in used in development and when no API key is set."""

    name = "mock"

    def __init__(self, vision_data: dict[str, Any] | None = None) -> None:
        self.vision_data = vision_data or {}

    def _decide(self, text: str) -> dict[str, Any]:
        lowered = text.lower()
        if any(word in lowered for word in _HELP_WORDS):
            return {
                "action": "SHOW_HELP",
                "response": "কিভাবে সাহায্য করতে পারি বলুন। 😊",
                "confidence": 80,
                "reasoning": "help keyword",
            }
        if any(word in lowered for word in _RESET_WORDS):
            return {
                "action": "RESET_CONVERSATION",
                "response": "ঠিক আছে, নতুন করে শুরু করা যাক। 😊 Product এর ছবি পাঠান।",
                "newState": "IDLE",
                "confidence": 80,
                "reasoning": "reset keyword",
            }
        if any(word in lowered for word in _SEARCH_WORDS):
            query = _search_query(text)
            if query:
                return {
                    "action": "SEARCH_PRODUCTS",
                    "response": f"🔍 {query} খুঁজছি...",
                    "actionData": {"searchQuery": query},
                    "confidence": 70,
                    "reasoning": "search keyword",
                }
        return {
            "action": "SEND_RESPONSE",
            "response": "দুঃখিত, বুঝতে পারিনি। 😊 Product এর ছবি পাঠান অথবা \"help\" লিখুন।",
            "confidence": 40,
            "reasoning": "no rule matched",
        }

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        json_mode: bool = True,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> CompletionResult:
        decision = self._decide(_current_message(user_prompt))
        return CompletionResult(text=json.dumps(decision, ensure_ascii=False), usage=TokenUsage())

    def vision_analyze(
        self,
        image: bytes | str,
        instructions: str,
        *,
        content_type: str = "image/jpeg",
    ) -> VisionResult:
        return VisionResult(data=dict(self.vision_data), usage=TokenUsage(), raw_text=json.dumps(self.vision_data))
