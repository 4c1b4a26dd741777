from __future__ import annotations

import base64
import json
import logging

from openai import OpenAI, OpenAIError

from shopbot.ai.base import CompletionResult, LLMProviderError, TokenUsage, VisionResult
from shopbot.ai.schema import parse_json_object
from shopbot.core.config import LLM_TIMEOUT_SECONDS, OPENAI_API_KEY, OPENAI_MODEL, OPENAI_VISION_MODEL

logger = logging.getLogger(__name__)


def _usage_from(response) -> TokenUsage:
    usage = getattr(response, "usage", None)
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
    )


def _message_text(response) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    return choices[0].message.content or ""


def to_data_url(image: bytes, content_type: str = "image/jpeg") -> str:
    encoded = base64.b64encode(image).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


class OpenAIProvider:
    name = "openai"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = OPENAI_MODEL,
        vision_model: str = OPENAI_VISION_MODEL,
        timeout: float = LLM_TIMEOUT_SECONDS,
        client: OpenAI | None = None,
    ) -> None:
        self.api_key = api_key or OPENAI_API_KEY
        self.model = model
        self.vision_model = vision_model
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise LLMProviderError("OPENAI_API_KEY not configured")
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=1)
        return self._client

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        json_mode: bool = True,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> CompletionResult:
        kwargs = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self.client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            logger.warning("OpenAI completion failed", extra={"error": str(exc), "model": self.model})
            raise LLMProviderError(str(exc)) from exc

        return CompletionResult(text=_message_text(response) or "{}", usage=_usage_from(response))

    def vision_analyze(
        self,
        image: bytes | str,
        instructions: str,
        *,
        content_type: str = "image/jpeg",
    ) -> VisionResult:
        # Messenger CDN URLs are not reachable by the API, so bytes go inline
        url = to_data_url(image, content_type) if isinstance(image, bytes) else image
        try:
            response = self.client.chat.completions.create(
                model=self.vision_model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": instructions},
                            {"type": "image_url", "image_url": {"url": url, "detail": "low"}},
                        ],
                    }
                ],
                max_tokens=300,
                temperature=0.3,
            )
        except OpenAIError as exc:
            logger.warning("OpenAI vision call failed", extra={"error": str(exc), "model": self.vision_model})
            raise LLMProviderError(str(exc)) from exc

        text = _message_text(response)
        usage = _usage_from(response)
        try:
            data = parse_json_object(text)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Vision response was not a JSON object", extra={"raw_response": text[:500]})
            raise LLMProviderError("invalid JSON from vision model", usage=usage) from exc
        return VisionResult(data=data, usage=usage, raw_text=text)
