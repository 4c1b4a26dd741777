from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class LLMProviderError(Exception):
    """Raised by providers for transport, timeout and response-shape failures."""

    def __init__(self, message: str, *, usage: TokenUsage | None = None) -> None:
        super().__init__(message)
        self.usage = usage


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CompletionResult:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class VisionResult:
    data: dict[str, Any]
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw_text: str = ""


class LLMProvider(Protocol):
    name: str

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        json_mode: bool = True,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> CompletionResult:
        ...

    def vision_analyze(
        self,
        image: bytes | str,
        instructions: str,
        *,
        content_type: str = "image/jpeg",
    ) -> VisionResult:
        ...
