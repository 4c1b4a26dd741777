from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from shopbot.models.product import Product


@dataclass
class MatchResult:
    """Outcome of one tier, or of the whole pipeline."""

    product: Product | None
    confidence: float = 0.0
    tier: str = "none"
    metadata: dict[str, Any] = field(default_factory=dict)
    image_hash: str | None = None

    @property
    def matched(self) -> bool:
        return self.product is not None


def no_match(tier: str = "none", **metadata: Any) -> MatchResult:
    return MatchResult(product=None, confidence=0.0, tier=tier, metadata=metadata)
