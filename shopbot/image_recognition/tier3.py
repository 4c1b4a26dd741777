from __future__ import annotations

import logging
from typing import Iterable

from pydantic import ValidationError
from sqlalchemy.orm import Session

from shopbot.ai.base import LLMProvider, LLMProviderError, TokenUsage
from shopbot.ai.schema import VisionAnalysis
from shopbot.core.config import TIER3_MATCH_THRESHOLD
from shopbot.image_recognition.result import MatchResult, no_match
from shopbot.models.product import Product

logger = logging.getLogger(__name__)

VISION_INSTRUCTIONS = """Analyze this product image and extract key information. Return ONLY valid JSON in this exact format:
{
  "category": "product category (e.g., clothing, electronics, furniture)",
  "color": "dominant color name",
  "material": "material type if visible",
  "visual_description_keywords": ["keyword1", "keyword2", "keyword3"],
  "brand_text": "any visible brand/text on product"
}"""

CATEGORY_POINTS = 10
COLOR_POINTS = 15
KEYWORD_POINTS = 12
FALLBACK_KEYWORD_POINTS = 5
BRAND_POINTS = 20


def _overlaps(term: str, candidates: Iterable[str]) -> bool:
    needle = term.lower().strip()
    if not needle:
        return False
    for candidate in candidates:
        value = str(candidate).lower().strip()
        if value and (needle in value or value in needle):
            return True
    return False


def _keyword_score(analysis: VisionAnalysis, keywords: list[str]) -> int:
    score = 0
    if analysis.category and _overlaps(analysis.category, keywords):
        score += CATEGORY_POINTS
    if analysis.color and _overlaps(analysis.color, keywords):
        score += COLOR_POINTS
    matched = sum(1 for keyword in analysis.visual_description_keywords if _overlaps(keyword, keywords))
    score += matched * KEYWORD_POINTS
    if analysis.brand_text and _overlaps(analysis.brand_text, keywords):
        score += BRAND_POINTS
    return score


def _fallback_score(analysis: VisionAnalysis, product: Product) -> int:
    score = 0
    if analysis.category and product.category and _overlaps(analysis.category, [product.category]):
        score += CATEGORY_POINTS
    if analysis.color and _overlaps(analysis.color, product.dominant_colors or []):
        score += COLOR_POINTS

    product_text = f"{product.name} {product.description or ''}".lower()
    matched = sum(
        1
        for keyword in analysis.visual_description_keywords
        if keyword.strip() and keyword.lower() in product_text
    )
    score += matched * FALLBACK_KEYWORD_POINTS
    if analysis.brand_text and analysis.brand_text.lower() in product_text:
        score += BRAND_POINTS
    return score


def score_product(analysis: VisionAnalysis, product: Product) -> int:
    keywords = [str(keyword) for keyword in (product.search_keywords or []) if str(keyword).strip()]
    if keywords:
        return _keyword_score(analysis, keywords)
    return _fallback_score(analysis, product)


def analyze_image(
    provider: LLMProvider,
    image_bytes: bytes,
    *,
    content_type: str = "image/jpeg",
) -> tuple[VisionAnalysis, TokenUsage]:
    result = provider.vision_analyze(image_bytes, VISION_INSTRUCTIONS, content_type=content_type)
    try:
        analysis = VisionAnalysis.model_validate(result.data)
    except ValidationError as exc:
        raise LLMProviderError("vision response has an unexpected shape", usage=result.usage) from exc
    return analysis, result.usage


def find_tier3_match(
    db: Session,
    analysis: VisionAnalysis,
    workspace_id: int,
    *,
    threshold: float = TIER3_MATCH_THRESHOLD,
) -> MatchResult:
    products = (
        db.query(Product)
        .filter(Product.workspace_id == workspace_id)
        .order_by(Product.id.asc())
        .all()
    )

    best_product: Product | None = None
    best_score = 0
    for product in products:
        score = score_product(analysis, product)
        if score > best_score:
            best_product = product
            best_score = score

    metadata = {"analysis": analysis.model_dump(), "score": best_score}
    if best_product is not None and best_score > threshold:
        return MatchResult(product=best_product, confidence=float(best_score), tier="tier3", metadata=metadata)
    return no_match("tier3", **metadata)
