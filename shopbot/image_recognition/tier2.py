from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from pydantic import ValidationError
from sqlalchemy.orm import Session

from shopbot.core.config import TIER2_MATCH_THRESHOLD
from shopbot.image_recognition.features import RGBColor, VisualFeatures
from shopbot.image_recognition.result import MatchResult, no_match
from shopbot.models.product import Product

logger = logging.getLogger(__name__)

MAX_COLOR_DISTANCE = math.sqrt(255 * 255 * 3)
COLOR_WEIGHTS = (0.5, 0.3, 0.2)
PRIMARY_COLOR_TOLERANCE = 50
PRIMARY_COLOR_PENALTY = 30


@dataclass(frozen=True)
class Tier2Scores:
    color_score: float = 0.0
    aspect_ratio_score: float = 0.0
    total_score: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "colorScore": self.color_score,
            "aspectRatioScore": self.aspect_ratio_score,
            "totalScore": self.total_score,
        }


def color_distance(first: RGBColor, second: RGBColor) -> float:
    return math.sqrt((first.r - second.r) ** 2 + (first.g - second.g) ** 2 + (first.b - second.b) ** 2)


def color_score(input_colors: list[RGBColor], product_colors: list[RGBColor]) -> float:
    if not product_colors:
        return 0.0
    total = 0.0
    for index, color in enumerate(input_colors[: len(COLOR_WEIGHTS)]):
        nearest = min(color_distance(color, candidate) for candidate in product_colors)
        similarity = (1 - nearest / MAX_COLOR_DISTANCE) * 100
        total += similarity * COLOR_WEIGHTS[index]
    return total / sum(COLOR_WEIGHTS)


def aspect_ratio_score(input_ratio: float, product_ratio: float) -> float:
    return max(0.0, 1 - abs(input_ratio - product_ratio)) * 100


def score_features(features: VisualFeatures, product_features: VisualFeatures) -> Tier2Scores:
    colors = color_score(features.dominant_colors, product_features.dominant_colors)
    aspect = aspect_ratio_score(features.aspect_ratio, product_features.aspect_ratio)

    penalty = 0
    if features.dominant_colors and product_features.dominant_colors:
        primary_distance = color_distance(features.dominant_colors[0], product_features.dominant_colors[0])
        if primary_distance > PRIMARY_COLOR_TOLERANCE:
            penalty = PRIMARY_COLOR_PENALTY

    total = max(0.0, colors * 0.6 + aspect * 0.4 - penalty)
    return Tier2Scores(
        color_score=round(colors, 2),
        aspect_ratio_score=round(aspect, 2),
        total_score=round(total, 2),
    )


def _product_features(product: Product) -> VisualFeatures | None:
    if not product.visual_features:
        return None
    try:
        return VisualFeatures.model_validate(product.visual_features)
    except ValidationError:
        logger.warning("Skipping product with unreadable visual features", extra={"product_id": product.id})
        return None


def find_tier2_match(
    db: Session,
    features: VisualFeatures,
    workspace_id: int,
    *,
    threshold: float = TIER2_MATCH_THRESHOLD,
) -> MatchResult:
    """Best visual match, accepted only when its total score is strictly above threshold."""
    products = (
        db.query(Product)
        .filter(Product.workspace_id == workspace_id)
        .order_by(Product.id.asc())
        .all()
    )

    best_product: Product | None = None
    best_scores = Tier2Scores()
    for product in products:
        product_features = _product_features(product)
        if product_features is None:
            continue
        scores = score_features(features, product_features)
        if scores.total_score > best_scores.total_score:
            best_product = product
            best_scores = scores

    if best_product is not None and best_scores.total_score > threshold:
        return MatchResult(
            product=best_product,
            confidence=best_scores.total_score,
            tier="tier2",
            metadata={"scores": best_scores.as_dict()},
        )
    return no_match("tier2", scores=best_scores.as_dict())
