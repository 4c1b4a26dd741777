from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from shopbot.ai.base import LLMProvider, LLMProviderError
from shopbot.ai.service import get_provider
from shopbot.ai.usage import log_api_usage
from shopbot.core.config import IMAGE_FETCH_TIMEOUT_SECONDS
from shopbot.image_recognition.cache import check_cache, save_to_cache
from shopbot.image_recognition.features import ImageFeatureError, extract_visual_features
from shopbot.image_recognition.result import MatchResult, no_match
from shopbot.image_recognition.tier1 import compute_image_hash, find_tier1_match
from shopbot.image_recognition.tier2 import find_tier2_match
from shopbot.image_recognition.tier3 import analyze_image, find_tier3_match
from shopbot.models.product import Product

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024


class ImageFetchError(Exception):
    pass


@dataclass
class FetchedImage:
    content: bytes
    content_type: str = "image/jpeg"


def fetch_image(url: str, *, timeout: float = IMAGE_FETCH_TIMEOUT_SECONDS) -> FetchedImage:
    try:
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            response = client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise ImageFetchError(f"could not download image: {exc}") from exc

    if len(response.content) > MAX_IMAGE_BYTES:
        raise ImageFetchError("image too large")
    content_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip() or "image/jpeg"
    return FetchedImage(content=response.content, content_type=content_type)


def _from_cache(db: Session, image_hash: str, workspace_id: int) -> MatchResult | None:
    entry = check_cache(db, image_hash, workspace_id)
    if entry is None:
        return None
    if entry.product_id is None:
        return no_match("cache", cached=True)
    product = (
        db.query(Product)
        .filter(Product.id == entry.product_id, Product.workspace_id == workspace_id)
        .first()
    )
    if product is None:
        # product was deleted since the entry was written
        return None
    return MatchResult(
        product=product,
        confidence=float(entry.confidence or 0),
        tier="cache",
        metadata={"analysis": entry.ai_response},
    )


def recognize_image(
    db: Session,
    workspace_id: int,
    *,
    image_url: str | None = None,
    image: FetchedImage | None = None,
    provider: LLMProvider | None = None,
    fetcher: Callable[[str], FetchedImage] = fetch_image,
) -> MatchResult:
    """Runs tier 1, tier 2, the recognition cache and tier 3 in that order.

    Raises ImageFetchError when the image cannot be downloaded; every later
    failure degrades to a no-match result.
    """
    started = time.perf_counter()
    if image is None:
        if not image_url:
            raise ImageFetchError("no image supplied")
        image = fetcher(image_url)

    image_hash = compute_image_hash(image.content)
    result = _run_tiers(db, workspace_id, image, image_hash, provider)
    result.image_hash = image_hash

    logger.info(
        "Image recognition finished",
        extra={
            "workspace_id": workspace_id,
            "tier": result.tier,
            "matched": result.matched,
            "confidence": result.confidence,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
    return result


def _run_tiers(
    db: Session,
    workspace_id: int,
    image: FetchedImage,
    image_hash: str,
    provider: LLMProvider | None,
) -> MatchResult:
    tier1 = find_tier1_match(db, image_hash, workspace_id)
    if tier1.matched:
        return tier1

    tier2_scores = None
    try:
        features = extract_visual_features(image.content)
    except ImageFeatureError as exc:
        logger.warning("Skipping tier 2", extra={"error": str(exc), "workspace_id": workspace_id})
    else:
        tier2 = find_tier2_match(db, features, workspace_id)
        if tier2.matched:
            return tier2
        tier2_scores = tier2.metadata.get("scores")

    cached = _from_cache(db, image_hash, workspace_id)
    if cached is not None:
        return cached

    provider = provider or get_provider()
    try:
        analysis, usage = analyze_image(provider, image.content, content_type=image.content_type)
    except LLMProviderError as exc:
        if exc.usage is not None:
            log_api_usage(db, workspace_id=workspace_id, api_type="openai_vision", usage=exc.usage, image_hash=image_hash)
        logger.warning("Tier 3 analysis failed", extra={"error": str(exc), "workspace_id": workspace_id})
        return no_match("none", tier2_scores=tier2_scores, error=str(exc))

    log_api_usage(db, workspace_id=workspace_id, api_type="openai_vision", usage=usage, image_hash=image_hash)

    if analysis.is_empty():
        return no_match("none", tier2_scores=tier2_scores)

    tier3 = find_tier3_match(db, analysis, workspace_id)
    save_to_cache(
        db,
        image_hash,
        workspace_id,
        product_id=tier3.product.id if tier3.product is not None else None,
        confidence=tier3.confidence,
        ai_response=analysis.model_dump(),
    )
    if tier3.matched:
        return tier3
    return no_match("none", tier2_scores=tier2_scores, **tier3.metadata)
