from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shopbot.core.config import IMAGE_CACHE_TTL_DAYS
from shopbot.models.image_recognition_cache import ImageRecognitionCache

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_cache(
    db: Session,
    image_hash: str,
    workspace_id: int,
    *,
    now: datetime | None = None,
) -> ImageRecognitionCache | None:
    """Unexpired entry for this image, positive or negative."""
    entry = (
        db.query(ImageRecognitionCache)
        .filter(
            ImageRecognitionCache.image_hash == image_hash,
            ImageRecognitionCache.workspace_id == workspace_id,
        )
        .first()
    )
    if entry is None:
        return None
    if _as_utc(entry.expires_at) <= (now or _utcnow()):
        return None
    return entry


def save_to_cache(
    db: Session,
    image_hash: str,
    workspace_id: int,
    *,
    product_id: int | None,
    confidence: float,
    ai_response: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> None:
    expires_at = (now or _utcnow()) + timedelta(days=IMAGE_CACHE_TTL_DAYS)
    try:
        entry = db.get(ImageRecognitionCache, image_hash)
        if entry is None:
            entry = ImageRecognitionCache(image_hash=image_hash)
            db.add(entry)
        entry.workspace_id = workspace_id
        entry.product_id = product_id
        entry.confidence = confidence
        entry.ai_response = ai_response
        entry.expires_at = expires_at
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to cache recognition result", extra={"image_hash": image_hash})


def clear_expired_cache(db: Session, *, now: datetime | None = None) -> int:
    cutoff = now or _utcnow()
    removed = 0
    for entry in db.query(ImageRecognitionCache).all():
        if _as_utc(entry.expires_at) <= cutoff:
            db.delete(entry)
            removed += 1
    if removed:
        db.commit()
    return removed
