from __future__ import annotations

import hashlib

from sqlalchemy.orm import Session

from shopbot.image_recognition.result import MatchResult, no_match
from shopbot.models.product import Product


def compute_image_hash(image_bytes: bytes) -> str:
    return hashlib.sha256(image_bytes).hexdigest()


def find_tier1_match(db: Session, image_hash: str, workspace_id: int) -> MatchResult:
    product = (
        db.query(Product)
        .filter(Product.workspace_id == workspace_id, Product.image_hash == image_hash)
        .order_by(Product.id.asc())
        .first()
    )
    if product is None:
        return no_match("tier1")
    return MatchResult(product=product, confidence=100.0, tier="tier1")
