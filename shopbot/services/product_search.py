from __future__ import annotations

import re

from sqlalchemy.orm import Session

from shopbot.models.product import Product

DEFAULT_LIMIT = 5

NAME_WEIGHT = 3
DESCRIPTION_WEIGHT = 2
KEYWORD_WEIGHT = 4
CATEGORY_WEIGHT = 1


def tokenize(query: str) -> list[str]:
    return [token for token in re.split(r"\s+", (query or "").strip().lower()) if token]


def score_product(product: Product, tokens: list[str]) -> int:
    name = (product.name or "").lower()
    description = (product.description or "").lower()
    category = (product.category or "").lower()
    keywords = [str(keyword).lower() for keyword in (product.search_keywords or [])]

    score = 0
    for token in tokens:
        if token in name:
            score += NAME_WEIGHT
        if token in description:
            score += DESCRIPTION_WEIGHT
        if any(token in keyword for keyword in keywords):
            score += KEYWORD_WEIGHT
        if token in category:
            score += CATEGORY_WEIGHT
    return score


def search_products(db: Session, query: str, workspace_id: int, *, limit: int = DEFAULT_LIMIT) -> list[Product]:
    """Workspace products ranked by keyword relevance, best first, zero scores dropped."""
    tokens = tokenize(query)
    if not tokens:
        return []

    products = (
        db.query(Product)
        .filter(Product.workspace_id == workspace_id)
        .order_by(Product.id.asc())
        .all()
    )
    scored = [(score_product(product, tokens), product) for product in products]
    ranked = sorted((entry for entry in scored if entry[0] > 0), key=lambda entry: entry[0], reverse=True)
    return [product for _, product in ranked[:limit]]
