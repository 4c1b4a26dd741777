from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shopbot.ai.base import TokenUsage
from shopbot.models.api_usage import ApiUsage

logger = logging.getLogger(__name__)

# gpt-4o-mini list price, USD per million tokens
INPUT_COST_PER_MILLION = 0.15
OUTPUT_COST_PER_MILLION = 0.60


def calculate_cost(input_tokens: int, output_tokens: int) -> float:
    input_cost = (input_tokens / 1_000_000) * INPUT_COST_PER_MILLION
    output_cost = (output_tokens / 1_000_000) * OUTPUT_COST_PER_MILLION
    return input_cost + output_cost


def log_api_usage(
    db: Session,
    *,
    workspace_id: int,
    api_type: str,
    usage: TokenUsage,
    image_hash: str | None = None,
) -> ApiUsage | None:
    """Stores one billing row. Failures are logged and never interrupt the reply."""
    cost = calculate_cost(usage.input_tokens, usage.output_tokens)
    entry = ApiUsage(
        workspace_id=workspace_id,
        api_type=api_type,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        cost=round(cost, 6),
        image_hash=image_hash,
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Failed to record API usage",
            extra={"workspace_id": workspace_id, "api_type": api_type},
        )
        return None
    logger.info(
        "API usage recorded",
        extra={
            "workspace_id": workspace_id,
            "api_type": api_type,
            "input_tokens": usage.input_tokens,
            "output_tokens": usage.output_tokens,
            "cost_usd": round(cost, 6),
        },
    )
    return entry
