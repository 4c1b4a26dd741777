from __future__ import annotations

from dataclasses import dataclass

from shopbot.conversation.keywords import (
    INTERRUPTION_PRIORITY,
    contains_keyword,
    interruption_keywords,
    load_keyword_tables,
)


@dataclass(frozen=True)
class Classification:
    type: str | None
    is_order_intent: bool
    is_details_request: bool


def get_interruption_type(text: str) -> str | None:
    for category in INTERRUPTION_PRIORITY:
        if contains_keyword(text, interruption_keywords(category)):
            return category
    return None


def is_details_request(text: str) -> bool:
    tables = load_keyword_tables()
    return contains_keyword(text, tables["details"]) or contains_keyword(text, interruption_keywords("price"))


def is_order_intent(text: str) -> bool:
    return contains_keyword(text, load_keyword_tables()["order"])


def classify(text: str) -> Classification:
    return Classification(
        type=get_interruption_type(text),
        is_order_intent=is_order_intent(text),
        is_details_request=is_details_request(text),
    )
