from __future__ import annotations

import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable

KEYWORDS_PATH = Path(__file__).resolve().parent / "data" / "keywords.json"

# delivery > price > payment > return > size > urgency > objection > seller
INTERRUPTION_PRIORITY = (
    "delivery",
    "price",
    "payment",
    "return",
    "size",
    "urgency",
    "objection",
    "seller",
)

SHORT_TOKEN_MAX_LEN = 2
_WORD_CHARS = r"0-9A-Za-z\u0980-\u09FF"
_BANGLA_DIGITS = str.maketrans("০১২৩৪৫৬৭৮৯", "0123456789")


@lru_cache(maxsize=4)
def load_keyword_tables(path: str | None = None) -> dict[str, Any]:
    source = Path(path) if path else KEYWORDS_PATH
    with source.open(encoding="utf-8") as handle:
        tables = json.load(handle)
    missing = [name for name in INTERRUPTION_PRIORITY if name not in tables.get("interruptions", {})]
    if missing:
        raise ValueError(f"keyword table missing categories: {', '.join(missing)}")
    return tables


@lru_cache(maxsize=2048)
def _whole_word_pattern(token: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![{_WORD_CHARS}]){re.escape(token)}(?![{_WORD_CHARS}])")


def _matches(lowered: str, keyword: str, whole_word: bool) -> bool:
    token = keyword.lower()
    if not token:
        return False
    if whole_word or len(token) <= SHORT_TOKEN_MAX_LEN:
        return _whole_word_pattern(token).search(lowered) is not None
    return token in lowered


def contains_keyword(text: str, keywords: Iterable[str], *, whole_word: bool = False) -> bool:
    """Short tokens (two characters or fewer) only match as whole words."""
    lowered = (text or "").lower().strip()
    if not lowered:
        return False
    return any(_matches(lowered, keyword, whole_word) for keyword in keywords)


def interruption_keywords(category: str) -> list[str]:
    return load_keyword_tables()["interruptions"][category]


def detect_all_intent(text: str) -> bool:
    return contains_keyword(text, load_keyword_tables()["all_items"], whole_word=True)


def detect_item_numbers(text: str) -> list[int]:
    """Item numbers in a selection like "1 ar 3" or "শুধু ২", in order, without repeats."""
    normalized = (text or "").translate(_BANGLA_DIGITS)
    numbers: list[int] = []
    for raw in re.findall(r"\d+", normalized):
        value = int(raw)
        if value >= 1 and value not in numbers:
            numbers.append(value)
    return numbers


def is_in_metro_address(address: str) -> bool:
    return contains_keyword(address, load_keyword_tables()["in_metro"])
