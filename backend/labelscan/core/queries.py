from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List

SHORT_TITLE_MAX_WORDS = 4


class QueryStrategy(str, Enum):
    """
    Search strategies in escalation order (most specific first).
    Barcode strategies work cold; title strategies need a known product title.
    """
    BARCODE_INGREDIENTS = "barcode_ingredients"
    BARCODE_INGREDIENTS_LIST = "barcode_ingredients_list"
    BARCODE_FOOD_PRODUCT = "barcode_food_product"
    TITLE = "title"
    TITLE_INGREDIENTS = "title_ingredients"
    TITLE_NUTRITION = "title_nutrition"
    TITLE_BUY = "title_buy"
    TITLE_LABEL = "title_label"
    TITLE_FACTS = "title_facts"
    TITLE_GROCERY = "title_grocery"
    SHORT_TITLE_INGREDIENTS = "short_title_ingredients"
    SHORT_TITLE_NUTRITION = "short_title_nutrition"

    @property
    def template(self) -> str:
        return _TEMPLATES[self]

    @property
    def requires_title(self) -> bool:
        return "{title}" in self.template or "{short_title}" in self.template

    @property
    def requires_short_title(self) -> bool:
        return "{short_title}" in self.template


_TEMPLATES = {
    QueryStrategy.BARCODE_INGREDIENTS: "{barcode} ingredients",
    QueryStrategy.BARCODE_INGREDIENTS_LIST: "{barcode} ingredients list",
    QueryStrategy.BARCODE_FOOD_PRODUCT: "{barcode} food product",
    QueryStrategy.TITLE: "{title}",
    QueryStrategy.TITLE_INGREDIENTS: "{title} ingredients",
    QueryStrategy.TITLE_NUTRITION: "{title} nutrition",
    QueryStrategy.TITLE_BUY: "{title} buy",
    QueryStrategy.TITLE_LABEL: "{title} label",
    QueryStrategy.TITLE_FACTS: "{title} facts",
    QueryStrategy.TITLE_GROCERY: "{title} grocery",
    QueryStrategy.SHORT_TITLE_INGREDIENTS: "{short_title} ingredients",
    QueryStrategy.SHORT_TITLE_NUTRITION: "{short_title} nutrition",
}


@dataclass(frozen=True)
class PlannedQuery:
    strategy: QueryStrategy
    text: str


def _collapse(s: str) -> str:
    return re.sub(r"\s+", " ", s or "").strip()


def shorten_title(title: str, max_words: int = SHORT_TITLE_MAX_WORDS) -> str:
    """
    First `max_words` words of a long title ("" when the title is already short).
    Long SEO titles tend to over-constrain search engines.
    """
    words = _collapse(title).split(" ")
    if len(words) <= max_words:
        return ""
    return " ".join(words[:max_words])


def query_key(text: str) -> str:
    return _collapse(text).lower()


def build_queries(barcode: str, known_title: str = "", issued: Iterable[str] = ()) -> List[PlannedQuery]:
    """
    Ordered query plan for one resolution step.
    Skips title strategies while no title is known, and anything already issued.
    """
    barcode = (barcode or "").strip()
    title = _collapse(known_title)
    short_title = shorten_title(title)
    seen = {query_key(q) for q in issued}

    planned: List[PlannedQuery] = []
    for strategy in QueryStrategy:
        if strategy.requires_title and not title:
            continue
        if strategy.requires_short_title and not short_title:
            continue

        text = _collapse(strategy.template.format(barcode=barcode, title=title, short_title=short_title))
        key = query_key(text)
        if not text or key in seen:
            continue
        seen.add(key)
        planned.append(PlannedQuery(strategy=strategy, text=text))

    return planned
