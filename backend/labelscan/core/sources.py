"""
Pipeline-internal source types.

CandidateSource -> FilteredCandidate -> VerifiedSource, each stage immutable.
API-facing shapes live in labelscan.schemas (pydantic); these stay plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CandidateSource:
    url: str
    raw_title: str = ""
    extracted_ingredients_text: str = ""
    body_text: str = ""
    fetched_at: datetime = field(default_factory=_utcnow)

    @property
    def is_usable(self) -> bool:
        return bool(self.extracted_ingredients_text.strip() or self.body_text.strip())

    @property
    def content(self) -> str:
        """Text handed to the oracle: ingredient section first, page text as context."""
        parts = []
        if self.extracted_ingredients_text:
            parts.append(f"Found Ingredients Section: {self.extracted_ingredients_text}")
        if self.body_text:
            parts.append(f"Full Page Text: {self.body_text}")
        return "\n".join(parts)


@dataclass(frozen=True)
class FilteredCandidate:
    candidate: CandidateSource
    match_score: int = 0
    has_brand_match: bool = False
    accepted: bool = True

    @property
    def url(self) -> str:
        return self.candidate.url

    @property
    def title(self) -> str:
        return self.candidate.raw_title


@dataclass(frozen=True)
class VerifiedSource:
    url: str
    title: str
    ingredients_text: str
    ingredients: Tuple[str, ...] = ()
    has_ingredients: bool = True

    def __post_init__(self) -> None:
        if not self.has_ingredients:
            raise ValueError(f"VerifiedSource requires has_ingredients=True ({self.url})")

    @classmethod
    def from_candidate(
        cls,
        fc: FilteredCandidate,
        ingredients: Tuple[str, ...] = (),
        ingredients_text: Optional[str] = None,
    ) -> "VerifiedSource":
        text = ingredients_text
        if not text:
            text = fc.candidate.extracted_ingredients_text or ", ".join(ingredients) or fc.candidate.body_text
        return cls(url=fc.url, title=fc.title, ingredients_text=text, ingredients=tuple(ingredients))

    @property
    def content(self) -> str:
        return self.ingredients_text


@dataclass(frozen=True)
class ProductDetails:
    """Product identity from a barcode database (name/brand hint for queries)."""
    name: str
    brand: str = ""
    ingredients_text: str = ""
    image_url: str = ""
    source: str = ""

    @property
    def display_title(self) -> str:
        if self.brand and self.brand.lower() not in self.name.lower():
            return f"{self.brand} {self.name}".strip()
        return self.name.strip()
