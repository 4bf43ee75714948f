"""
Consensus over verified sources.

Unification (product name, unified list, allergens, diets) is one oracle call.
Discrepancies are computed here, deterministically, by comparing every
source's own ingredient tokens against the unified list.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from labelscan.core.gemini import GeminiRateLimitError, GeminiRequestError
from labelscan.core.oracle import (
    IngredientOracle,
    OracleParseError,
    coerce_bool,
    ensure_string_list,
)
from labelscan.core.sources import VerifiedSource
from labelscan.schemas.analyze import (
    AnalysisResult,
    DietaryCompliance,
    DietVerdict,
    DiscrepancyRecord,
    SourceReport,
)

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT_NAME = "Product Analysis"
DISCREPANCY_NOTE = "Detected programmatically"

TOP_9_ALLERGENS = (
    "Milk",
    "Eggs",
    "Fish",
    "Crustacean Shellfish",
    "Tree Nuts",
    "Peanuts",
    "Wheat",
    "Soybeans",
    "Sesame",
)

# Order matters: "shellfish" before "fish", "peanut" before the tree nuts.
_ALLERGEN_PATTERNS: List[Tuple[str, str]] = [
    (r"crustacean|shellfish|shrimp|prawn|crab|lobster|crayfish", "Crustacean Shellfish"),
    (r"peanut|groundnut", "Peanuts"),
    (r"tree\s*nut|almond|cashew|walnut|pecan|hazelnut|pistachio|macadamia|brazil\s*nut", "Tree Nuts"),
    (r"\bfish\b|anchov|salmon|tuna|\bcod\b", "Fish"),
    (r"\bmilk\b|dairy|lactose|casein|whey", "Milk"),
    (r"\beggs?\b", "Eggs"),
    (r"wheat", "Wheat"),
    (r"\bsoy|soja", "Soybeans"),
    (r"sesame", "Sesame"),
]

_QUALIFIERS = [
    r"\bcontains\s+2%\s+or\s+less\s+of\s*:?\s+",
    r"\bless\s+than\s+2%\s+of\s*:?\s+",
    r"\borganic\s+",
    r"\bnatural\s+",
    r"\bfresh\s+",
]

DIETS = {
    "vegan": "vegan",
    "vegetarian": "vegetarian",
    "pescatarian": "pescatarian",
    "gluten_free": "glutenFree",
}


class ConsensusError(Exception):
    """The final unification call failed; carries the oracle's raw text for debugging."""

    def __init__(self, message: str, raw: str = "", retry_after_seconds: Optional[float] = None):
        super().__init__(message)
        self.message = message
        self.raw = raw
        self.retry_after_seconds = retry_after_seconds

    def __str__(self) -> str:
        if self.raw:
            return f"{self.message}\nRaw Response: {self.raw[:2000]}"
        return self.message


def normalize_ingredient(text: str) -> str:
    """
    Comparison key for an ingredient name: lower-cased, qualifiers
    ("organic", "natural", "fresh", "contains 2% or less of") removed, then
    every non-alphanumeric character removed. Idempotent.
    """
    s = (text or "").lower()
    for pattern in _QUALIFIERS:
        s = re.sub(pattern, "", s)
    return re.sub(r"[^a-z0-9]", "", s)


def split_ingredient_text(text: str) -> List[str]:
    """Split an ingredient statement on top-level commas/semicolons (not inside parentheses)."""
    text = re.sub(r"^\s*ingredients?\s*:\s*", "", text or "", flags=re.IGNORECASE)
    parts: List[str] = []
    depth = 0
    current = []
    for ch in text:
        if ch in "([":
            depth += 1
        elif ch in ")]" and depth > 0:
            depth -= 1
        if ch in ",;" and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return [p.strip(" .\n\t") for p in parts if p.strip(" .\n\t")]


@dataclass(frozen=True)
class UnifiedIngredientEntry:
    ingredient: str
    present_in: Tuple[str, ...]
    missing_in: Tuple[str, ...]

    @property
    def is_discrepancy(self) -> bool:
        return bool(self.present_in) and bool(self.missing_in)


def _source_has(norm: str, source_tokens: Sequence[str]) -> bool:
    return any(t and (norm in t or t in norm) for t in source_tokens)


def unify_entries(
    unified: Sequence[str],
    sources: Sequence[Tuple[str, Sequence[str]]],
) -> List[UnifiedIngredientEntry]:
    """Presence of each unified ingredient across (url, ingredients) pairs."""
    tokenized = [(url, [normalize_ingredient(i) for i in ingredients]) for url, ingredients in sources]

    entries: List[UnifiedIngredientEntry] = []
    for ingredient in unified:
        norm = normalize_ingredient(ingredient)
        if not norm:
            continue
        present = tuple(url for url, tokens in tokenized if _source_has(norm, tokens))
        missing = tuple(url for url, tokens in tokenized if not _source_has(norm, tokens))
        entries.append(UnifiedIngredientEntry(ingredient=ingredient, present_in=present, missing_in=missing))
    return entries


def compute_discrepancies(
    unified: Sequence[str],
    sources: Sequence[Tuple[str, Sequence[str]]],
) -> List[DiscrepancyRecord]:
    """
    One record per unified ingredient present in some but not all sources.
    Sources with no ingredient tokens carry no evidence and are left out.
    """
    with_evidence = [(url, ings) for url, ings in sources if any(normalize_ingredient(i) for i in ings)]
    return [
        DiscrepancyRecord(
            ingredient=e.ingredient,
            present_in=list(e.present_in),
            missing_in=list(e.missing_in),
            note=DISCREPANCY_NOTE,
        )
        for e in unify_entries(unified, with_evidence)
        if e.is_discrepancy
    ]


def canonical_allergen(name: str) -> Optional[str]:
    lowered = (name or "").lower()
    if "coconut" in lowered:
        return None
    for pattern, canonical in _ALLERGEN_PATTERNS:
        if re.search(pattern, lowered):
            return canonical
    return None


def format_allergens(val: Any) -> List[str]:
    """Model allergen answers -> ["Wheat (Enriched Flour)", "Milk"], top 9 only, one per allergen."""
    if not isinstance(val, list):
        return []
    out: List[str] = []
    seen = set()
    for item in val:
        if isinstance(item, str):
            allergen, trigger = item, ""
        elif isinstance(item, dict):
            allergen = str(item.get("allergen") or item.get("name") or "")
            trigger = str(item.get("trigger") or item.get("source") or "")
        else:
            continue
        canonical = canonical_allergen(allergen)
        if canonical is None or canonical in seen:
            continue
        seen.add(canonical)
        out.append(f"{canonical} ({trigger.strip()})" if trigger.strip() else canonical)
    return out


def parse_dietary(val: Any) -> DietaryCompliance:
    val = val if isinstance(val, dict) else {}
    verdicts: Dict[str, DietVerdict] = {}
    for field_name, key in DIETS.items():
        raw = val.get(key)
        if raw is None:
            raw = val.get(field_name)
        if isinstance(raw, dict):
            verdicts[field_name] = DietVerdict(
                is_compliant=coerce_bool(raw.get("isCompliant")),
                reason=str(raw["reason"]) if raw.get("reason") else None,
                trigger=str(raw["trigger"]) if raw.get("trigger") else None,
            )
        else:
            verdicts[field_name] = DietVerdict(is_compliant=False, reason="Could not be determined")
    return DietaryCompliance(**verdicts)


def _final_source_ingredients(payload: Dict[str, Any], sources: Sequence[VerifiedSource]) -> Dict[str, List[str]]:
    entries = payload.get("sources")
    entries = entries if isinstance(entries, list) else []
    urls = [s.url for s in sources]

    found: Dict[str, List[str]] = {}
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        url = entry.get("url")
        if not isinstance(url, str) or url not in urls:
            if index >= len(urls):
                continue
            url = urls[index]
        found.setdefault(url, ensure_string_list(entry.get("ingredients")))
    return found


def resolve_source_ingredients(source: VerifiedSource, final: Optional[List[str]]) -> List[str]:
    """Final-call list, else the verification-stage list, else the split ingredient text."""
    if final:
        return final
    if source.ingredients:
        return list(source.ingredients)
    return split_ingredient_text(source.ingredients_text)


class ConsensusEngine:
    def __init__(self, oracle: IngredientOracle):
        self.oracle = oracle

    async def build(self, sources: Sequence[VerifiedSource]) -> AnalysisResult:
        if not sources:
            raise ConsensusError("No verified sources to analyze")

        try:
            result = await self.oracle.analyze(sources)
        except GeminiRateLimitError as e:
            raise ConsensusError(
                f"Final analysis failed: {e.message}",
                raw=e.body or "",
                retry_after_seconds=e.retry_after_seconds,
            )
        except GeminiRequestError as e:
            raise ConsensusError(f"Final analysis failed: {e.message}", raw=e.body or "")

        if isinstance(result, OracleParseError):
            raise ConsensusError(f"Final analysis returned malformed output: {result.reason}", raw=result.raw)

        payload = result.payload
        unified = ensure_string_list(payload.get("unifiedIngredientList"))
        if not unified:
            raise ConsensusError("Final analysis returned no unified ingredient list", raw=result.raw)

        final_lists = _final_source_ingredients(payload, sources)
        resolved = [(s.url, resolve_source_ingredients(s, final_lists.get(s.url))) for s in sources]

        differences = compute_discrepancies(unified, resolved)
        logger.info(
            "Consensus over %d sources: %d ingredients, %d discrepancies",
            len(sources), len(unified), len(differences),
        )

        product_name = str(payload.get("productName") or "").strip() or DEFAULT_PRODUCT_NAME
        return AnalysisResult(
            product_name=product_name,
            unified_ingredient_list=unified,
            differences=differences,
            top9_allergens=format_allergens(payload.get("top9Allergens")),
            dietary_compliance=parse_dietary(payload.get("dietaryCompliance")),
            sources=[SourceReport(url=url, ingredients=ings, has_ingredients=True) for url, ings in resolved],
        )
