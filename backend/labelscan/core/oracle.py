"""
AI oracle adapter.

The language model is treated as an unreliable classifier/summarizer: it may
answer with prose around the JSON, code fences, stringified booleans, or
nothing usable at all. This module is the only place that touches raw model
text; everything downstream receives an OracleResult.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from labelscan.core import gemini
from labelscan.core.sources import FilteredCandidate, VerifiedSource

logger = logging.getLogger(__name__)

MAX_VERIFY_CHARS_PER_SOURCE = 6000
MAX_ANALYZE_CHARS_PER_SOURCE = 8000


@dataclass(frozen=True)
class OracleOk:
    payload: Dict[str, Any]
    raw: str = ""


@dataclass(frozen=True)
class OracleParseError:
    raw: str
    reason: str


OracleResult = Union[OracleOk, OracleParseError]

Generate = Callable[..., Awaitable[str]]


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def _balanced_object_end(text: str, start: int) -> int:
    """Index of the brace closing the object opened at `start`, or -1."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Robustly extract the first valid JSON object from model output.
    Handles:
    - clean JSON (a bare top-level list is wrapped as {"sources": [...]})
    - ```json ... ``` fenced blocks
    - extra text before/after, braces inside strings, nested objects
    """
    text = (text or "").strip()
    if not text:
        raise ValueError("Empty model output")

    try:
        obj = json.loads(text)
        if isinstance(obj, dict):
            return obj
        if isinstance(obj, list):
            return {"sources": obj}
    except ValueError:
        pass

    fenced = re.search(r"```(?:json)?\s*(.*?)\s*```", text, re.DOTALL | re.IGNORECASE)
    if fenced:
        try:
            obj = json.loads(fenced.group(1))
            if isinstance(obj, dict):
                return obj
        except ValueError:
            pass

    start = text.find("{")
    while start != -1:
        end = _balanced_object_end(text, start)
        if end == -1:
            break
        try:
            obj = json.loads(text[start:end + 1])
            if isinstance(obj, dict):
                return obj
        except ValueError:
            pass
        start = text.find("{", start + 1)

    raise ValueError("No JSON object found in model output")


def parse_oracle_text(raw: str) -> OracleResult:
    try:
        return OracleOk(payload=extract_json_object(raw), raw=raw)
    except ValueError as e:
        return OracleParseError(raw=raw or "", reason=str(e))


# ---------------------------------------------------------------------------
# Lenient coercion of model values
# ---------------------------------------------------------------------------

def coerce_bool(val: Any) -> bool:
    if isinstance(val, bool):
        return val
    if isinstance(val, (int, float)):
        return val != 0
    if isinstance(val, str):
        return val.strip().lower() in ("true", "yes", "1")
    return False


def ensure_string_list(val: Any) -> List[str]:
    if isinstance(val, list):
        items = [str(v).strip() for v in val if v is not None and not isinstance(v, (dict, list))]
    elif isinstance(val, str):
        items = [val.strip()]
    else:
        items = []
    return [i for i in items if i]


@dataclass(frozen=True)
class SourceVerdict:
    url: str
    has_ingredients: bool
    ingredients: Tuple[str, ...] = ()


def parse_verdicts(payload: Dict[str, Any], candidates: Sequence[FilteredCandidate]) -> List[SourceVerdict]:
    """
    Map the model's per-source answers back onto the batch.
    Matched by URL; answers without a known URL fall back to position.
    Batch entries the model skipped get no verdict (= not verified).
    """
    entries = payload.get("sources")
    if not isinstance(entries, list):
        return []

    by_url = {c.url: c for c in candidates}
    verdicts: Dict[str, SourceVerdict] = {}
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        url = entry.get("url")
        if not isinstance(url, str) or url not in by_url:
            if index >= len(candidates):
                continue
            url = candidates[index].url
        if url in verdicts:
            continue
        ingredients = tuple(ensure_string_list(entry.get("ingredients")))
        has = coerce_bool(entry.get("hasIngredients")) or bool(ingredients)
        verdicts[url] = SourceVerdict(url=url, has_ingredients=has, ingredients=ingredients)

    return [verdicts[c.url] for c in candidates if c.url in verdicts]


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

def _verify_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "sources": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "hasIngredients": {"type": "boolean"},
                        "ingredients": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["url", "hasIngredients", "ingredients"],
                },
            }
        },
        "required": ["sources"],
    }


def _verdict_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "isCompliant": {"type": "boolean"},
            "reason": {"type": "string"},
            "trigger": {"type": "string"},
        },
        "required": ["isCompliant"],
    }


def _analysis_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "productName": {"type": "string"},
            "sources": _verify_schema()["properties"]["sources"],
            "unifiedIngredientList": {"type": "array", "items": {"type": "string"}},
            "top9Allergens": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"allergen": {"type": "string"}, "trigger": {"type": "string"}},
                    "required": ["allergen"],
                },
            },
            "dietaryCompliance": {
                "type": "object",
                "properties": {
                    "vegan": _verdict_schema(),
                    "vegetarian": _verdict_schema(),
                    "pescatarian": _verdict_schema(),
                    "glutenFree": _verdict_schema(),
                },
                "required": ["vegan", "vegetarian", "pescatarian", "glutenFree"],
            },
        },
        "required": ["productName", "sources", "unifiedIngredientList", "top9Allergens", "dietaryCompliance"],
    }


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

VERIFY_PROMPT = (
    "You are a food ingredient expert. Below is text scraped from several web pages that may "
    "describe the same packaged food product.\n"
    "For EACH page decide whether it contains a usable ingredient list for the product named in "
    "its title. Marketing copy, recipes, category tags and 'free from' claims are not ingredients. "
    "If a page is about a different product or brand, it has no usable ingredients.\n"
    "Return ONLY JSON: {\"sources\": [{\"url\", \"hasIngredients\", \"ingredients\": [..]}]} with "
    "exactly one entry per input page, in input order.\n\n"
    "Pages:\n"
)

ANALYZE_PROMPT = (
    "You are a food ingredient expert. Below is ingredient text from several verified sources for "
    "the same packaged food product.\n"
    "1. Identify the product name (use \"Product Analysis\" if unclear).\n"
    "2. Extract each source's ingredient list (one entry per input source, same order; "
    "use [] when none).\n"
    "3. Build one unified, deduplicated ingredient list from the most complete source, with clean "
    "ingredient names.\n"
    "4. List which of ONLY these allergens the unified list triggers: Milk, Eggs, Fish, Crustacean "
    "Shellfish, Tree Nuts, Peanuts, Wheat, Soybeans, Sesame. Give the triggering ingredient.\n"
    "5. Judge vegan, vegetarian, pescatarian and glutenFree compliance with a reason and, when not "
    "compliant, the triggering ingredient.\n"
    "Return ONLY JSON matching the schema.\n\n"
    "Sources:\n"
)


def _verify_input(candidates: Sequence[FilteredCandidate]) -> str:
    data = [
        {"url": c.url, "title": c.title, "content": c.candidate.content[:MAX_VERIFY_CHARS_PER_SOURCE]}
        for c in candidates
    ]
    return json.dumps(data, ensure_ascii=False)


def _analyze_input(sources: Sequence[VerifiedSource]) -> str:
    data = [
        {
            "url": s.url,
            "title": s.title,
            "ingredients": list(s.ingredients),
            "content": s.ingredients_text[:MAX_ANALYZE_CHARS_PER_SOURCE],
        }
        for s in sources
    ]
    return json.dumps(data, ensure_ascii=False)


class IngredientOracle:
    """
    Gemini-backed verifier/summarizer.
    Transport failures raise gemini.GeminiRequestError; parse failures come back
    as OracleParseError. Callers decide which of those is fatal.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, generate: Optional[Generate] = None):
        self.client = client
        self._generate = generate or gemini.generate_json_text

    async def _ask(self, prompt: str, schema: Dict[str, Any]) -> OracleResult:
        raw = await self._generate(prompt, schema, client=self.client)
        result = parse_oracle_text(raw)
        if isinstance(result, OracleParseError):
            logger.warning("Oracle returned unparsable output (%s): %.300s", result.reason, raw)
        return result

    async def verify(self, candidates: Sequence[FilteredCandidate]) -> OracleResult:
        return await self._ask(VERIFY_PROMPT + _verify_input(candidates), _verify_schema())

    async def analyze(self, sources: Sequence[VerifiedSource]) -> OracleResult:
        return await self._ask(ANALYZE_PROMPT + _analyze_input(sources), _analysis_schema())
