from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Set, TypeVar
from urllib.parse import urlparse

from labelscan.core.sources import CandidateSource, FilteredCandidate

# Words that say nothing about which product a page is about.
STOP_WORDS: Set[str] = {
    "the", "a", "an", "and", "with", "for", "of",
    "nutrition", "calories", "facts", "ingredients",
    "food", "product", "item", "search", "results",
    "shop", "buy", "online",
}

# Page titles that are never a product name.
TITLE_BLACKLIST = [
    "nutrition facts", "calories in", "upc lookup", "barcode lookup",
    "search results", "access denied", "captcha", "verify you are human",
    "page not found", "404", "error", "log in", "sign in", "register",
    "create account", "cart", "checkout", "ndc lookup", "drug codes",
    "medication", "pharmacy", "incidecoder", "skinsort", "cosdna", "ewg",
    "skincarisma", "robot check",
]

MIN_TITLE_CHARS = 6
MAX_TITLE_CHARS = 150

T = TypeVar("T")


def _strip_punctuation(s: str) -> str:
    return re.sub(r"[^\w\s]", "", s or "")


def normalize_title(title: str) -> str:
    return re.sub(r"\s+", " ", _strip_punctuation((title or "").lower())).strip()


def title_keywords(title: str) -> List[str]:
    """Lower-cased keywords of a reference title; the first one is the brand token."""
    words = normalize_title(title).split(" ")
    return [w for w in words if len(w) > 2 and w not in STOP_WORDS]


@dataclass
class RelevanceResult:
    valid: List[FilteredCandidate] = field(default_factory=list)
    rejected: List[FilteredCandidate] = field(default_factory=list)


def score_candidate(candidate: CandidateSource, keywords: Sequence[str]) -> FilteredCandidate:
    normalized = normalize_title(candidate.raw_title)
    brand = keywords[0]
    has_brand = bool(normalized) and brand in normalized
    match_count = sum(1 for k in keywords if normalized and k in normalized)
    accepted = has_brand and (match_count >= 2 or len(keywords) < 3)
    return FilteredCandidate(
        candidate=candidate,
        match_score=match_count,
        has_brand_match=has_brand,
        accepted=accepted,
    )


def filter_candidates(candidates: Iterable[CandidateSource], reference_title: str) -> RelevanceResult:
    """
    Partition candidates by title overlap with the reference title.

    Accept when the brand token matches AND (two or more keywords match OR the
    title has fewer than three keywords). Without a usable reference title
    everything passes and relevance is left to the oracle.
    """
    result = RelevanceResult()
    keywords = title_keywords(reference_title)

    if not keywords:
        result.valid = [FilteredCandidate(candidate=c) for c in candidates]
        return result

    for c in candidates:
        fc = score_candidate(c, keywords)
        (result.valid if fc.accepted else result.rejected).append(fc)
    return result


def rank_rejected(rejected: Iterable[FilteredCandidate]) -> List[FilteredCandidate]:
    """Relaxed fallback order: brand matches first, then by score (stable)."""
    return sorted(rejected, key=lambda fc: (not fc.has_brand_match, -fc.match_score))


def normalized_domain(url: str) -> Optional[str]:
    """Hostname without a leading 'www.' (no public-suffix logic), None if unparsable."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    if host.startswith("www."):
        host = host[len("www."):]
    return host or None


def dedupe_by_domain(items: Iterable[T], seen: Optional[Set[str]] = None) -> List[T]:
    """
    Keep the first item per domain, in input order.
    `seen` pre-seeds domains to exclude and is updated in place.
    Items whose URL has no parsable host are always kept.
    """
    seen = seen if seen is not None else set()
    unique: List[T] = []
    for item in items:
        url = item if isinstance(item, str) else getattr(item, "url", "")
        domain = normalized_domain(url)
        if domain is None:
            unique.append(item)
            continue
        if domain in seen:
            continue
        seen.add(domain)
        unique.append(item)
    return unique


def clean_title(title: str) -> str:
    t = title or ""
    t = re.sub(r"UPC\s*\d+", "", t, flags=re.IGNORECASE)
    t = re.sub(r"Barcode\s*lookup", "", t, flags=re.IGNORECASE)
    # Site-name prefixes ("Amazon.com: Name") and suffixes ("Name | Site", "Name - Site")
    t = re.sub(r"^\s*[\w.-]+\.(?:com|net|org|co\.uk|ca)\s*:\s*", "", t, flags=re.IGNORECASE)
    t = re.split(r"\s+[\-–—]\s+|\s*\|\s*", t)[0]
    t = re.sub(r"Nutrition\s*Facts", "", t, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", t).strip(" -|:,")


def plausible_title(title: str) -> str:
    """Cleaned product-style title, or "" when the page title is not one."""
    cleaned = clean_title(title)
    if not (MIN_TITLE_CHARS <= len(cleaned) <= MAX_TITLE_CHARS):
        return ""
    lowered = cleaned.lower()
    if any(term in lowered for term in TITLE_BLACKLIST):
        return ""
    if not title_keywords(cleaned):
        return ""
    return cleaned


def extract_best_title(candidates: Iterable[CandidateSource]) -> str:
    """First plausible title in discovery order."""
    for c in candidates:
        title = plausible_title(c.raw_title)
        if title:
            return title
    return ""
