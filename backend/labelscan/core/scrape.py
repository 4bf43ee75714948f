from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx
from bs4 import BeautifulSoup

from labelscan.core.config import settings
from labelscan.core.search import USER_AGENT
from labelscan.core.sources import CandidateSource

logger = logging.getLogger(__name__)

PAGE_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Upgrade-Insecure-Requests": "1",
}

# Product databases with a JSON endpoint keyed by barcode.
OFF_PRODUCT_URL = re.compile(r"openfoodfacts\.(?:org|net)/product/(\d{6,14})", re.IGNORECASE)
OFF_API_URL = "https://world.openfoodfacts.org/api/v0/product/{barcode}.json"

STRIP_TAGS = ["script", "style", "nav", "header", "footer", "iframe", "noscript", "img", "svg"]

BLOCK_TAGS = ["p", "div", "section", "article", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr", "dd", "dt"]

INGREDIENT_SELECTORS = [
    ".ingredients",
    "#ingredients",
    '[itemprop="ingredients"]',
    '[itemprop="recipeIngredient"]',
    ".product-ingredients",
    ".ingredients-list",
    "#ingredients-list",
    ".field--name-field-ingredients",
    '[data-testid*="ingredient"]',
    '[class*="ingredient"]',
    '[id*="ingredient"]',
]

MIN_INGREDIENT_BLOCK_CHARS = 20
MAX_INGREDIENT_SECTION_CHARS = 5000

# Soft 403s: a short page mentioning one of these is a bot wall, not a product page.
BLOCK_PAGE_MARKERS = [
    "access denied",
    "security check",
    "captcha",
    "robot",
    "human verification",
    "please verify you are a human",
    "access to this page has been denied",
    "403 forbidden",
    "404 not found",
    "enable javascript",
]
BLOCK_PAGE_MAX_CHARS = 500


class ScrapeError(Exception):
    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


def _normalize_inline(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def _normalize_block_text(text: str) -> str:
    # Collapse spaces/tabs but keep line breaks, then drop empty lines.
    text = re.sub(r"[ \t\r\f\v\xa0]+", " ", text or "")
    lines = [line.strip() for line in text.split("\n")]
    return "\n".join(line for line in lines if line)


def _extract_title(soup: BeautifulSoup) -> str:
    if soup.title is not None:
        title = _normalize_inline(soup.title.get_text())
        if title:
            return title
    h1 = soup.find("h1")
    return _normalize_inline(h1.get_text(" ")) if h1 is not None else ""


def _extract_ingredient_sections(soup: BeautifulSoup) -> str:
    blocks: List[str] = []
    for selector in INGREDIENT_SELECTORS:
        for el in soup.select(selector):
            text = _normalize_inline(el.get_text(" "))
            if len(text) <= MIN_INGREDIENT_BLOCK_CHARS:
                continue
            # Nested matches ([class*=ingredient] inside .ingredients) repeat text.
            if any(text in b for b in blocks):
                continue
            blocks = [b for b in blocks if b not in text]
            blocks.append(text)
    return "\n".join(blocks)[:MAX_INGREDIENT_SECTION_CHARS]


def extract_candidate(url: str, html: str, max_body_chars: Optional[int] = None) -> CandidateSource:
    """
    HTML -> CandidateSource.
    Targeted ingredient blocks first, whole-body text as the always-present fallback.
    Raises ScrapeError for empty pages and bot walls.
    """
    max_body_chars = max_body_chars or settings.MAX_BODY_CHARS
    soup = BeautifulSoup(html or "", "html.parser")

    # Title first: the first <h1> often sits inside a <header> we strip below.
    title = _extract_title(soup)

    for tag in soup.find_all(STRIP_TAGS):
        tag.extract()

    ingredients_text = _extract_ingredient_sections(soup)

    for br in soup.find_all("br"):
        br.replace_with("\n")
    for el in soup.find_all(BLOCK_TAGS):
        el.insert_after("\n")

    root = soup.body or soup
    body_text = _normalize_block_text(root.get_text())[:max_body_chars]

    candidate = CandidateSource(
        url=url,
        raw_title=title,
        extracted_ingredients_text=ingredients_text,
        body_text=body_text,
    )
    if not candidate.is_usable:
        raise ScrapeError(url, "empty page")

    content = candidate.content
    lowered = content.lower()
    if len(content) < BLOCK_PAGE_MAX_CHARS and any(m in lowered for m in BLOCK_PAGE_MARKERS):
        raise ScrapeError(url, "block page")

    return candidate


def candidate_from_off_product(url: str, payload: Dict[str, Any]) -> Optional[CandidateSource]:
    """Synthesize a candidate from an Open Food Facts API payload (None when it has no ingredients)."""
    if not isinstance(payload, dict) or payload.get("status") != 1:
        return None
    product = payload.get("product")
    if not isinstance(product, dict):
        return None

    ingredients = (
        product.get("ingredients_text")
        or product.get("ingredients_text_en")
        or product.get("ingredients_text_with_allergens")
        or ""
    ).strip()
    if not ingredients:
        return None

    name = (product.get("product_name") or "").strip()
    body = "\n".join(
        [
            f"Product Name: {name or 'Unknown'}",
            f"Ingredients: {ingredients}",
            f"Allergens: {product.get('allergens') or 'None listed'}",
            f"Brands: {product.get('brands') or 'Unknown'}",
        ]
    )
    return CandidateSource(url=url, raw_title=name, extracted_ingredients_text=ingredients, body_text=body)


class PageScraper:
    def __init__(
        self,
        client: httpx.AsyncClient,
        limiter: Optional[asyncio.Semaphore] = None,
        timeout: Optional[float] = None,
        max_body_chars: Optional[int] = None,
    ):
        self.client = client
        self.limiter = limiter or asyncio.Semaphore(settings.MAX_CONCURRENT_REQUESTS)
        self.timeout = timeout or settings.SCRAPE_TIMEOUT_SECONDS
        self.max_body_chars = max_body_chars or settings.MAX_BODY_CHARS

    async def _scrape_structured(self, url: str) -> Optional[CandidateSource]:
        m = OFF_PRODUCT_URL.search(url)
        if not m:
            return None
        try:
            async with self.limiter:
                r = await self.client.get(OFF_API_URL.format(barcode=m.group(1)), timeout=self.timeout)
            if r.status_code != 200:
                return None
            return candidate_from_off_product(url, r.json())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Structured API failed for %s, falling back to HTML: %s", url, e)
            return None

    async def scrape(self, url: str) -> CandidateSource:
        structured = await self._scrape_structured(url)
        if structured is not None:
            return structured

        try:
            async with self.limiter:
                r = await self.client.get(
                    url, headers=PAGE_HEADERS, timeout=self.timeout, follow_redirects=True
                )
        except httpx.TimeoutException:
            raise ScrapeError(url, "timeout")
        except httpx.HTTPError as e:
            raise ScrapeError(url, f"{type(e).__name__}: {e}")

        if not 200 <= r.status_code < 300:
            raise ScrapeError(url, f"HTTP {r.status_code}")

        content_type = (r.headers.get("content-type") or "").lower()
        if content_type and "html" not in content_type and "text" not in content_type:
            raise ScrapeError(url, f"unsupported content type {content_type}")

        return extract_candidate(url, r.text, max_body_chars=self.max_body_chars)

    async def _scrape_or_none(self, url: str) -> Optional[CandidateSource]:
        try:
            return await self.scrape(url)
        except ScrapeError as e:
            logger.debug("Scrape failed: %s", e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Scrape failed for %s: %s", url, e)
        return None

    async def scrape_many(self, urls: Sequence[str]) -> List[CandidateSource]:
        """Scrape concurrently; failures drop out, survivors keep input order."""
        results = await asyncio.gather(*(self._scrape_or_none(u) for u in urls))
        scraped = [r for r in results if r is not None]
        logger.info("Scraped %d/%d URLs", len(scraped), len(urls))
        return scraped
