"""
Source discovery: search backends + known per-barcode product database URLs.

Every backend is best-effort. A blocked, slow or malformed backend contributes
nothing and never takes the others down with it; the known database URLs give
a coverage floor even when every search engine refuses us.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, unquote, urlparse

import httpx
from bs4 import BeautifulSoup

from labelscan.core import serpapi
from labelscan.core.config import settings
from labelscan.core.sources import ProductDetails

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

# Per-barcode database pages, always appended to the discovered set.
KNOWN_DATABASE_TEMPLATES: Tuple[str, ...] = (
    "https://world.openfoodfacts.org/product/{barcode}",
    "https://www.upcitemdb.com/upc/{barcode}",
    "https://www.barcodelookup.com/{barcode}",
    "https://go-upc.com/search?q={barcode}",
    "https://www.itemmaster.com/item/{barcode}",
    "https://www.foodrepo.org/en/products/{barcode}",
    "https://www.ean-search.org/perl/ean-search.pl?q={barcode}",
    "https://www.buycott.com/upc/{barcode}",
    "https://www.digit-eyes.com/cgi-bin/digiteyes.cgi?upc={barcode}",
)

OFF_PRODUCT_API = "https://world.openfoodfacts.org/api/v0/product/{barcode}.json"
UPCITEMDB_LOOKUP_API = "https://api.upcitemdb.com/prod/trial/lookup"
GO_UPC_SEARCH = "https://go-upc.com/search"

SearchBackend = Callable[[httpx.AsyncClient, str], Awaitable[List[str]]]


def known_database_urls(barcode: str) -> List[str]:
    barcode = (barcode or "").strip()
    if not barcode:
        return []
    return [t.format(barcode=barcode) for t in KNOWN_DATABASE_TEMPLATES]


def _host(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def _is_http(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


def _excluding(links: List[str], blocked_hosts: Sequence[str]) -> List[str]:
    out: List[str] = []
    for link in links:
        host = _host(link)
        if not host or any(host == b or host.endswith("." + b) for b in blocked_hosts):
            continue
        out.append(link)
    return out


# ---------------------------------------------------------------------------
# Result page parsers (pure)
# ---------------------------------------------------------------------------

def parse_bing_results(html: str) -> List[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    links = [a.get("href", "").strip() for a in soup.select("#b_results .b_algo h2 a")]
    links = [l for l in links if _is_http(l)]
    return _excluding(links, ("bing.com", "microsoft.com"))


def _unwrap_yahoo(href: str) -> str:
    m = re.search(r"/RU=([^/]+)", href)
    if m:
        return unquote(m.group(1))
    return href


def parse_yahoo_results(html: str) -> List[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    links = [_unwrap_yahoo(a.get("href", "").strip()) for a in soup.select(".algo .compTitle a")]
    links = [l for l in links if _is_http(l)]
    return _excluding(links, ("yahoo.com", "google.com"))


def _unwrap_google(href: str) -> str:
    if href.startswith("/url?"):
        q = parse_qs(urlparse(href).query).get("q")
        if q:
            return q[0]
    return href


def parse_google_results(html: str) -> List[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    links: List[str] = []
    for h3 in soup.find_all("h3"):
        anchor = h3.find_parent("a")
        if anchor is None:
            continue
        href = _unwrap_google(anchor.get("href", "").strip())
        if _is_http(href):
            links.append(href)
    return _excluding(links, ("google.com",))


def _unwrap_ddg(href: str) -> str:
    if "uddg=" in href:
        target = parse_qs(urlparse(href).query).get("uddg")
        if target:
            return target[0]
    return href


def parse_ddg_lite_results(html: str) -> List[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    links = [_unwrap_ddg(a.get("href", "").strip()) for a in soup.select("a.result-link")]
    links = [l for l in links if _is_http(l)]
    return _excluding(links, ("duckduckgo.com",))


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

async def search_bing(client: httpx.AsyncClient, query: str) -> List[str]:
    r = await client.get(
        "https://www.bing.com/search",
        params={"q": query},
        headers=BROWSER_HEADERS,
        timeout=settings.SEARCH_TIMEOUT_SECONDS,
    )
    r.raise_for_status()
    return parse_bing_results(r.text)


async def search_yahoo(client: httpx.AsyncClient, query: str) -> List[str]:
    r = await client.get(
        "https://search.yahoo.com/search",
        params={"p": query},
        headers=BROWSER_HEADERS,
        timeout=settings.SEARCH_TIMEOUT_SECONDS,
    )
    r.raise_for_status()
    return parse_yahoo_results(r.text)


async def search_google(client: httpx.AsyncClient, query: str) -> List[str]:
    r = await client.get(
        "https://www.google.com/search",
        params={"q": query},
        headers=BROWSER_HEADERS,
        timeout=settings.SEARCH_TIMEOUT_SECONDS,
    )
    r.raise_for_status()
    return parse_google_results(r.text)


async def search_ddg_lite(client: httpx.AsyncClient, query: str) -> List[str]:
    r = await client.post(
        "https://lite.duckduckgo.com/lite/",
        data={"q": query},
        headers=BROWSER_HEADERS,
        timeout=settings.SEARCH_TIMEOUT_SECONDS,
    )
    r.raise_for_status()
    return parse_ddg_lite_results(r.text)


async def search_serpapi(client: httpx.AsyncClient, query: str) -> List[str]:
    data = await serpapi.google_search(q=query, num=10, client=client)
    return serpapi.organic_links(data)


def default_backends() -> List[SearchBackend]:
    backends: List[SearchBackend] = [search_bing, search_yahoo, search_google, search_ddg_lite]
    if serpapi.serpapi_key():
        backends.insert(0, search_serpapi)
    return backends


# ---------------------------------------------------------------------------
# Product identification
# ---------------------------------------------------------------------------

def clean_brand(brand: str) -> str:
    """'Primal Kitchen, Kraft Heinz' -> 'Primal Kitchen'; 'Acme Foods Inc.' -> 'Acme Foods'."""
    first = (brand or "").split(",")[0]
    first = re.sub(r"\s+(inc|llc|ltd|corp)\.?$", "", first.strip(), flags=re.IGNORECASE)
    return first.strip()


def product_from_off(payload: Dict) -> Optional[ProductDetails]:
    if not isinstance(payload, dict) or payload.get("status") != 1:
        return None
    product = payload.get("product")
    if not isinstance(product, dict):
        return None
    name = (product.get("product_name") or product.get("product_name_en") or "").strip()
    if not name:
        return None
    return ProductDetails(
        name=name,
        brand=clean_brand(product.get("brands") or ""),
        ingredients_text=(product.get("ingredients_text") or product.get("ingredients_text_en") or "").strip(),
        image_url=product.get("image_url") or "",
        source="Open Food Facts",
    )


def product_from_upcitemdb(payload: Dict) -> Optional[ProductDetails]:
    if not isinstance(payload, dict):
        return None
    items = payload.get("items") or []
    if not items or not isinstance(items[0], dict):
        return None
    item = items[0]
    name = (item.get("title") or "").strip()
    if not name:
        return None
    images = item.get("images") or []
    return ProductDetails(
        name=name,
        brand=clean_brand(item.get("brand") or ""),
        ingredients_text=(item.get("description") or "").strip(),
        image_url=images[0] if images else "",
        source="UPCitemdb",
    )


def product_from_go_upc(html: str) -> Optional[ProductDetails]:
    soup = BeautifulSoup(html or "", "html.parser")
    heading = soup.select_one("h1.product-name")
    name = heading.get_text(strip=True) if heading else ""
    if not name or "not found" in name.lower():
        return None
    brand = ""
    for label in soup.select(".metadata-label"):
        if "brand" in label.get_text(strip=True).lower():
            value = label.find_next_sibling()
            if value is not None:
                brand = value.get_text(strip=True)
            break
    return ProductDetails(name=name, brand=clean_brand(brand), source="Go-UPC")


class SourceDiscoverer:
    """
    Turns one query into candidate URLs (union of all backends + fallbacks).
    All outbound calls go through the shared `limiter`.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        backends: Optional[Sequence[SearchBackend]] = None,
        limiter: Optional[asyncio.Semaphore] = None,
        max_urls: Optional[int] = None,
    ):
        self.client = client
        self.backends = list(backends) if backends is not None else default_backends()
        self.limiter = limiter or asyncio.Semaphore(settings.MAX_CONCURRENT_REQUESTS)
        self.max_urls = max_urls or settings.MAX_DISCOVERED_URLS

    async def _run_backend(self, backend: SearchBackend, query: str) -> List[str]:
        name = getattr(backend, "__name__", repr(backend))
        try:
            async with self.limiter:
                links = await backend(self.client, query)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Search backend %s failed for %r: %s", name, query, e)
            return []
        logger.debug("Search backend %s returned %d links for %r", name, len(links or []), query)
        return list(links or [])

    async def discover(self, query: str, barcode: str) -> List[str]:
        results = await asyncio.gather(*(self._run_backend(b, query) for b in self.backends))

        discovered: List[str] = []
        seen = set()
        for links in results:
            for link in links:
                if link not in seen:
                    seen.add(link)
                    discovered.append(link)

        fallbacks = [u for u in known_database_urls(barcode) if u not in seen]
        room = max(0, self.max_urls - len(fallbacks))
        urls = discovered[:room] + fallbacks

        logger.info("Discovered %d URLs for %r (%d from search)", len(urls), query, len(discovered))
        return urls

    async def _get_json(self, url: str, **kwargs) -> Optional[Dict]:
        try:
            async with self.limiter:
                r = await self.client.get(url, timeout=settings.SEARCH_TIMEOUT_SECONDS, **kwargs)
            if r.status_code != 200:
                return None
            return r.json()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Product lookup %s failed: %s", url, e)
            return None

    async def _get_html(self, url: str, **kwargs) -> Optional[str]:
        try:
            async with self.limiter:
                r = await self.client.get(
                    url, headers=BROWSER_HEADERS, timeout=settings.SEARCH_TIMEOUT_SECONDS, **kwargs
                )
            if r.status_code != 200:
                return None
            return r.text
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Product lookup %s failed: %s", url, e)
            return None

    async def _lookup_off(self, barcode: str) -> Optional[ProductDetails]:
        payload = await self._get_json(OFF_PRODUCT_API.format(barcode=barcode))
        return product_from_off(payload) if payload else None

    async def _lookup_upcitemdb(self, barcode: str) -> Optional[ProductDetails]:
        payload = await self._get_json(UPCITEMDB_LOOKUP_API, params={"upc": barcode})
        return product_from_upcitemdb(payload) if payload else None

    async def _lookup_go_upc(self, barcode: str) -> Optional[ProductDetails]:
        html = await self._get_html(GO_UPC_SEARCH, params={"q": barcode})
        return product_from_go_upc(html) if html else None

    async def identify_product(self, barcode: str) -> Optional[ProductDetails]:
        """
        Ask the product databases (in preference order) who this barcode is.
        Lookups run concurrently; the first database in order that knows it wins.
        """
        found = await asyncio.gather(
            self._lookup_off(barcode),
            self._lookup_upcitemdb(barcode),
            self._lookup_go_upc(barcode),
        )
        for details in found:
            if details is not None:
                logger.info("Identified %s as %r via %s", barcode, details.display_title, details.source)
                return details
        logger.info("No product database knows %s", barcode)
        return None
