"""
Shared fakes for the pipeline tests.

Network is never touched: httpx calls go to RoutingClient, the oracle is a
scripted FakeOracle, and discovery/scraping can be swapped for in-memory fakes.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlencode

import httpx
import pytest

from labelscan.core.oracle import OracleOk, OracleResult
from labelscan.core.sources import CandidateSource, FilteredCandidate, ProductDetails, VerifiedSource


def html_response(url: str, html: str, status_code: int = 200, content_type: str = "text/html") -> httpx.Response:
    return httpx.Response(
        status_code,
        text=html,
        headers={"content-type": content_type},
        request=httpx.Request("GET", url),
    )


def json_response(url: str, data: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=data, request=httpx.Request("GET", url))


class RoutingClient:
    """
    Minimal stand-in for httpx.AsyncClient.
    Routes by full URL (query string included) first, then by bare URL.
    Unknown URLs raise httpx.ConnectError, like an unreachable host.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.calls: List[str] = []

    async def get(self, url: str, params: Optional[Dict] = None, **kwargs) -> httpx.Response:
        return self._respond("GET", url, params)

    async def post(self, url: str, params: Optional[Dict] = None, **kwargs) -> httpx.Response:
        return self._respond("POST", url, params)

    def _respond(self, method: str, url: str, params: Optional[Dict]) -> httpx.Response:
        full = f"{url}?{urlencode(params)}" if params else url
        self.calls.append(full)
        handler = self.routes.get(full, self.routes.get(url))
        if handler is None:
            raise httpx.ConnectError("unreachable", request=httpx.Request(method, full))
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(method, full)
        return handler


class FakeDiscoverer:
    """Hands out URLs from `batches` (one list per discover() call)."""

    def __init__(self, batches: Sequence[List[str]] = (), url_factory: Optional[Callable[[int], List[str]]] = None,
                 product: Optional[ProductDetails] = None):
        self.batches = list(batches)
        self.url_factory = url_factory
        self.product = product
        self.queries: List[str] = []

    async def discover(self, query: str, barcode: str) -> List[str]:
        index = len(self.queries)
        self.queries.append(query)
        if self.url_factory is not None:
            return self.url_factory(index)
        if index < len(self.batches):
            return list(self.batches[index])
        return []

    async def identify_product(self, barcode: str) -> Optional[ProductDetails]:
        return self.product


class FakeScraper:
    """Builds a candidate per URL; `titles` maps URL -> page title, `failing` URLs drop out."""

    def __init__(self, titles: Optional[Dict[str, str]] = None, default_title: str = "", failing: Sequence[str] = ()):
        self.titles = titles or {}
        self.default_title = default_title
        self.failing = set(failing)
        self.scraped: List[str] = []

    async def scrape_many(self, urls: Sequence[str]) -> List[CandidateSource]:
        out = []
        for url in urls:
            self.scraped.append(url)
            if url in self.failing:
                continue
            out.append(
                CandidateSource(
                    url=url,
                    raw_title=self.titles.get(url, self.default_title),
                    extracted_ingredients_text="Peanuts, Salt, Sugar",
                    body_text="Ingredients: Peanuts, Salt, Sugar",
                )
            )
        return out


def verify_all(candidates: Sequence[FilteredCandidate]) -> Dict[str, Any]:
    return {
        "sources": [
            {"url": c.url, "hasIngredients": True, "ingredients": ["Peanuts", "Salt", "Sugar"]}
            for c in candidates
        ]
    }


def default_analysis(sources: Sequence[VerifiedSource]) -> Dict[str, Any]:
    return {
        "productName": "Acme Crunchy Peanut Butter",
        "sources": [{"url": s.url, "hasIngredients": True, "ingredients": list(s.ingredients)} for s in sources],
        "unifiedIngredientList": ["Peanuts", "Salt", "Sugar"],
        "top9Allergens": [{"allergen": "Peanuts", "trigger": "Peanuts"}],
        "dietaryCompliance": {
            "vegan": {"isCompliant": True, "reason": "No animal products"},
            "vegetarian": {"isCompliant": True},
            "pescatarian": {"isCompliant": True},
            "glutenFree": {"isCompliant": "true"},
        },
    }


class FakeOracle:
    """
    Scripted oracle. `verify_fn(batch)` / `analyze_fn(sources)` return either a
    payload dict (wrapped in OracleOk) or an OracleResult as-is.
    """

    def __init__(self, verify_fn: Callable = verify_all, analyze_fn: Callable = default_analysis):
        self.verify_fn = verify_fn
        self.analyze_fn = analyze_fn
        self.verify_batches: List[List[str]] = []
        self.analyze_calls: List[List[str]] = []

    @staticmethod
    def _wrap(value: Any) -> OracleResult:
        if isinstance(value, dict):
            return OracleOk(payload=value, raw="")
        return value

    async def verify(self, candidates: Sequence[FilteredCandidate]) -> OracleResult:
        self.verify_batches.append([c.url for c in candidates])
        return self._wrap(self.verify_fn(candidates))

    async def analyze(self, sources: Sequence[VerifiedSource]) -> OracleResult:
        self.analyze_calls.append([s.url for s in sources])
        return self._wrap(self.analyze_fn(sources))


@pytest.fixture
def fake_oracle():
    return FakeOracle()
