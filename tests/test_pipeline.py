"""
End-to-end resolution tests (network replaced by RoutingClient / fakes).
"""

import asyncio
import json

import pytest

from labelscan.core.oracle import OracleParseError
from labelscan.core.pipeline import (
    NO_SOURCES_MESSAGE,
    AnalysisFailedError,
    NoVerifiedSourcesError,
    iter_resolution,
    resolve_barcode,
    resolve_events,
)
from labelscan.core.scrape import OFF_API_URL
from labelscan.core.search import known_database_urls
from labelscan.schemas.analyze import AnalysisResult, ProgressEvent
from tests.conftest import FakeDiscoverer, FakeOracle, FakeScraper, RoutingClient, json_response

BARCODE = "070662230015"

OFF_PAYLOAD = {
    "status": 1,
    "product": {
        "product_name": "Buffalo Sauce",
        "brands": "Primal Kitchen",
        "ingredients_text": "Water, Avocado Oil, Distilled Vinegar, Aged Cayenne Red Peppers, Sea Salt, Garlic",
    },
}


def _fakes(urls=(), title="Acme Crunchy Peanut Butter"):
    return {
        "client": RoutingClient(),
        "discoverer": FakeDiscoverer(batches=[list(urls)]),
        "scraper": FakeScraper(default_title=title),
    }


class TestEndToEnd:
    """Full resolutions through the real discoverer, scraper and consensus engine."""

    @pytest.mark.asyncio
    async def test_fallback_floor_without_search_backends(self):
        off_api = OFF_API_URL.format(barcode=BARCODE)
        # Only the Open Food Facts API answers; every search engine and other database is unreachable.
        client = RoutingClient({off_api: json_response(off_api, OFF_PAYLOAD)})
        oracle = FakeOracle()

        items = [item async for item in iter_resolution(BARCODE, client=client, oracle=oracle)]

        result = items[-1]
        assert isinstance(result, AnalysisResult)
        assert items[0] == f"Starting analysis for barcode {BARCODE}..."
        assert len(result.sources) >= 1
        assert result.sources[0].url == known_database_urls(BARCODE)[0]
        assert result.unified_ingredient_list
        assert any(m == 'Identified product: "Buffalo Sauce"' for m in items if isinstance(m, str))

    @pytest.mark.asyncio
    async def test_resolve_barcode_returns_result(self):
        urls = ["https://a.com/1", "https://b.com/2"]

        result = await resolve_barcode(
            BARCODE,
            "Acme Crunchy Peanut Butter",
            oracle=FakeOracle(),
            target_sources=2,
            **_fakes(urls),
        )

        assert result.product_name == "Acme Crunchy Peanut Butter"
        assert [s.url for s in result.sources] == urls


class TestResolveEvents:
    """Tests for the progress event stream."""

    @pytest.mark.asyncio
    async def test_status_then_single_result(self):
        events = [e async for e in resolve_events(
            BARCODE, "Acme Crunchy Peanut Butter", oracle=FakeOracle(), target_sources=1, **_fakes(["https://a.com/1"])
        )]

        assert all(e.type == "status" for e in events[:-1])
        assert events[-1].type == "result"
        assert events[-1].data.unified_ingredient_list == ["Peanuts", "Salt", "Sugar"]

    @pytest.mark.asyncio
    async def test_no_sources_is_an_error_event(self):
        oracle = FakeOracle()

        events = [e async for e in resolve_events(BARCODE, oracle=oracle, max_cycles=1, **_fakes())]

        assert events[-1].type == "error"
        assert events[-1].message == NO_SOURCES_MESSAGE
        assert sum(1 for e in events if e.type in ("error", "result")) == 1
        assert oracle.analyze_calls == []

    @pytest.mark.asyncio
    async def test_consensus_failure_is_an_error_event(self):
        oracle = FakeOracle(analyze_fn=lambda s: OracleParseError(raw="<html>oops</html>", reason="No JSON object found"))

        events = [e async for e in resolve_events(
            BARCODE, "Acme Crunchy Peanut Butter", oracle=oracle, target_sources=1, **_fakes(["https://a.com/1"])
        )]

        assert events[-1].type == "error"
        assert "Raw Response: <html>oops</html>" in events[-1].message

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_an_error_event(self):
        def broken(batch):
            raise RuntimeError("oracle exploded")

        events = [e async for e in resolve_events(
            BARCODE, "Acme Crunchy Peanut Butter", oracle=FakeOracle(verify_fn=broken), **_fakes(["https://a.com/1"])
        )]

        assert events[-1].type == "error"
        assert events[-1].message == "Analysis failed: RuntimeError: oracle exploded"
        assert sum(1 for e in events if e.type in ("error", "result")) == 1


class TestResolveBarcodeErrors:
    """Tests for the typed errors raised by resolve_barcode."""

    @pytest.mark.asyncio
    async def test_no_sources(self):
        with pytest.raises(NoVerifiedSourcesError) as exc_info:
            await resolve_barcode(BARCODE, oracle=FakeOracle(), max_cycles=1, **_fakes())

        assert exc_info.value.barcode == BARCODE

    @pytest.mark.asyncio
    async def test_analysis_failed(self):
        oracle = FakeOracle(analyze_fn=lambda s: OracleParseError(raw="garbage", reason="No JSON object found"))

        with pytest.raises(AnalysisFailedError) as exc_info:
            await resolve_barcode(BARCODE, oracle=oracle, target_sources=1, **_fakes(["https://a.com/1"]))

        assert exc_info.value.consensus_error.raw == "garbage"


class TestIsolation:
    """Concurrent resolutions do not share state."""

    @pytest.mark.asyncio
    async def test_known_title_does_not_leak(self):
        titled = _fakes(["https://a.com/1"])
        cold = _fakes([], title="")

        async def collect(events):
            return [e async for e in events]

        result, cold_events = await asyncio.gather(
            resolve_barcode("11111111", "Acme Crunchy Peanut Butter", oracle=FakeOracle(), target_sources=1, **titled),
            collect(resolve_events("22222222", oracle=FakeOracle(), max_cycles=2, **cold)),
        )

        assert result.sources[0].url == "https://a.com/1"
        assert not any("Acme" in q for q in cold["discoverer"].queries)
        assert cold_events[-1].type == "error"


class TestProgressEvent:
    """Tests for the NDJSON wire format."""

    def test_status_line(self):
        line = ProgressEvent(type="status", message="Cycle 1/5").to_line()

        assert line.endswith("\n")
        assert json.loads(line) == {"type": "status", "message": "Cycle 1/5"}

    @pytest.mark.asyncio
    async def test_result_line_is_camel_case(self):
        events = [e async for e in resolve_events(
            BARCODE, "Acme Crunchy Peanut Butter", oracle=FakeOracle(), target_sources=1, **_fakes(["https://a.com/1"])
        )]

        data = json.loads(events[-1].to_line())

        assert data["type"] == "result"
        assert "message" not in data
        assert data["data"]["productName"] == "Acme Crunchy Peanut Butter"
        assert "top9Allergens" in data["data"]
        assert "unifiedIngredientList" in data["data"]
