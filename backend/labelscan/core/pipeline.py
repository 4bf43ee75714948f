"""
One barcode resolution, end to end, as a stream of progress events.

    status* (result | error)

Per-URL/per-backend/per-batch failures are absorbed below this level. Two
expected failures end a resolution with an error: no verified sources at all, and a
failed consensus call. Anything unexpected still ends the stream with one error event.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional, Union

import httpx

from labelscan.core.config import settings
from labelscan.core.consensus import ConsensusEngine, ConsensusError
from labelscan.core.cycle import CycleController, ResolutionState
from labelscan.core.oracle import IngredientOracle
from labelscan.core.scrape import PageScraper
from labelscan.core.search import SourceDiscoverer
from labelscan.schemas.analyze import AnalysisResult, ProgressEvent

logger = logging.getLogger(__name__)

NO_SOURCES_MESSAGE = "Could not find any verified sources with ingredients."


class PipelineError(Exception):
    """Resolution-level failure (surfaced to the caller as an `error` event)."""


class NoVerifiedSourcesError(PipelineError):
    def __init__(self, barcode: str):
        super().__init__(NO_SOURCES_MESSAGE)
        self.barcode = barcode


class AnalysisFailedError(PipelineError):
    def __init__(self, error: ConsensusError):
        super().__init__(str(error))
        self.consensus_error = error


async def iter_resolution(
    barcode: str,
    known_title: str = "",
    *,
    client: Optional[httpx.AsyncClient] = None,
    discoverer: Optional[SourceDiscoverer] = None,
    scraper: Optional[PageScraper] = None,
    oracle: Optional[IngredientOracle] = None,
    **limits,
) -> AsyncIterator[Union[str, AnalysisResult]]:
    """
    Resolve `barcode`: yields status messages, then the AnalysisResult last.
    Raises NoVerifiedSourcesError / AnalysisFailedError for the two terminal failures.
    """
    if client is None:
        async with httpx.AsyncClient(follow_redirects=True, timeout=settings.SCRAPE_TIMEOUT_SECONDS) as own_client:
            async for item in iter_resolution(
                barcode,
                known_title,
                client=own_client,
                discoverer=discoverer,
                scraper=scraper,
                oracle=oracle,
                **limits,
            ):
                yield item
        return

    limiter = asyncio.Semaphore(settings.MAX_CONCURRENT_REQUESTS)
    discoverer = discoverer or SourceDiscoverer(client, limiter=limiter)
    scraper = scraper or PageScraper(client, limiter=limiter)
    oracle = oracle or IngredientOracle()

    state = ResolutionState(barcode=barcode, known_title=(known_title or "").strip())
    controller = CycleController(state, discoverer=discoverer, scraper=scraper, oracle=oracle, **limits)

    yield f"Starting analysis for barcode {barcode}..."
    async for message in controller.run():
        yield message

    if not state.verified_sources:
        logger.error("No verified sources for %s after %d cycles", barcode, state.cycles_run)
        raise NoVerifiedSourcesError(barcode)

    yield f"Generating final report from {len(state.verified_sources)} sources..."
    try:
        result = await ConsensusEngine(oracle).build(state.verified_sources)
    except ConsensusError as e:
        logger.error("Consensus failed for %s: %s", barcode, e.message)
        raise AnalysisFailedError(e)

    yield result


async def resolve_events(barcode: str, known_title: str = "", **kwargs) -> AsyncIterator[ProgressEvent]:
    """
    Progress stream for the presentation layer: status* then one result or error.
    Closing the generator (client disconnect) cancels in-flight work; sources
    already merged stay valid but nothing further is produced.
    """
    try:
        async for item in iter_resolution(barcode, known_title, **kwargs):
            if isinstance(item, AnalysisResult):
                yield ProgressEvent(type="result", data=item)
            else:
                yield ProgressEvent(type="status", message=item)
    except PipelineError as e:
        yield ProgressEvent(type="error", message=str(e))
    except Exception as e:
        logger.exception("Resolution failed for %s", barcode)
        yield ProgressEvent(type="error", message=f"Analysis failed: {type(e).__name__}: {e}")


async def resolve_barcode(barcode: str, known_title: str = "", **kwargs) -> AnalysisResult:
    """Non-streaming wrapper: returns the result or raises a PipelineError."""
    result: Optional[AnalysisResult] = None
    async for item in iter_resolution(barcode, known_title, **kwargs):
        if isinstance(item, AnalysisResult):
            result = item
    if result is None:
        raise PipelineError("Resolution ended without a result")
    return result
