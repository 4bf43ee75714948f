"""
Cycle controller: bounded rounds of discover -> scrape -> filter -> verify.

All mutable resolution state (verified set, visited URLs, known title, ...)
lives on one ResolutionState owned by one controller. Nothing here is global,
so concurrent resolutions never see each other.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Sequence, Set

from labelscan.core.config import settings
from labelscan.core.gemini import GeminiRequestError
from labelscan.core.oracle import IngredientOracle, OracleParseError, parse_verdicts
from labelscan.core.queries import build_queries, query_key
from labelscan.core.relevance import (
    dedupe_by_domain,
    extract_best_title,
    filter_candidates,
    normalized_domain,
    plausible_title,
    rank_rejected,
)
from labelscan.core.scrape import PageScraper
from labelscan.core.search import SourceDiscoverer
from labelscan.core.sources import CandidateSource, FilteredCandidate, ProductDetails, VerifiedSource

logger = logging.getLogger(__name__)


@dataclass
class ResolutionState:
    barcode: str
    known_title: str = ""
    verified_sources: List[VerifiedSource] = field(default_factory=list)
    visited_urls: Set[str] = field(default_factory=set)
    issued_queries: Set[str] = field(default_factory=set)
    rejected_pool: List[FilteredCandidate] = field(default_factory=list)
    backlog: List[FilteredCandidate] = field(default_factory=list)
    product_hint: Optional[ProductDetails] = None
    cycle: int = 1
    cycles_run: int = 0

    def adopt_title(self, title: str) -> bool:
        """Set the known title once; later candidates never overwrite it."""
        if self.known_title or not title:
            return False
        self.known_title = title
        return True

    def verified_domains(self) -> Set[str]:
        return {d for d in (normalized_domain(v.url) for v in self.verified_sources) if d}

    def merge_verified(self, sources: Sequence[VerifiedSource]) -> List[VerifiedSource]:
        """Append sources whose domain is new; returns the ones actually added."""
        domains = self.verified_domains()
        urls = {v.url for v in self.verified_sources}
        added: List[VerifiedSource] = []
        for s in sources:
            domain = normalized_domain(s.url)
            if domain is None:
                if s.url in urls:
                    continue
            elif domain in domains:
                continue
            else:
                domains.add(domain)
            urls.add(s.url)
            self.verified_sources.append(s)
            added.append(s)
        return added


class CycleController:
    def __init__(
        self,
        state: ResolutionState,
        *,
        discoverer: SourceDiscoverer,
        scraper: PageScraper,
        oracle: IngredientOracle,
        max_cycles: Optional[int] = None,
        target_sources: Optional[int] = None,
        candidate_buffer: Optional[int] = None,
        queries_per_cycle: Optional[int] = None,
        verify_batch_size: Optional[int] = None,
    ):
        self.state = state
        self.discoverer = discoverer
        self.scraper = scraper
        self.oracle = oracle
        self.max_cycles = max_cycles if max_cycles is not None else settings.MAX_CYCLES
        self.target_sources = target_sources if target_sources is not None else settings.TARGET_SOURCES
        self.candidate_buffer = candidate_buffer if candidate_buffer is not None else settings.CANDIDATE_BUFFER
        self.queries_per_cycle = queries_per_cycle or settings.QUERIES_PER_CYCLE
        self.verify_batch_size = verify_batch_size or settings.VERIFY_BATCH_SIZE

    @property
    def reached_target(self) -> bool:
        return len(self.state.verified_sources) >= self.target_sources

    async def run(self) -> AsyncIterator[str]:
        """
        Drive cycles until the target is reached or the cycle limit is spent.
        Yields human-readable status messages as it goes.
        """
        state = self.state
        while state.cycle <= self.max_cycles:
            needed = self.target_sources - len(state.verified_sources)
            if needed <= 0:
                break

            state.cycles_run += 1
            yield f"Cycle {state.cycle}/{self.max_cycles}: Looking for {needed} more verified sources..."

            if state.cycle == 1:
                async for message in self._identify():
                    yield message

            candidates: List[FilteredCandidate] = []
            async for message in self._collect(needed + self.candidate_buffer, candidates):
                yield message

            if not candidates:
                yield "No new candidates found in this cycle."
            else:
                yield f"Verifying {len(candidates)} candidates with AI..."
                verified = await self._verify(candidates)
                added = state.merge_verified(verified)
                yield f"AI verified {len(verified)} valid sources ({len(added)} new domains)."

            state.cycle += 1
            if self.reached_target:
                yield "Target source count reached!"
                break

    async def _identify(self) -> AsyncIterator[str]:
        state = self.state
        try:
            state.product_hint = await self.discoverer.identify_product(state.barcode)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Product identification failed for %s: %s", state.barcode, e)
            state.product_hint = None
        if state.product_hint is not None:
            yield f"Product database match: {state.product_hint.display_title} ({state.product_hint.source})"

    def _maybe_adopt_title(self, scraped: Sequence[CandidateSource]) -> Optional[str]:
        state = self.state
        if state.known_title:
            return None
        title = extract_best_title(scraped)
        if not title and state.product_hint is not None:
            title = plausible_title(state.product_hint.display_title)
        if state.adopt_title(title):
            return title
        return None

    def _select(self, accepted: Sequence[FilteredCandidate], wanted: int) -> List[FilteredCandidate]:
        seen = self.state.verified_domains()
        return dedupe_by_domain(accepted, seen=seen)[:wanted]

    async def _collect(self, wanted: int, out: List[FilteredCandidate]) -> AsyncIterator[str]:
        """
        Fill `out` with up to `wanted` domain-unique, relevance-filtered candidates
        whose domains are not verified yet. Leftovers go to the backlog.
        """
        state = self.state
        scraped: List[CandidateSource] = [fc.candidate for fc in state.backlog]
        state.backlog = []
        accepted: List[FilteredCandidate] = []

        def refilter() -> None:
            nonlocal accepted
            result = filter_candidates(scraped, state.known_title)
            accepted = result.valid
            rejected_urls = {fc.url for fc in state.rejected_pool}
            state.rejected_pool.extend(fc for fc in result.rejected if fc.url not in rejected_urls)

        refilter()
        issued_this_cycle = 0
        while len(self._select(accepted, wanted)) < wanted and issued_this_cycle < self.queries_per_cycle:
            plan = build_queries(state.barcode, state.known_title, state.issued_queries)
            if not plan:
                break
            query = plan[0]
            state.issued_queries.add(query_key(query.text))
            issued_this_cycle += 1

            yield f'Searching for "{query.text}"...'
            urls = await self.discoverer.discover(query.text, state.barcode)
            fresh = [u for u in urls if u not in state.visited_urls]
            if not fresh:
                continue
            state.visited_urls.update(fresh)

            yield f"Found {len(fresh)} new candidates. Scraping..."
            new_scraped = await self.scraper.scrape_many(fresh)
            scraped.extend(new_scraped)

            title = self._maybe_adopt_title(new_scraped)
            if title:
                yield f'Identified product: "{title}"'
            refilter()

        selected = self._select(accepted, wanted)

        if len(selected) < wanted and state.rejected_pool:
            taken = self._relaxed_fallback(selected, wanted)
            if taken:
                yield f"Relaxing filters to meet quota ({len(taken)} added)..."
                selected.extend(taken)

        selected_urls = {fc.url for fc in selected}
        state.backlog = [fc for fc in accepted if fc.url not in selected_urls]
        out.extend(selected)

    def _relaxed_fallback(self, selected: List[FilteredCandidate], wanted: int) -> List[FilteredCandidate]:
        state = self.state
        seen = state.verified_domains() | {d for d in (normalized_domain(fc.url) for fc in selected) if d}
        taken: List[FilteredCandidate] = []
        for fc in dedupe_by_domain(rank_rejected(state.rejected_pool), seen=seen):
            if len(selected) + len(taken) >= wanted:
                break
            taken.append(fc)
        taken_urls = {fc.url for fc in taken}
        state.rejected_pool = [fc for fc in state.rejected_pool if fc.url not in taken_urls]
        return taken

    async def _verify(self, candidates: Sequence[FilteredCandidate]) -> List[VerifiedSource]:
        """
        Ask the oracle about this cycle's batch only, in chunks.
        A chunk that fails or comes back malformed verifies nothing.
        """
        verified: List[VerifiedSource] = []
        for start in range(0, len(candidates), self.verify_batch_size):
            batch = list(candidates[start:start + self.verify_batch_size])
            try:
                result = await self.oracle.verify(batch)
            except GeminiRequestError as e:
                logger.warning("Verification call failed for %d candidates: %s", len(batch), e.message)
                continue
            if isinstance(result, OracleParseError):
                continue

            by_url = {fc.url: fc for fc in batch}
            for verdict in parse_verdicts(result.payload, batch):
                if verdict.has_ingredients:
                    verified.append(VerifiedSource.from_candidate(by_url[verdict.url], verdict.ingredients))
        return verified
