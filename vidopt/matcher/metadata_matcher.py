"""Metadata Matcher - resolves a parsed title into a provider identity.

One provider call per lookup. Selection favours precision: with several
results, only a single result whose release year equals the parsed year is
picked automatically; anything else goes to manual disambiguation.
"""

import asyncio
import logging
from enum import Enum
from typing import Protocol

from pydantic import BaseModel

from vidopt.core.errors import MetadataError
from vidopt.core.title_resolver import resolve_title
from vidopt.models.job import MetadataCandidate, ResolvedMetadata

logger = logging.getLogger(__name__)


class MetadataProvider(Protocol):
    def search(
        self, query: str, api_key: str, year: str | None = None, language: str = "en-US"
    ) -> list[MetadataCandidate]: ...


class MatchReason(str, Enum):
    SINGLE_RESULT = "single_result"
    YEAR_MATCH = "year_match"
    NO_RESULTS = "no_results"
    AMBIGUOUS = "ambiguous"  # Several results, no unique year anchor
    NO_API_KEY = "no_api_key"
    PROVIDER_ERROR = "provider_error"
    EMPTY_QUERY = "empty_query"


class MatchOutcome(BaseModel):
    """Result of one lookup: the auto-selected identity, if any, and all candidates."""

    query: str
    year: str | None = None
    selected: ResolvedMetadata | None = None
    candidates: list[MetadataCandidate] = []
    reason: MatchReason

    @property
    def matched(self) -> bool:
        return self.selected is not None


def select_candidate(
    candidates: list[MetadataCandidate], year: str | None
) -> tuple[MetadataCandidate | None, MatchReason]:
    """Apply the auto-selection policy to provider results (in provider order)."""
    if not candidates:
        return None, MatchReason.NO_RESULTS
    if len(candidates) == 1:
        return candidates[0], MatchReason.SINGLE_RESULT
    if year:
        same_year = [c for c in candidates if c.year == year]
        if len(same_year) == 1:
            return same_year[0], MatchReason.YEAR_MATCH
    return None, MatchReason.AMBIGUOUS


class MetadataMatcher:
    def __init__(self, provider: MetadataProvider):
        self._provider = provider

    async def _search(
        self, query: str, api_key: str, year: str | None, language: str
    ) -> list[MetadataCandidate]:
        # requests is blocking; keep it off the event loop
        return await asyncio.to_thread(self._provider.search, query, api_key, year, language)

    async def match(
        self,
        title: str,
        year: str | None,
        api_key: str | None,
        language: str = "en-US",
    ) -> MatchOutcome:
        """Look ``title`` up and auto-select when the policy allows.

        Provider failures and a missing key are reported as "no match".
        """
        query = (title or "").strip()
        if not query:
            return MatchOutcome(query=query, year=year, reason=MatchReason.EMPTY_QUERY)
        if not api_key:
            logger.info(f"Skipping metadata lookup for '{query}': no TMDB API key")
            return MatchOutcome(query=query, year=year, reason=MatchReason.NO_API_KEY)

        try:
            # Unfiltered search; the parsed year is only used to pick among results
            candidates = await self._search(query, api_key, None, language)
        except MetadataError as e:
            logger.warning(f"Metadata lookup failed for '{query}': {e}")
            return MatchOutcome(query=query, year=year, reason=MatchReason.PROVIDER_ERROR)

        selected, reason = select_candidate(candidates, year)
        if selected is not None:
            logger.info(
                f"Matched '{query}' ({year or '?'}) to '{selected.title}' "
                f"({selected.year or '?'}, id {selected.external_id}) via {reason.value}"
            )
        else:
            logger.info(f"No auto-selection for '{query}' ({reason.value}, {len(candidates)} results)")

        return MatchOutcome(
            query=query,
            year=year,
            selected=selected.to_resolved() if selected else None,
            candidates=candidates,
            reason=reason,
        )

    async def match_filename(
        self, filename: str, api_key: str | None, language: str = "en-US"
    ) -> MatchOutcome:
        resolved = resolve_title(filename)
        return await self.match(resolved.title, resolved.year, api_key, language)

    async def search_manual(
        self,
        query: str,
        api_key: str | None,
        year: str | None = None,
        language: str = "en-US",
    ) -> list[MetadataCandidate]:
        """Free-text search for the disambiguation dialog. Never raises."""
        if not query or not query.strip() or not api_key:
            return []
        try:
            return await self._search(query.strip(), api_key, year, language)
        except MetadataError as e:
            logger.warning(f"Manual metadata search failed for '{query}': {e}")
            return []
