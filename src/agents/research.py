"""
Research agent: patterns → evidence per pattern.

Evidence already in the research cache is looked up first and offered to the
model; it is also merged back ahead of the model's evidence, so cached
citations always come first. New high-tier findings are written back to the
cache. Both cache directions are best-effort.
"""

import logging
import time
from typing import Optional, Protocol

from pydantic import Field

from .base import AgentContext, invoke_agent, merge_by_key
from .config import CACHE_MIN_TIER, CACHE_SEARCH_LIMIT, CACHEABLE_TIERS
from .metrics import QualityTier
from .parser import validate_research_output
from .prompts import (
    PRIORITY_DOMAINS,
    RESEARCH_PROMPT,
    format_cached_evidence,
    format_patterns_for_research,
    render_prompt,
)
from .schemas import RESPONSE_SCHEMAS
from .state import AgentResult, CamelModel, Evidence, Pattern, ResearchOutput

logger = logging.getLogger(__name__)


class CacheHit(CamelModel):
    """A research cache entry matched by a search query."""
    id: str
    tier: QualityTier
    citation: str
    url: Optional[str] = None
    findings: list[str] = Field(default_factory=list)
    score: float = Field(default=0.0, description="Similarity in [0, 1]")


class ResearchCache(Protocol):
    """Store of previously found evidence, searchable by text."""

    def search(self, query: str, limit: int, min_tier: str) -> list[CacheHit]:
        ...

    def save(self, entries: list[Evidence]) -> None:
        ...


def lookup_cached_evidence(patterns: list[Pattern],
                           cache: Optional[ResearchCache]) -> list[Evidence]:
    """
    Search the cache once per pattern using its joined search terms.

    A failed search is logged and contributes nothing.
    """
    if cache is None:
        return []

    cached = []
    for pattern in patterns:
        query = " ".join(pattern.search_terms)
        try:
            hits = cache.search(query, limit=CACHE_SEARCH_LIMIT, min_tier=CACHE_MIN_TIER)
        except Exception as e:
            logger.warning("Research cache search failed for %s: %s", pattern.id, e)
            continue

        for hit in hits:
            cached.append(Evidence(
                id=f"cache-{hit.id}",
                pattern_id=pattern.id,
                tier=hit.tier,
                source_type="cache",
                citation=hit.citation,
                url=hit.url,
                findings=hit.findings,
                relevance_score=hit.score * 100,
            ))
    return cached


def merge_evidence(cached: list[Evidence], output: ResearchOutput) -> ResearchOutput:
    """
    One item per citation within a pattern, cache-sourced items first.

    Items from the cache lookup lead; model evidence marked as cache-sourced
    is moved ahead of the rest with a stable sort.
    """
    cached_by_pattern: dict[str, list[Evidence]] = {}
    for evidence in cached:
        cached_by_pattern.setdefault(evidence.pattern_id, []).append(evidence)

    merged = {}
    for pattern_id in list(cached_by_pattern) + list(output.evidence_by_pattern):
        if pattern_id in merged:
            continue
        deduped = merge_by_key(
            cached_by_pattern.get(pattern_id, []),
            output.evidence_by_pattern.get(pattern_id, []),
            key=lambda e: e.citation,
        )
        merged[pattern_id] = sorted(deduped, key=lambda e: e.source_type != "cache")

    return output.model_copy(update={"evidence_by_pattern": merged})


def extract_new_cache_entries(output: ResearchOutput) -> list[Evidence]:
    """Non-cached evidence of a cacheable tier that carries findings."""
    return [
        evidence
        for evidence_list in output.evidence_by_pattern.values()
        for evidence in evidence_list
        if evidence.source_type != "cache"
        and evidence.tier in CACHEABLE_TIERS
        and evidence.findings
    ]


def save_cache_entries(entries: list[Evidence], cache: Optional[ResearchCache]) -> None:
    if cache is None or not entries:
        return
    try:
        cache.save(entries)
    except Exception as e:
        logger.warning("Research cache save failed (%d entries): %s", len(entries), e)


def run_research(ctx: AgentContext, patterns: list[Pattern],
                 cache: Optional[ResearchCache] = None) -> AgentResult:
    """Run the research agent. Output is a ResearchOutput."""
    started = time.monotonic()
    cached = lookup_cached_evidence(patterns, cache)
    if cached:
        logger.info("[research] %d cached evidence item(s) for %s", len(cached), ctx.session_id)

    system_prompt, user_prompt = render_prompt(
        RESEARCH_PROMPT,
        pattern_count=len(patterns),
        cached_evidence=format_cached_evidence(cached),
        patterns=format_patterns_for_research(patterns),
        priority_domains=", ".join(PRIORITY_DOMAINS[:4]),
    )

    def merge(output: ResearchOutput) -> ResearchOutput:
        merged = merge_evidence(cached, output)
        new_entries = extract_new_cache_entries(merged)
        save_cache_entries(new_entries, cache)
        return merged.model_copy(update={"new_cache_entries": new_entries})

    return invoke_agent(
        ctx, "research", system_prompt, user_prompt,
        validate=validate_research_output,
        merge=merge,
        response_schema=RESPONSE_SCHEMAS["research"],
        started=started,
    )
