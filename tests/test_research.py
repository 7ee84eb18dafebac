"""Tests for the research agent and its evidence cache handling."""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.agents.base import AgentContext
from src.agents.research import (
    extract_new_cache_entries,
    lookup_cached_evidence,
    merge_evidence,
    run_research,
)
from src.agents.state import Evidence, Pattern, ResearchOutput
from src.agents.usage import UsageAccumulator
from src.pipelines.collaborators import InMemoryResearchCache
from tests.fakes import ScriptedModel, research_response


class _BrokenCache:
    def search(self, query, limit, min_tier):
        raise ConnectionError("cache offline")

    def save(self, entries):
        raise ConnectionError("cache offline")


def _make_pattern(pattern_id: str = "llm-0") -> Pattern:
    return Pattern(
        id=pattern_id,
        type="cross_metric_correlation",
        metrics=["peakAngularVelocity", "overallMaxRom"],
        severity="moderate",
        search_terms=["angular velocity", "range of motion"],
    )


def _make_cache() -> InMemoryResearchCache:
    cache = InMemoryResearchCache()
    cache.save([
        Evidence(id="c1", pattern_id="old", tier="A", citation="Jones 2018",
                 findings=["angular velocity deficits after surgery"]),
        Evidence(id="c2", pattern_id="old", tier="D", citation="Blog post",
                 findings=["angular velocity tips"]),
    ])
    return cache


def _make_context(model=None) -> AgentContext:
    return AgentContext(session_id="s1", model=model or ScriptedModel(),
                        usage=UsageAccumulator("s1"))


# ============================================================================
# Test: Cache Lookup
# ============================================================================

class TestCacheLookup:

    def test_hits_become_cache_evidence(self):
        cached = lookup_cached_evidence([_make_pattern()], _make_cache())
        assert len(cached) == 1
        evidence = cached[0]
        assert evidence.id == "cache-0"
        assert evidence.pattern_id == "llm-0"
        assert evidence.source_type == "cache"
        assert evidence.citation == "Jones 2018"
        assert 0 < evidence.relevance_score <= 100

    def test_low_tier_entries_excluded(self):
        cached = lookup_cached_evidence([_make_pattern()], _make_cache())
        assert "Blog post" not in [e.citation for e in cached]

    def test_no_cache(self):
        assert lookup_cached_evidence([_make_pattern()], None) == []

    def test_search_failure_contributes_nothing(self):
        assert lookup_cached_evidence([_make_pattern()], _BrokenCache()) == []


# ============================================================================
# Test: Evidence Merge
# ============================================================================

class TestMergeEvidence:

    def test_cached_first_and_deduplicated_by_citation(self):
        cached = [Evidence(id="cache-0", pattern_id="p1", source_type="cache", citation="Jones 2018")]
        output = ResearchOutput(evidence_by_pattern={
            "p1": [
                Evidence(id="e1", pattern_id="p1", citation="Jones 2018", tier="S"),
                Evidence(id="e2", pattern_id="p1", citation="Smith 2020"),
            ],
            "p2": [Evidence(id="e3", pattern_id="p2", citation="Jones 2018")],
        })
        merged = merge_evidence(cached, output)

        assert [e.id for e in merged.evidence_by_pattern["p1"]] == ["cache-0", "e2"]
        # dedup is per pattern
        assert [e.id for e in merged.evidence_by_pattern["p2"]] == ["e3"]

    def test_model_cache_items_move_ahead(self):
        output = ResearchOutput(evidence_by_pattern={"p": [
            Evidence(id="w1", pattern_id="p", source_type="web_search", citation="X"),
            Evidence(id="c1", pattern_id="p", source_type="cache", citation="Y"),
            Evidence(id="k1", pattern_id="p", citation="Z"),
            Evidence(id="c2", pattern_id="p", source_type="cache", citation="W"),
        ]})
        merged = merge_evidence([], output).evidence_by_pattern["p"]

        assert [e.id for e in merged] == ["c1", "c2", "w1", "k1"]

    def test_lookup_items_lead_model_cache_items(self):
        cached = [Evidence(id="cache-0", pattern_id="p", source_type="cache", citation="A")]
        output = ResearchOutput(evidence_by_pattern={"p": [
            Evidence(id="w1", pattern_id="p", source_type="web_search", citation="X"),
            Evidence(id="c1", pattern_id="p", source_type="cache", citation="Y"),
        ]})
        merged = merge_evidence(cached, output).evidence_by_pattern["p"]

        assert [e.id for e in merged] == ["cache-0", "c1", "w1"]

    def test_new_cache_entries_filtered(self):
        output = ResearchOutput(evidence_by_pattern={"p1": [
            Evidence(id="e1", pattern_id="p1", tier="A", citation="A", findings=["x"]),
            Evidence(id="e2", pattern_id="p1", tier="C", citation="C", findings=["x"]),
            Evidence(id="e3", pattern_id="p1", tier="S", citation="S"),
            Evidence(id="e4", pattern_id="p1", tier="S", citation="S2", findings=["x"],
                     source_type="cache"),
        ]})
        assert [e.id for e in extract_new_cache_entries(output)] == ["e1"]


# ============================================================================
# Test: Agent Run
# ============================================================================

class TestRunResearch:

    def test_cached_evidence_precedes_model_evidence(self):
        cache = _make_cache()
        result = run_research(_make_context(), [_make_pattern()], cache)

        assert result.success
        evidence = result.output.evidence_by_pattern["llm-0"]
        assert [e.citation for e in evidence] == ["Jones 2018", "Smith et al. 2020"]
        assert [e.citation for e in result.output.new_cache_entries] == ["Smith et al. 2020"]
        assert "Smith et al. 2020" in [e.citation for e in cache.entries]

    def test_duplicate_model_citation_dropped(self):
        response = research_response()
        response["evidenceByPattern"][0]["evidence"].append(
            {"citation": "Jones 2018", "tier": "S", "findings": ["same paper"]}
        )
        result = run_research(
            _make_context(ScriptedModel({"research": response})), [_make_pattern()], _make_cache()
        )
        citations = [e.citation for e in result.output.evidence_by_pattern["llm-0"]]
        assert citations.count("Jones 2018") == 1
        assert result.output.evidence_by_pattern["llm-0"][0].source_type == "cache"

    def test_cache_failures_are_not_fatal(self):
        result = run_research(_make_context(), [_make_pattern()], _BrokenCache())
        assert result.success
        assert [e.citation for e in result.output.evidence_by_pattern["llm-0"]] == ["Smith et al. 2020"]
