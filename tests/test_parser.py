"""Tests for the structured output parser.

Covers:
  - JSON extraction from fenced, embedded and bare responses
  - Parse failures reported as values, never raised
  - Per-kind hard invariants (enums, required arrays, referential integrity)
  - Defaults applied to missing optional fields
"""

import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.agents.parser import (
    check_analysis_invariants,
    extract_json,
    parse_response,
    validate_analysis_output,
    validate_decomposition_output,
    validate_progress_output,
    validate_research_output,
    validate_validator_output,
)
from src.agents.state import AnalysisOutput, CorrelativeInsight, FailureKind, Insight
from tests.fakes import analysis_response, make_insight


# ============================================================================
# Test: Extraction
# ============================================================================

class TestExtraction:

    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"a": 1}\n```\nThanks'
        assert extract_json(text) == '{"a": 1}'

    def test_embedded_object(self):
        assert extract_json('Result: {"a": {"b": 2}} done') == '{"a": {"b": 2}}'

    def test_bare_text(self):
        assert extract_json("  [1, 2]  ") == "[1, 2]"

    def test_parse_failure_is_a_value(self):
        result = parse_response("no json here")
        assert not result.success
        assert result.kind == FailureKind.PARSE_FAILURE
        assert "JSON parse error" in result.error

    def test_parse_success(self):
        result = parse_response('```\n{"patterns": []}\n```')
        assert result.success
        assert result.data == {"patterns": []}


# ============================================================================
# Test: Fenced Payloads
# ============================================================================

def _fenced(payload: dict) -> str:
    return "Here is the analysis:\n```json\n" + json.dumps(payload, indent=2) + "\n```\nDone."


class TestFencedPayloads:

    def test_decomposition_fields_match_enclosed_json(self):
        payload = {"patterns": [{
            "id": "p-7",
            "type": "asymmetry",
            "metrics": ["overallMaxRom"],
            "severity": "high",
            "description": "ROM differs between legs",
            "limbs": ["Right Leg"],
            "searchTerms": ["knee flexion asymmetry"],
            "benchmarkCategory": "deficient",
            "values": {"asymmetry": 18.5},
        }]}
        parsed = parse_response(_fenced(payload))
        assert parsed.success

        result = validate_decomposition_output(parsed.data)
        assert result.success
        pattern = result.data.patterns[0]
        assert pattern.id == "p-7"
        assert pattern.type == "asymmetry"
        assert pattern.metrics == ["overallMaxRom"]
        assert pattern.severity == "high"
        assert pattern.description == "ROM differs between legs"
        assert pattern.limbs == ["Right Leg"]
        assert pattern.search_terms == ["knee flexion asymmetry"]
        assert pattern.benchmark_category == "deficient"
        assert pattern.values == {"asymmetry": 18.5}
        assert result.data.pattern_counts["asymmetry"] == 1

    def test_analysis_fields_match_enclosed_json(self):
        payload = analysis_response()
        payload["insights"][1]["recommendations"] = ["Add end-range holds"]
        parsed = parse_response(_fenced(payload))
        assert parsed.success

        result = validate_analysis_output(parsed.data)
        assert result.success
        analysis = result.data
        assert [i.id for i in analysis.insights] == ["ins-power", "ins-range", "ins-symmetry"]
        assert [i.classification for i in analysis.insights] == ["strength", "strength", "weakness"]
        assert analysis.insights[1].recommendations == ["Add end-range holds"]
        assert analysis.insights[0].evidence == ["Smith et al. 2020"]
        assert [(c.primary_insight_id, c.related_insight_ids) for c in analysis.correlative_insights] == [
            ("ins-power", ["ins-range"]),
            ("ins-symmetry", ["ins-power"]),
        ]
        assert analysis.summary == "Balanced session with good power."
        assert check_analysis_invariants(analysis) is None


# ============================================================================
# Test: Decomposition
# ============================================================================

class TestDecompositionValidation:

    def _pattern(self, **overrides):
        pattern = {
            "id": "p1",
            "type": "asymmetry",
            "metrics": ["overallMaxRom"],
            "severity": "moderate",
        }
        pattern.update(overrides)
        return pattern

    def test_valid_patterns_and_counts(self):
        result = validate_decomposition_output({"patterns": [self._pattern()]})
        assert result.success
        output = result.data
        assert output.patterns[0].search_terms == []
        assert output.pattern_counts["asymmetry"] == 1
        assert output.pattern_counts["threshold_violation"] == 0

    def test_missing_patterns_array(self):
        result = validate_decomposition_output({"items": []})
        assert not result.success
        assert result.kind == FailureKind.SCHEMA_VIOLATION

    def test_invalid_type(self):
        result = validate_decomposition_output({"patterns": [self._pattern(type="vibes")]})
        assert not result.success
        assert "invalid type" in result.error

    def test_empty_metrics_rejected(self):
        result = validate_decomposition_output({"patterns": [self._pattern(metrics=[])]})
        assert not result.success

    def test_non_canonical_limbs_dropped(self):
        result = validate_decomposition_output(
            {"patterns": [self._pattern(limbs=["left", "Right Leg"])]}
        )
        assert result.data.patterns[0].limbs == ["Right Leg"]

    def test_non_object_response(self):
        assert not validate_decomposition_output(["patterns"]).success


# ============================================================================
# Test: Research
# ============================================================================

class TestResearchValidation:

    def test_group_list_shape(self):
        data = {"evidenceByPattern": [
            {"patternId": "p1", "evidence": [{"citation": "Doe 2019", "tier": "B"}]},
        ]}
        result = validate_research_output(data)
        assert result.success
        evidence = result.data.evidence_by_pattern["p1"][0]
        assert evidence.pattern_id == "p1"
        assert evidence.tier == "B"
        assert evidence.relevance_score == 50

    def test_mapping_shape_with_defaults(self):
        data = {"evidenceByPattern": {"p1": [{"tier": "Z"}]}}
        result = validate_research_output(data)
        evidence = result.data.evidence_by_pattern["p1"][0]
        assert evidence.tier == "D"
        assert evidence.citation == "Unknown"
        assert evidence.source_type == "embedded_knowledge"

    def test_missing_evidence(self):
        assert not validate_research_output({"evidence": []}).success


# ============================================================================
# Test: Analysis
# ============================================================================

class TestAnalysisValidation:

    def test_valid_analysis(self):
        result = validate_analysis_output(analysis_response())
        assert result.success
        assert len(result.data.insights) == 3
        assert len(result.data.correlative_insights) == 2

    def test_invalid_classification(self):
        data = analysis_response(insights=[make_insight("i1", "power", classification="neutral")])
        result = validate_analysis_output(data)
        assert not result.success
        assert "must be strength or weakness" in result.error

    def test_invalid_domain(self):
        data = analysis_response(insights=[make_insight("i1", "balance")])
        assert not validate_analysis_output(data).success

    def test_few_correlatives_accepted_at_parse_time(self):
        data = analysis_response(correlative=[])
        assert validate_analysis_output(data).success

    def test_invariants_require_min_correlatives(self):
        analysis = AnalysisOutput(
            insights=[Insight(id="a", domain="power", classification="strength")],
        )
        assert "at least 2" in check_analysis_invariants(analysis)

    def test_invariants_reject_unknown_primary(self):
        analysis = AnalysisOutput(
            insights=[Insight(id="a", domain="power", classification="strength")],
            correlative_insights=[
                CorrelativeInsight(id="c0", primary_insight_id="a"),
                CorrelativeInsight(id="c1", primary_insight_id="ghost"),
            ],
        )
        assert "ghost" in check_analysis_invariants(analysis)

    def test_invariants_pass(self):
        analysis = validate_analysis_output(analysis_response()).data
        assert check_analysis_invariants(analysis) is None


# ============================================================================
# Test: Validator and Progress
# ============================================================================

class TestValidatorValidation:

    def test_passed_must_be_boolean(self):
        assert not validate_validator_output({"passed": "yes"}, 1).success

    def test_counts_issues(self):
        data = {"passed": False, "issues": [
            {"ruleType": "numerical_accuracy", "severity": "error", "description": "x"},
            {"severity": "bogus"},
        ]}
        outcome = validate_validator_output(data, 2).data
        assert outcome.error_count == 1
        assert outcome.warning_count == 1
        assert outcome.revision_number == 2
        assert outcome.issues[1].rule_type == "internal_consistency"


class TestProgressValidation:

    def test_invalid_trend_rejected(self):
        data = {"trends": [{"metricName": "overallMaxRom", "trend": "sideways"}]}
        assert not validate_progress_output(data).success

    def test_unknown_milestone_type_dropped(self):
        data = {
            "trends": [],
            "milestones": [
                {"type": "streak", "title": "Three in a row"},
                {"type": "party", "title": "??"},
            ],
        }
        result = validate_progress_output(data, sessions_analyzed=3)
        assert result.success
        assert [m.type for m in result.data.milestones] == ["streak"]
        assert result.data.sessions_analyzed == 3
