"""Tests for the decomposition agent and the shared invocation contract.

Covers:
  - Programmatic pattern pre-detection (thresholds, asymmetry, OPI change)
  - Pre-detected patterns winning over model duplicates
  - Parse / invocation / deadline failures surfacing as AgentResult values
"""

import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.agents.base import AgentContext, Deadline, merge_by_key
from src.agents.decomposition import merge_patterns, pre_detect_patterns, run_decomposition
from src.agents.state import FailureKind, Pattern
from src.agents.usage import UsageAccumulator
from tests.fakes import BASE_TIME, DAY_MS, ScriptedModel, decomposition_response, make_metrics


def _make_context(model=None, deadline=None) -> AgentContext:
    return AgentContext(
        session_id="session-1",
        model=model or ScriptedModel(),
        usage=UsageAccumulator("session-1"),
        deadline=deadline,
    )


# ============================================================================
# Test: Pre-detection
# ============================================================================

class TestPreDetection:

    def test_healthy_session_has_no_patterns(self):
        assert pre_detect_patterns(make_metrics()) == []

    def test_deficient_leg_and_asymmetry(self):
        metrics = make_metrics(left={"overall_max_rom": 80.0})
        patterns = pre_detect_patterns(metrics)

        assert [p.id for p in patterns] == ["pre-0", "pre-1"]
        threshold, asymmetry = patterns
        assert threshold.type == "threshold_violation"
        assert threshold.severity == "high"
        assert threshold.limbs == ["Left Leg"]
        assert threshold.benchmark_category == "deficient"

        assert asymmetry.type == "asymmetry"
        assert asymmetry.severity == "high"
        assert asymmetry.limbs == ["Left Leg"]
        assert asymmetry.values["leftValue"] == 80.0

    def test_small_asymmetry_ignored(self):
        metrics = make_metrics(left={"overall_max_rom": 127.0})
        assert pre_detect_patterns(metrics) == []

    def test_rom_cov_has_no_asymmetry_pattern(self):
        metrics = make_metrics(left={"rom_cov": 25.0})
        patterns = pre_detect_patterns(metrics)
        assert [p.type for p in patterns] == ["threshold_violation"]
        assert patterns[0].metrics == ["romCoV"]

    def test_bilateral_threshold(self):
        patterns = pre_detect_patterns(make_metrics(bilateral={"rom_asymmetry": 20.0}))
        assert len(patterns) == 1
        assert patterns[0].metrics == ["romAsymmetry"]
        assert patterns[0].limbs is None

    def test_opi_change_against_previous(self):
        previous = make_metrics("session-0", BASE_TIME - DAY_MS, opi_score=70)
        current = make_metrics(opi_score=80)
        patterns = pre_detect_patterns(current, previous)
        assert len(patterns) == 1
        assert patterns[0].type == "temporal_pattern"
        assert patterns[0].severity == "low"
        assert patterns[0].values["change"] == 10

    def test_opi_change_below_mcid(self):
        previous = make_metrics("session-0", BASE_TIME - DAY_MS, opi_score=78)
        assert pre_detect_patterns(make_metrics(opi_score=80), previous) == []


# ============================================================================
# Test: Merge
# ============================================================================

class TestMerge:

    def test_merge_by_key_keeps_deterministic_first(self):
        merged = merge_by_key([("a", 1)], [("a", 2), ("b", 3)], key=lambda x: x[0])
        assert merged == [("a", 1), ("b", 3)]

    def test_pre_detected_pattern_wins(self):
        pre = Pattern(id="pre-0", type="asymmetry", metrics=["averageRom"], severity="high",
                      limbs=["Left Leg"])
        dup = Pattern(id="llm-0", type="asymmetry", metrics=["averageRom"], severity="low",
                      limbs=["Left Leg"])
        other = Pattern(id="llm-1", type="asymmetry", metrics=["averageRom"], severity="low",
                        limbs=["Right Leg"])
        merged = merge_patterns([pre], [dup, other])
        assert [p.id for p in merged] == ["pre-0", "llm-1"]
        assert merged[0].severity == "high"


# ============================================================================
# Test: Agent Run
# ============================================================================

class TestRunDecomposition:

    def test_merges_model_patterns_after_pre_detected(self):
        response = decomposition_response()
        response["patterns"].append({
            "id": "llm-dup",
            "type": "threshold_violation",
            "metrics": ["overallMaxRom"],
            "severity": "low",
            "limbs": ["Left Leg"],
            "description": "duplicate",
            "searchTerms": [],
        })
        ctx = _make_context(ScriptedModel({"decomposition": response}))
        result = run_decomposition(ctx, make_metrics(left={"overall_max_rom": 80.0}))

        assert result.success
        ids = [p.id for p in result.output.patterns]
        assert ids == ["pre-0", "pre-1", "llm-0"]
        assert result.output.pattern_counts["threshold_violation"] == 1
        assert result.output.pattern_counts["cross_metric_correlation"] == 1
        assert result.token_usage.total_tokens == 150

    def test_fenced_response_parsed_exactly(self):
        text = "Patterns below.\n```json\n" + json.dumps(decomposition_response()) + "\n```"
        ctx = _make_context(ScriptedModel({"decomposition": text}))
        result = run_decomposition(ctx, make_metrics())

        assert result.success
        pattern = result.output.patterns[0]
        assert pattern.id == "llm-0"
        assert pattern.metrics == ["peakAngularVelocity", "overallMaxRom"]
        assert pattern.search_terms == ["angular velocity", "range of motion"]

    def test_schema_is_sent(self):
        model = ScriptedModel()
        run_decomposition(_make_context(model), make_metrics())
        assert model.schemas["decomposition"]["required"] == ["patterns"]

    def test_parse_failure_records_usage(self):
        ctx = _make_context(ScriptedModel({"decomposition": "I cannot comply"}))
        result = run_decomposition(ctx, make_metrics())
        assert not result.success
        assert result.error_kind == FailureKind.PARSE_FAILURE
        assert ctx.usage.total_tokens == 150

    def test_schema_violation(self):
        ctx = _make_context(ScriptedModel({"decomposition": {"patterns": "none"}}))
        result = run_decomposition(ctx, make_metrics())
        assert result.error_kind == FailureKind.SCHEMA_VIOLATION

    def test_provider_error_is_agent_failure(self):
        ctx = _make_context(ScriptedModel({"decomposition": TimeoutError("deadline")}))
        result = run_decomposition(ctx, make_metrics())
        assert not result.success
        assert result.error_kind == FailureKind.AGENT_FAILURE
        assert ctx.usage.total_tokens == 0

    def test_expired_deadline_skips_model(self):
        model = ScriptedModel()
        result = run_decomposition(_make_context(model, Deadline(0)), make_metrics())
        assert result.error_kind == FailureKind.AGENT_FAILURE
        assert "time budget" in result.error
        assert model.calls == []
