"""Tests for the validator agent (quality gate).

Covers:
  - Deterministic pre-check rules (side specificity, evidence, references, safety)
  - Short-circuit without a model call on pre-check errors
  - Pass/fail computed from error counts, forced pass at the revision budget
"""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.agents.base import AgentContext
from src.agents.parser import validate_analysis_output
from src.agents.state import AnalysisOutput, ValidationIssue
from src.agents.usage import UsageAccumulator
from src.agents.validator import merge_validation_issues, programmatic_validation, run_validator
from tests.fakes import ScriptedModel, analysis_response, make_insight, make_metrics, validator_response


def _make_analysis(**insight_overrides) -> AnalysisOutput:
    response = analysis_response()
    response["insights"][0].update(insight_overrides)
    return validate_analysis_output(response).data


def _make_context(model) -> AgentContext:
    return AgentContext(session_id="s1", model=model, usage=UsageAccumulator("s1"))


def _rules(issues: list[ValidationIssue]) -> list[tuple[str, str]]:
    return [(i.rule_type, i.severity) for i in issues]


# ============================================================================
# Test: Pre-check
# ============================================================================

class TestProgrammaticValidation:

    def test_clean_analysis(self):
        assert programmatic_validation(_make_analysis()) == []

    @pytest.mark.parametrize("text", ["Left Leg flexion is 120 degrees.", "right leg flexion is matched."])
    def test_limb_phrase_in_text_flagged(self, text):
        analysis = _make_analysis(content=text)
        issues = programmatic_validation(analysis)
        assert _rules(issues) == [("side_specificity", "error")]
        assert issues[0].insight_ids == ["ins-power"]

    def test_limb_phrase_in_title_flagged(self):
        analysis = _make_analysis(title="Left Leg power")
        assert _rules(programmatic_validation(analysis)) == [("side_specificity", "error")]

    def test_forbidden_limb_term(self):
        analysis = _make_analysis(content="The left knee trails behind.")
        issues = programmatic_validation(analysis)
        assert _rules(issues) == [("side_specificity", "error")]
        assert issues[0].insight_ids == ["ins-power"]

    @pytest.mark.parametrize("term", ["left", "RIGHT", "L", "r", "affected", "Involved", "weak side"])
    def test_each_forbidden_term_flagged(self, term):
        analysis = _make_analysis(content=f"Flexion on the {term} knee is reduced.")
        assert _rules(programmatic_validation(analysis)) == [("side_specificity", "error")]

    def test_terms_inside_words_not_flagged(self):
        analysis = _make_analysis(content="Knee stability is bright and involvement is low.")
        assert programmatic_validation(analysis) == []

    def test_forbidden_term_in_recommendations(self):
        analysis = _make_analysis(recommendations=["Load the affected side gradually"])
        assert ("side_specificity", "error") in _rules(programmatic_validation(analysis))

    def test_missing_evidence(self):
        analysis = _make_analysis(evidence=[])
        assert _rules(programmatic_validation(analysis)) == [("evidence_support", "error")]

    def test_dangling_related_insight_is_warning(self):
        response = analysis_response()
        response["correlativeInsights"][0]["relatedInsightIds"] = ["ghost"]
        analysis = validate_analysis_output(response).data
        assert _rules(programmatic_validation(analysis)) == [("evidence_support", "warning")]

    def test_unsafe_language_is_warning(self):
        analysis = _make_analysis(content="The knee needs treatment.")
        assert _rules(programmatic_validation(analysis)) == [("clinical_safety", "warning")]

    def test_too_few_correlatives(self):
        analysis = _make_analysis().model_copy(update={"correlative_insights": []})
        assert ("evidence_support", "error") in _rules(programmatic_validation(analysis))

    def test_merge_sorts_errors_first_and_dedups(self):
        warning = ValidationIssue(rule_type="clinical_safety", severity="warning", description="w")
        error = ValidationIssue(rule_type="numerical_accuracy", severity="error", description="e")
        merged = merge_validation_issues([warning], [warning.model_copy(), error])
        assert [i.severity for i in merged] == ["error", "warning"]


# ============================================================================
# Test: Agent Run
# ============================================================================

class TestRunValidator:

    def test_precheck_errors_short_circuit(self):
        model = ScriptedModel()
        analysis = _make_analysis(content="The left knee trails behind.")
        result = run_validator(_make_context(model), analysis, make_metrics(), revision=1,
                               max_revisions=3)

        assert result.success
        outcome = result.output
        assert not outcome.passed
        assert outcome.error_count == 1
        assert outcome.validated_analysis is None
        assert model.count("validator") == 0

    def test_clean_analysis_uses_model(self):
        model = ScriptedModel()
        result = run_validator(_make_context(model), _make_analysis(), make_metrics(), revision=1,
                               max_revisions=3)
        assert result.output.passed
        assert result.output.validated_analysis is not None
        assert model.count("validator") == 1

    def test_model_errors_fail_revision(self):
        issues = [{"ruleType": "numerical_accuracy", "severity": "error",
                   "insightIds": ["ins-power"], "description": "ROM value mismatch"}]
        model = ScriptedModel({"validator": validator_response(issues)})
        result = run_validator(_make_context(model), _make_analysis(), make_metrics(), revision=2,
                               max_revisions=3)
        assert not result.output.passed
        assert result.output.revision_number == 2

    def test_passed_is_computed_not_trusted(self):
        issues = [{"ruleType": "clinical_safety", "severity": "warning", "description": "tone"}]
        model = ScriptedModel({"validator": {"passed": False, "issues": issues}})
        result = run_validator(_make_context(model), _make_analysis(), make_metrics(), revision=1,
                               max_revisions=3)
        assert result.output.passed
        assert result.output.warning_count == 1

    def test_last_revision_always_passes(self):
        model = ScriptedModel()
        analysis = _make_analysis(content="The left knee trails behind.")
        result = run_validator(_make_context(model), analysis, make_metrics(), revision=3,
                               max_revisions=3)

        outcome = result.output
        assert outcome.passed
        assert outcome.error_count == 1
        assert outcome.issues[0].rule_type == "side_specificity"
        assert outcome.validated_analysis == analysis
        assert model.count("validator") == 1
