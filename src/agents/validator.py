"""
Validator agent: quality gate over one analysis revision.

A deterministic pre-check runs first. If it finds errors before the last
revision, the outcome fails immediately without a model call. Otherwise the
model reviews the analysis and its issues are merged after the pre-check
issues.
"""

import logging
import re
import time

from .base import AgentContext, elapsed_ms, invoke_agent, merge_by_key
from .config import VALIDATION_RULES
from .parser import validate_validator_output
from .prompts import (
    VALIDATOR_PROMPT,
    format_analysis_for_validation,
    format_bilateral_metrics,
    format_leg_metrics,
    format_precheck_issues,
    render_prompt,
)
from .state import AgentResult, AnalysisOutput, SessionMetrics, ValidationIssue, ValidatorOutcome

logger = logging.getLogger(__name__)

_UNSAFE_LANGUAGE = [
    (re.compile(r"\bdiagnos(e|is|ed)\b", re.IGNORECASE), "diagnosis"),
    (re.compile(r"\bprescrib(e|ed|ing)\b", re.IGNORECASE), "prescription"),
    (re.compile(r"\btreat(ment)?\b", re.IGNORECASE), "treatment"),
    (
        re.compile(
            r"\b(must|should) (see|visit|consult) (a )?(doctor|physician|specialist)\b",
            re.IGNORECASE,
        ),
        "medical referral",
    ),
]


def _forbidden_term_patterns() -> list[tuple[str, re.Pattern]]:
    return [
        (term, re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE))
        for term in VALIDATION_RULES["forbidden_limb_terms"]
    ]


def _issue(rule_type: str, severity: str, ids: list[str], description: str,
           fix: str) -> ValidationIssue:
    return ValidationIssue(
        rule_type=rule_type,
        severity=severity,
        insight_ids=ids,
        description=description,
        suggested_fix=fix,
    )


def programmatic_validation(analysis: AnalysisOutput) -> list[ValidationIssue]:
    """
    Deterministic checks over an analysis revision.

    Forbidden limb terms are matched as whole words, case-insensitive, over
    the raw title, content and recommendations of each insight.
    """
    issues = []
    forbidden = _forbidden_term_patterns()
    min_evidence = VALIDATION_RULES["min_evidence_per_insight"]
    min_correlative = VALIDATION_RULES["min_correlative_insights"]

    for insight in analysis.insights:
        text = " ".join([insight.title, insight.content, *(insight.recommendations or [])])
        for term, pattern in forbidden:
            if pattern.search(text):
                issues.append(_issue(
                    "side_specificity", "error", [insight.id],
                    f'Found forbidden term "{term}" in insight text. Name the limb in the limbs field instead.',
                    f'Remove "{term}" from the text and set limbs to "Left Leg" or "Right Leg"',
                ))

    for insight in analysis.insights:
        if insight.classification not in ("strength", "weakness"):
            issues.append(_issue(
                "classification_completeness", "error", [insight.id],
                f'Insight missing or invalid classification: "{insight.classification}"',
                'Set classification to "strength" or "weakness"',
            ))

    for insight in analysis.insights:
        if len(insight.evidence) < min_evidence:
            issues.append(_issue(
                "evidence_support", "error", [insight.id],
                f"Insight has {len(insight.evidence)} evidence citations, minimum is {min_evidence}",
                "Add at least one evidence citation",
            ))

    if len(analysis.correlative_insights) < min_correlative:
        issues.append(_issue(
            "evidence_support", "error", [],
            f"Only {len(analysis.correlative_insights)} correlative insights, "
            f"minimum is {min_correlative}",
            "Add more correlative insights showing relationships between findings",
        ))

    known = analysis.insight_ids
    for corr in analysis.correlative_insights:
        if corr.primary_insight_id not in known:
            issues.append(_issue(
                "evidence_support", "error", [corr.id],
                f"Correlative insight references non-existent primary insight: {corr.primary_insight_id}",
                "Fix the primaryInsightId to reference an existing insight",
            ))
        for related_id in corr.related_insight_ids:
            if related_id not in known:
                issues.append(_issue(
                    "evidence_support", "warning", [corr.id],
                    f"Correlative insight references non-existent related insight: {related_id}",
                    "Fix the relatedInsightIds to reference existing insights",
                ))

    for insight in analysis.insights:
        text = " ".join([insight.content, *(insight.recommendations or [])])
        for pattern, term in _UNSAFE_LANGUAGE:
            if pattern.search(text):
                issues.append(_issue(
                    "clinical_safety", "warning", [insight.id],
                    f"Insight contains potential {term} language",
                    "Use assessment language instead of diagnostic/prescriptive terms",
                ))

    return issues


def merge_validation_issues(programmatic: list[ValidationIssue],
                            generated: list[ValidationIssue]) -> list[ValidationIssue]:
    """Pre-check issues first, duplicates dropped, errors sorted ahead of warnings."""
    merged = merge_by_key(programmatic, generated, key=lambda i: i.dedup_key)
    return sorted(merged, key=lambda i: i.severity != "error")


def build_outcome(issues: list[ValidationIssue], revision: int, max_revisions: int,
                  analysis: AnalysisOutput) -> ValidatorOutcome:
    """An outcome passes with zero errors, or unconditionally at the last revision."""
    error_count = sum(1 for i in issues if i.severity == "error")
    passed = error_count == 0 or revision >= max_revisions
    return ValidatorOutcome(
        passed=passed,
        issues=issues,
        error_count=error_count,
        warning_count=len(issues) - error_count,
        revision_number=revision,
        validated_analysis=analysis if passed else None,
    )


def run_validator(ctx: AgentContext, analysis: AnalysisOutput, metrics: SessionMetrics,
                  revision: int, max_revisions: int = VALIDATION_RULES["max_revisions"]) -> AgentResult:
    """
    Validate one analysis revision. Output is a ValidatorOutcome.

    Args:
        revision: 1-based revision number of this analysis
        max_revisions: Revision at which the outcome is accepted regardless of errors
    """
    started = time.monotonic()
    precheck = programmatic_validation(analysis)
    precheck_errors = [i for i in precheck if i.severity == "error"]

    if precheck_errors and revision < max_revisions:
        logger.info(
            "[validator] %s revision %d failed pre-check with %d error(s)",
            ctx.session_id, revision, len(precheck_errors),
        )
        outcome = build_outcome(merge_validation_issues(precheck, []), revision, max_revisions, analysis)
        return AgentResult(success=True, output=outcome, duration_ms=elapsed_ms(started))

    system_prompt, user_prompt = render_prompt(
        VALIDATOR_PROMPT,
        revision=revision,
        max_revisions=max_revisions,
        session_id=metrics.session_id,
        analysis_block=format_analysis_for_validation(analysis),
        left_leg=format_leg_metrics(metrics.left_leg),
        right_leg=format_leg_metrics(metrics.right_leg),
        bilateral=format_bilateral_metrics(metrics.bilateral),
        precheck_issues=format_precheck_issues(precheck),
    )

    def merge(outcome: ValidatorOutcome) -> ValidatorOutcome:
        issues = merge_validation_issues(precheck, outcome.issues)
        return build_outcome(issues, revision, max_revisions, analysis)

    return invoke_agent(
        ctx, "validator", system_prompt, user_prompt,
        validate=lambda data: validate_validator_output(data, revision),
        merge=merge,
        started=started,
    )
