"""
Structured output parser for agent responses.

Reduces free-form model text to a JSON payload and validates it per output
kind. Missing optional fields get documented defaults; a fixed set of hard
invariants per kind (required arrays, enum membership, minimum counts,
referential integrity) rejects the payload. Nothing here raises: every
function returns a ParseResult.
"""

import functools
import json
import logging
import re
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from .config import VALIDATION_RULES
from .metrics import LIMBS, get_metric
from .state import (
    PATTERN_TYPES,
    AnalysisOutput,
    AsymmetryTrend,
    CorrelativeInsight,
    DateRange,
    DecompositionOutput,
    Evidence,
    FailureKind,
    Insight,
    MetricTrend,
    Milestone,
    NormativeBenchmark,
    Pattern,
    ProgressCorrelation,
    ProgressOutput,
    Projection,
    Regression,
    ResearchOutput,
    TrendPoint,
    ValidationIssue,
    ValidatorOutcome,
)

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_BRACED_OBJECT = re.compile(r"\{[\s\S]*\}")

_SEVERITIES = ("high", "moderate", "low")
_DOMAINS = ("range", "symmetry", "power", "control", "timing")
_CLASSIFICATIONS = ("strength", "weakness")
_CATEGORIES = ("optimal", "average", "deficient")
_TIERS = ("S", "A", "B", "C", "D")
_SOURCE_TYPES = ("cache", "web_search", "embedded_knowledge")
_TRENDS = ("improving", "stable", "declining")
_MILESTONE_TYPES = (
    "threshold_achieved",
    "mcid_improvement",
    "streak",
    "personal_best",
    "asymmetry_resolved",
    "symmetry_restored",
    "limb_caught_up",
    "cross_metric_gain",
)


class ParseResult(BaseModel):
    """Typed payload or a structured parse failure."""
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    kind: Optional[FailureKind] = None
    raw_response: str = ""


# ============================================================================
# Extraction
# ============================================================================

def extract_json(response_text: str) -> str:
    """
    Pull the JSON payload out of a model response.

    Tries a fenced code block first, then the outermost brace-delimited
    substring, then falls back to the trimmed text.
    """
    fenced = _FENCED_BLOCK.search(response_text)
    if fenced:
        return fenced.group(1).strip()

    braced = _BRACED_OBJECT.search(response_text)
    if braced:
        return braced.group(0)

    return response_text.strip()


def safe_json_parse(json_text: str) -> ParseResult:
    try:
        data = json.loads(json_text)
    except (json.JSONDecodeError, TypeError) as e:
        return ParseResult(
            success=False,
            error=f"JSON parse error: {e}",
            kind=FailureKind.PARSE_FAILURE,
            raw_response=json_text if isinstance(json_text, str) else "",
        )
    return ParseResult(success=True, data=data, raw_response=json_text)


def parse_response(response_text: str) -> ParseResult:
    """Extract and decode the payload of a raw model response."""
    return safe_json_parse(extract_json(response_text))


# ============================================================================
# Field helpers
# ============================================================================

def _violation(message: str, data: Any) -> ParseResult:
    try:
        raw = json.dumps(data, default=str)
    except (TypeError, ValueError):
        raw = str(data)
    return ParseResult(
        success=False,
        error=message,
        kind=FailureKind.SCHEMA_VIOLATION,
        raw_response=raw,
    )


def _guarded(validator):
    """Report model construction errors as schema violations."""
    @functools.wraps(validator)
    def wrapper(data: Any, *args, **kwargs) -> ParseResult:
        try:
            return validator(data, *args, **kwargs)
        except ValidationError as e:
            return _violation(f"{validator.__name__}: {e.error_count()} invalid field(s)", data)
    return wrapper


def _ok(data: Any, payload: Any) -> ParseResult:
    return ParseResult(success=True, data=data, raw_response=json.dumps(payload, default=str))


def _text(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) and value else default


def _number(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


def _strings(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def _choice(value: Any, allowed: tuple, default: Any) -> Any:
    return value if value in allowed else default


def _limb(value: Any) -> Optional[str]:
    return value if value in LIMBS else None


def _limbs(value: Any) -> Optional[list[str]]:
    if not isinstance(value, list):
        return None
    limbs = [v for v in value if v in LIMBS]
    return limbs or None


# ============================================================================
# Decomposition
# ============================================================================

@_guarded
def validate_decomposition_output(data: Any) -> ParseResult:
    if not isinstance(data, dict):
        return _violation("Response is not an object", data)

    raw_patterns = data.get("patterns")
    if not isinstance(raw_patterns, list):
        return _violation("Missing or invalid patterns array", data)

    patterns = []
    for i, p in enumerate(raw_patterns):
        if not isinstance(p, dict):
            return _violation(f"Pattern {i}: not an object", data)
        if p.get("type") not in PATTERN_TYPES:
            return _violation(f'Pattern {i}: invalid type "{p.get("type")}"', data)
        if p.get("severity") not in _SEVERITIES:
            return _violation(f'Pattern {i}: invalid severity "{p.get("severity")}"', data)
        if not isinstance(p.get("metrics"), list) or not p["metrics"]:
            return _violation(f"Pattern {i}: metrics must be a non-empty array", data)

        patterns.append(Pattern(
            id=_text(p.get("id"), f"pattern-{i}"),
            type=p["type"],
            metrics=_strings(p["metrics"]),
            severity=p["severity"],
            description=_text(p.get("description")),
            values=p.get("values") if isinstance(p.get("values"), dict) else {},
            limbs=_limbs(p.get("limbs")),
            search_terms=_strings(p.get("searchTerms")),
            benchmark_category=_choice(p.get("benchmarkCategory"), _CATEGORIES, None),
        ))

    return _ok(
        DecompositionOutput(patterns=patterns, pattern_counts=count_patterns(patterns)),
        data,
    )


def count_patterns(patterns: list[Pattern]) -> dict[str, int]:
    counts = {pattern_type: 0 for pattern_type in PATTERN_TYPES}
    for p in patterns:
        counts[p.type] += 1
    return counts


# ============================================================================
# Research
# ============================================================================

def _evidence_groups(raw: Any) -> Optional[dict[str, list]]:
    """Accept either {patternId: [...]} or [{patternId, evidence: [...]}]."""
    if isinstance(raw, dict):
        return {str(k): v for k, v in raw.items() if isinstance(v, list)}
    if isinstance(raw, list):
        groups: dict[str, list] = {}
        for group in raw:
            if isinstance(group, dict) and isinstance(group.get("evidence"), list):
                pattern_id = _text(group.get("patternId"))
                if pattern_id:
                    groups.setdefault(pattern_id, []).extend(group["evidence"])
        return groups
    return None


@_guarded
def validate_research_output(data: Any) -> ParseResult:
    if not isinstance(data, dict):
        return _violation("Response is not an object", data)

    groups = _evidence_groups(data.get("evidenceByPattern"))
    if groups is None:
        return _violation("Missing or invalid evidenceByPattern", data)

    evidence_by_pattern = {}
    for pattern_id, items in groups.items():
        evidence_by_pattern[pattern_id] = [
            Evidence(
                id=_text(e.get("id"), f"evidence-{pattern_id}-{i}"),
                pattern_id=pattern_id,
                tier=_choice(e.get("tier"), _TIERS, "D"),
                source_type=_choice(e.get("sourceType"), _SOURCE_TYPES, "embedded_knowledge"),
                citation=_text(e.get("citation"), "Unknown"),
                url=_text(e.get("url")) or None,
                findings=_strings(e.get("findings")),
                relevance_score=_number(e.get("relevanceScore"), 50),
            )
            for i, e in enumerate(items)
            if isinstance(e, dict)
        ]

    return _ok(
        ResearchOutput(
            evidence_by_pattern=evidence_by_pattern,
            insufficient_evidence=_strings(data.get("insufficientEvidence")),
        ),
        data,
    )


# ============================================================================
# Analysis
# ============================================================================

def _benchmark(b: dict) -> NormativeBenchmark:
    metric_name = _text(b.get("metricName"))
    config = get_metric(metric_name)
    return NormativeBenchmark(
        metric_name=metric_name,
        display_name=_text(b.get("displayName"), config.display_name if config else ""),
        domain=_choice(b.get("domain"), _DOMAINS, config.domain if config else "range"),
        value=_number(b.get("value"), 0.0),
        percentile=_number(b.get("percentile"), 50),
        category=_choice(b.get("category"), _CATEGORIES, "average"),
        classification=_choice(b.get("classification"), _CLASSIFICATIONS, "strength"),
        limb=_limb(b.get("limb")),
    )


@_guarded
def validate_analysis_output(data: Any) -> ParseResult:
    """
    Validate the shape of an analysis payload.

    Minimum correlative-insight count and referential integrity are checked
    after the merge step by check_analysis_invariants, since the merge may
    synthesize correlative insights.
    """
    if not isinstance(data, dict):
        return _violation("Response is not an object", data)

    raw_insights = data.get("insights")
    if not isinstance(raw_insights, list):
        return _violation("Missing or invalid insights array", data)

    for i, ins in enumerate(raw_insights):
        if not isinstance(ins, dict):
            return _violation(f"Insight {i}: not an object", data)
        if ins.get("domain") not in _DOMAINS:
            return _violation(f'Insight {i}: invalid domain "{ins.get("domain")}"', data)
        if ins.get("classification") not in _CLASSIFICATIONS:
            return _violation(
                f'Insight {i}: invalid classification "{ins.get("classification")}" '
                "(must be strength or weakness)",
                data,
            )

    raw_correlative = data.get("correlativeInsights", [])
    if not isinstance(raw_correlative, list):
        return _violation("Invalid correlativeInsights array", data)

    insights = [
        Insight(
            id=_text(ins.get("id"), f"insight-{i}"),
            domain=ins["domain"],
            classification=ins["classification"],
            title=_text(ins.get("title")),
            content=_text(ins.get("content")),
            limbs=_limbs(ins.get("limbs")),
            evidence=_strings(ins.get("evidence")),
            pattern_ids=_strings(ins.get("patternIds")),
            chart=ins.get("chart") if isinstance(ins.get("chart"), dict) else None,
            recommendations=_strings(ins.get("recommendations")) or None,
            percentile=_number(ins.get("percentile"), None),
        )
        for i, ins in enumerate(raw_insights)
    ]

    correlative = [
        CorrelativeInsight(
            id=_text(c.get("id"), f"corr-{i}"),
            primary_insight_id=_text(c.get("primaryInsightId")),
            related_insight_ids=_strings(c.get("relatedInsightIds")),
            explanation=_text(c.get("explanation")),
            significance=_choice(c.get("significance"), _SEVERITIES, "moderate"),
        )
        for i, c in enumerate(raw_correlative)
        if isinstance(c, dict)
    ]

    benchmarks = [
        _benchmark(b) for b in data.get("benchmarks") or [] if isinstance(b, dict)
    ]

    visualization = data.get("visualization")
    return _ok(
        AnalysisOutput(
            insights=insights,
            correlative_insights=correlative,
            benchmarks=benchmarks,
            summary=_text(data.get("summary")),
            strengths=_strings(data.get("strengths")),
            weaknesses=_strings(data.get("weaknesses")),
            visualization=visualization if isinstance(visualization, dict) else None,
        ),
        data,
    )


def check_analysis_invariants(analysis: AnalysisOutput) -> Optional[str]:
    """Return a violation message, or None when the merged analysis is sound."""
    minimum = VALIDATION_RULES["min_correlative_insights"]
    if len(analysis.correlative_insights) < minimum:
        return (
            f"Must have at least {minimum} correlative insights, "
            f"got {len(analysis.correlative_insights)}"
        )

    known = analysis.insight_ids
    for corr in analysis.correlative_insights:
        if corr.primary_insight_id not in known:
            return (
                f"Correlative insight {corr.id} references unknown insight "
                f'"{corr.primary_insight_id}"'
            )
    return None


# ============================================================================
# Validator
# ============================================================================

@_guarded
def validate_validator_output(data: Any, revision_number: int) -> ParseResult:
    if not isinstance(data, dict):
        return _violation("Response is not an object", data)

    if not isinstance(data.get("passed"), bool):
        return _violation("Missing or invalid 'passed' boolean", data)

    issues = [
        ValidationIssue(
            rule_type=_text(i.get("ruleType"), "internal_consistency"),
            severity=_choice(i.get("severity"), ("error", "warning"), "warning"),
            insight_ids=_strings(i.get("insightIds")),
            description=_text(i.get("description")),
            suggested_fix=_text(i.get("suggestedFix")),
        )
        for i in data.get("issues") or []
        if isinstance(i, dict)
    ]
    error_count = sum(1 for i in issues if i.severity == "error")

    return _ok(
        ValidatorOutcome(
            passed=data["passed"],
            issues=issues,
            error_count=error_count,
            warning_count=len(issues) - error_count,
            revision_number=revision_number,
        ),
        data,
    )


# ============================================================================
# Progress
# ============================================================================

def _history(value: Any) -> list[TrendPoint]:
    points = []
    for point in value if isinstance(value, list) else []:
        if isinstance(point, dict) and isinstance(point.get("date"), (int, float)):
            points.append(TrendPoint(date=int(point["date"]), value=_number(point.get("value"), 0.0)))
    return points


@_guarded
def validate_progress_output(data: Any, sessions_analyzed: int = 1) -> ParseResult:
    if not isinstance(data, dict):
        return _violation("Response is not an object", data)

    raw_trends = data.get("trends")
    if not isinstance(raw_trends, list):
        return _violation("Missing or invalid trends array", data)

    for i, t in enumerate(raw_trends):
        if not isinstance(t, dict) or t.get("trend") not in _TRENDS:
            trend = t.get("trend") if isinstance(t, dict) else None
            return _violation(f'Trend {i}: invalid trend "{trend}"', data)

    trends = [
        MetricTrend(
            metric_name=_text(t.get("metricName")),
            display_name=_text(t.get("displayName")),
            domain=_choice(t.get("domain"), _DOMAINS, "range"),
            direction=_choice(t.get("direction"), ("higherBetter", "lowerBetter"), "higherBetter"),
            trend=t["trend"],
            current_value=_number(t.get("currentValue"), 0.0),
            previous_value=_number(t.get("previousValue"), 0.0),
            baseline_value=_number(t.get("baselineValue"), 0.0),
            change_from_previous=_number(t.get("changeFromPrevious"), 0.0),
            change_from_baseline=_number(t.get("changeFromBaseline"), 0.0),
            is_clinically_meaningful=t.get("isClinicallyMeaningful") is True,
            limb=_limb(t.get("limb")),
            history=_history(t.get("history")),
        )
        for t in raw_trends
    ]

    milestones = []
    for i, m in enumerate(data.get("milestones") or []):
        if not isinstance(m, dict) or m.get("type") not in _MILESTONE_TYPES:
            logger.warning("Dropping milestone %d with unknown type", i)
            continue
        milestone = Milestone(
            id=_text(m.get("id"), f"milestone-{i}"),
            type=m["type"],
            title=_text(m.get("title")),
            description=_text(m.get("description")),
            metrics=_strings(m.get("metrics")),
            celebration_level=_choice(m.get("celebrationLevel"), ("major", "minor"), "minor"),
            limb=_limb(m.get("limb")),
        )
        if isinstance(m.get("achievedAt"), (int, float)):
            milestone.achieved_at = int(m["achievedAt"])
        milestones.append(milestone)

    regressions = [
        Regression(
            id=_text(r.get("id"), f"regression-{i}"),
            metric_name=_text(r.get("metricName")),
            decline_percentage=_number(r.get("declinePercentage"), 0.0),
            is_clinically_significant=r.get("isClinicallySignificant") is True,
            possible_reasons=_strings(r.get("possibleReasons")),
            recommendations=_strings(r.get("recommendations")),
            limb=_limb(r.get("limb")),
        )
        for i, r in enumerate(data.get("regressions") or [])
        if isinstance(r, dict)
    ]

    projections = [
        Projection(
            metric_name=_text(p.get("metricName")),
            projected_value=_number(p.get("projectedValue"), 0.0),
            target_date=int(_number(p.get("targetDate"), 0)),
            confidence=_number(p.get("confidence"), 50),
            assumptions=_strings(p.get("assumptions")),
        )
        for p in data.get("projections") or []
        if isinstance(p, dict)
    ]

    correlations = [
        ProgressCorrelation(
            id=_text(c.get("id"), f"corr-{i}"),
            type=_choice(c.get("type"), ("co_improving", "co_declining", "inverse", "compensatory"),
                         "co_improving"),
            metrics=_strings(c.get("metrics")),
            explanation=_text(c.get("explanation")),
            significance=_choice(c.get("significance"), _SEVERITIES, "moderate"),
            limb=_limb(c.get("limb")),
        )
        for i, c in enumerate(data.get("correlations") or [])
        if isinstance(c, dict)
    ]

    asymmetry_trends = [
        AsymmetryTrend(
            metric_name=_text(a.get("metricName")),
            display_name=_text(a.get("displayName")),
            current_asymmetry=_number(a.get("currentAsymmetry"), 0.0),
            previous_asymmetry=_number(a.get("previousAsymmetry"), 0.0),
            baseline_asymmetry=_number(a.get("baselineAsymmetry"), 0.0),
            change_from_previous=_number(a.get("changeFromPrevious"), 0.0),
            change_from_baseline=_number(a.get("changeFromBaseline"), 0.0),
            is_resolving=a.get("isResolving") is True,
            deficit_limb=_limb(a.get("deficitLimb")),
            is_deficit_catching_up=a.get("isDeficitCatchingUp")
            if isinstance(a.get("isDeficitCatchingUp"), bool) else None,
        )
        for a in data.get("asymmetryTrends") or []
        if isinstance(a, dict)
    ]

    date_range = None
    raw_range = data.get("dateRange")
    if isinstance(raw_range, dict):
        date_range = DateRange.model_validate(raw_range)

    output = ProgressOutput(
        trends=trends,
        milestones=milestones,
        regressions=regressions,
        projections=projections,
        correlations=correlations,
        asymmetry_trends=asymmetry_trends,
        summary=_text(data.get("summary")),
        sessions_analyzed=int(_number(data.get("sessionsAnalyzed"), sessions_analyzed)),
        date_range=date_range,
    )

    return _ok(output, data)
