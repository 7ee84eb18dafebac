"""
Analysis agent: patterns + evidence → classified insights.

Normative benchmarks are computed deterministically from the metric registry
and override the model's numbers. When the model links fewer than two
insights, correlative insights are synthesized from domain pairs that
commonly move together, then from any other pair of insights.
"""

import time

from .base import AgentContext, invoke_agent, merge_by_key
from .config import STRENGTH_PERCENTILE, VALIDATION_RULES
from .metrics import (
    BILATERAL_METRICS,
    LIMBS,
    METRIC_REGISTRY,
    PER_LEG_METRICS,
    calculate_percentile,
    force_classification,
    get_benchmark_category,
)
from .parser import check_analysis_invariants, validate_analysis_output
from .prompts import (
    ANALYSIS_PROMPT,
    format_benchmark_hints,
    format_bilateral_metrics,
    format_leg_metrics,
    format_opi_line,
    format_patterns_with_evidence,
    render_prompt,
)
from .schemas import RESPONSE_SCHEMAS
from .state import (
    AgentResult,
    AnalysisOutput,
    CorrelativeInsight,
    Insight,
    NormativeBenchmark,
    Pattern,
    ResearchOutput,
    SessionMetrics,
)


# (primary domain, related domain, explanation), in preference order
CORRELATED_DOMAIN_PAIRS = [
    ("power", "range", "Power output typically correlates with range of motion capability"),
    ("symmetry", "power", "Asymmetry often affects power generation differently between limbs"),
    ("control", "power", "Movement control quality influences power efficiency"),
    ("range", "symmetry", "ROM differences between limbs contribute to asymmetry patterns"),
    ("timing", "symmetry", "Temporal coordination affects bilateral symmetry"),
]


def _benchmark(name: str, value: float, limb=None) -> NormativeBenchmark:
    config = METRIC_REGISTRY[name]
    percentile = calculate_percentile(value, config)
    category = get_benchmark_category(value, config)
    return NormativeBenchmark(
        metric_name=name,
        display_name=config.display_name,
        domain=config.domain,
        value=value,
        percentile=round(percentile),
        category=category,
        classification=force_classification(category, percentile, STRENGTH_PERCENTILE),
        limb=limb,
    )


def pre_compute_benchmarks(metrics: SessionMetrics) -> list[NormativeBenchmark]:
    """
    Benchmark every registry metric for this session.

    Per-leg metrics yield one benchmark per leg (left then right); bilateral
    metrics yield one without a limb.
    """
    benchmarks = []
    for name in PER_LEG_METRICS:
        field = METRIC_REGISTRY[name].field
        for limb in LIMBS:
            benchmarks.append(_benchmark(name, getattr(metrics.leg(limb), field), limb))

    for name in BILATERAL_METRICS:
        benchmarks.append(_benchmark(name, getattr(metrics.bilateral, METRIC_REGISTRY[name].field)))
    return benchmarks


def merge_benchmarks(pre_computed: list[NormativeBenchmark],
                     generated: list[NormativeBenchmark]) -> list[NormativeBenchmark]:
    return merge_by_key(pre_computed, generated, key=lambda b: b.dedup_key)


def _linked(correlative: list[CorrelativeInsight], primary: str, related: str,
            directed: bool) -> bool:
    return any(
        (c.primary_insight_id == primary and related in c.related_insight_ids)
        or (not directed and c.primary_insight_id == related and primary in c.related_insight_ids)
        for c in correlative
    )


def _generic_explanation(primary: Insight, related: Insight) -> str:
    return f"{primary.domain.capitalize()} and {related.domain} findings may influence each other"


def _fallback_candidates(insights: list[Insight]):
    """
    Yield (primary id, related id, explanation, significance, directed).

    Known domain pairs come first, then any two insights from different
    domains, then the reverse direction of those, then same-domain pairs.
    A directed candidate only collides with the same primary -> related link.
    """
    first_by_domain: dict[str, str] = {}
    for insight in insights:
        first_by_domain.setdefault(insight.domain, insight.id)

    for primary_domain, related_domain, explanation in CORRELATED_DOMAIN_PAIRS:
        primary = first_by_domain.get(primary_domain)
        related = first_by_domain.get(related_domain)
        if primary is not None and related is not None:
            yield primary, related, explanation, "moderate", False

    pairs = [(a, b) for i, a in enumerate(insights) for b in insights[i + 1:] if a.id != b.id]
    cross = [(a, b) for a, b in pairs if a.domain != b.domain]
    same = [(a, b) for a, b in pairs if a.domain == b.domain]

    for a, b in cross:
        yield a.id, b.id, _generic_explanation(a, b), "low", False
    for a, b in cross:
        yield b.id, a.id, _generic_explanation(b, a), "low", True
    for a, b in same:
        yield a.id, b.id, f"Both findings describe {a.domain}", "low", False
    for a, b in same:
        yield b.id, a.id, f"Both findings describe {a.domain}", "low", True


def ensure_min_correlative_insights(insights: list[Insight],
                                    existing: list[CorrelativeInsight]) -> list[CorrelativeInsight]:
    """
    Top up correlative insights to the configured minimum.

    Any two insights with distinct ids are enough to reach the minimum;
    only a single insight leaves the result short.
    """
    minimum = VALIDATION_RULES["min_correlative_insights"]
    if len(existing) >= minimum or len(insights) < 2:
        return existing

    result = list(existing)
    auto_id = 0
    for primary, related, explanation, significance, directed in _fallback_candidates(insights):
        if len(result) >= minimum:
            break
        if _linked(result, primary, related, directed):
            continue

        result.append(CorrelativeInsight(
            id=f"auto-corr-{auto_id}",
            primary_insight_id=primary,
            related_insight_ids=[related],
            explanation=explanation,
            significance=significance,
        ))
        auto_id += 1

    return result


def build_analysis_prompt(metrics: SessionMetrics, patterns: list[Pattern],
                          research: ResearchOutput,
                          benchmarks: list[NormativeBenchmark]) -> tuple[str, str]:
    return render_prompt(
        ANALYSIS_PROMPT,
        session_id=metrics.session_id,
        movement_type=metrics.movement_type,
        opi_line=format_opi_line(metrics.opi_score, metrics.opi_grade),
        benchmark_hints=format_benchmark_hints(benchmarks),
        patterns_with_evidence=format_patterns_with_evidence(patterns, research.evidence_by_pattern),
        left_leg=format_leg_metrics(metrics.left_leg, with_percentile=True),
        right_leg=format_leg_metrics(metrics.right_leg, with_percentile=True),
        bilateral=format_bilateral_metrics(metrics.bilateral, with_percentile=True),
    )


def run_analysis(ctx: AgentContext, metrics: SessionMetrics, patterns: list[Pattern],
                 research: ResearchOutput) -> AgentResult:
    """
    Run the analysis agent. Output is an AnalysisOutput.

    Fails with a schema violation when, after the correlation fallback, there
    are still too few correlative insights or one points at a missing insight.
    """
    started = time.monotonic()
    benchmarks = pre_compute_benchmarks(metrics)
    system_prompt, user_prompt = build_analysis_prompt(metrics, patterns, research, benchmarks)

    def merge(output: AnalysisOutput) -> AnalysisOutput:
        return output.model_copy(update={
            "benchmarks": merge_benchmarks(benchmarks, output.benchmarks),
            "correlative_insights": ensure_min_correlative_insights(
                output.insights, output.correlative_insights
            ),
        })

    return invoke_agent(
        ctx, "analysis", system_prompt, user_prompt,
        validate=validate_analysis_output,
        merge=merge,
        check=check_analysis_invariants,
        response_schema=RESPONSE_SCHEMAS["analysis"],
        started=started,
    )
