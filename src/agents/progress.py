"""
Progress agent: session history → trends, milestones, regressions.

Trends are computed deterministically for every registry metric against the
previous and baseline sessions, with clinical significance decided by the
metric's MCID. Milestones follow from those trends. The model adds
narrative, regressions, projections and anything the deterministic pass did
not cover.
"""

import time
from typing import Optional

from .base import AgentContext, elapsed_ms, invoke_agent, merge_by_key
from .config import PROGRESS_CONFIG
from .metrics import (
    BILATERAL_METRICS,
    LIMBS,
    METRIC_REGISTRY,
    PER_LEG_METRICS,
    mcid_for_metric,
)
from .parser import validate_progress_output
from .prompts import (
    PROGRESS_PROMPT,
    format_bilateral_table,
    format_historical_context,
    format_per_leg_table,
    format_phase1_context,
    format_session_timeline,
    format_trends,
    render_prompt,
)
from .schemas import RESPONSE_SCHEMAS
from .state import (
    AgentResult,
    DateRange,
    FailureKind,
    MetricTrend,
    Milestone,
    ProgressOutput,
    SessionMetrics,
    SimilarAnalysis,
    TrendPoint,
)

INSUFFICIENT_HISTORY_SUMMARY = (
    "Insufficient session history for progress analysis. "
    "Continue tracking to build baseline."
)


def _percent_change(current: float, reference: float) -> float:
    if reference == 0:
        return 0.0
    return (current - reference) / abs(reference) * 100


def calculate_trend(current: float, previous: float, baseline: float,
                    direction: str, metric_name: str) -> dict:
    """
    Classify one metric's change against the previous session.

    A change is clinically meaningful when either its percentage or its
    absolute size reaches the metric's MCID; anything else is stable.

    Returns:
        Trend fields keyed by MetricTrend attribute name
    """
    change_from_previous = _percent_change(current, previous)
    change_from_baseline = _percent_change(current, baseline)

    mcid = mcid_for_metric(metric_name)
    meaningful = abs(change_from_previous) >= mcid or abs(current - previous) >= mcid

    if not meaningful:
        trend = "stable"
    elif direction == "higherBetter":
        trend = "improving" if current > previous else "declining"
    else:
        trend = "improving" if current < previous else "declining"

    return {
        "trend": trend,
        "current_value": current,
        "previous_value": previous,
        "baseline_value": baseline,
        "change_from_previous": change_from_previous,
        "change_from_baseline": change_from_baseline,
        "is_clinically_meaningful": meaningful,
    }


def _metric_trend(name: str, sessions: list[SessionMetrics], current: SessionMetrics,
                  read, limb=None) -> MetricTrend:
    config = METRIC_REGISTRY[name]
    history = [TrendPoint(date=s.recorded_at, value=read(s)) for s in sessions]
    history.append(TrendPoint(date=current.recorded_at, value=read(current)))
    return MetricTrend(
        metric_name=name,
        display_name=config.display_name,
        domain=config.domain,
        direction=config.direction,
        limb=limb,
        history=history,
        **calculate_trend(
            read(current), read(sessions[-1]), read(sessions[0]), config.direction, name
        ),
    )


def pre_compute_trends(current: SessionMetrics,
                       historical: list[SessionMetrics]) -> list[MetricTrend]:
    """
    Trends for every registry metric.

    Historical sessions are ordered by recording time: the first is the
    baseline and the last is the previous session. Per-leg metrics produce
    one trend per leg.
    """
    if not historical:
        return []

    sessions = sorted(historical, key=lambda s: s.recorded_at)
    trends = []
    for name in PER_LEG_METRICS:
        field = METRIC_REGISTRY[name].field
        for limb in LIMBS:
            trends.append(_metric_trend(
                name, sessions, current,
                read=lambda s, limb=limb: getattr(s.leg(limb), field),
                limb=limb,
            ))

    for name in BILATERAL_METRICS:
        field = METRIC_REGISTRY[name].field
        trends.append(_metric_trend(
            name, sessions, current,
            read=lambda s: getattr(s.bilateral, field),
        ))
    return trends


def detect_milestones(trends: list[MetricTrend], current: SessionMetrics) -> list[Milestone]:
    """Personal bests and MCID improvements implied by the trends."""
    milestones = []

    def next_id() -> str:
        return f"auto-milestone-{len(milestones)}"

    for trend in trends:
        prefix = f"{trend.limb}: " if trend.limb else ""
        improving = trend.trend == "improving" and trend.is_clinically_meaningful

        if improving and trend.current_value > trend.baseline_value:
            improvement = abs(trend.change_from_baseline)
            if improvement >= PROGRESS_CONFIG["personal_best_change"]:
                milestones.append(Milestone(
                    id=next_id(),
                    type="personal_best",
                    title=f"{trend.display_name} Personal Best",
                    description=(
                        f"{prefix}{trend.display_name} reached {trend.current_value:.1f}, "
                        f"a {improvement:.0f}% improvement from baseline."
                    ),
                    achieved_at=current.recorded_at,
                    metrics=[trend.metric_name],
                    celebration_level=(
                        "major"
                        if improvement >= PROGRESS_CONFIG["major_personal_best_change"]
                        else "minor"
                    ),
                    limb=trend.limb,
                ))

        if improving:
            milestones.append(Milestone(
                id=next_id(),
                type="mcid_improvement",
                title=f"Clinically Meaningful {trend.display_name} Improvement",
                description=(
                    f"{prefix}{trend.display_name} showed clinically significant improvement "
                    f"of {abs(trend.change_from_previous):.1f}%."
                ),
                achieved_at=current.recorded_at,
                metrics=[trend.metric_name],
                celebration_level="minor",
                limb=trend.limb,
            ))

    return milestones


def merge_trends(pre_computed: list[MetricTrend], generated: list[MetricTrend]) -> list[MetricTrend]:
    return merge_by_key(pre_computed, generated, key=lambda t: t.dedup_key)


def merge_milestones(detected: list[Milestone], generated: list[Milestone]) -> list[Milestone]:
    merged = merge_by_key(detected, generated, key=lambda m: m.dedup_key)
    return sorted(merged, key=lambda m: m.celebration_level != "major")


def insufficient_history_output(current: SessionMetrics) -> ProgressOutput:
    return ProgressOutput(
        summary=INSUFFICIENT_HISTORY_SUMMARY,
        sessions_analyzed=1,
        date_range=DateRange(start=current.recorded_at, end=current.recorded_at),
    )


def build_progress_prompt(current: SessionMetrics, historical: list[SessionMetrics],
                          patient_id: str, trends: list[MetricTrend],
                          phase1_summary: str = "",
                          phase1_strengths: Optional[list[str]] = None,
                          phase1_weaknesses: Optional[list[str]] = None,
                          similar: Optional[list[SimilarAnalysis]] = None) -> tuple[str, str]:
    sessions = sorted(historical, key=lambda s: s.recorded_at)
    session_count = len(sessions) + 1
    if session_count >= PROGRESS_CONFIG["min_sessions_for_projection"]:
        projection_instruction = (
            f"Project values {PROGRESS_CONFIG['projection_horizon_days']} days ahead "
            "for the key improving metrics"
        )
    else:
        projection_instruction = (
            f"Skip projections (fewer than {PROGRESS_CONFIG['min_sessions_for_projection']} sessions)"
        )

    return render_prompt(
        PROGRESS_PROMPT,
        patient_id=patient_id,
        session_id=current.session_id,
        session_count=session_count,
        timeline=format_session_timeline(sessions + [current]),
        per_leg_table=format_per_leg_table(current, sessions[0]),
        bilateral_table=format_bilateral_table(current, sessions[0]),
        pre_computed_trends=format_trends(trends),
        phase1_context=format_phase1_context(
            phase1_summary, phase1_strengths or [], phase1_weaknesses or []
        ),
        historical_context=format_historical_context(similar or []),
        projection_instruction=projection_instruction,
    )


def run_progress(ctx: AgentContext, current: SessionMetrics, historical: list[SessionMetrics],
                 patient_id: str, phase1_summary: str = "",
                 phase1_strengths: Optional[list[str]] = None,
                 phase1_weaknesses: Optional[list[str]] = None,
                 similar: Optional[list[SimilarAnalysis]] = None) -> AgentResult:
    """
    Run the progress agent. Output is a ProgressOutput.

    With too little history no model call is made: the result succeeds with
    an empty output and error_kind PHASE_SKIPPED.
    """
    started = time.monotonic()
    if len(historical) < PROGRESS_CONFIG["min_sessions_for_trend"] - 1:
        return AgentResult(
            success=True,
            output=insufficient_history_output(current),
            error_kind=FailureKind.PHASE_SKIPPED,
            duration_ms=elapsed_ms(started),
        )

    sessions = sorted(historical, key=lambda s: s.recorded_at)
    trends = pre_compute_trends(current, sessions)
    system_prompt, user_prompt = build_progress_prompt(
        current, sessions, patient_id, trends,
        phase1_summary, phase1_strengths, phase1_weaknesses, similar,
    )

    def merge(output: ProgressOutput) -> ProgressOutput:
        merged_trends = merge_trends(trends, output.trends)
        milestones = merge_milestones(detect_milestones(merged_trends, current), output.milestones)
        return output.model_copy(update={
            "trends": merged_trends,
            "milestones": milestones,
            "sessions_analyzed": len(sessions) + 1,
            "date_range": DateRange(start=sessions[0].recorded_at, end=current.recorded_at),
        })

    return invoke_agent(
        ctx, "progress", system_prompt, user_prompt,
        validate=lambda data: validate_progress_output(data, len(sessions) + 1),
        merge=merge,
        response_schema=RESPONSE_SCHEMAS["progress"],
        started=started,
    )
