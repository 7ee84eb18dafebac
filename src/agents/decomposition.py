"""
Decomposition agent: session metrics → detected patterns.

Obvious patterns (deficient metrics, bilateral asymmetry, OPI change) are
detected programmatically first and handed to the model as a hint; the model
output is merged on top, with the pre-detected patterns taking precedence.
"""

import time
from typing import Optional

from .base import AgentContext, invoke_agent, merge_by_key
from .metrics import (
    BILATERAL_METRICS,
    CLINICAL_THRESHOLDS,
    MCID,
    METRIC_REGISTRY,
    PER_LEG_METRICS,
    LIMBS,
    asymmetry_severity,
    calculate_asymmetry,
    format_thresholds_for_prompt,
    get_benchmark_category,
)
from .parser import count_patterns, validate_decomposition_output
from .prompts import (
    DECOMPOSITION_PROMPT,
    format_bilateral_metrics,
    format_leg_metrics,
    format_opi_line,
    format_pre_detected,
    format_previous_session,
    format_timestamp,
    render_prompt,
)
from .schemas import RESPONSE_SCHEMAS
from .state import AgentResult, DecompositionOutput, Pattern, SessionMetrics


def _leg_threshold_pattern(pattern_id: str, name: str, limb: str, value: float) -> Pattern:
    config = METRIC_REGISTRY[name]
    return Pattern(
        id=pattern_id,
        type="threshold_violation",
        metrics=[name],
        severity="high",
        description=(
            f"{limb} {config.display_name} is {value:.1f}{config.unit}, "
            f"below deficient threshold ({config.poor_threshold:g}{config.unit})"
        ),
        values={name: value},
        limbs=[limb],
        search_terms=[
            f"{config.display_name} deficit",
            "knee rehabilitation",
            f"{config.domain} impairment",
        ],
        benchmark_category="deficient",
    )


def pre_detect_patterns(metrics: SessionMetrics,
                        previous: Optional[SessionMetrics] = None) -> list[Pattern]:
    """
    Detect the patterns that follow directly from the thresholds.

    Args:
        metrics: Current session metrics
        previous: Latest prior session, enables the OPI temporal pattern

    Returns:
        Patterns with ids pre-0, pre-1, ... in detection order
    """
    patterns: list[Pattern] = []

    def next_id() -> str:
        return f"pre-{len(patterns)}"

    # Per-leg thresholds and left/right asymmetry
    for name in PER_LEG_METRICS:
        config = METRIC_REGISTRY[name]
        values = {limb: getattr(metrics.leg(limb), config.field) for limb in LIMBS}

        for limb in LIMBS:
            if get_benchmark_category(values[limb], config) == "deficient":
                patterns.append(_leg_threshold_pattern(next_id(), name, limb, values[limb]))

        if not config.meaningful:
            continue
        left_value, right_value = values[LIMBS[0]], values[LIMBS[1]]
        percentage, _, deficit_limb = calculate_asymmetry(left_value, right_value, config.direction)
        if percentage < CLINICAL_THRESHOLDS["asymmetry_low"]:
            continue

        deficit_term = deficit_limb.lower().replace(" ", "_") if deficit_limb else "bilateral"
        patterns.append(Pattern(
            id=next_id(),
            type="asymmetry",
            metrics=[name],
            severity=asymmetry_severity(percentage),
            description=(
                f"{config.display_name} asymmetry of {percentage:.1f}% detected. "
                f"{deficit_limb} shows deficit."
            ),
            values={
                "leftValue": left_value,
                "rightValue": right_value,
                "asymmetryPercent": percentage,
            },
            limbs=[deficit_limb] if deficit_limb else None,
            search_terms=[
                f"{config.display_name} asymmetry",
                "bilateral difference",
                f"{deficit_term} deficit",
            ],
        ))

    # Bilateral thresholds
    for name in BILATERAL_METRICS:
        config = METRIC_REGISTRY[name]
        value = getattr(metrics.bilateral, config.field)
        if get_benchmark_category(value, config) != "deficient":
            continue
        patterns.append(Pattern(
            id=next_id(),
            type="threshold_violation",
            metrics=[name],
            severity="high",
            description=f"{config.display_name} is {value:.2f}{config.unit}, in deficient range",
            values={name: value},
            search_terms=[
                f"{config.display_name} impairment",
                "bilateral coordination",
                f"{config.domain} dysfunction",
            ],
            benchmark_category="deficient",
        ))

    # OPI change against the previous session
    if previous is not None and metrics.opi_score and previous.opi_score:
        change = metrics.opi_score - previous.opi_score
        if abs(change) >= MCID["opi_score"]:
            improved = change > 0
            patterns.append(Pattern(
                id=next_id(),
                type="temporal_pattern",
                metrics=["opiScore"],
                severity="low" if improved else "high",
                description=(
                    f"OPI score {'improved' if improved else 'declined'} by "
                    f"{abs(change):.0f} points from previous session"
                ),
                values={
                    "current": metrics.opi_score,
                    "previous": previous.opi_score,
                    "change": change,
                },
                search_terms=[
                    f"performance {'improvement' if improved else 'decline'}",
                    "rehabilitation progress",
                    "longitudinal change",
                ],
            ))

    return patterns


def merge_patterns(pre_detected: list[Pattern], generated: list[Pattern]) -> list[Pattern]:
    return merge_by_key(pre_detected, generated, key=lambda p: p.dedup_key)


def build_decomposition_prompt(metrics: SessionMetrics, previous: Optional[SessionMetrics],
                               pre_detected: list[Pattern]) -> tuple[str, str]:
    comparison = (
        "Compare to the previous session and flag temporal changes"
        if previous is not None
        else "No previous session available; skip temporal patterns"
    )
    return render_prompt(
        DECOMPOSITION_PROMPT,
        session_id=metrics.session_id,
        movement_type=metrics.movement_type,
        recorded_at=format_timestamp(metrics.recorded_at),
        opi_line=format_opi_line(metrics.opi_score, metrics.opi_grade),
        left_leg=format_leg_metrics(metrics.left_leg),
        right_leg=format_leg_metrics(metrics.right_leg),
        bilateral=format_bilateral_metrics(metrics.bilateral),
        thresholds=format_thresholds_for_prompt(),
        previous_session=format_previous_session(previous),
        comparison_instruction=comparison,
        pre_detected=format_pre_detected(pre_detected),
    )


def run_decomposition(ctx: AgentContext, metrics: SessionMetrics,
                      previous: Optional[SessionMetrics] = None) -> AgentResult:
    """Run the decomposition agent. Output is a DecompositionOutput."""
    started = time.monotonic()
    pre_detected = pre_detect_patterns(metrics, previous)
    system_prompt, user_prompt = build_decomposition_prompt(metrics, previous, pre_detected)

    def merge(output: DecompositionOutput) -> DecompositionOutput:
        patterns = merge_patterns(pre_detected, output.patterns)
        return DecompositionOutput(
            patterns=patterns,
            pattern_counts=count_patterns(patterns),
            analyzed_at=output.analyzed_at,
        )

    return invoke_agent(
        ctx, "decomposition", system_prompt, user_prompt,
        validate=validate_decomposition_output,
        merge=merge,
        response_schema=RESPONSE_SCHEMAS["decomposition"],
        started=started,
    )
