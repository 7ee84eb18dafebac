"""
Metric registry for the insight agents.

Single source of truth for the normative thresholds of every session metric,
plus the deterministic helpers (benchmark category, percentile, forced
classification, asymmetry) that the agents use as pre-computed anchors.
Metric names are the camelCase keys used in model payloads.
"""

from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict


MetricDomain = Literal["range", "symmetry", "power", "control", "timing"]
MetricDirection = Literal["higherBetter", "lowerBetter"]
MetricScope = Literal["perLeg", "bilateral"]
BenchmarkCategory = Literal["optimal", "average", "deficient"]
Classification = Literal["strength", "weakness"]
QualityTier = Literal["S", "A", "B", "C", "D"]

LEFT_LEG = "Left Leg"
RIGHT_LEG = "Right Leg"
LIMBS = (LEFT_LEG, RIGHT_LEG)
DOMAINS: tuple[str, ...] = ("range", "symmetry", "power", "control", "timing")


class MetricConfig(BaseModel):
    """Normative configuration for a single metric."""
    model_config = ConfigDict(frozen=True)

    name: str
    field: str
    display_name: str
    domain: MetricDomain
    direction: MetricDirection
    scope: MetricScope
    unit: str
    good_threshold: float
    poor_threshold: float
    citation: str = ""
    # False for metrics that carry no signal across multi-rep sessions
    meaningful: bool = True


def _metric(name, field, display_name, domain, direction, scope, unit, good, poor,
            citation="", meaningful=True) -> MetricConfig:
    return MetricConfig(
        name=name, field=field, display_name=display_name, domain=domain,
        direction=direction, scope=scope, unit=unit, good_threshold=good,
        poor_threshold=poor, citation=citation, meaningful=meaningful,
    )


# Maps metric name -> MetricConfig
METRIC_REGISTRY: dict[str, MetricConfig] = {
    m.name: m for m in [
        # Range (per-leg)
        _metric("overallMaxRom", "overall_max_rom", "Maximum ROM", "range",
                "higherBetter", "perLeg", "°", 120, 90, "Knee flexion norms"),
        _metric("averageRom", "average_rom", "Average ROM", "range",
                "higherBetter", "perLeg", "°", 100, 70, "Knee flexion norms"),
        _metric("peakFlexion", "peak_flexion", "Peak Flexion", "range",
                "higherBetter", "perLeg", "°", 125, 95, "Knee flexion norms"),
        _metric("peakExtension", "peak_extension", "Peak Extension", "range",
                "lowerBetter", "perLeg", "°", 5, 15, "Full extension = 0°"),
        # Symmetry (bilateral)
        _metric("romAsymmetry", "rom_asymmetry", "ROM Asymmetry", "symmetry",
                "lowerBetter", "bilateral", "%", 5, 15, "Sadeghi et al. Gait Posture 2000"),
        _metric("velocityAsymmetry", "velocity_asymmetry", "Velocity Asymmetry", "symmetry",
                "lowerBetter", "bilateral", "%", 8, 20, "Derived from ROM asymmetry principles"),
        _metric("crossCorrelation", "cross_correlation", "Movement Synchronization", "symmetry",
                "higherBetter", "bilateral", "", 0.95, 0.75, "Signal processing; >0.9 = high similarity"),
        _metric("realAsymmetryAvg", "real_asymmetry_avg", "True Asymmetry", "symmetry",
                "lowerBetter", "bilateral", "°", 5, 20, "Convolution-based separation"),
        _metric("netGlobalAsymmetry", "net_global_asymmetry", "Net Global Asymmetry", "symmetry",
                "lowerBetter", "bilateral", "%", 8, 20, "Weighted composite across parameters"),
        # Power (per-leg)
        _metric("peakAngularVelocity", "peak_angular_velocity", "Peak Velocity", "power",
                "higherBetter", "perLeg", "°/s", 400, 200, "Biomechanics literature; sport-specific"),
        _metric("explosivenessConcentric", "explosiveness_concentric", "Concentric Power", "power",
                "higherBetter", "perLeg", "°/s²", 500, 200, "Acceleration during concentric phase"),
        _metric("explosivenessLoading", "explosiveness_loading", "Loading Power", "power",
                "higherBetter", "perLeg", "°/s²", 500, 200, "Acceleration during eccentric phase"),
        # Control (per-leg)
        _metric("rmsJerk", "rms_jerk", "Movement Smoothness", "control",
                "lowerBetter", "perLeg", "°/s³", 300, 800, "Flash & Hogan 1985"),
        _metric("romCoV", "rom_cov", "Movement Consistency", "control",
                "lowerBetter", "perLeg", "%", 8, 20, "Movement variability; CV <10% acceptable",
                meaningful=False),
        # Timing (bilateral)
        _metric("phaseShift", "phase_shift", "Phase Offset", "timing",
                "lowerBetter", "bilateral", "°", 10, 30, "Bilateral timing synchronization"),
        _metric("temporalLag", "temporal_lag", "Timing Delay", "timing",
                "lowerBetter", "bilateral", "ms", 30, 80, "Interlimb timing"),
        _metric("maxFlexionTimingDiff", "max_flexion_timing_diff", "Peak Timing Difference", "timing",
                "lowerBetter", "bilateral", "ms", 50, 150, "Temporal coordination of peak flexion"),
    ]
}

PER_LEG_METRICS = [name for name, m in METRIC_REGISTRY.items() if m.scope == "perLeg"]
BILATERAL_METRICS = [name for name, m in METRIC_REGISTRY.items() if m.scope == "bilateral"]
METRICS_BY_DOMAIN = {
    domain: [name for name, m in METRIC_REGISTRY.items() if m.domain == domain]
    for domain in DOMAINS
}

QUALITY_TIER_VALUES = {"S": 5, "A": 4, "B": 3, "C": 2, "D": 1}

# Asymmetry severity bands (percent)
CLINICAL_THRESHOLDS = {
    "asymmetry_high": 15,
    "asymmetry_moderate": 10,
    "asymmetry_low": 5,
    "bilateral_correlation": 0.7,
}

# Minimal clinically important differences
MCID = {
    "rom": 10,
    "velocity": 50,
    "velocity_percentage": 15,
    "asymmetry": 5,
    "jerk": 100,
    "opi_score": 5,
    "cross_correlation": 0.05,
}


def get_metric(name: str) -> Optional[MetricConfig]:
    """Look up a metric by its camelCase name."""
    return METRIC_REGISTRY.get(name)


def tier_at_least(tier: str, minimum: str) -> bool:
    return QUALITY_TIER_VALUES.get(tier, 0) >= QUALITY_TIER_VALUES.get(minimum, 0)


def get_benchmark_category(value: float, config: MetricConfig) -> BenchmarkCategory:
    """Bucket a value against the metric's good/poor thresholds."""
    if config.direction == "higherBetter":
        if value >= config.good_threshold:
            return "optimal"
        if value <= config.poor_threshold:
            return "deficient"
        return "average"

    if value <= config.good_threshold:
        return "optimal"
    if value >= config.poor_threshold:
        return "deficient"
    return "average"


def calculate_percentile(value: float, config: MetricConfig) -> float:
    """
    Map a value onto a 0-100 normative percentile.

    The poor threshold sits at the 10th percentile and the good threshold at
    the 90th; values in between interpolate linearly.
    """
    good = config.good_threshold
    poor = config.poor_threshold
    span = abs(good - poor)
    if span == 0:
        return 50.0

    if config.direction == "higherBetter":
        if value >= good:
            return min(100.0, 90 + (value - good) / good * 10)
        if value <= poor:
            return max(0.0, value / max(poor, 1) * 10)
        return 10 + (value - poor) / span * 80

    if value <= good:
        return min(100.0, 90 + (good - value) / max(good, 1) * 10)
    if value >= poor:
        return max(0.0, (poor - value) / max(poor, 1) * 10 + 10)
    return 10 + (poor - value) / span * 80


def force_classification(category: str, percentile: float,
                         strength_percentile: float = 55) -> Classification:
    """Every metric is a strength or a weakness; average uses the percentile tiebreaker."""
    if category == "optimal":
        return "strength"
    if category == "deficient":
        return "weakness"
    return "strength" if percentile >= strength_percentile else "weakness"


def calculate_asymmetry(left_value: float, right_value: float,
                        direction: str) -> tuple[float, float, Optional[str]]:
    """
    Compute bilateral asymmetry between two limb values.

    Returns:
        Tuple of (percentage, absolute difference, deficit limb or None).
        The deficit limb is the lower value for higherBetter metrics and the
        higher value for lowerBetter metrics; equal values have no deficit.
    """
    total = left_value + right_value
    if total == 0:
        return 0.0, 0.0, None

    abs_diff = abs(left_value - right_value)
    percentage = 200 * abs_diff / total

    deficit_limb = None
    if left_value != right_value:
        if direction == "higherBetter":
            deficit_limb = LEFT_LEG if left_value < right_value else RIGHT_LEG
        else:
            deficit_limb = LEFT_LEG if left_value > right_value else RIGHT_LEG

    return percentage, abs_diff, deficit_limb


def asymmetry_severity(percentage: float) -> str:
    if percentage >= CLINICAL_THRESHOLDS["asymmetry_high"]:
        return "high"
    if percentage >= CLINICAL_THRESHOLDS["asymmetry_moderate"]:
        return "moderate"
    return "low"


def mcid_for_metric(metric_name: str) -> float:
    """Pick the trend MCID (percent or absolute) from the metric's name."""
    if "Rom" in metric_name or "Flexion" in metric_name or "Extension" in metric_name:
        return MCID["rom"]
    if "Velocity" in metric_name or "velocity" in metric_name:
        return MCID["velocity_percentage"]
    if "symmetry" in metric_name or "Asymmetry" in metric_name:
        return MCID["asymmetry"]
    if "Jerk" in metric_name or "jerk" in metric_name:
        return MCID["jerk"]
    if "Correlation" in metric_name or "correlation" in metric_name:
        # ratio MCID expressed in percent
        return MCID["cross_correlation"] * 100
    return 10


def format_thresholds_for_prompt() -> str:
    """Format the reference thresholds per domain for prompt injection."""
    lines = []
    for domain in DOMAINS:
        lines.append(f"\n### {domain.capitalize()} Domain")
        for name in METRICS_BY_DOMAIN[domain]:
            m = METRIC_REGISTRY[name]
            if m.direction == "higherBetter":
                lines.append(
                    f"- {m.display_name}: Good ≥ {m.good_threshold:g}{m.unit}, "
                    f"Poor ≤ {m.poor_threshold:g}{m.unit}"
                )
            else:
                lines.append(
                    f"- {m.display_name}: Good ≤ {m.good_threshold:g}{m.unit}, "
                    f"Poor ≥ {m.poor_threshold:g}{m.unit}"
                )

    lines.append(
        "\n### Asymmetry Thresholds\n"
        f"- Low: <{CLINICAL_THRESHOLDS['asymmetry_low']}%\n"
        f"- Moderate: {CLINICAL_THRESHOLDS['asymmetry_low']}-{CLINICAL_THRESHOLDS['asymmetry_moderate']}%\n"
        f"- High: >{CLINICAL_THRESHOLDS['asymmetry_high']}%"
    )
    return "\n".join(lines)
