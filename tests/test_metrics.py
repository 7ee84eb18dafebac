"""Tests for the metric registry and its deterministic helpers.

Covers:
  - Registry layout (per-leg vs bilateral, domains)
  - Benchmark categories for both metric directions
  - Normative percentile mapping
  - Forced strength / weakness classification
  - Bilateral asymmetry and its severity band
  - MCID selection by metric name
"""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.agents.metrics import (
    BILATERAL_METRICS,
    METRIC_REGISTRY,
    METRICS_BY_DOMAIN,
    PER_LEG_METRICS,
    asymmetry_severity,
    calculate_asymmetry,
    calculate_percentile,
    force_classification,
    format_thresholds_for_prompt,
    get_benchmark_category,
    get_metric,
    mcid_for_metric,
    tier_at_least,
)
from src.agents.state import BilateralMetrics, PerLegMetrics


# ============================================================================
# Test: Registry
# ============================================================================

class TestRegistry:

    def test_scopes_partition_registry(self):
        assert len(PER_LEG_METRICS) == 9
        assert len(BILATERAL_METRICS) == 8
        assert set(PER_LEG_METRICS) | set(BILATERAL_METRICS) == set(METRIC_REGISTRY)

    def test_fields_exist_on_models(self):
        for name in PER_LEG_METRICS:
            assert METRIC_REGISTRY[name].field in PerLegMetrics.model_fields
        for name in BILATERAL_METRICS:
            assert METRIC_REGISTRY[name].field in BilateralMetrics.model_fields

    def test_every_domain_has_metrics(self):
        for domain, names in METRICS_BY_DOMAIN.items():
            assert names, domain

    def test_rom_cov_not_meaningful(self):
        assert get_metric("romCoV").meaningful is False
        assert get_metric("overallMaxRom").meaningful is True

    def test_unknown_metric(self):
        assert get_metric("stepLength") is None

    def test_tier_ordering(self):
        assert tier_at_least("S", "C")
        assert tier_at_least("C", "C")
        assert not tier_at_least("D", "C")

    def test_thresholds_prompt_lists_domains(self):
        text = format_thresholds_for_prompt()
        assert "### Range Domain" in text
        assert "### Timing Domain" in text
        assert "Asymmetry Thresholds" in text


# ============================================================================
# Test: Benchmark Category and Percentile
# ============================================================================

class TestBenchmarks:

    def test_higher_better_categories(self):
        config = get_metric("overallMaxRom")  # good 120, poor 90
        assert get_benchmark_category(125, config) == "optimal"
        assert get_benchmark_category(100, config) == "average"
        assert get_benchmark_category(90, config) == "deficient"

    def test_lower_better_categories(self):
        config = get_metric("rmsJerk")  # good 300, poor 800
        assert get_benchmark_category(250, config) == "optimal"
        assert get_benchmark_category(500, config) == "average"
        assert get_benchmark_category(900, config) == "deficient"

    def test_percentile_anchors(self):
        config = get_metric("overallMaxRom")
        assert calculate_percentile(90, config) == pytest.approx(10)
        assert calculate_percentile(105, config) == pytest.approx(50)
        assert calculate_percentile(120, config) == pytest.approx(90)

    def test_percentile_lower_better_midpoint(self):
        config = get_metric("peakExtension")  # good 5, poor 15
        assert calculate_percentile(10, config) == pytest.approx(50)

    def test_percentile_bounded(self):
        config = get_metric("peakAngularVelocity")
        assert calculate_percentile(10_000, config) == 100.0
        assert calculate_percentile(0, config) == 0.0


# ============================================================================
# Test: Classification
# ============================================================================

class TestClassification:

    def test_categories_are_decisive(self):
        assert force_classification("optimal", 5) == "strength"
        assert force_classification("deficient", 95) == "weakness"

    def test_average_uses_percentile_tiebreaker(self):
        assert force_classification("average", 60) == "strength"
        assert force_classification("average", 55) == "strength"
        assert force_classification("average", 50) == "weakness"


# ============================================================================
# Test: Asymmetry
# ============================================================================

class TestAsymmetry:

    def test_higher_better_deficit_is_lower_value(self):
        percentage, abs_diff, deficit = calculate_asymmetry(100, 80, "higherBetter")
        assert percentage == pytest.approx(22.22, abs=0.01)
        assert abs_diff == 20
        assert deficit == "Right Leg"

    def test_lower_better_deficit_is_higher_value(self):
        _, _, deficit = calculate_asymmetry(400, 300, "lowerBetter")
        assert deficit == "Left Leg"

    def test_equal_values_have_no_deficit(self):
        assert calculate_asymmetry(50, 50, "higherBetter") == (0.0, 0, None)

    def test_zero_total(self):
        assert calculate_asymmetry(0, 0, "higherBetter") == (0.0, 0.0, None)

    def test_severity_bands(self):
        assert asymmetry_severity(16) == "high"
        assert asymmetry_severity(12) == "moderate"
        assert asymmetry_severity(6) == "low"


# ============================================================================
# Test: MCID
# ============================================================================

class TestMCID:

    @pytest.mark.parametrize("name,expected", [
        ("overallMaxRom", 10),
        ("peakFlexion", 10),
        ("peakAngularVelocity", 15),
        ("romAsymmetry", 5),
        ("rmsJerk", 100),
        ("crossCorrelation", 5),
        ("temporalLag", 10),
    ])
    def test_mcid_by_name(self, name, expected):
        assert mcid_for_metric(name) == pytest.approx(expected)
