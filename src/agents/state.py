"""
State definitions for the insight pipeline using LangGraph.

This module defines one Pydantic model per phase boundary (metrics → patterns
→ evidence → insights → validation → progress) plus the state that flows
through the pipeline graph. Python attributes are snake_case; model payloads
and API bodies use the camelCase aliases.
"""

import time
from enum import Enum
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .metrics import BenchmarkCategory, Classification, MetricDomain, QualityTier


Limb = Literal["Left Leg", "Right Leg"]
Severity = Literal["high", "moderate", "low"]
PatternType = Literal[
    "threshold_violation",
    "asymmetry",
    "cross_metric_correlation",
    "temporal_pattern",
    "quality_flag",
]
PATTERN_TYPES: tuple[str, ...] = PatternType.__args__
SourceType = Literal["cache", "web_search", "embedded_knowledge"]
TrendDirection = Literal["improving", "stable", "declining"]
MilestoneType = Literal[
    "threshold_achieved",
    "mcid_improvement",
    "streak",
    "personal_best",
    "asymmetry_resolved",
    "symmetry_restored",
    "limb_caught_up",
    "cross_metric_gain",
]


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase payload keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Input Models
# ============================================================================

class PerLegMetrics(CamelModel):
    """Per-limb measurements for one session."""
    overall_max_rom: float = 0.0
    average_rom: float = 0.0
    peak_flexion: float = 0.0
    peak_extension: float = 0.0
    peak_angular_velocity: float = 0.0
    explosiveness_concentric: float = 0.0
    explosiveness_loading: float = 0.0
    rms_jerk: float = 0.0
    rom_cov: float = Field(default=0.0, alias="romCoV")


class BilateralMetrics(CamelModel):
    """Measurements comparing both limbs for one session."""
    rom_asymmetry: float = 0.0
    velocity_asymmetry: float = 0.0
    cross_correlation: float = 0.0
    real_asymmetry_avg: float = 0.0
    net_global_asymmetry: float = 0.0
    phase_shift: float = 0.0
    temporal_lag: float = 0.0
    max_flexion_timing_diff: float = 0.0


class SessionMetrics(CamelModel):
    """Immutable input to a pipeline run."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    session_id: str
    left_leg: PerLegMetrics
    right_leg: PerLegMetrics
    bilateral: BilateralMetrics
    opi_score: Optional[float] = Field(default=None, description="Composite performance score")
    opi_grade: Optional[str] = None
    movement_type: str = "bilateral"
    recorded_at: int = Field(default_factory=now_ms, description="Epoch milliseconds")
    title: Optional[str] = None
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    def leg(self, limb: str) -> PerLegMetrics:
        return self.left_leg if limb == "Left Leg" else self.right_leg


# ============================================================================
# Decomposition Models
# ============================================================================

class Pattern(CamelModel):
    """A detected signal in the session metrics."""
    id: str
    type: PatternType
    metrics: list[str] = Field(min_length=1)
    severity: Severity
    description: str = ""
    values: dict[str, Any] = Field(default_factory=dict)
    limbs: Optional[list[Limb]] = None
    search_terms: list[str] = Field(default_factory=list)
    benchmark_category: Optional[BenchmarkCategory] = None

    @property
    def dedup_key(self) -> tuple:
        return (self.type, tuple(sorted(self.metrics)), tuple(sorted(self.limbs or [])))


class DecompositionOutput(CamelModel):
    patterns: list[Pattern] = Field(default_factory=list)
    pattern_counts: dict[str, int] = Field(default_factory=dict)
    analyzed_at: int = Field(default_factory=now_ms)


# ============================================================================
# Research Models
# ============================================================================

class Evidence(CamelModel):
    """A citation supporting one pattern."""
    id: str
    pattern_id: str
    tier: QualityTier = "D"
    source_type: SourceType = "embedded_knowledge"
    citation: str = "Unknown"
    url: Optional[str] = None
    findings: list[str] = Field(default_factory=list)
    relevance_score: float = 50


class ResearchOutput(CamelModel):
    evidence_by_pattern: dict[str, list[Evidence]] = Field(default_factory=dict)
    insufficient_evidence: list[str] = Field(default_factory=list)
    new_cache_entries: list[Evidence] = Field(default_factory=list)
    researched_at: int = Field(default_factory=now_ms)


# ============================================================================
# Analysis Models
# ============================================================================

class Insight(CamelModel):
    """A domain finding, always classified as a strength or a weakness."""
    id: str
    domain: MetricDomain
    classification: Classification
    title: str = ""
    content: str = ""
    limbs: Optional[list[Limb]] = None
    evidence: list[str] = Field(default_factory=list)
    pattern_ids: list[str] = Field(default_factory=list)
    chart: Optional[dict[str, Any]] = None
    recommendations: Optional[list[str]] = None
    percentile: Optional[float] = None


class CorrelativeInsight(CamelModel):
    id: str
    primary_insight_id: str
    related_insight_ids: list[str] = Field(default_factory=list)
    explanation: str = ""
    significance: Severity = "moderate"


class NormativeBenchmark(CamelModel):
    metric_name: str
    display_name: str = ""
    domain: MetricDomain = "range"
    value: float = 0.0
    percentile: float = 50
    category: BenchmarkCategory = "average"
    classification: Classification = "strength"
    limb: Optional[Limb] = None

    @property
    def dedup_key(self) -> tuple:
        return (self.metric_name, self.limb or "bilateral")


class AnalysisOutput(CamelModel):
    insights: list[Insight] = Field(default_factory=list)
    correlative_insights: list[CorrelativeInsight] = Field(default_factory=list)
    benchmarks: list[NormativeBenchmark] = Field(default_factory=list)
    summary: str = ""
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    analyzed_at: int = Field(default_factory=now_ms)
    visualization: Optional[dict[str, Any]] = None

    @property
    def insight_ids(self) -> set[str]:
        return {insight.id for insight in self.insights}


# ============================================================================
# Validation Models
# ============================================================================

class ValidationIssue(CamelModel):
    rule_type: str = "internal_consistency"
    severity: Literal["error", "warning"] = "warning"
    insight_ids: list[str] = Field(default_factory=list)
    description: str = ""
    suggested_fix: str = ""

    @property
    def dedup_key(self) -> tuple:
        return (self.rule_type, tuple(sorted(self.insight_ids)), self.description[:50])


class ValidatorOutcome(CamelModel):
    """Result of one validation revision."""
    passed: bool
    issues: list[ValidationIssue] = Field(default_factory=list)
    error_count: int = 0
    warning_count: int = 0
    revision_number: int = 1
    validated_analysis: Optional[AnalysisOutput] = None
    validated_at: int = Field(default_factory=now_ms)


# ============================================================================
# Progress Models
# ============================================================================

class TrendPoint(CamelModel):
    date: int
    value: float


class MetricTrend(CamelModel):
    metric_name: str
    display_name: str = ""
    domain: MetricDomain = "range"
    direction: Literal["higherBetter", "lowerBetter"] = "higherBetter"
    trend: TrendDirection = "stable"
    current_value: float = 0.0
    previous_value: float = 0.0
    baseline_value: float = 0.0
    change_from_previous: float = Field(default=0.0, description="Percent change")
    change_from_baseline: float = Field(default=0.0, description="Percent change")
    is_clinically_meaningful: bool = False
    limb: Optional[Limb] = None
    history: list[TrendPoint] = Field(default_factory=list)

    @property
    def dedup_key(self) -> tuple:
        return (self.metric_name, self.limb or "bilateral")


class Milestone(CamelModel):
    id: str
    type: MilestoneType
    title: str = ""
    description: str = ""
    achieved_at: int = Field(default_factory=now_ms)
    metrics: list[str] = Field(default_factory=list)
    celebration_level: Literal["major", "minor"] = "minor"
    limb: Optional[Limb] = None

    @property
    def dedup_key(self) -> tuple:
        return (self.type, tuple(sorted(self.metrics)))


class Regression(CamelModel):
    id: str
    metric_name: str = ""
    decline_percentage: float = 0.0
    is_clinically_significant: bool = False
    possible_reasons: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    limb: Optional[Limb] = None


class Projection(CamelModel):
    metric_name: str = ""
    projected_value: float = 0.0
    target_date: int = 0
    confidence: float = 50
    assumptions: list[str] = Field(default_factory=list)


class ProgressCorrelation(CamelModel):
    id: str
    type: Literal["co_improving", "co_declining", "inverse", "compensatory"] = "co_improving"
    metrics: list[str] = Field(default_factory=list)
    explanation: str = ""
    significance: Severity = "moderate"
    limb: Optional[Limb] = None


class AsymmetryTrend(CamelModel):
    metric_name: str = ""
    display_name: str = ""
    current_asymmetry: float = 0.0
    previous_asymmetry: float = 0.0
    baseline_asymmetry: float = 0.0
    change_from_previous: float = 0.0
    change_from_baseline: float = 0.0
    is_resolving: bool = False
    deficit_limb: Optional[Limb] = None
    is_deficit_catching_up: Optional[bool] = None


class DateRange(CamelModel):
    start: int
    end: int


class ProgressOutput(CamelModel):
    trends: list[MetricTrend] = Field(default_factory=list)
    milestones: list[Milestone] = Field(default_factory=list)
    regressions: list[Regression] = Field(default_factory=list)
    projections: list[Projection] = Field(default_factory=list)
    correlations: list[ProgressCorrelation] = Field(default_factory=list)
    asymmetry_trends: list[AsymmetryTrend] = Field(default_factory=list)
    summary: str = ""
    sessions_analyzed: int = 0
    date_range: Optional[DateRange] = None
    analyzed_at: int = Field(default_factory=now_ms)


class SimilarAnalysis(CamelModel):
    """A historical analysis summary returned by the vector store."""
    session_id: str
    summary_text: str = ""
    key_findings: list[str] = Field(default_factory=list)
    score: float = 0.0


# ============================================================================
# Usage, Errors and Envelopes
# ============================================================================

class TokenUsage(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            estimated_cost=self.estimated_cost + other.estimated_cost,
        )


class FailureKind(str, Enum):
    PARSE_FAILURE = "parse_failure"
    SCHEMA_VIOLATION = "schema_violation"
    AGENT_FAILURE = "agent_failure"
    VALIDATION_FAILURE = "validation_failure"
    PHASE_SKIPPED = "phase_skipped"


class AgentResult(BaseModel):
    """Uniform envelope returned by every agent invocation."""
    success: bool
    output: Optional[Any] = None
    error: Optional[str] = None
    error_kind: Optional[FailureKind] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    duration_ms: int = 0


class PipelineError(CamelModel):
    agent: str
    message: str
    retryable: bool = False
    kind: Optional[FailureKind] = None


class PipelineStatus(str, Enum):
    PENDING = "pending"
    DECOMPOSITION = "decomposition"
    RESEARCH = "research"
    ANALYSIS = "analysis"
    VALIDATION = "validation"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class PipelineStatusRecord(CamelModel):
    """The single authoritative status record for one session run."""
    session_id: str
    status: PipelineStatus = PipelineStatus.PENDING
    current_agent: Optional[str] = None
    revision_count: int = 0
    error: Optional[PipelineError] = None
    updated_at: int = Field(default_factory=now_ms)


class PipelineResult(CamelModel):
    """Public result of a pipeline run. Always returned, never raised."""
    success: bool
    status: PipelineStatus
    analysis: Optional[AnalysisOutput] = None
    validation: Optional[ValidatorOutcome] = None
    progress: Optional[ProgressOutput] = None
    error: Optional[PipelineError] = None
    total_tokens: int = 0
    total_cost: float = 0.0
    duration_ms: int = 0
    warnings: list[str] = Field(default_factory=list)


# ============================================================================
# State Model (flows through LangGraph)
# ============================================================================

class PipelineState(BaseModel):
    """
    State that flows through the LangGraph pipeline.

    Each node returns a partial update; collaborators and the run deadline
    travel in the run config, not in the state.
    """
    # Input data
    session_id: str
    metrics: SessionMetrics
    prior_metrics: list[SessionMetrics] = Field(default_factory=list)
    patient_id: Optional[str] = None

    # Phase outputs
    decomposition: Optional[DecompositionOutput] = None
    research: Optional[ResearchOutput] = None
    analysis: Optional[AnalysisOutput] = None
    validation: Optional[ValidatorOutcome] = None
    revision: int = 0

    # Longitudinal phase
    similar_analyses: list[SimilarAnalysis] = Field(default_factory=list)
    progress: Optional[ProgressOutput] = None

    # Non-fatal notes
    warnings: list[str] = Field(default_factory=list)

    # Error tracking
    error: Optional[PipelineError] = None

    class Config:
        """Pydantic config for LangGraph compatibility."""
        arbitrary_types_allowed = True

    @property
    def previous_metrics(self) -> Optional[SessionMetrics]:
        """Latest prior session by recording time."""
        if not self.prior_metrics:
            return None
        return max(self.prior_metrics, key=lambda m: m.recorded_at)
