"""
Prompt templates for the insight agents.

This module contains the system and human templates for the five agents and
the helpers that format typed payloads (metrics, patterns, evidence, trends)
into prompt sections. Pre-computed values are injected as anchors the model
should refine rather than invent.
"""

import json
from datetime import datetime, timezone
from typing import Optional

from langchain_core.prompts import ChatPromptTemplate

from .config import PROGRESS_CONFIG, VALIDATION_RULES
from .metrics import (
    BILATERAL_METRICS,
    MCID,
    METRIC_REGISTRY,
    PER_LEG_METRICS,
    calculate_percentile,
    get_benchmark_category,
)


# Evidence sources searched first, in priority order
PRIORITY_DOMAINS = [
    "pubmed.ncbi.nlm.nih.gov",
    "www.jospt.org",
    "bjsm.bmj.com",
    "www.cochranelibrary.com",
    "physicaltherapyjournal.com",
    "link.springer.com",
    "academic.oup.com",
    "onlinelibrary.wiley.com",
]

_LIMB_RULE = 'Always "Left Leg" or "Right Leg" (never "left", "L", "affected" or "involved")'


# ============================================================================
# Decomposition
# ============================================================================

DECOMPOSITION_SYSTEM_PROMPT = f"""You are a biomechanical pattern recognition system for a knee motion analysis pipeline.

Your role is to identify patterns in motion capture metrics WITHOUT providing clinical interpretation.
You detect facts only; interpretation happens in a later analysis step.

## Your Tasks

1. **Threshold Violations**: Flag metrics outside optimal/deficient thresholds
2. **Asymmetry Detection**: Identify Left Leg vs Right Leg differences using direction-aware logic
3. **Cross-Metric Correlations**: Find related metric patterns
4. **Temporal Patterns**: Compare to the previous session if available
5. **Quality Flags**: Note data quality issues

## Rules

- BE FACTUAL: state observations, not interpretations
- BE SPECIFIC: use exact values with units
- BE COMPLETE: check every metric provided
- LIMB NAMES: {_LIMB_RULE}
- SEARCH TERMS: provide 2-3 search terms for each pattern

## Output Format

Return a JSON object:
{{{{
  "patterns": [
    {{{{
      "id": "string (unique)",
      "type": "threshold_violation" | "asymmetry" | "cross_metric_correlation" | "temporal_pattern" | "quality_flag",
      "metrics": ["metric names"],
      "severity": "high" | "moderate" | "low",
      "description": "Factual description",
      "values": {{{{ "metricName": value }}}},
      "limbs": ["Left Leg"] | ["Right Leg"] | ["Left Leg", "Right Leg"] | null,
      "searchTerms": ["term1", "term2"],
      "benchmarkCategory": "optimal" | "average" | "deficient" | null
    }}}}
  ]
}}}}

## Severity Guidelines

- **High**: metric in deficient category OR asymmetry >15%
- **Moderate**: metric in average category OR asymmetry 10-15%
- **Low**: minor deviation OR asymmetry 5-10%"""

DECOMPOSITION_PROMPT = ChatPromptTemplate.from_messages([
    ("system", DECOMPOSITION_SYSTEM_PROMPT),
    ("human", """# Session Metrics Analysis Request

**Session ID**: {session_id}
**Movement Type**: {movement_type}
**Recorded At**: {recorded_at}
{opi_line}

## Left Leg Metrics
{left_leg}

## Right Leg Metrics
{right_leg}

## Bilateral Metrics
{bilateral}

## Reference Thresholds
{thresholds}
{previous_session}

## Instructions

1. Analyze each metric against thresholds
2. Check for asymmetries between legs
3. Look for correlations across metrics
4. {comparison_instruction}
5. Generate search terms for each pattern

Return JSON with the patterns found.
{pre_detected}"""),
])


# ============================================================================
# Research
# ============================================================================

RESEARCH_SYSTEM_PROMPT = f"""You are a biomedical research assistant for a knee motion analysis pipeline.

Your role is to find and evaluate scientific evidence supporting detected biomechanical patterns.

## Quality Tiers

- **S (90-100)**: Systematic reviews, Cochrane, clinical practice guidelines
- **A (75-89)**: RCTs from JOSPT, BJSM, Physical Therapy Journal
- **B (60-74)**: Observational studies, case series
- **C (40-59)**: Expert opinion, textbooks
- **D (0-39)**: General web content, news

## Priority Sources

{chr(10).join(f"- {d}" for d in PRIORITY_DOMAINS)}

## Rules

- PRIORITIZE QUALITY: a single tier-A source beats multiple tier-D sources
- BE RELEVANT: only include findings directly related to the pattern
- CITE PROPERLY: include author, year and journal when available
- NOTE LIMITATIONS: flag evidence drawn from different populations

## Output Format

Return a JSON object:
{{{{
  "evidenceByPattern": [
    {{{{
      "patternId": "string",
      "evidence": [
        {{{{
          "id": "string",
          "patternId": "string",
          "tier": "S" | "A" | "B" | "C" | "D",
          "sourceType": "web_search" | "embedded_knowledge",
          "citation": "Author et al., Year. Journal. Title",
          "url": "https://...",
          "findings": ["finding1", "finding2"],
          "relevanceScore": 0-100
        }}}}
      ]
    }}}}
  ],
  "insufficientEvidence": ["patternId"]
}}}}"""

RESEARCH_PROMPT = ChatPromptTemplate.from_messages([
    ("system", RESEARCH_SYSTEM_PROMPT),
    ("human", """# Research Request

Find scientific evidence for the following {pattern_count} pattern(s) detected in a knee biomechanics session.
{cached_evidence}

## Patterns Requiring Research

{patterns}

## Instructions

1. Use cached evidence where available and relevant
2. For patterns without cache hits, use the provided search terms
3. Prioritize {priority_domains}
4. Assign quality tiers based on source type
5. Extract 2-3 key findings per source
6. List patterns with insufficient evidence (only tier D available)

Return the JSON response."""),
])


# ============================================================================
# Analysis
# ============================================================================

ANALYSIS_SYSTEM_PROMPT = f"""You are a clinical analysis system for a knee motion analysis pipeline.

Your role is to synthesize patterns and research evidence into actionable clinical insights.

## Your Tasks

1. **Generate Insights**: 4-6 domain-specific insights
2. **Correlative Analysis**: at least {VALIDATION_RULES["min_correlative_insights"]} relationships between insights
3. **Normative Benchmarking**: the 6-8 most important benchmarks
4. **Force Classification**: every metric is either a strength or a weakness (no neutral)

## Critical Rules

### Side Specificity
- {_LIMB_RULE}
- Name limbs only in the "limbs" array; keep side words out of insight title, content and recommendations

### Classification
- Every insight MUST be "strength" or "weakness"
- Use percentile 55 as the tiebreaker for average metrics (≥55 strength, <55 weakness)

### Evidence Support
- Every insight must cite at least {VALIDATION_RULES["min_evidence_per_insight"]} research finding in its evidence array

### Language
- Assess, do not diagnose; suggest, do not prescribe

## Output Format

{{{{
  "insights": [
    {{{{
      "id": "string",
      "domain": "range" | "symmetry" | "power" | "control" | "timing",
      "classification": "strength" | "weakness",
      "title": "Short title",
      "content": "Main insight text with specific values",
      "limbs": ["Left Leg"] | ["Right Leg"] | ["Left Leg", "Right Leg"],
      "evidence": ["Citation"],
      "patternIds": ["pattern-1"],
      "percentile": 65,
      "recommendations": ["Optional recommendation"]
    }}}}
  ],
  "correlativeInsights": [
    {{{{
      "id": "string",
      "primaryInsightId": "insight-1",
      "relatedInsightIds": ["insight-2"],
      "explanation": "How these are related",
      "significance": "high" | "moderate" | "low"
    }}}}
  ],
  "benchmarks": [
    {{{{
      "metricName": "overallMaxRom",
      "displayName": "Maximum ROM",
      "domain": "range",
      "value": 115,
      "percentile": 72,
      "category": "optimal",
      "classification": "strength",
      "limb": "Left Leg"
    }}}}
  ],
  "summary": "2-3 sentence overall summary",
  "strengths": ["Top strength"],
  "weaknesses": ["Top weakness"]
}}}}"""

ANALYSIS_PROMPT = ChatPromptTemplate.from_messages([
    ("system", ANALYSIS_SYSTEM_PROMPT),
    ("human", """# Analysis Request

Generate clinical insights from the following patterns and evidence.

**Session ID**: {session_id}
**Movement Type**: {movement_type}
{opi_line}
{benchmark_hints}

## Detected Patterns with Evidence

{patterns_with_evidence}

## Raw Metrics for Benchmarking

### Left Leg
{left_leg}

### Right Leg
{right_leg}

### Bilateral
{bilateral}

## Instructions

1. Create 4-6 insights (prioritize domains with deficient metrics)
2. Put limbs in the "limbs" array as "Left Leg" / "Right Leg"; never name a side in insight text
3. Classify every insight as strength or weakness (55th percentile tiebreaker)
4. Link related findings with at least two correlative insights
5. Include the 6-8 most important benchmarks
6. Write a 2-sentence summary with the top strengths and weaknesses

Return the JSON response."""),
])


# ============================================================================
# Validator
# ============================================================================

VALIDATOR_SYSTEM_PROMPT = f"""You are a quality assurance validator for a knee motion analysis pipeline.

Your role is to verify that the analysis output is accurate, complete and safe before it is saved.

## Validation Rules

1. **Numerical Accuracy**: values must match source metrics within {VALIDATION_RULES["numerical_tolerance"]} units; percentiles and asymmetry values must be consistent
2. **Side Specificity**: limbs only in the "limbs" array as "Left Leg" or "Right Leg"; reject in insight text {", ".join(f'"{t}"' for t in VALIDATION_RULES["forbidden_limb_terms"])}
3. **Classification Completeness**: every insight is "strength" or "weakness" (≥55th percentile = strength)
4. **Evidence Support**: each insight has at least {VALIDATION_RULES["min_evidence_per_insight"]} citation related to its claims
5. **Clinical Safety**: no diagnosis statements and no treatment prescriptions
6. **Correlative Insights**: at least {VALIDATION_RULES["min_correlative_insights"]}, referencing existing insight IDs

## Output Format

{{{{
  "passed": boolean,
  "issues": [
    {{{{
      "ruleType": "numerical_accuracy" | "side_specificity" | "classification_completeness" | "evidence_support" | "clinical_safety",
      "severity": "error" | "warning",
      "insightIds": ["insight-1"],
      "description": "What is wrong",
      "suggestedFix": "How to fix it"
    }}}}
  ],
  "errorCount": number,
  "warningCount": number
}}}}

## Pass/Fail Criteria

- PASS: zero errors (warnings allowed)
- FAIL: one or more errors"""

VALIDATOR_PROMPT = ChatPromptTemplate.from_messages([
    ("system", VALIDATOR_SYSTEM_PROMPT),
    ("human", """# Validation Request

Validate the following analysis output (revision {revision}/{max_revisions}).

**Session ID**: {session_id}

## Analysis Output to Validate

{analysis_block}

## Source Metrics (for verification)

### Left Leg
{left_leg}

### Right Leg
{right_leg}

### Bilateral
{bilateral}
{precheck_issues}

Return the validation result as JSON."""),
])


# ============================================================================
# Progress
# ============================================================================

PROGRESS_SYSTEM_PROMPT = f"""You are a longitudinal analysis system for a knee motion analysis pipeline.

Your role is to track patient progress across sessions, identify meaningful changes and provide actionable insights.

## Your Tasks

1. **Trend Calculation**: trends for each metric using MCID thresholds
2. **Milestone Detection**: thresholds reached, personal bests, streaks of {PROGRESS_CONFIG["streak_threshold"]}+ sessions
3. **Regression Flagging**: clinically significant declines over {PROGRESS_CONFIG["regression_threshold_percentage"]}%
4. **Projections**: estimated performance in {PROGRESS_CONFIG["projection_horizon_days"]} days when enough data exists

## MCID Thresholds

- ROM: {MCID["rom"]}°
- Velocity: {MCID["velocity"]}°/s or {MCID["velocity_percentage"]}%
- Asymmetry: {MCID["asymmetry"]} percentage points
- Jerk: {MCID["jerk"]}°/s³
- OPI Score: {MCID["opi_score"]} points
- Cross-correlation: {MCID["cross_correlation"]}

## Side Specificity

- {_LIMB_RULE}
- Track each leg independently

## Output Format

{{{{
  "trends": [{{{{ "metricName": "string", "displayName": "string", "domain": "range", "trend": "improving" | "stable" | "declining", "currentValue": number, "previousValue": number, "baselineValue": number, "changeFromPrevious": number, "changeFromBaseline": number, "isClinicallyMeaningful": boolean, "limb": "Left Leg" | "Right Leg" | null }}}}],
  "milestones": [{{{{ "id": "string", "type": "threshold_achieved" | "mcid_improvement" | "streak" | "personal_best" | "asymmetry_resolved" | "symmetry_restored" | "limb_caught_up" | "cross_metric_gain", "title": "string", "description": "string", "metrics": ["metricName"], "celebrationLevel": "major" | "minor" }}}}],
  "regressions": [{{{{ "id": "string", "metricName": "string", "declinePercentage": number, "isClinicallySignificant": boolean, "possibleReasons": ["string"], "recommendations": ["string"] }}}}],
  "projections": [{{{{ "metricName": "string", "projectedValue": number, "targetDate": timestamp, "confidence": 0-100, "assumptions": ["string"] }}}}],
  "summary": "2-3 sentence progress summary"
}}}}"""

PROGRESS_PROMPT = ChatPromptTemplate.from_messages([
    ("system", PROGRESS_SYSTEM_PROMPT),
    ("human", """# Progress Analysis Request

**Patient ID**: {patient_id}
**Current Session**: {session_id}
**Sessions Available**: {session_count}

## Session Timeline

{timeline}

## Key Metric Comparison

### Per-Leg Metrics
{per_leg_table}

### Bilateral Metrics
{bilateral_table}

## Pre-computed Trends (authoritative values)

{pre_computed_trends}
{phase1_context}
{historical_context}

## Instructions

1. Calculate trends for all metrics (each leg tracked separately)
2. Apply MCID thresholds to determine clinical significance
3. Detect milestones and flag regressions
4. {projection_instruction}
5. Use "Left Leg" / "Right Leg" terminology only

Return the JSON response."""),
])


# ============================================================================
# Rendering and formatting helpers
# ============================================================================

def render_prompt(template: ChatPromptTemplate, **variables) -> tuple[str, str]:
    """Render a two-message template into (system prompt, user prompt)."""
    system_message, human_message = template.format_messages(**variables)
    return system_message.content, human_message.content


def format_timestamp(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def format_date(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def format_opi_line(opi_score: Optional[float], opi_grade: Optional[str]) -> str:
    if opi_score is None:
        return ""
    return f"**OPI Score**: {opi_score:g} ({opi_grade or 'ungraded'})"


def _metric_line(name: str, value: float, precision: int, with_percentile: bool) -> str:
    config = METRIC_REGISTRY[name]
    category = get_benchmark_category(value, config)
    if with_percentile:
        percentile = calculate_percentile(value, config)
        return (
            f"- {config.display_name}: {value:.{precision}f}{config.unit} "
            f"({percentile:.0f}th percentile, {category})"
        )
    marker = {"optimal": "✓", "deficient": "✗"}.get(category, "○")
    return f"- **{config.display_name}**: {value:.{precision}f}{config.unit} [{marker} {category}]"


def format_leg_metrics(leg, with_percentile: bool = False) -> str:
    """
    Format one leg's metrics with their benchmark category.

    Args:
        leg: PerLegMetrics instance
        with_percentile: Include the normative percentile for each metric

    Returns:
        Bullet list, one metric per line
    """
    return "\n".join(
        _metric_line(name, getattr(leg, METRIC_REGISTRY[name].field), 1, with_percentile)
        for name in PER_LEG_METRICS
    )


def format_bilateral_metrics(bilateral, with_percentile: bool = False) -> str:
    return "\n".join(
        _metric_line(name, getattr(bilateral, METRIC_REGISTRY[name].field), 2, with_percentile)
        for name in BILATERAL_METRICS
    )


def format_previous_session(previous) -> str:
    if previous is None:
        return ""
    return (
        "\n## Previous Session (for comparison)\n"
        f"**Session ID**: {previous.session_id}\n"
        f"**Recorded At**: {format_timestamp(previous.recorded_at)}\n"
        f"{format_opi_line(previous.opi_score, previous.opi_grade)}\n\n"
        f"### Previous Left Leg\n{format_leg_metrics(previous.left_leg)}\n\n"
        f"### Previous Right Leg\n{format_leg_metrics(previous.right_leg)}\n\n"
        f"### Previous Bilateral\n{format_bilateral_metrics(previous.bilateral)}"
    )


def format_pre_detected(patterns: list) -> str:
    if not patterns:
        return ""
    payload = [p.model_dump(by_alias=True, exclude_none=True) for p in patterns]
    return (
        "\n## Pre-detected Patterns (for reference)\n"
        f"{json.dumps(payload, indent=2)}\n\n"
        "You may use, refine, or add to these patterns."
    )


def format_patterns_for_research(patterns: list) -> str:
    blocks = []
    for idx, p in enumerate(patterns, start=1):
        blocks.append(
            f"### Pattern {idx}: {p.id}\n"
            f"- **Type**: {p.type}\n"
            f"- **Severity**: {p.severity}\n"
            f"- **Description**: {p.description}\n"
            f"- **Metrics**: {', '.join(p.metrics)}\n"
            f"- **Limbs**: {', '.join(p.limbs) if p.limbs else 'N/A'}\n"
            f"- **Search Terms**: {', '.join(p.search_terms)}\n"
            f"- **Values**: {json.dumps(p.values, default=str)}"
        )
    return "\n\n".join(blocks)


def format_cached_evidence(cached: list) -> str:
    if not cached:
        return ""
    entries = "\n\n".join(
        f"### Cache Entry (Tier {e.tier})\n"
        f"- **Pattern**: {e.pattern_id}\n"
        f"- **Citation**: {e.citation}\n"
        f"- **Findings**: {'; '.join(e.findings)}\n"
        f"- **Relevance**: {e.relevance_score:.0f}%"
        for e in cached
    )
    return (
        "\n## Cached Evidence Available\n\n"
        "The following relevant evidence was found in the research cache:\n\n"
        f"{entries}"
    )


def format_patterns_with_evidence(patterns: list, evidence_by_pattern: dict) -> str:
    blocks = []
    for p in patterns:
        evidence = evidence_by_pattern.get(p.id, [])
        if evidence:
            evidence_lines = "\n".join(
                f"- [Tier {e.tier}] {e.citation}: {'; '.join(e.findings[:2])}"
                for e in evidence
            )
        else:
            evidence_lines = "- No direct evidence found"
        blocks.append(
            f"### {p.id} ({p.type}, {p.severity})\n"
            f"**Description**: {p.description}\n"
            f"**Metrics**: {', '.join(p.metrics)}\n"
            f"**Limbs**: {', '.join(p.limbs) if p.limbs else 'Bilateral'}\n\n"
            f"**Evidence** ({len(evidence)} sources):\n{evidence_lines}"
        )
    return "\n\n".join(blocks)


def format_benchmark_hints(benchmarks: list) -> str:
    """Pre-computed benchmarks, listed weakest first."""
    if not benchmarks:
        return ""
    lines = [
        f"- {b.display_name}{f' ({b.limb})' if b.limb else ''}: {b.value:.2f} → "
        f"{b.percentile:.0f}th percentile, {b.category}, {b.classification}"
        for b in sorted(benchmarks, key=lambda b: b.percentile)
    ]
    return "\n## Pre-computed Benchmarks (authoritative values)\n" + "\n".join(lines)


def format_analysis_for_validation(analysis) -> str:
    strengths = "\n".join(f"{i}. {s}" for i, s in enumerate(analysis.strengths, start=1))
    weaknesses = "\n".join(f"{i}. {w}" for i, w in enumerate(analysis.weaknesses, start=1))
    insights = "\n".join(
        f"\n#### {ins.id} - {ins.title}\n"
        f"- **Domain**: {ins.domain}\n"
        f"- **Classification**: {ins.classification}\n"
        f"- **Limbs**: {', '.join(ins.limbs) if ins.limbs else 'N/A'}\n"
        f"- **Content**: {ins.content}\n"
        f"- **Evidence**: {'; '.join(ins.evidence)}\n"
        f"- **Percentile**: {ins.percentile if ins.percentile is not None else 'Not provided'}"
        for ins in analysis.insights
    )
    correlative = "\n".join(
        f"- {c.id}: {c.primary_insight_id} ↔ {', '.join(c.related_insight_ids)} ({c.significance})"
        for c in analysis.correlative_insights
    )
    benchmarks = "\n".join(
        f"- {b.display_name}{f' ({b.limb})' if b.limb else ''}: {b.value:g} → "
        f"{b.percentile:.0f}th pct → {b.classification}"
        for b in analysis.benchmarks[:10]
    )
    if len(analysis.benchmarks) > 10:
        benchmarks += f"\n... and {len(analysis.benchmarks) - 10} more"

    return (
        f"### Summary\n{analysis.summary}\n\n"
        f"### Strengths\n{strengths}\n\n"
        f"### Weaknesses\n{weaknesses}\n\n"
        f"### Insights ({len(analysis.insights)})\n{insights}\n\n"
        f"### Correlative Insights ({len(analysis.correlative_insights)})\n{correlative}\n\n"
        f"### Benchmarks ({len(analysis.benchmarks)})\n{benchmarks}"
    )


def format_precheck_issues(issues: list) -> str:
    if not issues:
        return ""
    lines = "\n".join(f"- [{i.severity}] {i.rule_type}: {i.description}" for i in issues)
    return f"\n## Automated Pre-check Findings\n{lines}"


def _percent_change(current: float, baseline: float) -> str:
    if baseline == 0:
        return "N/A"
    return f"{(current - baseline) / abs(baseline) * 100:.1f}"


def format_session_timeline(sessions: list) -> str:
    return "\n".join(
        f"{i}. {format_date(s.recorded_at)} - {s.session_id}"
        f"{f' (OPI: {s.opi_score:g})' if s.opi_score is not None else ''}"
        for i, s in enumerate(sessions, start=1)
    )


def format_per_leg_table(current, baseline) -> str:
    rows = [
        "| Metric | Left Current | Left Baseline | Left Δ% | Right Current | Right Baseline | Right Δ% |",
        "|--------|-------------|---------------|---------|---------------|----------------|----------|",
    ]
    for name in PER_LEG_METRICS:
        config = METRIC_REGISTRY[name]
        left_now = getattr(current.left_leg, config.field)
        left_base = getattr(baseline.left_leg, config.field)
        right_now = getattr(current.right_leg, config.field)
        right_base = getattr(baseline.right_leg, config.field)
        rows.append(
            f"| {config.display_name} | {left_now:.1f} | {left_base:.1f} | "
            f"{_percent_change(left_now, left_base)}% | {right_now:.1f} | {right_base:.1f} | "
            f"{_percent_change(right_now, right_base)}% |"
        )
    return "\n".join(rows)


def format_bilateral_table(current, baseline) -> str:
    rows = [
        "| Metric | Current | Baseline | Δ% |",
        "|--------|---------|----------|-----|",
    ]
    for name in BILATERAL_METRICS:
        config = METRIC_REGISTRY[name]
        now = getattr(current.bilateral, config.field)
        base = getattr(baseline.bilateral, config.field)
        rows.append(
            f"| {config.display_name} | {now:.2f} | {base:.2f} | {_percent_change(now, base)}% |"
        )
    return "\n".join(rows)


def format_trends(trends: list) -> str:
    if not trends:
        return "None"
    return "\n".join(
        f"- {t.display_name}{f' ({t.limb})' if t.limb else ''}: {t.trend} "
        f"({t.change_from_previous:+.1f}% vs previous, {t.change_from_baseline:+.1f}% vs baseline"
        f"{', clinically meaningful' if t.is_clinically_meaningful else ''})"
        for t in trends
    )


def format_phase1_context(summary: str, strengths: list[str], weaknesses: list[str]) -> str:
    if not summary and not strengths and not weaknesses:
        return ""
    return (
        "\n## Current Session Analysis\n"
        f"**Summary**: {summary}\n"
        f"**Strengths**: {', '.join(strengths) or 'None'}\n"
        f"**Weaknesses**: {', '.join(weaknesses) or 'None'}"
    )


def format_historical_context(similar: list) -> str:
    if not similar:
        return ""
    blocks = []
    for s in similar:
        findings = "\n".join(f"  - {f}" for f in s.key_findings[:5])
        blocks.append(f"- Session {s.session_id} (similarity {s.score:.2f}): {s.summary_text}\n{findings}")
    return "\n## Related Historical Analyses\n" + "\n".join(blocks)
