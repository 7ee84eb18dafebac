"""
Shared utilities for the pipeline orchestrator.

- Summary text and key findings extracted from phase outputs for embedding
- Historical-analysis search query built from the phase-1 outputs
"""

from collections import Counter
from typing import Optional

from pydantic import BaseModel, Field

from src.agents.state import AnalysisOutput, DecompositionOutput, ProgressOutput
from .config import DEFAULT_PROGRESS_QUERY


class EmbeddingSummary(BaseModel):
    summary_text: str
    key_findings: list[str] = Field(default_factory=list)
    primary_domain: Optional[str] = None


# ---------------------------------------------------------------------------
# Embedding summaries
# ---------------------------------------------------------------------------

def extract_analysis_summary(analysis: AnalysisOutput) -> EmbeddingSummary:
    """Summarize an analysis for the vector store.

    Args:
        analysis: Validated analysis output.

    Returns:
        Summary text (never empty), up to 10 key findings, and the most
        frequent insight domain.
    """
    key_findings: list[str] = []
    for insight in analysis.insights:
        key_findings.append(f"{insight.title}: {insight.content}")
        key_findings.extend(insight.recommendations or [])
    key_findings.extend(corr.explanation for corr in analysis.correlative_insights)

    parts: list[str] = []
    if analysis.summary:
        parts.append(analysis.summary)
    if analysis.strengths:
        parts.append(f"Strengths: {', '.join(analysis.strengths)}")
    if analysis.weaknesses:
        parts.append(f"Weaknesses: {', '.join(analysis.weaknesses)}")

    high = [b.metric_name for b in analysis.benchmarks if b.percentile >= 75]
    low = [b.metric_name for b in analysis.benchmarks if b.percentile <= 25]
    if high:
        parts.append(f"Strong metrics: {', '.join(high)}")
    if low:
        parts.append(f"Weak metrics: {', '.join(low)}")

    domains = Counter(insight.domain for insight in analysis.insights)
    primary_domain = domains.most_common(1)[0][0] if domains else None

    return EmbeddingSummary(
        summary_text=". ".join(parts) if parts else "Session analysis completed",
        key_findings=key_findings[:10],
        primary_domain=primary_domain,
    )


def extract_progress_summary(progress: ProgressOutput) -> EmbeddingSummary:
    """Summarize a progress analysis for the vector store (up to 15 findings)."""
    key_findings: list[str] = []
    parts: list[str] = []
    if progress.summary:
        parts.append(progress.summary)

    improving = [
        t.display_name for t in progress.trends
        if t.trend == "improving" and t.is_clinically_meaningful
    ]
    declining = [
        t.display_name for t in progress.trends
        if t.trend == "declining" and t.is_clinically_meaningful
    ]
    for label, names in (("Improving", improving), ("Declining", declining)):
        if names:
            finding = f"{label}: {', '.join(names)}"
            key_findings.append(finding)
            parts.append(finding)

    key_findings.extend(f"{m.type}: {m.title}" for m in progress.milestones)
    key_findings.extend(
        f"Regression in {r.metric_name}: {r.decline_percentage:.1f}% decline"
        for r in progress.regressions
    )
    key_findings.extend(f"{c.type}: {c.explanation}" for c in progress.correlations)

    resolving = [a.display_name for a in progress.asymmetry_trends if a.is_resolving]
    if resolving:
        key_findings.append(f"Asymmetry resolving in: {', '.join(resolving)}")

    return EmbeddingSummary(summary_text=". ".join(parts), key_findings=key_findings[:15])


# ---------------------------------------------------------------------------
# Historical search
# ---------------------------------------------------------------------------

def build_progress_search_query(analysis: AnalysisOutput,
                                decomposition: Optional[DecompositionOutput] = None) -> str:
    """Query text for similar past analyses; falls back to a generic query."""
    parts: list[str] = []
    if analysis.weaknesses:
        parts.append(f"Areas of concern: {', '.join(analysis.weaknesses)}")
    if analysis.strengths:
        parts.append(f"Strengths: {', '.join(analysis.strengths)}")
    if decomposition is not None and decomposition.patterns:
        pattern_types = list(dict.fromkeys(p.type for p in decomposition.patterns))
        parts.append(f"Movement domains: {', '.join(pattern_types)}")
    if analysis.summary:
        parts.append(analysis.summary)

    if not parts:
        return DEFAULT_PROGRESS_QUERY
    return ". ".join(parts)
