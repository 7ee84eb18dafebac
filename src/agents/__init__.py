"""
Agents module for the motion insights pipeline.

This module contains the five LLM agents (decomposition, research, analysis,
validator, progress), their deterministic pre-compute helpers, and the
shared invocation, parsing and usage-accounting machinery.
"""

from .analysis import run_analysis
from .decomposition import run_decomposition
from .llm import GeminiModel, ModelClient, ModelResponse
from .progress import run_progress
from .research import run_research
from .state import (
    AgentResult,
    AnalysisOutput,
    DecompositionOutput,
    FailureKind,
    PipelineResult,
    PipelineStatus,
    ProgressOutput,
    ResearchOutput,
    SessionMetrics,
    ValidatorOutcome,
)
from .validator import run_validator

__all__ = [
    "run_decomposition",
    "run_research",
    "run_analysis",
    "run_validator",
    "run_progress",
    "GeminiModel",
    "ModelClient",
    "ModelResponse",
    "AgentResult",
    "AnalysisOutput",
    "DecompositionOutput",
    "FailureKind",
    "PipelineResult",
    "PipelineStatus",
    "ProgressOutput",
    "ResearchOutput",
    "SessionMetrics",
    "ValidatorOutcome",
]
