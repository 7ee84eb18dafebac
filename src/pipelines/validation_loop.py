"""
Analysis ⇄ Validator quality-gate loop.

The loop is two graph nodes plus the routing decision between them. Each
pass through `analysis_node` starts a new revision; `validation_node` grades
it; `route_after_validation` sends a failing revision back to analysis. A
revision at the budget always passes, so the loop is bounded by the
validator itself.
"""

import logging
from dataclasses import dataclass

from langchain_core.runnables import RunnableConfig

from src.agents.analysis import run_analysis
from src.agents.base import AgentContext
from src.agents.state import AgentResult, PipelineError, PipelineState, PipelineStatus
from src.agents.validator import run_validator
from .collaborators import Collaborators
from .config import MAX_REVISIONS
from .status import StatusTracker

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Per-run collaborators, passed to graph nodes through the run config."""
    agent: AgentContext
    collaborators: Collaborators
    tracker: StatusTracker
    max_revisions: int = MAX_REVISIONS


def get_context(config: RunnableConfig) -> RunContext:
    return config["configurable"]["context"]


def agent_error(agent_name: str, result: AgentResult) -> PipelineError:
    """Wrap a failed agent result; agent failures are always retryable."""
    logger.warning("[%s] failed (%s): %s", agent_name, result.error_kind, result.error)
    return PipelineError(
        agent=agent_name,
        message=result.error or "Unknown error",
        retryable=True,
        kind=result.error_kind,
    )


def analysis_node(state: PipelineState, config: RunnableConfig) -> dict:
    """Produce the next analysis revision."""
    ctx = get_context(config)
    revision = state.revision + 1
    ctx.tracker.advance(PipelineStatus.ANALYSIS, current_agent="analysis", revision_count=revision)

    result = run_analysis(
        ctx.agent, state.metrics, state.decomposition.patterns, state.research
    )
    if not result.success:
        return {"revision": revision, "error": agent_error("analysis", result)}
    return {"revision": revision, "analysis": result.output}


def validation_node(state: PipelineState, config: RunnableConfig) -> dict:
    """Grade the current analysis revision."""
    ctx = get_context(config)
    ctx.tracker.advance(
        PipelineStatus.VALIDATION, current_agent="validator", revision_count=state.revision
    )

    result = run_validator(
        ctx.agent, state.analysis, state.metrics, state.revision, ctx.max_revisions
    )
    if not result.success:
        return {"error": agent_error("validator", result)}

    outcome = result.output
    logger.info(
        "Revision %d/%d for %s: %s (%d errors, %d warnings)",
        state.revision, ctx.max_revisions, state.session_id,
        "passed" if outcome.passed else "failed", outcome.error_count, outcome.warning_count,
    )
    return {"validation": outcome}


def route_after_validation(state: PipelineState) -> str:
    if state.error is not None:
        return "fail"
    if not state.validation.passed:
        return "analysis"
    return "persist"
