"""
Pipeline orchestrator for the motion insights service - LangGraph implementation.

The run is a compiled state graph:

    START → decomposition → research → analysis ⇄ validation → persist
          → [progress] → complete → END

Any agent failure routes to a terminal `fail` node. The progress phase is
optional (two-phase variant) and can never fail the run: its failures become
result warnings. Collaborators, the usage ledger and the run deadline travel
in the run config; the graph state only carries data.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from src.agents.base import AgentContext, Deadline
from src.agents.decomposition import run_decomposition
from src.agents.llm import GeminiModel, ModelClient
from src.agents.progress import run_progress
from src.agents.research import run_research
from src.agents.state import (
    FailureKind,
    PipelineError,
    PipelineResult,
    PipelineState,
    PipelineStatus,
    PipelineStatusRecord,
    SessionMetrics,
)
from src.agents.usage import UsageAccumulator, format_cost
from .collaborators import Collaborators
from .config import (
    EMBEDDING_KIND_PROGRESS,
    EMBEDDING_KIND_SESSION,
    MAX_REVISIONS,
    MAX_STORED_RUNS,
    MIN_PRIOR_SESSIONS_FOR_PROGRESS,
    PIPELINE_TIMEOUT_S,
    SIMILAR_ANALYSES_LIMIT,
)
from .status import TERMINAL_STATUSES, StatusTracker
from .utils import build_progress_search_query, extract_analysis_summary, extract_progress_summary
from .validation_loop import (
    RunContext,
    agent_error,
    analysis_node,
    get_context,
    route_after_validation,
    validation_node,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Graph Nodes
# ============================================================================

def decomposition_node(state: PipelineState, config: RunnableConfig) -> dict:
    """Node 1: Detect patterns in the session metrics."""
    ctx = get_context(config)
    ctx.tracker.advance(PipelineStatus.DECOMPOSITION, current_agent="decomposition")

    result = run_decomposition(ctx.agent, state.metrics, state.previous_metrics)
    if not result.success:
        return {"error": agent_error("decomposition", result)}
    return {"decomposition": result.output}


def research_node(state: PipelineState, config: RunnableConfig) -> dict:
    """Node 2: Gather evidence for every detected pattern."""
    ctx = get_context(config)
    ctx.tracker.advance(PipelineStatus.RESEARCH, current_agent="research")

    result = run_research(
        ctx.agent, state.decomposition.patterns, ctx.collaborators.research_cache
    )
    if not result.success:
        return {"error": agent_error("research", result)}
    return {"research": result.output}


def persist_node(state: PipelineState, config: RunnableConfig) -> dict:
    """
    Node 5: Save the accepted analysis revision.

    The session summary embedding is best-effort.
    """
    ctx = get_context(config)
    outcome = state.validation
    analysis = outcome.validated_analysis or state.analysis
    warnings = list(state.warnings)

    ctx.collaborators.result_store.upsert_results(
        state.session_id,
        decomposition=state.decomposition,
        research=state.research,
        analysis=analysis,
        validation=outcome,
        total_cost=ctx.agent.usage.total_cost,
    )

    if outcome.error_count:
        warnings.append(
            f"Analysis accepted at revision {outcome.revision_number} with "
            f"{outcome.error_count} unresolved validation error(s)"
        )

    vector_store = ctx.collaborators.vector_store
    if vector_store is not None:
        summary = extract_analysis_summary(analysis)
        try:
            vector_store.save_embedding(
                state.session_id,
                state.patient_id,
                EMBEDDING_KIND_SESSION,
                summary.summary_text,
                summary.key_findings,
                {
                    "primaryDomain": summary.primary_domain,
                    "opiScore": state.metrics.opi_score,
                    "recordedAt": state.metrics.recorded_at,
                    "revision": outcome.revision_number,
                },
            )
        except Exception as e:
            logger.warning("Session embedding for %s not saved: %s", state.session_id, e)

    return {"analysis": analysis, "warnings": warnings}


def _search_similar(ctx: RunContext, state: PipelineState) -> list:
    vector_store = ctx.collaborators.vector_store
    if vector_store is None:
        return []
    query = build_progress_search_query(state.analysis, state.decomposition)
    try:
        return vector_store.search_similar(
            state.patient_id, query, SIMILAR_ANALYSES_LIMIT, exclude_session_id=state.session_id
        )
    except Exception as e:
        logger.warning("Historical analysis search for %s failed: %s", state.session_id, e)
        return []


def progress_node(state: PipelineState, config: RunnableConfig) -> dict:
    """
    Node 6 (two-phase only): Longitudinal progress across sessions.

    Never fails the run; any failure is recorded as a warning.
    """
    ctx = get_context(config)
    ctx.tracker.advance(PipelineStatus.PROGRESS, current_agent="progress")
    warnings = list(state.warnings)

    try:
        similar = _search_similar(ctx, state)
        analysis = state.analysis
        result = run_progress(
            ctx.agent, state.metrics, state.prior_metrics, state.patient_id,
            phase1_summary=analysis.summary,
            phase1_strengths=analysis.strengths,
            phase1_weaknesses=analysis.weaknesses,
            similar=similar,
        )
        if not result.success:
            logger.warning("Progress analysis for %s failed: %s", state.session_id, result.error)
            warnings.append(f"Progress analysis failed: {result.error}")
            return {"similar_analyses": similar, "warnings": warnings}

        progress = result.output
        if result.error_kind == FailureKind.PHASE_SKIPPED:
            warnings.append("Progress analysis skipped: insufficient session history")
            return {"similar_analyses": similar, "progress": progress, "warnings": warnings}

        history = sorted(state.prior_metrics, key=lambda s: s.recorded_at)
        session_ids = [s.session_id for s in history] + [state.session_id]
        ctx.collaborators.result_store.upsert_progress(state.patient_id, progress, session_ids)
        _save_progress_embedding(ctx, state, progress)
    except Exception as e:
        logger.warning("Progress phase for %s failed: %s", state.session_id, e)
        warnings.append(f"Progress analysis failed: {e}")
        return {"warnings": warnings}

    return {"similar_analyses": similar, "progress": progress, "warnings": warnings}


def _save_progress_embedding(ctx: RunContext, state: PipelineState, progress) -> None:
    vector_store = ctx.collaborators.vector_store
    if vector_store is None:
        return
    summary = extract_progress_summary(progress)
    try:
        vector_store.save_embedding(
            state.session_id,
            state.patient_id,
            EMBEDDING_KIND_PROGRESS,
            summary.summary_text,
            summary.key_findings,
            {"sessionsAnalyzed": progress.sessions_analyzed},
        )
    except Exception as e:
        logger.warning("Progress embedding for %s not saved: %s", state.session_id, e)


def complete_node(state: PipelineState, config: RunnableConfig) -> dict:
    ctx = get_context(config)
    ctx.tracker.advance(PipelineStatus.COMPLETE)
    logger.info(
        "Pipeline complete for %s after %d revision(s): %s",
        state.session_id, state.revision, ctx.agent.usage.summary(),
    )
    return {}


def fail_node(state: PipelineState, config: RunnableConfig) -> dict:
    ctx = get_context(config)
    ctx.tracker.advance(PipelineStatus.ERROR, current_agent=state.error.agent, error=state.error)
    logger.error(
        "Pipeline failed for %s in %s: %s", state.session_id, state.error.agent, state.error.message
    )
    return {}


# ============================================================================
# Routing
# ============================================================================

def _next_or_fail(next_node: str):
    def route(state: PipelineState) -> str:
        return "fail" if state.error is not None else next_node
    return route


def route_after_persist(state: PipelineState) -> str:
    """Progress runs only for a known patient with enough prior sessions."""
    if state.patient_id and len(state.prior_metrics) >= MIN_PRIOR_SESSIONS_FOR_PROGRESS:
        return "progress"
    return "complete"


# ============================================================================
# Build the Graph
# ============================================================================

def build_pipeline_graph(include_progress: bool = True):
    """Build and compile the pipeline graph (two-phase when include_progress)."""
    graph = StateGraph(PipelineState)

    graph.add_node("decomposition", decomposition_node)
    graph.add_node("research", research_node)
    graph.add_node("analysis", analysis_node)
    graph.add_node("validation", validation_node)
    graph.add_node("persist", persist_node)
    graph.add_node("complete", complete_node)
    graph.add_node("fail", fail_node)

    graph.add_edge(START, "decomposition")
    graph.add_conditional_edges("decomposition", _next_or_fail("research"), ["research", "fail"])
    graph.add_conditional_edges("research", _next_or_fail("analysis"), ["analysis", "fail"])
    graph.add_conditional_edges("analysis", _next_or_fail("validation"), ["validation", "fail"])
    graph.add_conditional_edges(
        "validation", route_after_validation, ["analysis", "persist", "fail"]
    )

    if include_progress:
        graph.add_node("progress", progress_node)
        graph.add_conditional_edges("persist", route_after_persist, ["progress", "complete"])
        graph.add_edge("progress", "complete")
    else:
        graph.add_edge("persist", "complete")

    graph.add_edge("complete", END)
    graph.add_edge("fail", END)

    return graph.compile()


# ============================================================================
# Main Orchestrator Class
# ============================================================================

@dataclass
class RunInputs:
    """Original inputs of a run, kept so the run can be restarted."""
    metrics: SessionMetrics
    prior_metrics: list[SessionMetrics] = field(default_factory=list)
    patient_id: Optional[str] = None


class PipelineOrchestrator:
    """
    Runs the insight pipeline for one session at a time.

    Example usage:
        orchestrator = PipelineOrchestrator()
        result = orchestrator.run_pipeline(
            session_id="session-42",
            metrics=session_metrics,
            prior_metrics=[earlier_session],
            patient_id="patient-7",
        )
        if not result.success and result.error.retryable:
            result = orchestrator.retry_from_start("session-42")

    Neither entry point raises; failures come back in the result.
    """

    def __init__(
        self,
        model: Optional[ModelClient] = None,
        collaborators: Optional[Collaborators] = None,
        timeout_s: float = PIPELINE_TIMEOUT_S,
        max_revisions: int = MAX_REVISIONS,
        enable_progress: bool = True,
        max_stored_runs: int = MAX_STORED_RUNS,
    ):
        self.model = model or GeminiModel()
        self.collaborators = collaborators or Collaborators()
        self.timeout_s = timeout_s
        # capped: a run never goes past MAX_REVISIONS validation revisions
        self.max_revisions = max(1, min(max_revisions, MAX_REVISIONS))
        self.enable_progress = enable_progress
        self.graph = build_pipeline_graph(include_progress=enable_progress)
        self.max_stored_runs = max_stored_runs
        self._inputs: OrderedDict[str, RunInputs] = OrderedDict()

    def knows(self, session_id: str) -> bool:
        return session_id in self._inputs

    def get_status(self, session_id: str) -> Optional[PipelineStatusRecord]:
        return self.collaborators.status_store.get_status(session_id)

    def run_pipeline(
        self,
        session_id: str,
        metrics: SessionMetrics,
        prior_metrics: Optional[list[SessionMetrics]] = None,
        patient_id: Optional[str] = None,
    ) -> PipelineResult:
        """
        Run the full pipeline for a session.

        Args:
            session_id: Session being analyzed
            metrics: Current session metrics
            prior_metrics: Historical sessions of the same patient, any order
            patient_id: Enables the progress phase when set

        Returns:
            PipelineResult; success is False when any agent failed
        """
        inputs = RunInputs(metrics=metrics, prior_metrics=list(prior_metrics or []),
                           patient_id=patient_id)
        self._remember(session_id, inputs)
        return self._execute(session_id, inputs, retry=False)

    def retry_from_start(self, session_id: str) -> PipelineResult:
        """Clear the recorded error and re-run with the original inputs."""
        inputs = self._inputs.get(session_id)
        if inputs is None:
            return PipelineResult(
                success=False,
                status=PipelineStatus.ERROR,
                error=PipelineError(
                    agent="orchestrator",
                    message=f"No stored inputs for session {session_id}",
                    retryable=False,
                ),
            )
        self._remember(session_id, inputs)
        logger.info("Retrying pipeline for %s from the start", session_id)
        return self._execute(session_id, inputs, retry=True)

    def _remember(self, session_id: str, inputs: RunInputs) -> None:
        self._inputs[session_id] = inputs
        self._inputs.move_to_end(session_id)
        while len(self._inputs) > self.max_stored_runs:
            evicted, _ = self._inputs.popitem(last=False)
            logger.debug("Dropped stored inputs for %s", evicted)

    def _reset_for_retry(self, tracker: StatusTracker) -> None:
        record = self.collaborators.status_store.get_status(tracker.record.session_id)
        if record is not None and record.status in TERMINAL_STATUSES:
            tracker.record = record
            tracker.advance(PipelineStatus.PENDING, retry=True)
        else:
            tracker.persist()

    def _execute(self, session_id: str, inputs: RunInputs, retry: bool) -> PipelineResult:
        started = time.monotonic()
        usage = UsageAccumulator(session_id, self.collaborators.usage_recorder)
        tracker = StatusTracker(session_id, self.collaborators.status_store)

        try:
            if retry:
                self._reset_for_retry(tracker)
            else:
                tracker.persist()

            run_ctx = RunContext(
                agent=AgentContext(
                    session_id=session_id,
                    model=self.model,
                    usage=usage,
                    deadline=Deadline(self.timeout_s),
                ),
                collaborators=self.collaborators,
                tracker=tracker,
                max_revisions=self.max_revisions,
            )
            initial_state = PipelineState(
                session_id=session_id,
                metrics=inputs.metrics,
                prior_metrics=inputs.prior_metrics,
                patient_id=inputs.patient_id,
            )

            logger.info("Starting pipeline for %s", session_id)
            result = self.graph.invoke(
                initial_state,
                config={"configurable": {"context": run_ctx}, "recursion_limit": 50},
            )
            final_state = PipelineState(**result)

        except Exception as e:
            logger.exception("Pipeline for %s raised unexpectedly", session_id)
            error = PipelineError(
                agent=tracker.record.current_agent or tracker.status.value,
                message=str(e),
                retryable=False,
            )
            if tracker.status not in TERMINAL_STATUSES:
                tracker.advance(PipelineStatus.ERROR, current_agent=error.agent, error=error)
            return PipelineResult(
                success=False,
                status=PipelineStatus.ERROR,
                error=error,
                total_tokens=usage.total_tokens,
                total_cost=usage.total_cost,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        if final_state.error is not None:
            return PipelineResult(
                success=False,
                status=PipelineStatus.ERROR,
                error=final_state.error,
                total_tokens=usage.total_tokens,
                total_cost=usage.total_cost,
                duration_ms=duration_ms,
                warnings=final_state.warnings,
            )

        logger.info(
            "Pipeline for %s finished in %dms (%s)",
            session_id, duration_ms, format_cost(usage.total_cost),
        )
        return PipelineResult(
            success=True,
            status=PipelineStatus.COMPLETE,
            analysis=final_state.analysis,
            validation=final_state.validation,
            progress=final_state.progress,
            total_tokens=usage.total_tokens,
            total_cost=usage.total_cost,
            duration_ms=duration_ms,
            warnings=final_state.warnings,
        )


# ============================================================================
# Module-level convenience
# ============================================================================

_default_orchestrator: Optional[PipelineOrchestrator] = None


def get_default_orchestrator() -> PipelineOrchestrator:
    """Shared orchestrator with the Gemini model and in-memory collaborators."""
    global _default_orchestrator
    if _default_orchestrator is None:
        _default_orchestrator = PipelineOrchestrator()
    return _default_orchestrator


def run_pipeline(session_id: str, metrics: SessionMetrics,
                 prior_metrics: Optional[list[SessionMetrics]] = None,
                 patient_id: Optional[str] = None) -> PipelineResult:
    return get_default_orchestrator().run_pipeline(session_id, metrics, prior_metrics, patient_id)
