"""
FastAPI entry point for the motion insights backend.

Endpoints:
    POST /api/pipeline/run
        Receives a session's knee-biomechanics metrics (plus optional prior
        sessions and patient id), runs the agent pipeline and returns the
        validated insights.
    POST /api/pipeline/{session_id}/retry
        Restarts a previously submitted session from the beginning.
    GET  /api/pipeline/{session_id}/status
        Current status record of a session run.

Run:
    cd <project_root>
    uvicorn src.pipelines.main:app --host 0.0.0.0 --port 8000 --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Ensure project root is on sys.path so ``src.*`` imports work when running
# with ``uvicorn src.pipelines.main:app`` from the project root.
# ---------------------------------------------------------------------------
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from src.agents.state import CamelModel, PipelineResult, SessionMetrics
from src.pipelines.config import CORS_ORIGINS, LOG_LEVEL
from src.pipelines.orchestrator import PipelineOrchestrator, get_default_orchestrator

logger = logging.getLogger("motion_insights")
logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s")


# ============================================================================
# Pydantic request / response models
# ============================================================================

class PipelineRequest(CamelModel):
    session_id: str
    metrics: SessionMetrics
    prior_metrics: list[SessionMetrics] = Field(
        default_factory=list, description="Earlier sessions of the same patient"
    )
    patient_id: Optional[str] = Field(
        default=None, description="Enables longitudinal progress analysis"
    )


class ErrorResponse(BaseModel):
    error_code: str
    message: str


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error_code": code, "message": message})


def _result_response(result: PipelineResult) -> JSONResponse:
    body = result.model_dump(by_alias=True, mode="json")
    if result.success:
        return JSONResponse(status_code=200, content=body)

    error = result.error
    code = error.kind.value.upper() if error and error.kind else "PIPELINE_FAILED"
    return JSONResponse(
        status_code=422,
        content={
            "error_code": code,
            "message": error.message if error else "Pipeline failed",
            "result": body,
        },
    )


# ============================================================================
# App lifecycle
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared orchestrator at startup."""
    logger.info("Starting motion insights backend …")
    get_default_orchestrator()
    logger.info("Orchestrator ready, server is ready.")
    yield
    logger.info("Shutting down.")


app = FastAPI(
    title="Motion Insights API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_orchestrator() -> PipelineOrchestrator:
    return get_default_orchestrator()


# ============================================================================
# Health-check
# ============================================================================

@app.get("/health")
async def health():
    return {"status": "ok"}


# ============================================================================
# Pipeline endpoints
# ============================================================================

@app.post(
    "/api/pipeline/run",
    responses={422: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def run_pipeline(request: PipelineRequest,
                 orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Run decomposition → research → analysis ⇄ validation → [progress].

    NOTE: This is a **sync** endpoint on purpose. FastAPI runs it in a
    threadpool so the blocking model calls do not stall the event loop.
    """
    # ── STAGE 1: Pipeline run ────────────────────────────────────────────
    try:
        result = orchestrator.run_pipeline(
            session_id=request.session_id,
            metrics=request.metrics,
            prior_metrics=request.prior_metrics,
            patient_id=request.patient_id,
        )
    except Exception as exc:
        logger.exception("Pipeline run failed")
        return _error(500, "ANALYSIS_FAILED", f"Pipeline error: {exc}")

    # ── STAGE 2: Response ────────────────────────────────────────────────
    logger.info(
        "Run for %s: %s in %dms",
        request.session_id, result.status.value, result.duration_ms,
    )
    return _result_response(result)


@app.post(
    "/api/pipeline/{session_id}/retry",
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def retry_pipeline(session_id: str,
                   orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    if not orchestrator.knows(session_id):
        return _error(404, "SESSION_NOT_FOUND", f"No pipeline run recorded for {session_id}")
    return _result_response(orchestrator.retry_from_start(session_id))


@app.get(
    "/api/pipeline/{session_id}/status",
    responses={404: {"model": ErrorResponse}},
)
def pipeline_status(session_id: str,
                    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    record = orchestrator.get_status(session_id)
    if record is None:
        return _error(404, "SESSION_NOT_FOUND", f"No pipeline status for {session_id}")
    return record.model_dump(by_alias=True, mode="json")
