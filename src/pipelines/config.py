"""
Configuration constants for the motion insights pipeline service.

Centralizes run limits, progress gating, search limits and environment
variable loading for the orchestrator and the FastAPI backend.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

from src.agents.config import VALIDATION_RULES

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_PATH = PROJECT_ROOT / ".env"
load_dotenv(_ENV_PATH)

# ---------------------------------------------------------------------------
# Run limits
# ---------------------------------------------------------------------------
PIPELINE_TIMEOUT_S: float = float(os.environ.get("PIPELINE_TIMEOUT_S", "300"))
MAX_REVISIONS: int = VALIDATION_RULES["max_revisions"]

# Sessions whose inputs are kept for retry_from_start, oldest evicted first
MAX_STORED_RUNS: int = int(os.environ.get("MAX_STORED_RUNS", "1000"))

# ---------------------------------------------------------------------------
# Two-phase run (longitudinal progress)
# ---------------------------------------------------------------------------
MIN_PRIOR_SESSIONS_FOR_PROGRESS: int = 1
SIMILAR_ANALYSES_LIMIT: int = 5
DEFAULT_PROGRESS_QUERY = "rehabilitation progress biomechanics movement analysis"

# Embedding kinds written to the vector store
EMBEDDING_KIND_SESSION = "session"
EMBEDDING_KIND_PROGRESS = "progress"

# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]
