"""
Configuration file for the insight agents.

Loads configuration from environment variables with sensible defaults.
API keys should be set in .env file (not committed to version control).
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
# Look for .env in project root
_project_root = Path(__file__).parent.parent.parent
_env_path = _project_root / ".env"
load_dotenv(_env_path)

# Gemini API Configuration
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
if not GEMINI_API_KEY:
    import warnings
    warnings.warn(
        "GEMINI_API_KEY not set. Please set it in your .env file or environment. "
        "See .env.example for reference."
    )

# Model configuration
GEMINI_MODEL_NAME = os.environ.get("GEMINI_MODEL_NAME", "gemini-2.5-flash")

# Pricing (USD per 1M tokens) used for cost estimates
INPUT_PRICE_PER_MILLION = float(os.environ.get("GEMINI_INPUT_PRICE_PER_MILLION", "0.15"))
OUTPUT_PRICE_PER_MILLION = float(os.environ.get("GEMINI_OUTPUT_PRICE_PER_MILLION", "0.60"))

# Per-agent generation settings. Validation gets the coldest temperature and
# the smallest output budget; analysis and research emit the largest payloads.
AGENT_SETTINGS = {
    "decomposition": {"temperature": 0.2, "max_output_tokens": 16384},
    "research": {"temperature": 0.3, "max_output_tokens": 32768},
    "analysis": {"temperature": 0.3, "max_output_tokens": 32768},
    "validator": {"temperature": 0.1, "max_output_tokens": 8192},
    "progress": {"temperature": 0.3, "max_output_tokens": 16384},
}

# Validation rules
VALIDATION_RULES = {
    "numerical_tolerance": 0.5,
    "min_correlative_insights": 2,
    "forbidden_limb_terms": ["left", "right", "L", "R", "affected", "involved", "weak side"],
    "min_evidence_per_insight": 1,
    "max_revisions": 3,
}

# Research cache lookups
CACHE_SEARCH_LIMIT = 3
CACHE_MIN_TIER = "C"
CACHEABLE_TIERS = ("S", "A", "B")

# Progress agent
PROGRESS_CONFIG = {
    "min_sessions_for_trend": 2,
    "min_sessions_for_projection": 4,
    "projection_horizon_days": 30,
    "streak_threshold": 3,
    "regression_threshold_percentage": 10,
    "personal_best_change": 20,
    "major_personal_best_change": 30,
}

# Forced classification tiebreaker (percentile >= this is a strength)
STRENGTH_PERCENTILE = 55
