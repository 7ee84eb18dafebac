"""
Pipeline orchestration and FastAPI backend for the motion insights service.

Runs one session's metrics through the agent pipeline:
    Phase 1: Decomposition → Research → Analysis ⇄ Validator (quality gate)
    Phase 2: Longitudinal progress (optional, non-fatal)
"""
