"""Tests for token usage estimation and the per-run usage ledger."""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.agents.usage import (
    UsageAccumulator,
    build_usage,
    estimate_cost,
    estimate_tokens,
    format_cost,
    format_tokens,
)
from src.pipelines.collaborators import InMemoryUsageRecorder


class _BrokenRecorder:
    def record_usage(self, session_id, agent_name, usage):
        raise ConnectionError("ledger offline")


# ============================================================================
# Test: Estimates
# ============================================================================

class TestEstimates:

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_cost_per_million(self):
        assert estimate_cost(1_000_000, 0) == pytest.approx(0.15)
        assert estimate_cost(0, 1_000_000) == pytest.approx(0.60)

    def test_build_usage_totals(self):
        usage = build_usage(120, 30)
        assert usage.total_tokens == 150
        assert usage.estimated_cost == pytest.approx(estimate_cost(120, 30))

    def test_formatting(self):
        assert format_tokens(999) == "999"
        assert format_tokens(1_500) == "1.5K"
        assert format_tokens(2_500_000) == "2.50M"
        assert format_cost(0.5) == "$0.5000"
        assert format_cost(0.001) == "$0.001000"


# ============================================================================
# Test: Accumulator
# ============================================================================

class TestUsageAccumulator:

    def test_totals_only_grow(self):
        ledger = UsageAccumulator("s1")
        seen = []
        for agent in ("decomposition", "research", "analysis", "analysis"):
            ledger.record(agent, build_usage(100, 10))
            seen.append((ledger.total_tokens, ledger.total_cost))

        assert [tokens for tokens, _ in seen] == [110, 220, 330, 440]
        assert all(a[1] <= b[1] for a, b in zip(seen, seen[1:]))
        assert ledger.by_agent["analysis"].total_tokens == 220

    def test_forwards_to_recorder(self):
        recorder = InMemoryUsageRecorder()
        ledger = UsageAccumulator("s1", recorder)
        ledger.record("validator", build_usage(10, 5))
        session_id, agent, usage = recorder.records[0]
        assert (session_id, agent, usage.total_tokens) == ("s1", "validator", 15)

    def test_recorder_failure_keeps_ledger(self):
        ledger = UsageAccumulator("s1", _BrokenRecorder())
        ledger.record("research", build_usage(10, 5))
        assert ledger.total_tokens == 15

    def test_summary(self):
        ledger = UsageAccumulator("s1")
        ledger.record("research", build_usage(1_000, 500))
        assert ledger.summary().startswith("1.5K tokens, $")
