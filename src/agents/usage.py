"""
Token usage and cost accounting.

Every agent invocation reports its usage here; the accumulator keeps a
per-agent ledger and a run total, both of which only ever grow.
"""

import logging
import math
from typing import Optional, Protocol

from .config import INPUT_PRICE_PER_MILLION, OUTPUT_PRICE_PER_MILLION
from .state import TokenUsage

logger = logging.getLogger(__name__)


class UsageRecorder(Protocol):
    """External sink for per-agent usage records."""

    def record_usage(self, session_id: str, agent_name: str, usage: TokenUsage) -> None:
        ...


def estimate_tokens(text: str) -> int:
    """Rough token estimate (about four characters per token)."""
    return math.ceil(len(text) / 4)


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    return (
        input_tokens / 1_000_000 * INPUT_PRICE_PER_MILLION
        + output_tokens / 1_000_000 * OUTPUT_PRICE_PER_MILLION
    )


def build_usage(input_tokens: int, output_tokens: int) -> TokenUsage:
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        estimated_cost=estimate_cost(input_tokens, output_tokens),
    )


def format_cost(cost: float) -> str:
    if cost < 0.01:
        return f"${cost:.6f}"
    return f"${cost:.4f}"


def format_tokens(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.2f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)


class UsageAccumulator:
    """
    Sums token usage across all agent invocations in one run.

    Usage is kept per agent and in total. When a recorder is attached each
    record is also forwarded to it; forwarding failures are logged and do not
    affect the in-run ledger.
    """

    def __init__(self, session_id: str, recorder: Optional[UsageRecorder] = None):
        self.session_id = session_id
        self.recorder = recorder
        self.by_agent: dict[str, TokenUsage] = {}
        self.total = TokenUsage()

    def record(self, agent_name: str, usage: TokenUsage) -> None:
        self.by_agent[agent_name] = self.by_agent.get(agent_name, TokenUsage()) + usage
        self.total = self.total + usage

        if self.recorder is None:
            return
        try:
            self.recorder.record_usage(self.session_id, agent_name, usage)
        except Exception as e:
            logger.warning(
                "Usage record for %s/%s not persisted: %s", self.session_id, agent_name, e
            )

    @property
    def total_tokens(self) -> int:
        return self.total.total_tokens

    @property
    def total_cost(self) -> float:
        return self.total.estimated_cost

    def summary(self) -> str:
        return (
            f"{format_tokens(self.total.total_tokens)} tokens, "
            f"{format_cost(self.total.estimated_cost)}"
        )
