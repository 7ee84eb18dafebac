"""
Shared invocation contract for the five agents.

Each agent pre-computes its deterministic hints and builds its prompt, then
hands off to `invoke_agent`, which runs invoke → parse → validate → merge →
record usage and wraps the outcome in an AgentResult. Failures come back as
values; nothing raised by the provider escapes this module.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .config import AGENT_SETTINGS
from .llm import ModelClient, ModelResponse
from .parser import ParseResult, parse_response
from .state import AgentResult, FailureKind, TokenUsage
from .usage import UsageAccumulator

logger = logging.getLogger(__name__)


class DeadlineExceeded(Exception):
    """The run's time budget ran out before a model call could start."""


class Deadline:
    """Wall-clock budget for one pipeline run."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, where: str) -> None:
        if self.expired:
            raise DeadlineExceeded(f"Pipeline time budget of {self.seconds:.0f}s exhausted before {where}")


@dataclass
class AgentContext:
    """Everything an agent needs besides its payload."""
    session_id: str
    model: ModelClient
    usage: UsageAccumulator
    deadline: Optional[Deadline] = None


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def failed_result(kind: FailureKind, message: str, started: float,
                  usage: Optional[TokenUsage] = None) -> AgentResult:
    return AgentResult(
        success=False,
        error=message,
        error_kind=kind,
        token_usage=usage or TokenUsage(),
        duration_ms=elapsed_ms(started),
    )


def call_model(ctx: AgentContext, agent_name: str, system_prompt: str, user_prompt: str,
               response_schema: Optional[dict] = None) -> ModelResponse:
    """Invoke the model with the agent's temperature, output budget and remaining deadline."""
    settings = AGENT_SETTINGS[agent_name]
    timeout = None
    if ctx.deadline is not None:
        ctx.deadline.check(f"{agent_name} invocation")
        timeout = ctx.deadline.remaining()

    return ctx.model.invoke(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        temperature=settings["temperature"],
        max_output_tokens=settings["max_output_tokens"],
        response_schema=response_schema,
        timeout=timeout,
    )


def invoke_agent(
    ctx: AgentContext,
    agent_name: str,
    system_prompt: str,
    user_prompt: str,
    validate: Callable[[Any], ParseResult],
    merge: Optional[Callable[[Any], Any]] = None,
    check: Optional[Callable[[Any], Optional[str]]] = None,
    response_schema: Optional[dict] = None,
    started: Optional[float] = None,
) -> AgentResult:
    """
    Run one model round-trip and reduce it to a validated, merged output.

    Args:
        validate: Per-kind payload validator (shape and hard invariants).
        merge: Overlays the agent's deterministic values onto the model output.
        check: Post-merge invariant check; returns a violation message or None.
        started: Monotonic start time, when pre-compute ran before this call.

    Returns:
        AgentResult envelope. Usage is recorded whenever the model responded,
        including responses that later fail parsing.
    """
    started = time.monotonic() if started is None else started

    try:
        response = call_model(ctx, agent_name, system_prompt, user_prompt, response_schema)
    except DeadlineExceeded as e:
        logger.warning("[%s] %s", agent_name, e)
        return failed_result(FailureKind.AGENT_FAILURE, str(e), started)
    except Exception as e:
        logger.warning("[%s] Model invocation failed for %s: %s", agent_name, ctx.session_id, e)
        return failed_result(FailureKind.AGENT_FAILURE, f"Model invocation failed: {e}", started)

    usage = response.token_usage
    ctx.usage.record(agent_name, usage)

    parsed = parse_response(response.text)
    if not parsed.success:
        return failed_result(
            FailureKind.PARSE_FAILURE,
            f"Failed to parse {agent_name} response: {parsed.error}",
            started, usage,
        )

    validated = validate(parsed.data)
    if not validated.success:
        return failed_result(
            validated.kind or FailureKind.SCHEMA_VIOLATION,
            f"Validation failed: {validated.error}",
            started, usage,
        )

    output = merge(validated.data) if merge else validated.data

    if check is not None:
        violation = check(output)
        if violation:
            return failed_result(FailureKind.SCHEMA_VIOLATION, violation, started, usage)

    logger.info(
        "[%s] %s complete in %dms (%d tokens)",
        agent_name, ctx.session_id, elapsed_ms(started), usage.total_tokens,
    )
    return AgentResult(
        success=True,
        output=output,
        token_usage=usage,
        duration_ms=elapsed_ms(started),
    )


def merge_by_key(deterministic: list, generated: list, key: Callable[[Any], Any]) -> list:
    """
    Deterministic items win; generated items only fill keys not yet seen.

    Order is preserved: all deterministic items first, then the new
    generated ones.
    """
    seen = set()
    merged = []
    for item in list(deterministic) + list(generated):
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        merged.append(item)
    return merged
