"""
Model-inference client for the agents.

`ModelClient` is the contract every agent calls through; `GeminiModel` is the
production implementation on top of langchain-google-genai.
"""

import logging
from typing import Any, Optional, Protocol

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import BaseModel

from .config import GEMINI_API_KEY, GEMINI_MODEL_NAME
from .state import TokenUsage
from .usage import build_usage, estimate_tokens

logger = logging.getLogger(__name__)


class ModelResponse(BaseModel):
    text: str
    token_usage: TokenUsage


class ModelClient(Protocol):
    """Synchronous text-generation call."""

    def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_output_tokens: int,
        response_schema: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> ModelResponse:
        ...


def _content_text(content: Any) -> str:
    """Flatten a chat message content (str or list of parts) to text."""
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class GeminiModel:
    """
    Gemini chat model behind the ModelClient contract.

    Provider retries are disabled: the validation loop is the only retry
    layer in the pipeline. When a response schema is supplied the model is
    asked for JSON output conforming to it.
    """

    def __init__(self, model_name: str = GEMINI_MODEL_NAME, api_key: str = GEMINI_API_KEY):
        self.model_name = model_name
        self.api_key = api_key

    def _build_llm(self, temperature, max_output_tokens, response_schema, timeout):
        kwargs = {}
        if response_schema is not None:
            kwargs["response_mime_type"] = "application/json"
            kwargs["response_schema"] = response_schema
        return ChatGoogleGenerativeAI(
            model=self.model_name,
            google_api_key=self.api_key,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            timeout=timeout,
            max_retries=0,
            **kwargs,
        )

    def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_output_tokens: int,
        response_schema: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> ModelResponse:
        if not self.api_key:
            raise RuntimeError("GEMINI_API_KEY not configured")

        llm = self._build_llm(temperature, max_output_tokens, response_schema, timeout)
        response = llm.invoke([
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_prompt),
        ])
        text = _content_text(response.content)

        usage_metadata = getattr(response, "usage_metadata", None) or {}
        input_tokens = usage_metadata.get("input_tokens")
        output_tokens = usage_metadata.get("output_tokens")
        if input_tokens is None or output_tokens is None:
            # Provider did not report usage; fall back to a length estimate
            input_tokens = estimate_tokens(system_prompt) + estimate_tokens(user_prompt)
            output_tokens = estimate_tokens(text)

        logger.debug(
            "%s responded: %d input / %d output tokens",
            self.model_name, input_tokens, output_tokens,
        )
        return ModelResponse(text=text, token_usage=build_usage(input_tokens, output_tokens))
