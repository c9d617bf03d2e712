# classes/llm_client.py
"""
Adapter for the external generative text service.

One call = one HTTP request, no retries here: callers wrap `generate` (or a
generate+parse+validate compound) in retry_with_backoff. Provider failures are
translated into the GenerationServiceError family so the classifier sees a
`status`, a message and any retry-after headers.
"""
import logging
from typing import Any, Dict, List, Optional

import openai
from google.api_core import exceptions as google_exceptions
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_vertexai import ChatVertexAI
from openai import AsyncOpenAI

from classes import settings
from classes.errors import ContentShapeError, GenerationServiceError, RateLimitError, TransportError

logger = logging.getLogger("draftguard_backend")


def is_openai_model(model_name: str) -> bool:
    # keep it simple; adjust if you start using exotic names
    prefixes = ("gpt-", "gpt4", "o1", "o3", "o4")
    return any(model_name.startswith(p) for p in prefixes)


def translate_provider_error(e: Exception) -> Exception:
    """
    Map an OpenAI / Vertex exception onto the service error taxonomy.
    Anything unrecognized is returned unchanged.
    """
    if isinstance(e, openai.APITimeoutError):
        return TransportError(f"Request timed out: {e}", code="timeout")
    if isinstance(e, openai.APIConnectionError):
        return TransportError(f"Network error: {e}", code="connection")
    if isinstance(e, openai.APIStatusError):
        headers = dict(e.response.headers) if e.response is not None else {}
        if e.status_code == 429:
            return RateLimitError(e.message, headers=headers)
        if e.status_code >= 500:
            return TransportError(e.message, status=e.status_code, headers=headers)
        return GenerationServiceError(e.message, status=e.status_code, headers=headers)

    if isinstance(e, google_exceptions.GoogleAPICallError):
        status = int(e.code) if isinstance(e.code, int) else None
        if status == 429:
            return RateLimitError(e.message)
        if status is None or status >= 500:
            return TransportError(e.message, status=status)
        return GenerationServiceError(e.message, status=status)
    if isinstance(e, google_exceptions.RetryError):
        return TransportError(f"Request timed out: {e}", code="timeout")
    return e


class LlmClient:
    """
    Minimal async wrapper:

        text = await llm.generate("some prompt", system="...")

    Under the hood:
    - OpenAI: Responses API (client.responses.create)
    - Vertex: ChatVertexAI.ainvoke(messages)
    """

    def __init__(
        self,
        model_name: str = settings.LLM_MODEL,
        *,
        vertex_project: str = settings.PROJECT_ID,
        vertex_region: str = settings.REGION,
        timeout: float | None = settings.LLM_TIMEOUT,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.last_usage: Optional[Dict[str, int]] = None

        if self.provider == "openai":
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = AsyncOpenAI(**client_kwargs)
            self._vertex = None
        else:
            self._client = None
            self._vertex = ChatVertexAI(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
                temperature=temperature,
                max_output_tokens=max_output_tokens,
                max_retries=0,
            )

    def _merge_usage(self, inc: Dict[str, int]) -> None:
        if self.last_usage is None:
            self.last_usage = dict(inc)
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    async def _invoke_openai(self, prompt: str, system: Optional[str]) -> str:
        params: Dict[str, Any] = {}
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            params["max_output_tokens"] = self.max_output_tokens
        if system:
            params["instructions"] = system

        resp = await self._client.responses.create(model=self.model_name, input=prompt, **params)
        usage = getattr(resp, "usage", None)
        if usage is not None:
            self._merge_usage({
                "prompt_token_count": getattr(usage, "input_tokens", 0) or 0,
                "candidates_token_count": getattr(usage, "output_tokens", 0) or 0,
                "total_token_count": getattr(usage, "total_tokens", 0) or 0,
            })
        return getattr(resp, "output_text", "") or ""

    async def _invoke_vertex(self, prompt: str, system: Optional[str]) -> str:
        messages: List[Any] = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=prompt))

        resp = await self._vertex.ainvoke(messages)
        usage_md = getattr(resp, "usage_metadata", None)
        if usage_md:
            self._merge_usage({
                "prompt_token_count": int(usage_md.get("input_tokens", 0) or 0),
                "candidates_token_count": int(usage_md.get("output_tokens", 0) or 0),
                "total_token_count": int(usage_md.get("total_tokens", 0) or 0),
            })
        content = getattr(resp, "content", resp)
        return content if isinstance(content, str) else str(content)

    async def generate(self, prompt: str, *, system: Optional[str] = None) -> str:
        """
        Single call without retries/backoff. Raises the GenerationServiceError
        family on provider failures, ContentShapeError on an empty answer.
        """
        try:
            if self.provider == "openai":
                text = await self._invoke_openai(prompt, system)
            else:
                text = await self._invoke_vertex(prompt, system)
        except Exception as e:
            translated = translate_provider_error(e)
            if translated is e:
                raise
            raise translated from e

        text = text.strip()
        if not text:
            raise ContentShapeError(f"No content received from {self.provider} model {self.model_name}")
        logger.debug(f"[LLM] {self.model_name} returned {len(text)} chars")
        return text
