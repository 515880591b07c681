"""
Streaming chat-completions client for OpenAI-compatible endpoints.
"""

import logging
import os
from typing import TYPE_CHECKING, Any, AsyncIterator

from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from pydantic import ConfigDict, Field, SecretStr
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from keel.providers.llm.base import Model, StreamChunk, normalize_usage
from keel.utils.logging import get_logger

if TYPE_CHECKING:
    from keel.runtime.control import AbortSignal

logger = get_logger(__name__)

TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, InternalServerError, RateLimitError)


def to_stream_chunk(raw: Any) -> StreamChunk:
    """Convert one provider chunk into a StreamChunk."""
    chunk = StreamChunk()
    if raw.usage:
        chunk.usage = normalize_usage(
            {
                "prompt_tokens": raw.usage.prompt_tokens,
                "completion_tokens": raw.usage.completion_tokens,
                "total_tokens": raw.usage.total_tokens,
            }
        )
    if not raw.choices:
        return chunk

    choice = raw.choices[0]
    if choice.delta.content:
        chunk.content = choice.delta.content
    if choice.delta.tool_calls:
        chunk.tool_calls = [tc.model_dump(exclude_none=True) for tc in choice.delta.tool_calls]
    if choice.finish_reason:
        chunk.finish_reason = choice.finish_reason
    return chunk


class OpenAIModel(Model):
    """
    Model backed by ``AsyncOpenAI``.

    The request that opens the stream is retried with exponential backoff
    on transient transport errors (connection, timeout, 5xx, rate limit).
    Errors after the first chunk propagate; the loop never retries them.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, protected_namespaces=())

    model_name: str | None = Field(default=None, description="Name sent to the API; defaults to name")
    api_key: SecretStr | None = Field(default=None, exclude=True)
    base_url: str | None = None
    client: AsyncOpenAI | None = Field(default=None, exclude=True)
    max_attempts: int = Field(default=3, ge=1)

    def model_post_init(self, __context) -> None:
        from keel.config import settings

        if self.client is None:
            if self.api_key:
                api_key = self.api_key.get_secret_value()
            elif settings.openai_api_key:
                api_key = settings.openai_api_key.get_secret_value()
            else:
                api_key = os.getenv("OPENAI_API_KEY")
            base_url = self.base_url or settings.openai_base_url or os.getenv("OPENAI_BASE_URL")
            self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

        super().model_post_init(__context)

    def build_params(
        self, messages: list[dict], tools: list[dict] | None, max_tokens: int | None
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self.model_name or self.name,
            "messages": messages,
            "temperature": self.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self.top_p is not None:
            params["top_p"] = self.top_p
        budget = max_tokens or self.max_tokens
        if budget:
            params["max_tokens"] = budget
        if tools:
            params["tools"] = tools
        return params

    async def _open_stream(self, params: dict):
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=1.0, max=10.0),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        )
        async for attempt in retrying:
            with attempt:
                return await self.client.chat.completions.create(**params)

    async def arun_stream(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        abort_signal: "AbortSignal | None" = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        params = self.build_params(messages, tools, max_tokens)
        request_info = {
            "model": params["model"],
            "messages_count": len(messages),
            "tools_count": len(tools or []),
        }
        logger.info("llm_request", max_tokens=params.get("max_tokens"), **request_info)

        try:
            stream = await self._open_stream(params)
        except Exception as e:
            logger.error(
                "llm_request_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
                **request_info,
            )
            raise

        async for raw in stream:
            if abort_signal is not None and abort_signal.is_aborted():
                logger.info("llm_stream_aborted", model=params["model"], reason=abort_signal.reason)
                await stream.close()
                return
            chunk = to_stream_chunk(raw)
            if not chunk.is_empty:
                yield chunk


__all__ = ["OpenAIModel", "to_stream_chunk"]
