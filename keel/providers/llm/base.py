"""
Model contract used by the agent loop and the compaction summarizer.

A model turns an OpenAI-format message list into a stream of StreamChunks.
Tool looping, compaction and persistence live in keel.runtime, never here.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, AsyncIterator

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from keel.runtime.control import AbortSignal


class StreamChunk(BaseModel):
    """One normalized delta of a streamed model response."""

    content: str | None = Field(default=None, description="Assistant text delta")
    tool_calls: list[dict] | None = Field(
        default=None, description="Partial tool calls keyed by index (OpenAI delta shape)"
    )
    usage: dict[str, int] | None = Field(
        default=None, description="input_tokens / output_tokens / total_tokens"
    )
    finish_reason: str | None = Field(default=None)

    @property
    def is_empty(self) -> bool:
        return (
            self.content is None
            and self.tool_calls is None
            and self.usage is None
            and self.finish_reason is None
        )


class Model(BaseModel, ABC):
    """
    Base class for model providers.

    Subclasses implement ``arun_stream`` as an async generator. Provider
    exceptions propagate unchanged; callers decide whether they become a
    ``model_error`` outcome or a compaction fallback.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="allow")

    id: str = Field(description="provider/model identifier")
    name: str

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)

    @abstractmethod
    async def arun_stream(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        abort_signal: "AbortSignal | None" = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream one completion.

        ``max_tokens`` overrides the model's own budget for this call only.
        Implementations stop yielding once ``abort_signal`` fires.
        """
        ...


def normalize_usage(usage: dict[str, int]) -> dict[str, int]:
    """Map provider usage keys to input/output/total tokens."""
    prompt = usage.get("input_tokens", usage.get("prompt_tokens", 0)) or 0
    completion = usage.get("output_tokens", usage.get("completion_tokens", 0)) or 0
    return {
        "input_tokens": prompt,
        "output_tokens": completion,
        "total_tokens": usage.get("total_tokens") or prompt + completion,
    }


__all__ = ["Model", "StreamChunk", "normalize_usage"]
