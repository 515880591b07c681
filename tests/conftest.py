"""
Shared fixtures: a scripted model double and deterministic token counting.
"""

import json
from typing import Any

import pytest
from pydantic import Field

from keel.providers.llm.base import Model, StreamChunk
from keel.utils.tokens import TokenCounter


class ScriptedModel(Model):
    """
    Model double replaying a script.

    Each script step is a list of StreamChunks or an exception raised when
    the stream is opened. Every request is recorded.
    """

    script: list[Any] = Field(default_factory=list)
    requests: list[dict] = Field(default_factory=list)

    async def arun_stream(self, messages, tools=None, abort_signal=None, max_tokens=None):
        self.requests.append({"messages": messages, "tools": tools, "max_tokens": max_tokens})
        if not self.script:
            raise AssertionError("ScriptedModel has no response left")
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        for chunk in step:
            yield chunk


def text_reply(text: str) -> list[StreamChunk]:
    return [
        StreamChunk(content=text),
        StreamChunk(finish_reason="stop", usage={"input_tokens": 10, "output_tokens": 5, "total_tokens": 15}),
    ]


def tool_reply(*calls: tuple[str, str, dict], content: str = "") -> list[StreamChunk]:
    chunks = []
    if content:
        chunks.append(StreamChunk(content=content))
    chunks.append(
        StreamChunk(
            tool_calls=[
                {
                    "index": index,
                    "id": call_id,
                    "type": "function",
                    "function": {"name": name, "arguments": json.dumps(args)},
                }
                for index, (call_id, name, args) in enumerate(calls)
            ]
        )
    )
    chunks.append(StreamChunk(finish_reason="tool_calls"))
    return chunks


@pytest.fixture
def make_model():
    """Factory for ScriptedModel instances."""

    def factory(*script) -> ScriptedModel:
        return ScriptedModel(id="test/scripted", name="scripted", script=list(script))

    return factory


@pytest.fixture
def replies():
    """Builders for scripted responses: ``replies.text(...)``, ``replies.tools(...)``."""

    class Replies:
        text = staticmethod(text_reply)
        tools = staticmethod(tool_reply)

    return Replies


@pytest.fixture
def counter():
    """Character based counter (4 chars per token), independent of tiktoken data."""
    return TokenCounter(encoding_name=None)
