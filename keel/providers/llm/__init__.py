"""
LLM providers module.

- Model / StreamChunk: unified streaming interface
- OpenAIModel: OpenAI-compatible implementation
"""

from .base import Model, StreamChunk, normalize_usage
from .openai import OpenAIModel

__all__ = ["Model", "StreamChunk", "normalize_usage", "OpenAIModel"]
