"""
Token estimation for context budgeting.
"""

import json
from typing import Any

import tiktoken

from keel.utils.logging import get_logger

logger = get_logger(__name__)

# Role and framing overhead per message
MESSAGE_OVERHEAD_TOKENS = 4
APPROX_CHARS_PER_TOKEN = 4


class TokenCounter:
    """
    Counts tokens of OpenAI format messages.

    Uses a tiktoken encoding when one is available, otherwise estimates
    4 characters per token.
    """

    def __init__(self, encoding_name: str | None = "cl100k_base"):
        self.encoding = None
        if encoding_name:
            try:
                self.encoding = tiktoken.get_encoding(encoding_name)
            except Exception as e:
                logger.warning("token_encoding_unavailable", encoding=encoding_name, error=str(e))

    def count_text(self, text: str | None) -> int:
        if not text:
            return 0
        if self.encoding is None:
            return (len(text) + APPROX_CHARS_PER_TOKEN - 1) // APPROX_CHARS_PER_TOKEN
        return len(self.encoding.encode(text, disallowed_special=()))

    def count_message(self, message: dict[str, Any]) -> int:
        tokens = MESSAGE_OVERHEAD_TOKENS

        content = message.get("content")
        if isinstance(content, str):
            tokens += self.count_text(content)
        elif isinstance(content, list):
            for part in content:
                if isinstance(part, dict):
                    tokens += self.count_text(part.get("text"))

        for tc in message.get("tool_calls") or []:
            function = tc.get("function", {})
            tokens += self.count_text(function.get("name"))
            arguments = function.get("arguments")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments or {}, ensure_ascii=False)
            tokens += self.count_text(arguments)

        return tokens

    def count_messages(self, messages: list[dict[str, Any]]) -> int:
        return sum(self.count_message(m) for m in messages)


_default_counter: TokenCounter | None = None


def get_token_counter() -> TokenCounter:
    """Return the shared default TokenCounter."""
    global _default_counter
    if _default_counter is None:
        _default_counter = TokenCounter()
    return _default_counter


__all__ = ["TokenCounter", "get_token_counter", "MESSAGE_OVERHEAD_TOKENS"]
