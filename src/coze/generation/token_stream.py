"""Incremental detokenization.

Tokens are decoded over a short trailing window so that byte-level pieces
forming a single character are held back until the character is complete.
Same scheme as text-generation-inference's ``decode_token``.
"""
from __future__ import annotations

from typing import Callable, Sequence

REPLACEMENT_CHAR = "�"


class TokenStream:
    def __init__(self, decode: Callable[[Sequence[int]], str]) -> None:
        self._decode = decode
        self._tokens: list[int] = []
        self._prev_index = 0
        self._current_index = 0

    def _pending_prefix(self) -> str:
        if not self._tokens:
            return ""
        return self._decode(self._tokens[self._prev_index:self._current_index])

    def next_token(self, token: int) -> str | None:
        """Add a token, return newly completed text or ``None``."""
        prev_text = self._pending_prefix()
        self._tokens.append(token)
        text = self._decode(self._tokens[self._prev_index:])
        if len(text) > len(prev_text) and not text.endswith(REPLACEMENT_CHAR):
            self._prev_index = self._current_index
            self._current_index = len(self._tokens)
            return text[len(prev_text):]
        return None

    def decode_rest(self) -> str | None:
        """Flush text still held back, even if incomplete."""
        prev_text = self._pending_prefix()
        text = self._decode(self._tokens[self._prev_index:])
        if len(text) > len(prev_text):
            return text[len(prev_text):]
        return None

    def clear(self) -> None:
        self._tokens.clear()
        self._prev_index = 0
        self._current_index = 0
