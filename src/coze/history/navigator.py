"""Arrow-key prompt recall filtered by what the user has typed."""
from __future__ import annotations

from typing import Sequence

from .fuzzy import is_subsequence
from .store import HistoryEntry


class HistoryNavigator:
    """Walks history prompts whose text contains the pattern as a subsequence.

    Consecutive duplicates of the prompt currently shown are skipped, so
    repeatedly sent prompts are recalled once.
    """

    def __init__(self) -> None:
        self.pattern = ""
        self.cursor: int | None = None

    def reset(self, pattern: str = "") -> None:
        self.pattern = pattern.lower()
        self.cursor = None

    def _is_match(self, entries: Sequence[HistoryEntry], text: str) -> bool:
        if self.cursor is not None and self.cursor < len(entries):
            if text.lower() == entries[self.cursor].prompt.lower():
                return False
        return is_subsequence(self.pattern, text)

    def up(self, entries: Sequence[HistoryEntry]) -> str | None:
        """Previous matching prompt, or ``None`` when there is no earlier one."""
        start = len(entries) if self.cursor is None else min(self.cursor, len(entries))
        for index in range(start - 1, -1, -1):
            prompt = entries[index].prompt
            if self._is_match(entries, prompt):
                self.cursor = index
                return prompt
        return None

    def down(self, entries: Sequence[HistoryEntry]) -> str | None:
        """Next matching prompt, or ``None`` when there is no later one."""
        if self.cursor is None:
            return None
        for index in range(self.cursor + 1, len(entries)):
            prompt = entries[index].prompt
            if self._is_match(entries, prompt):
                self.cursor = index
                return prompt
        return None
