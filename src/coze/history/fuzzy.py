"""Fuzzy search over history prompts."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from ..config import FuzzyConfig
from .store import HistoryEntry


@dataclass(frozen=True)
class FuzzyMatch:
    entry: HistoryEntry
    index: int
    score: float


def is_subsequence(pattern: str, text: str, case_sensitive: bool = False) -> bool:
    if not case_sensitive:
        pattern, text = pattern.lower(), text.lower()
    it = iter(text)
    return all(ch in it for ch in pattern)


def min_gap(fragment: str, text: str) -> int | None:
    """Smallest total gap over all in-order occurrences of ``fragment``.

    The gap of an occurrence is the number of unmatched characters between
    its first and last matched character. ``None`` when no occurrence exists.
    """
    if not fragment:
        return 0
    best: int | None = None
    first = fragment[0]
    for start, ch in enumerate(text):
        if ch != first:
            continue
        pos = start
        for wanted in fragment[1:]:
            pos = text.find(wanted, pos + 1)
            if pos < 0:
                # Later starts cannot succeed either.
                return best
        gap = pos - start - (len(fragment) - 1)
        if best is None or gap < best:
            best = gap
            if best == 0:
                break
    return best


def lcs_length(a: str, b: str) -> int:
    if not a or not b:
        return 0
    previous = [0] * (len(b) + 1)
    for ca in a:
        current = [0]
        for j, cb in enumerate(b, start=1):
            if ca == cb:
                current.append(previous[j - 1] + 1)
            else:
                current.append(max(previous[j], current[j - 1]))
        previous = current
    return previous[-1]


class FuzzyMatcher:
    """Ranks history entries against a partial query.

    Whitespace separated query fragments are matched independently, so
    reordered fragments still match. A fragment whose characters all appear
    in order scores by the gaps between them (tighter is better); a query
    equal to the prompt gets ``exact_bonus`` on top. When some characters
    are missing (typos) the entry can still be listed below every full
    match, scored by the share of query characters found in order, if that
    share reaches ``min_coverage``.
    """

    def __init__(
        self,
        gap_weight: float = 1.0,
        exact_bonus: float = 1.0,
        min_coverage: float = 0.6,
        case_sensitive: bool = False,
    ) -> None:
        self.gap_weight = gap_weight
        self.exact_bonus = exact_bonus
        self.min_coverage = min_coverage
        self.case_sensitive = case_sensitive

    @classmethod
    def from_config(cls, cfg: FuzzyConfig) -> "FuzzyMatcher":
        return cls(
            gap_weight=cfg.gap_weight,
            exact_bonus=cfg.exact_bonus,
            min_coverage=cfg.min_coverage,
            case_sensitive=cfg.case_sensitive,
        )

    def _fold(self, text: str) -> str:
        return text if self.case_sensitive else text.lower()

    def score(self, query: str, text: str) -> float | None:
        query = self._fold(query.strip())
        text = self._fold(text)
        fragments = query.split()
        if not fragments:
            return 0.0

        total_gap = 0
        full = True
        for fragment in fragments:
            gap = min_gap(fragment, text)
            if gap is None:
                full = False
                break
            total_gap += gap

        if full:
            score = 1.0 + 1.0 / (1.0 + self.gap_weight * total_gap)
            if query == text.strip():
                score += self.exact_bonus
            return score

        if self.min_coverage <= 0:
            return None
        matched = sum(lcs_length(fragment, text) for fragment in fragments)
        coverage = matched / sum(len(fragment) for fragment in fragments)
        if coverage >= self.min_coverage:
            # Strictly below 1, the floor of full matches.
            return min(coverage, 0.999)
        return None

    def rank(
        self,
        query: str,
        entries: Sequence[HistoryEntry],
        limit: int | None = None,
    ) -> list[FuzzyMatch]:
        if not query.strip():
            matches = [FuzzyMatch(entry, i, 0.0) for i, entry in enumerate(entries)]
            matches.reverse()
        else:
            matches = []
            for i, entry in enumerate(entries):
                score = self.score(query, entry.prompt)
                if score is not None:
                    matches.append(FuzzyMatch(entry, i, score))
            matches.sort(key=lambda m: (m.score, m.index), reverse=True)
        if limit is not None and limit > 0:
            matches = matches[:limit]
        return matches
