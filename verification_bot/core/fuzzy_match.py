from __future__ import annotations

import re
from typing import Iterable, Optional, Tuple

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    lowered = _PUNCTUATION.sub(" ", (value or "").lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Edit-distance similarity in [0, 1]; two empty strings are identical."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


class FuzzyMatcher:
    """Snap a noisy string onto the closest of a list of known names."""

    def __init__(self, threshold: float = 0.6) -> None:
        self.threshold = threshold

    def find_best(self, value: str, candidates: Iterable[str]) -> Tuple[Optional[str], float]:
        """
        Return the best candidate and its score, or ``(None, score)`` below the threshold.

        Candidates are compared in order; ties keep the earlier one.
        """
        needle = normalize_text(value)
        if not needle:
            return None, 0.0
        best_key: Optional[str] = None
        best_ratio = 0.0
        for candidate in candidates:
            ratio = similarity(needle, normalize_text(candidate))
            if ratio > best_ratio:
                best_ratio = ratio
                best_key = candidate
        if best_key is None or best_ratio < self.threshold:
            return None, best_ratio
        return best_key, best_ratio


__all__ = ["FuzzyMatcher", "levenshtein", "normalize_text", "similarity"]
