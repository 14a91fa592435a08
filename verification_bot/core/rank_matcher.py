"""
Rank matching for profile screenshots.

Two independent signals are read from a profile screen: the numeric level
shown under the "Level progress" landmark and the rank name printed next to
it.  Each signal is matched against the rank taxonomy on its own and the two
results are cross-validated by :meth:`RankMatcher.combine`.

The matcher is pure: the taxonomy is passed to every call and all heuristics
live on :class:`MatcherSettings`, so the same inputs always yield the same
output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence, Tuple

from verification_bot.core.fuzzy_match import FuzzyMatcher, normalize_text
from verification_bot.core.logging_utils import get_logger
from verification_bot.core.models import ExtractedProfile, MatchedRank, RankDefinition

logger = get_logger("rank_matcher")

NameMatch = Tuple[Optional[RankDefinition], float]


@dataclass(frozen=True)
class MatcherSettings:
    landmark_patterns: Tuple[str, ...] = (
        r"(?:level|evel|lvl)\s*progre(?:ss|s|bhi|bh)?",
        r"(?:level|evel|lvl)\s*prog",
    )
    labelled_level_patterns: Tuple[str, ...] = (
        r"(?:level|evel|lvl)\s*progress\s*[:\-]?\s*(\d{1,4})(?!\d)",
        r"(?:level|evel|lvl)\s*[:\-]?\s*(\d{1,4})(?!\d)",
    )
    standalone_level_pattern: str = r"\b(\d{3,4})\b"
    rank_label_pattern: str = r"\brank\s*[:\-]?\s*([a-z\s]+)"
    stat_keywords: Tuple[str, ...] = (
        "games won",
        "tournaments",
        "winnings",
        "wallet",
        "percentage",
        "streak",
        "potted",
    )
    region_window: int = 200
    context_window: int = 30
    labelled_priority: int = 10
    standalone_priority: int = 8
    min_level: int = 1
    max_level: int = 9999
    min_standalone_level: int = 100
    preferred_band: Tuple[int, int] = (100, 999)
    fallback_anchor: str = "total winnings"
    fallback_window: int = 25
    exact_confidence: float = 1.0
    containment_confidence: float = 0.95
    min_containment_length: int = 3
    fuzzy_threshold: float = 0.6
    strong_name_threshold: float = 0.7
    agreement_confidence: float = 0.9
    level_only_confidence: float = 0.8


@dataclass(frozen=True)
class _LevelCandidate:
    level: int
    priority: int
    position: int


class RankMatcher:
    """Stateless matcher from profile text to a :class:`MatchedRank`."""

    def __init__(self, settings: Optional[MatcherSettings] = None) -> None:
        self.settings = settings or MatcherSettings()
        self._fuzzy = FuzzyMatcher(self.settings.fuzzy_threshold)
        flags = re.IGNORECASE
        self._landmarks: List[Pattern[str]] = [re.compile(p, flags) for p in self.settings.landmark_patterns]
        self._labelled: List[Pattern[str]] = [
            re.compile(p, flags) for p in self.settings.labelled_level_patterns
        ]
        self._standalone = re.compile(self.settings.standalone_level_pattern)
        self._rank_label = re.compile(self.settings.rank_label_pattern, flags)
        self._trailing_small = re.compile(r"\b(\d{1,2})\s*$")
        self._trailing_large = re.compile(r"\d{4,}\s*$")
        self._long_run = re.compile(r"\d{6,}")

    # ------------------------------------------------------------------
    # Region handling
    # ------------------------------------------------------------------
    def _find_region(self, text: str) -> Optional[str]:
        for pattern in self._landmarks:
            match = pattern.search(text)
            if match:
                return text[match.start():match.end() + self.settings.region_window]
        return None

    # ------------------------------------------------------------------
    # Level extraction
    # ------------------------------------------------------------------
    def extract_level(self, text: str) -> Optional[int]:
        """
        Return the profile level found near the level-progress landmark.

        Labelled numbers (``Level progress 618``, ``lvl: 42``) outrank bare
        3-4 digit numbers.  Numbers that look like progress-bar fractions,
        split stats or stat counters are ignored.  When nothing qualifies the
        digits just before "total winnings" are tried.
        """
        if not text:
            return None

        region = self._find_region(text)
        search_text = region if region is not None else text
        candidates: List[_LevelCandidate] = []

        for pattern in self._labelled:
            for match in pattern.finditer(search_text):
                if search_text[match.end(1):].lstrip().startswith("/"):
                    continue
                level = int(match.group(1))
                if self.settings.min_level <= level <= self.settings.max_level:
                    candidates.append(
                        _LevelCandidate(level, self.settings.labelled_priority, match.start(1))
                    )

        if region is not None:
            for match in self._standalone.finditer(region):
                level = int(match.group(1))
                if level < self.settings.min_standalone_level or level > self.settings.max_level:
                    continue
                if self._is_noise(region, match.start(1), match.end(1)):
                    continue
                candidates.append(_LevelCandidate(level, self.settings.standalone_priority, match.start(1)))

        if candidates:
            low, high = self.settings.preferred_band
            best = min(
                candidates,
                key=lambda c: (-c.priority, 0 if low <= c.level <= high else 1, c.position),
            )
            logger.debug("Level candidates %s -> %d", [c.level for c in candidates[:3]], best.level)
            return best.level

        return self._fallback_level(text)

    def _is_noise(self, text: str, start: int, end: int) -> bool:
        window = self.settings.context_window
        before = text[max(0, start - window):start]
        after = text[end:end + window]
        context = (before + text[start:end] + after).lower()

        if "/" in context or self._long_run.search(context):
            return True
        if self._trailing_large.search(before):
            return True
        small = self._trailing_small.search(before)
        if small and int(small.group(1)) < 100:
            return True
        return any(keyword in context for keyword in self.settings.stat_keywords)

    def _fallback_level(self, text: str) -> Optional[int]:
        index = text.lower().find(self.settings.fallback_anchor)
        if index <= 0:
            return None
        snippet = text[max(0, index - self.settings.fallback_window):index]
        digits = re.sub(r"\D", "", snippet)
        if not 2 <= len(digits) <= 4:
            return None
        level = int(digits)
        if self.settings.min_level <= level <= self.settings.max_level:
            logger.debug("Level fallback near %r: %d", self.settings.fallback_anchor, level)
            return level
        return None

    # ------------------------------------------------------------------
    # Rank name matching
    # ------------------------------------------------------------------
    def match_name(self, candidate: str, ranks: Sequence[RankDefinition]) -> NameMatch:
        """
        Match free text against rank names.

        Exact containment of a rank name wins outright (longest name first, so
        "Grand Master" beats "Master").  A candidate that is a fragment of a
        rank name scores ``containment_confidence``.  Otherwise the best
        edit-distance similarity is kept if it clears ``fuzzy_threshold``.
        """
        needle = normalize_text(candidate)
        if not needle:
            return None, 0.0

        named = [(rank, normalize_text(rank.display_name)) for rank in ranks]
        named = [(rank, name) for rank, name in named if name]

        exact: Optional[Tuple[RankDefinition, str]] = None
        for rank, name in named:
            if name in needle and (exact is None or len(name) > len(exact[1])):
                exact = (rank, name)
        if exact is not None:
            return exact[0], self.settings.exact_confidence

        if len(needle) >= self.settings.min_containment_length:
            for rank, name in named:
                if needle in name:
                    return rank, self.settings.containment_confidence

        by_name = {rank.display_name: rank for rank, _ in reversed(named)}
        best_name, best_score = self._fuzzy.find_best(needle, [rank.display_name for rank, _ in named])
        if best_name is None:
            return None, best_score
        return by_name[best_name], best_score

    def extract_rank_name(self, text: str, ranks: Sequence[RankDefinition]) -> NameMatch:
        if not text:
            return None, 0.0
        region = self._find_region(text)
        search_text = region if region is not None else text
        labelled = self._rank_label.search(search_text)
        if labelled and normalize_text(labelled.group(1)):
            candidate = labelled.group(1)
        else:
            candidate = search_text
        rank, confidence = self.match_name(candidate, ranks)
        return (rank, confidence) if rank is not None else (None, 0.0)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    @staticmethod
    def rank_for_level(level: Optional[int], ranks: Sequence[RankDefinition]) -> Optional[RankDefinition]:
        if level is None:
            return None
        for rank in ranks:
            if rank.contains(level):
                return rank
        return None

    @staticmethod
    def get_rank_by_name(name: str, ranks: Sequence[RankDefinition]) -> Optional[RankDefinition]:
        wanted = normalize_text(name)
        if not wanted:
            return None
        for rank in ranks:
            if normalize_text(rank.display_name) == wanted:
                return rank
        return None

    # ------------------------------------------------------------------
    # Cross validation
    # ------------------------------------------------------------------
    def combine(
        self,
        name_match: NameMatch,
        level: Optional[int],
        ranks: Sequence[RankDefinition],
    ) -> Optional[MatchedRank]:
        name_rank, name_confidence = name_match
        level_rank = self.rank_for_level(level, ranks)
        settings = self.settings

        if name_rank is not None and level_rank is not None and name_rank.token == level_rank.token:
            chosen, confidence = name_rank, max(name_confidence, settings.agreement_confidence)
        elif name_rank is not None and name_confidence >= settings.strong_name_threshold:
            chosen, confidence = name_rank, name_confidence
        elif level_rank is not None:
            chosen, confidence = level_rank, settings.level_only_confidence
        elif name_rank is not None and name_confidence >= settings.fuzzy_threshold:
            chosen, confidence = name_rank, name_confidence
        else:
            logger.debug("No rank match (name=%s, level=%s)", name_rank, level)
            return None

        level_detected = level if chosen.contains(level) else None
        if level is not None and level_detected is None:
            logger.debug(
                "Discarding level %d outside %s range %d-%d",
                level,
                chosen.display_name,
                chosen.level_min,
                chosen.level_max,
            )
        return MatchedRank(rank=chosen, confidence=confidence, level_detected=level_detected)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def match_rank(self, text: str, ranks: Sequence[RankDefinition]) -> Optional[MatchedRank]:
        """Match raw screen text using both the level and the rank name."""
        level = self.extract_level(text)
        name_match = self.extract_rank_name(text, ranks)
        result = self.combine(name_match, level, ranks)
        if result is not None:
            logger.info(
                "Matched rank %s (confidence %.2f, level %s)",
                result.rank_name,
                result.confidence,
                result.level_detected,
            )
        return result

    def match_rank_by_name_hint(self, hint: Optional[str], ranks: Sequence[RankDefinition]) -> Optional[MatchedRank]:
        """Match a pre-isolated rank name. No level anchoring is applied."""
        if not hint:
            return None
        rank, confidence = self.match_name(hint, ranks)
        if rank is None:
            return None
        return MatchedRank(rank=rank, confidence=confidence)

    def match_profile(self, profile: ExtractedProfile, ranks: Sequence[RankDefinition]) -> Optional[MatchedRank]:
        """Cross-validate the extractor's rank name against its level."""
        name_match: NameMatch = (None, 0.0)
        if profile.rank_name:
            rank, confidence = self.match_name(profile.rank_name, ranks)
            if rank is not None:
                name_match = (rank, confidence)
        return self.combine(name_match, profile.level, ranks)


__all__ = ["MatcherSettings", "RankMatcher"]
