"""
Phrase matching for handoff triggers and forbidden phrases.

Plain case-insensitive substring search flags "ill" inside "fill".  The
matcher is therefore a strategy, chosen by ``phrase_match_mode``:

  substring — case-insensitive substring (default)
  word      — case-insensitive, phrase must sit on word boundaries
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Iterable, Optional

logger = logging.getLogger("engine.analysis.matching")


class PhraseMatcher(ABC):
    mode: str = ""

    @abstractmethod
    def matches(self, text: str, phrase: str) -> bool:
        """True if ``phrase`` occurs in ``text``."""

    def first_match(self, text: str | None, phrases: Iterable[str]) -> Optional[str]:
        """The first configured phrase found in ``text``, or None."""
        if not text:
            return None
        for phrase in phrases:
            if phrase and phrase.strip() and self.matches(text, phrase.strip()):
                return phrase.strip()
        return None


class SubstringMatcher(PhraseMatcher):
    mode = "substring"

    def matches(self, text: str, phrase: str) -> bool:
        return phrase.casefold() in text.casefold()


class WordBoundaryMatcher(PhraseMatcher):
    mode = "word"

    def __init__(self) -> None:
        self._cache: dict[str, re.Pattern[str]] = {}

    def matches(self, text: str, phrase: str) -> bool:
        pattern = self._cache.get(phrase)
        if pattern is None:
            # \b does not work for phrases that start/end with punctuation
            pattern = re.compile(
                r"(?<!\w)" + re.escape(phrase) + r"(?!\w)",
                re.IGNORECASE,
            )
            self._cache[phrase] = pattern
        return pattern.search(text) is not None


_MATCHERS: dict[str, type[PhraseMatcher]] = {
    SubstringMatcher.mode: SubstringMatcher,
    WordBoundaryMatcher.mode: WordBoundaryMatcher,
}


def get_matcher(mode: str | None) -> PhraseMatcher:
    cls = _MATCHERS.get((mode or "").lower())
    if cls is None:
        logger.warning("Unknown phrase match mode %r — using substring", mode)
        cls = SubstringMatcher
    return cls()
