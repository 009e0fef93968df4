"""
Transcript accumulation for streaming recognition snippets.

Backends resend an utterance with small extensions as recognition progresses,
so every snippet is folded into the running transcript by keeping only the
genuinely new suffix. Known caption-attribution boilerplate that recognizers
hallucinate on silence is stripped first.

Functions:
    strip_noise: Remove boilerplate phrases and normalize whitespace
    find_new_text: Compute the part of a snippet not already in the transcript

Classes:
    TranscriptAccumulator: Stateless fold(existing, snippet) operation
"""

import logging
import re
from typing import Iterable, List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)

# Caption attribution phrases emitted by recognizers trained on subtitled media.
# Spacing inside the phrase is irregular in practice, see _compile_noise_pattern.
DEFAULT_NOISE_PHRASES = (
    "字幕由 Amara.org 社群提供",
    "字幕由 Amara org 社群提供",
    "字幕由 Am ara. org 社群提供",
    "字幕由 Am ara.org 社群提供",
    "字幕由 Am ara . org 社群提供",
    "字幕由 Am ara .org 社群提供",
    "字幕由 Amara . org 社群提供",
    "字幕由 Amara .org 社群提供",
)

_WHITESPACE_RE = re.compile(r"\s+")


def _compile_noise_pattern(phrase: str) -> Pattern[str]:
    """Match the phrase with any amount of whitespace between its tokens."""
    tokens = phrase.split()
    return re.compile(r"\s*".join(re.escape(token) for token in tokens))


def compile_noise_patterns(phrases: Iterable[str]) -> List[Pattern[str]]:
    patterns: List[Pattern[str]] = []
    seen = set()
    for phrase in phrases:
        if not phrase or not phrase.strip():
            continue
        pattern = _compile_noise_pattern(phrase)
        if pattern.pattern in seen:
            continue
        seen.add(pattern.pattern)
        patterns.append(pattern)
    return patterns


_DEFAULT_PATTERNS = compile_noise_patterns(DEFAULT_NOISE_PHRASES)


def strip_noise(text: str, patterns: Optional[List[Pattern[str]]] = None) -> str:
    """
    Remove boilerplate phrases, collapse whitespace runs and trim.

    Examples:
        >>> strip_noise("字幕由  Am ara.  org 社群提供 hello   world")
        'hello world'
    """
    if not text:
        return ""

    for pattern in (_DEFAULT_PATTERNS if patterns is None else patterns):
        text = pattern.sub("", text)

    return _WHITESPACE_RE.sub(" ", text).strip()


def _first_divergence(existing: str, snippet: str) -> int:
    """Index where the two strings first differ, scanning forward; -1 if none useful."""
    min_length = min(len(existing), len(snippet))
    for i in range(min_length):
        if existing[i] != snippet[i]:
            return i
    # Identical up to the shorter length: the snippet's tail is new
    return min_length if min_length < len(snippet) else -1


def _last_divergence(existing: str, snippet: str) -> int:
    """Snippet index of the first difference scanning backward; -1 if none useful."""
    min_length = min(len(existing), len(snippet))
    for offset in range(1, min_length + 1):
        if existing[-offset] != snippet[-offset]:
            return len(snippet) - offset
    return min_length - 1 if min_length < len(snippet) else -1


def find_new_text(existing: str, snippet: str) -> str:
    """
    Compute the part of `snippet` that extends `existing`.

    Snippets are assumed to be growing continuations of the same utterance, so
    the first forward divergence marks where new text starts. When the forward
    scan finds nothing the trailing scan is used, keeping the snippet's prefix
    up to the last difference. If neither yields text the whole snippet is new.
    """
    if not snippet:
        return ""
    if not existing:
        return snippet
    if snippet in existing:
        return ""

    start = _first_divergence(existing, snippet)
    if 0 <= start < len(snippet):
        return snippet[start:]

    end = _last_divergence(existing, snippet)
    if end >= 0:
        return snippet[:end + 1]

    return snippet


class TranscriptAccumulator:
    """
    Folds recognition snippets into a cumulative transcript.

    The accumulator holds no transcript state; callers own the running text and
    must not fold concurrently for the same session.
    """

    def __init__(self, noise_phrases: Optional[Iterable[str]] = None):
        if noise_phrases is None:
            self._patterns = _DEFAULT_PATTERNS
        else:
            self._patterns = compile_noise_patterns(noise_phrases)
        self.folds = 0
        self.redundant = 0

    def clean(self, snippet: str) -> str:
        return strip_noise(snippet, self._patterns)

    def fold(self, existing: str, snippet: str) -> Tuple[str, str]:
        """
        Fold one snippet into the transcript.

        Args:
            existing: Cumulative transcript so far
            snippet: Text of the new recognition event

        Returns:
            Tuple of (updated transcript, appended text). The appended text is
            empty when the snippet was noise only or already contained.
        """
        existing = existing or ""
        self.folds += 1

        cleaned = self.clean(snippet)
        if not cleaned:
            self.redundant += 1
            return existing, ""

        if cleaned in existing:
            self.redundant += 1
            return existing, ""

        new_text = find_new_text(existing, cleaned)
        if not new_text:
            self.redundant += 1
            return existing, ""

        logger.debug(f"[fold] new text: '{new_text}'")
        return existing + new_text, new_text

    def stats(self) -> dict:
        return {"folds": self.folds, "redundant": self.redundant}
