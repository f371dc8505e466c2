"""Text helpers: normalization, key terms and lexical similarity."""

from __future__ import annotations

import re
from difflib import SequenceMatcher

_WORD_RE = re.compile(r"[a-z0-9']+")

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "is", "are", "was", "were",
        "be", "been", "being", "have", "has", "had", "do", "does", "did",
        "to", "at", "in", "on", "for", "with", "about", "user", "that",
        "this", "these", "those", "i", "you", "he", "she", "it", "we",
        "they", "my", "your", "his", "her", "its", "our", "their",
    }
)


def normalize_text(text: str) -> str:
    """Case-fold and collapse whitespace; the key for duplicate detection."""
    return " ".join(text.split()).casefold()


def words(text: str) -> list[str]:
    return _WORD_RE.findall(text.casefold())


def extract_key_terms(text: str) -> set[str]:
    """Content words longer than two characters, stopwords removed."""
    return {w for w in words(text) if len(w) > 2 and w not in STOPWORDS}


def terms_related(a: set[str], b: set[str]) -> bool:
    """Two term sets are related on 2+ shared terms, or 1 long shared term."""
    shared = a & b
    if len(shared) >= 2:
        return True
    return len(shared) == 1 and len(next(iter(shared))) > 5


def lexical_similarity(a: str, b: str) -> float:
    """Character-level similarity ratio of the normalized texts, in [0, 1]."""
    left, right = normalize_text(a), normalize_text(b)
    if not left and not right:
        return 1.0
    # SequenceMatcher is not symmetric in general; take the larger ratio.
    return max(
        SequenceMatcher(None, left, right).ratio(),
        SequenceMatcher(None, right, left).ratio(),
    )
