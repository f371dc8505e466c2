"""Keyword-based memory categorization."""

from __future__ import annotations

import re

from .models import MemoryCategory

_CATEGORY_KEYWORDS: dict[MemoryCategory, tuple[str, ...]] = {
    MemoryCategory.CONTACT: (
        "email", "e-mail", "phone", "address", "contact", "reached at",
        "social media", "instagram", "twitter", "facebook", "snapchat",
        "tiktok", "linkedin", "username", "handle", "website", "blog",
        "discord", "steam", "gamer tag", "psn", "xbox live", "phone number",
    ),
    MemoryCategory.PROFESSIONAL: (
        "job", "work", "career", "company", "business", "profession",
        "position", "occupation", "employ", "studies", "studied",
        "education", "school", "university", "college", "degree",
        "graduat", "student", "major in", "industry", "salary", "project",
        "expertise", "trained", "certified", "qualification", "resume",
        "interview", "boss", "coworker", "colleague",
    ),
    MemoryCategory.HOBBIES: (
        "hobby", "hobbies", "collect", "play", "game", "sport", "weekend",
        "spare time", "pastime", "leisure", "tournament", "league", "club",
        "exercise", "workout", "fitness", "craft", "instrument", "guitar",
        "piano", "reading", "novel", "movie", "series", "travel", "hiking",
        "camping", "painting", "drawing", "knit",
    ),
    MemoryCategory.PERSONAL: (
        "name", "age", "years old", "birthday", "born", "lives", "live in",
        "family", "spouse", "married", "wife", "husband", "partner",
        "children", "child", "kids", "parent", "mother", "father", "mom",
        "dad", "sister", "brother", "pet", "dog", "cat", "nationality",
        "religion", "grew up", "raised", "hometown", "personality",
    ),
    MemoryCategory.PREFERENCES: (
        "like", "enjoy", "love", "prefer", "favorite", "favourite", "fond",
        "hate", "dislike", "interested in", "fan of", "can't stand",
        "allergic to", "would rather", "crave", "appreciate",
    ),
}

_FOOD_KEYWORDS = (
    "food", "eat", "dish", "meal", "cuisine", "cook", "bake", "recipe",
    "restaurant", "breakfast", "lunch", "dinner", "snack", "dessert",
    "fruit", "vegetable", "meat", "drink", "beverage", "pizza", "pasta",
    "sushi", "coffee", "tea", "chocolate", "ice cream",
)

_OPINION_PHRASES = (
    "would like", "thinks that", "feels that", "believes", "agrees with",
    "disagrees with",
)


def _compile(keywords: tuple[str, ...]) -> re.Pattern[str]:
    # Left word boundary only, so "work" also matches "works"/"working".
    alternatives = "|".join(re.escape(k) for k in keywords)
    return re.compile(rf"\b(?:{alternatives})", re.IGNORECASE)


_CATEGORY_PATTERNS = {
    category: _compile(keywords) for category, keywords in _CATEGORY_KEYWORDS.items()
}
_FOOD_PATTERN = _compile(_FOOD_KEYWORDS)
_OPINION_PATTERN = _compile(_OPINION_PHRASES)


def categorize(text: str) -> MemoryCategory:
    """Infer a category for memory text.

    Food words combined with a preference verb are preferences; otherwise
    the first category (in priority order) with a keyword hit wins.
    """
    prefers = _CATEGORY_PATTERNS[MemoryCategory.PREFERENCES].search(text)
    if prefers and _FOOD_PATTERN.search(text):
        return MemoryCategory.PREFERENCES

    for category, pattern in _CATEGORY_PATTERNS.items():
        if pattern.search(text):
            return category

    if _OPINION_PATTERN.search(text):
        return MemoryCategory.PREFERENCES
    return MemoryCategory.OTHER
