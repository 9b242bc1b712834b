import math
import re
from collections import Counter
from collections.abc import Iterable

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for", "with",
    "from", "by", "as", "of",
    "payment", "purchase", "transaction", "fee", "charge", "paid", "buy",
    "bought", "sold", "pay", "bill", "invoice", "order", "online",
})

MAX_COMMON_WORDS = 3
MAX_TITLE_WORDS = 8


def normalize(text: str | None) -> str:
    if not text:
        return ""
    cleaned = _PUNCTUATION.sub("", text.lower())
    return _WHITESPACE.sub(" ", cleaned).strip()


def tokenize(text: str | None) -> list[str]:
    return [
        token for token in normalize(text).split()
        if len(token) > 2 and token not in STOPWORDS
    ]


def extract_common_words(descriptions: Iterable[str | None], threshold: float = 0.5) -> list[str]:
    """
    Return up to three words shared by a large enough share of the descriptions.

    A word qualifies when it occurs at least ``max(2, ceil(N * threshold))``
    times across all N descriptions. Words with equal counts keep the order in
    which they were first seen.
    """
    descriptions = list(descriptions)
    counts: Counter[str] = Counter()
    for description in descriptions:
        counts.update(tokenize(description))

    min_occurrences = max(2, math.ceil(len(descriptions) * threshold))
    ranked = sorted(
        (item for item in counts.items() if item[1] >= min_occurrences),
        key=lambda item: item[1],
        reverse=True,
    )
    return [capitalize(word) for word, _ in ranked[:MAX_COMMON_WORDS]]


def capitalize(word: str) -> str:
    return word[:1].upper() + word[1:]


def first_word(text: str | None) -> str | None:
    parts = (text or "").split()
    return parts[0] if parts else None


def clamp_words(text: str, limit: int = MAX_TITLE_WORDS) -> str:
    words = text.split()
    if len(words) <= limit:
        return text.strip()
    return " ".join(words[:limit])
