import re
from collections.abc import Sequence
from dataclasses import dataclass

from batch_categorizer.logger import get_logger
from batch_categorizer.models import Category

logger = get_logger(__name__)

MIN_MATCH_SCORE = 0.3
_TYPE_SUFFIX = re.compile(r"^(.+?)\s*\((expense|income|transfer)\)$", re.IGNORECASE)


@dataclass(frozen=True)
class CategoryMatch:
    category_id: str | None
    match_confidence: float
    category_name: str | None = None


NO_MATCH = CategoryMatch(category_id=None, match_confidence=0.0)


def _score(candidate: str, suggestion: str) -> float:
    if candidate in suggestion or suggestion in candidate:
        ratio = min(len(candidate), len(suggestion)) / max(len(candidate), len(suggestion))
        return 0.7 + 0.3 * ratio

    candidate_words = set(candidate.split())
    suggestion_words = set(suggestion.split())
    shared = candidate_words & suggestion_words
    if shared:
        return 0.5 + 0.4 * len(shared) / max(len(candidate_words), len(suggestion_words))
    return 0.0


def find_matching_category(
    suggested_name: str | None,
    categories: Sequence[Category],
    transaction_type: str = "expense",
) -> CategoryMatch:
    """
    Reconcile a free-text category name from the remote model with known categories.

    Exact case-insensitive name and type match scores 1.0, substring
    containment 0.7-1.0 by length ratio, shared words 0.5-0.9 by overlap
    ratio. Anything at or below 0.3 is not a match.
    """
    if not suggested_name or not suggested_name.strip() or not categories:
        return NO_MATCH

    clean = suggested_name.strip()
    suffix = _TYPE_SUFFIX.match(clean)
    if suffix:
        clean = suffix.group(1).strip()
        transaction_type = suffix.group(2).lower()
    suggestion = clean.lower()

    def type_fits(category: Category) -> bool:
        return category.type == transaction_type or transaction_type == "unknown"

    for category in categories:
        if category.name.strip().lower() == suggestion and type_fits(category):
            return CategoryMatch(category.id, 1.0, category.name)

    candidates = [c for c in categories if type_fits(c)] or list(categories)
    best: Category | None = None
    best_score = 0.0
    for category in candidates:
        score = _score(category.name.strip().lower(), suggestion)
        if score > best_score:
            best, best_score = category, score

    if best is None or best_score <= MIN_MATCH_SCORE:
        logger.debug("[MATCH] No category match for '%s'", suggested_name)
        return NO_MATCH
    logger.debug("[MATCH] '%s' -> %s (%.2f)", suggested_name, best.name, best_score)
    return CategoryMatch(best.id, best_score, best.name)
