from collections.abc import Sequence
from dataclasses import dataclass

from rapidfuzz import fuzz, process

from batch_categorizer.domain.text import normalize
from batch_categorizer.models import Transaction

DEFAULT_SIMILARITY_THRESHOLD = 0.7


@dataclass(frozen=True)
class SimilarTransaction:
    transaction: Transaction
    similarity: float


def find_similar_transactions(
    transaction: Transaction,
    candidates: Sequence[Transaction],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    include_categorized: bool = False,
) -> list[SimilarTransaction]:
    """
    Rank candidates by description similarity to ``transaction``, best first.

    Used to offer the same category for look-alike transactions in one go.
    Only uncategorized candidates are considered unless ``include_categorized``.
    """
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"threshold must be between 0 and 1, got {threshold}")
    query = normalize(transaction.description)
    if not query:
        return []

    pool = [
        c for c in candidates
        if c.id != transaction.id and (include_categorized or not c.category_id)
    ]
    matches = process.extract(
        query,
        [c.description for c in pool],
        scorer=fuzz.token_sort_ratio,
        processor=normalize,
        score_cutoff=threshold * 100,
        limit=None,
    )
    return [
        SimilarTransaction(transaction=pool[index], similarity=round(score / 100, 4))
        for _, score, index in matches
    ]
