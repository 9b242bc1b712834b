from collections import Counter
from collections.abc import Sequence
from typing import Any

from batch_categorizer.classifiers.base import LocalClassifier, LocalPrediction
from batch_categorizer.classifiers.llm import LLMClient
from batch_categorizer.classifiers.matching import find_matching_category
from batch_categorizer.classifiers.responses import RemoteClassification
from batch_categorizer.core import settings
from batch_categorizer.errors import RemoteError
from batch_categorizer.logger import get_logger
from batch_categorizer.models import (
    BatchSuggestionResult,
    Category,
    CategorySuggestion,
    ErrorType,
    SuggestionStats,
    Transaction,
)
from batch_categorizer.services.training import TrainingManager

logger = get_logger(__name__)

TOP_CATEGORY_COUNT = 5


def _check_threshold(value: float) -> float:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"confidence_threshold must be between 0 and 1, got {value}")
    return value


class CategorySuggestionEngine:
    """
    Suggests a category per transaction.

    The remote classifier is asked first (its cache answers repeats even while
    the API is unavailable). When it cannot answer, the local classifier is
    used, training it on demand while it is untrained. A failing collaborator
    never raises out of here; the caller always gets a suggestion.
    """

    def __init__(
        self,
        local: LocalClassifier,
        remote: LLMClient | None = None,
        categories: Sequence[Category] = (),
        trainer: TrainingManager | None = None,
        confidence_threshold: float | None = None,
    ):
        self.local = local
        self.remote = remote
        self.categories = list(categories)
        self.trainer = trainer
        self.confidence_threshold = _check_threshold(
            settings.CONFIDENCE_THRESHOLD if confidence_threshold is None else confidence_threshold
        )

    def _threshold(self, value: float | None) -> float:
        return self.confidence_threshold if value is None else _check_threshold(value)

    def _category(self, category_id: str | None) -> Category | None:
        return next((c for c in self.categories if c.id == category_id), None)

    async def _remote_suggestion(
        self, description: str, amount: Any, tx_type: str
    ) -> tuple[RemoteClassification | None, ErrorType | None]:
        if self.remote is None:
            return None, "api_not_configured"
        try:
            result = await self.remote.classify(description, amount, tx_type, self.categories)
        except RemoteError as e:
            logger.info(f"[SUGGEST] Remote unavailable ({e.error_type}), falling back to local classifier")
            return None, e.error_type
        if not result.category_name:
            return None, "parse_error"
        return result, None

    def _from_remote(
        self,
        result: RemoteClassification,
        tx_type: str,
        threshold: float,
        transaction_id: str | None,
    ) -> CategorySuggestion:
        match = find_matching_category(result.category_name, self.categories, tx_type)
        if match.category_id is not None:
            confidence = 0.7 * result.confidence + 0.3 * match.match_confidence
        else:
            confidence = 0.5 * result.confidence
        confidence = round(min(max(confidence, 0.0), 1.0), 4)
        return CategorySuggestion(
            transaction_id=transaction_id,
            category_id=match.category_id,
            category_name=match.category_name or result.category_name,
            confidence=confidence,
            suggestion_source="openai-cache" if result.from_cache else "openai",
            reasoning=result.reasoning,
            needs_review=match.category_id is None or confidence < threshold,
        )

    def _classify_locally(self, description: str) -> LocalPrediction | None:
        try:
            return self.local.classify(description)
        except Exception as e:
            logger.error(f"[SUGGEST] Local classifier failed for '{description}': {e}")
            return None

    async def _train_on_demand(self) -> None:
        logger.info("[SUGGEST] Local classifier untrained, training on demand")
        try:
            await self.trainer.train()
        except Exception as e:
            logger.error(f"[SUGGEST] On-demand training failed: {e}")

    async def _local_suggestion(
        self,
        description: str,
        threshold: float,
        transaction_id: str | None,
        remote_error: ErrorType | None,
    ) -> CategorySuggestion:
        prediction = self._classify_locally(description)
        if prediction is None and not self.local.is_trained and self.trainer is not None:
            await self._train_on_demand()
            prediction = self._classify_locally(description)

        if prediction is None:
            return CategorySuggestion(
                transaction_id=transaction_id,
                confidence=0.0,
                suggestion_source="no-classifications",
                reasoning="No trained classifier available for this transaction",
                needs_review=True,
                error_type=remote_error,
            )

        category = self._category(prediction.label)
        confidence = round(min(max(prediction.score, 0.0), 1.0), 4)
        return CategorySuggestion(
            transaction_id=transaction_id,
            category_id=prediction.label,
            category_name=category.name if category else None,
            confidence=confidence,
            suggestion_source="bayes-classifier",
            reasoning="Matched against previously categorized transactions",
            needs_review=confidence < threshold,
            error_type=remote_error,
        )

    async def suggest_category(
        self,
        description: str,
        amount: Any = None,
        type: str = "expense",
        transaction_id: str | None = None,
        confidence_threshold: float | None = None,
    ) -> CategorySuggestion:
        threshold = self._threshold(confidence_threshold)
        if not description or not description.strip():
            raise ValueError("description must not be empty")

        result, remote_error = await self._remote_suggestion(description, amount, type)
        if result is not None:
            return self._from_remote(result, type, threshold, transaction_id)
        return await self._local_suggestion(description, threshold, transaction_id, remote_error)

    async def _remote_batch(self, transactions: Sequence[Transaction]) -> list[RemoteClassification | None]:
        results: list[RemoteClassification | None] = [None] * len(transactions)
        if self.remote is None:
            return results

        indexes = [
            i for i, t in enumerate(transactions)
            if isinstance(getattr(t, "description", None), str) and t.description.strip()
        ]
        if not indexes:
            return results
        try:
            batch = await self.remote.classify_batch([transactions[i] for i in indexes], self.categories)
        except RemoteError as e:
            logger.info(f"[SUGGEST] Batch classification unavailable ({e.error_type})")
            return results
        for index, result in zip(indexes, batch):
            results[index] = result
        return results

    async def suggest_for_batch(
        self,
        transactions: Sequence[Transaction],
        confidence_threshold: float | None = None,
    ) -> BatchSuggestionResult:
        threshold = self._threshold(confidence_threshold)
        remote_results = await self._remote_batch(transactions)

        suggestions: list[CategorySuggestion] = []
        for transaction, remote_result in zip(transactions, remote_results):
            transaction_id = getattr(transaction, "id", None)
            tx_type = getattr(transaction, "type", "expense")
            try:
                if remote_result is not None and remote_result.category_name:
                    suggestion = self._from_remote(remote_result, tx_type, threshold, transaction_id)
                else:
                    suggestion = await self.suggest_category(
                        transaction.description,
                        transaction.amount,
                        tx_type,
                        transaction_id=transaction_id,
                        confidence_threshold=threshold,
                    )
            except Exception as e:
                logger.error(f"[SUGGEST] Failed to categorize transaction {transaction_id}: {e}")
                suggestion = CategorySuggestion(
                    transaction_id=transaction_id,
                    confidence=0.0,
                    suggestion_source="error",
                    reasoning=f"Error during categorization: {e}",
                    needs_review=True,
                    error_type="api_error",
                )
            suggestions.append(suggestion)

        automatic = [s for s in suggestions if not s.needs_review]
        manual = [s for s in suggestions if s.needs_review]
        return BatchSuggestionResult(
            automatic_suggestions=automatic,
            manual_review_needed=manual,
            stats=self._stats(suggestions, automatic),
        )

    @staticmethod
    def _stats(
        suggestions: Sequence[CategorySuggestion],
        automatic: Sequence[CategorySuggestion],
    ) -> SuggestionStats:
        total = len(suggestions)
        if total == 0:
            return SuggestionStats()
        categories = Counter(s.category_name for s in suggestions if s.category_name)
        return SuggestionStats(
            total=total,
            automatic_count=len(automatic),
            manual_count=total - len(automatic),
            average_confidence=round(sum(s.confidence for s in suggestions) / total, 2),
            automatic_percent=round(len(automatic) / total * 100),
            by_source=dict(Counter(s.suggestion_source for s in suggestions)),
            top_categories=[name for name, _ in categories.most_common(TOP_CATEGORY_COUNT)],
        )

    def learn(self, transaction: Transaction) -> bool:
        if self.trainer is not None:
            return self.trainer.learn(transaction)
        if not transaction.category_id or not transaction.description.strip():
            return False
        self.local.learn(transaction.description, transaction.category_id)
        return True
