import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable, Sequence
from time import perf_counter
from typing import Any

from batch_categorizer.classifiers.base import LocalClassifier
from batch_categorizer.classifiers.bayes import MIN_TRAINING_EXAMPLES
from batch_categorizer.domain.timefmt import format_duration
from batch_categorizer.logger import get_logger
from batch_categorizer.models import Category, Transaction

logger = get_logger(__name__)

HistoryProvider = Callable[[], Iterable[Transaction] | Awaitable[Iterable[Transaction]]]


class TrainingManager:
    """Feeds categorized history into the local classifier."""

    def __init__(
        self,
        classifier: LocalClassifier,
        history_provider: HistoryProvider,
        categories: Sequence[Category] | None = None,
        min_examples: int = MIN_TRAINING_EXAMPLES,
    ) -> None:
        self.classifier = classifier
        self.history_provider = history_provider
        self.categories = list(categories) if categories is not None else None
        self.min_examples = min_examples
        self.status: dict[str, Any] = {"stage": "idle"}
        self._lock = asyncio.Lock()

    def get_status(self) -> dict[str, Any]:
        return dict(self.status)

    async def _fetch_history(self) -> list[Transaction]:
        history = self.history_provider()
        if inspect.isawaitable(history):
            history = await history
        return list(history or [])

    async def train(self) -> dict[str, Any]:
        async with self._lock:
            return await self._train()

    async def _train(self) -> dict[str, Any]:
        logger.info("[TRAIN] Loading categorized history...")
        start = perf_counter()
        history = await self._fetch_history()
        known_ids = {c.id for c in self.categories} if self.categories is not None else None

        descriptions: list[str] = []
        labels: list[str] = []
        skipped_uncategorized = 0
        skipped_unknown = 0
        for transaction in history:
            if not transaction.category_id or not transaction.description.strip():
                skipped_uncategorized += 1
                continue
            if known_ids is not None and transaction.category_id not in known_ids:
                skipped_unknown += 1
                continue
            descriptions.append(transaction.description)
            labels.append(transaction.category_id)

        self.status = {
            "stage": "skipped",
            "examples": len(descriptions),
            "categories": len(set(labels)),
            "skipped_uncategorized": skipped_uncategorized,
            "skipped_unknown_category": skipped_unknown,
            "fetched": len(history),
        }
        if len(descriptions) < self.min_examples:
            logger.warning(
                "[TRAIN] Not enough categorized transactions to train (%s < %s)",
                len(descriptions),
                self.min_examples,
            )
            self.status["message"] = "Not enough categorized transactions"
            return self.get_status()

        await asyncio.to_thread(self.classifier.train, descriptions, labels)
        elapsed = perf_counter() - start
        self.status.update({
            "stage": "completed" if self.classifier.is_trained else "failed",
            "duration": format_duration(elapsed),
        })
        logger.info(
            "[TRAIN] Complete! Examples: %s, Categories: %s, Skipped (no category): %s, took %s",
            len(descriptions),
            len(set(labels)),
            skipped_uncategorized,
            format_duration(elapsed),
        )
        return self.get_status()

    def learn(self, transaction: Transaction) -> bool:
        """Teach the classifier a single confirmed categorization."""
        if not transaction.category_id or not transaction.description.strip():
            return False
        self.classifier.learn(transaction.description, transaction.category_id)
        logger.debug("[TRAIN] Learned '%s' -> %s", transaction.description, transaction.category_id)
        return True
