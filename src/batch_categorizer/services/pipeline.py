import os
from collections.abc import Iterable, Sequence

from batch_categorizer.classifiers.bayes import BayesClassifier
from batch_categorizer.classifiers.llm import LLMClient
from batch_categorizer.core import settings
from batch_categorizer.domain.transactions import apply_suggestion
from batch_categorizer.logger import get_logger
from batch_categorizer.manager import CategorySuggestionEngine
from batch_categorizer.models import Batch, Category, Transaction
from batch_categorizer.services.batching import BatchOrganizer
from batch_categorizer.services.statistics import aggregate_statistics
from batch_categorizer.services.summary import BatchSummarizer
from batch_categorizer.services.training import HistoryProvider, TrainingManager

logger = get_logger(__name__)

MODEL_FILENAME = "bayes_model.pkl"


class BatchPipeline:
    def __init__(
        self,
        organizer: BatchOrganizer,
        summarizer: BatchSummarizer,
        engine: CategorySuggestionEngine,
        *,
        auto_apply: bool = True,
    ) -> None:
        self.organizer = organizer
        self.summarizer = summarizer
        self.engine = engine
        self.auto_apply = auto_apply

    async def process(self, transactions: Iterable[Transaction]) -> list[Batch]:
        """Organize, summarize and categorize one upload."""
        batches = self.organizer.organize(transactions)
        for number, batch in enumerate(batches, start=1):
            logger.info("[PIPELINE] Batch %s/%s: %s (%s transactions)",
                        number, len(batches), batch.title, len(batch.transactions))
            for transaction in batch.transactions:
                transaction.batch_id = batch.id

            summary = await self.summarizer.summarize(batch.transactions)
            batch.summary = summary.summary
            batch.insights = summary.insights

            result = await self.engine.suggest_for_batch(batch.transactions)
            by_id = {s.transaction_id: s for s in result.suggestions}
            for transaction in batch.transactions:
                suggestion = by_id.get(transaction.id)
                if suggestion is not None:
                    apply_suggestion(
                        transaction,
                        suggestion,
                        auto_apply=self.auto_apply,
                        threshold=self.engine.confidence_threshold,
                    )
            batch.statistics = aggregate_statistics(batch.transactions)
        return batches


def build_pipeline(
    categories: Sequence[Category] = (),
    history_provider: HistoryProvider | None = None,
    *,
    auto_apply: bool = True,
) -> BatchPipeline:
    """Wire the default components from settings."""
    local = BayesClassifier(data_path=os.path.join(settings.DATA_DIR, MODEL_FILENAME))
    remote = LLMClient()
    trainer = TrainingManager(local, history_provider, categories) if history_provider else None
    engine = CategorySuggestionEngine(local, remote, categories, trainer)
    return BatchPipeline(
        BatchOrganizer(),
        BatchSummarizer(remote),
        engine,
        auto_apply=auto_apply,
    )
