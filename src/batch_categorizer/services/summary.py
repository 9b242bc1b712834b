import asyncio
from collections import Counter
from collections.abc import Iterable, Sequence

from batch_categorizer.classifiers.llm import LLMClient
from batch_categorizer.core import settings
from batch_categorizer.domain.text import clamp_words, extract_common_words
from batch_categorizer.domain.timefmt import format_month_span, span_days
from batch_categorizer.errors import RemoteError, RemoteTimeoutError
from batch_categorizer.logger import get_logger
from batch_categorizer.models import BatchSummary, Statistics, Transaction
from batch_categorizer.services.statistics import aggregate_statistics

logger = get_logger(__name__)


def _money(value) -> str:
    return f"${value:,.2f}"


def _dominant_merchant(transactions: Sequence[Transaction]) -> str | None:
    merchants = Counter(
        t.merchant.strip() for t in transactions
        if isinstance(getattr(t, "merchant", None), str) and t.merchant.strip()
    )
    if not merchants:
        return None
    merchant, count = merchants.most_common(1)[0]
    return merchant if count > len(transactions) / 2 else None


def _merchant_insight(transactions: Sequence[Transaction]) -> str | None:
    merchants = Counter(
        t.merchant.strip() for t in transactions
        if isinstance(getattr(t, "merchant", None), str) and t.merchant.strip()
    )
    if not merchants:
        return None
    if len(merchants) == 1:
        return f"All merchant-tagged transactions are from {next(iter(merchants))}"
    top, count = merchants.most_common(1)[0]
    share = round(count / len(transactions) * 100)
    return f"{len(merchants)} merchants; {top} accounts for {count} of {len(transactions)} ({share}%)"


def _net_insight(stats: Statistics) -> str | None:
    if not stats.total_income and not stats.total_expense:
        return None
    if stats.net_direction == "positive":
        return f"Net positive of {_money(stats.net_amount)}"
    if stats.net_direction == "negative":
        return f"Net negative of {_money(abs(stats.net_amount))}"
    return "Income and expenses balance out"


def _type_insight(stats: Statistics) -> str | None:
    if stats.total_count == 0:
        return None
    if stats.income_count == stats.total_count:
        return f"All {stats.total_count} transactions are income ({_money(stats.total_income)})"
    if stats.expense_count == stats.total_count:
        return f"All {stats.total_count} transactions are expenses ({_money(stats.total_expense)})"
    return (
        f"{stats.income_count} income ({_money(stats.total_income)}) and "
        f"{stats.expense_count} expense ({_money(stats.total_expense)}) transactions"
    )


def _span_insight(stats: Statistics) -> str | None:
    days = span_days(stats.date_range.from_, stats.date_range.to)
    if days is None:
        return None
    unit = "day" if days == 1 else "days"
    return f"Spans {days} {unit} ({format_month_span(stats.date_range.from_, stats.date_range.to)})"


def _categorization_insight(stats: Statistics) -> str | None:
    categorization = stats.categorization
    if categorization.categorized_count == 0:
        return None
    considered = categorization.categorized_count + categorization.uncategorized_count
    return (
        f"{categorization.categorized_count} of {considered} transactions categorized "
        f"({categorization.percent}%)"
    )


def generate_local_summary(transactions: Iterable[Transaction]) -> BatchSummary:
    """
    Deterministic summary built from the batch itself.

    Title priority: a merchant covering more than half the batch, shared
    description keywords, the date range, then a plain count.
    """
    transactions = list(transactions)
    if not transactions:
        return BatchSummary(summary="Empty Batch", insights=["No transactions in this batch"])

    stats = aggregate_statistics(transactions)
    merchant = _dominant_merchant(transactions)
    keywords = extract_common_words(getattr(t, "description", None) for t in transactions)
    if merchant:
        summary = f"Transactions from {merchant}"
    elif keywords:
        summary = f"{' '.join(keywords)} Transactions"
    elif stats.date_range.from_ is not None:
        summary = f"Transactions from {stats.date_range.from_.isoformat()} to {stats.date_range.to.isoformat()}"
    else:
        summary = f"Batch of {len(transactions)} transactions"

    candidates = (
        _merchant_insight(transactions),
        _net_insight(stats),
        _type_insight(stats),
        _span_insight(stats),
        _categorization_insight(stats),
    )
    return BatchSummary(
        summary=clamp_words(summary),
        insights=[insight for insight in candidates if insight],
    )


class BatchSummarizer:
    def __init__(
        self,
        remote: LLMClient | None = None,
        timeout: float | None = None,
        forced_timeout: float | None = None,
    ):
        self.remote = remote
        self.timeout = settings.SUMMARY_TIMEOUT_SECONDS if timeout is None else timeout
        self.forced_timeout = settings.SUMMARY_FORCED_TIMEOUT_SECONDS if forced_timeout is None else forced_timeout

    def generate_local_summary(self, transactions: Iterable[Transaction]) -> BatchSummary:
        return generate_local_summary(transactions)

    async def summarize(
        self,
        transactions: Iterable[Transaction],
        *,
        force_remote: bool = False,
        timeout: float | None = None,
    ) -> BatchSummary:
        """
        Remote summary under a hard deadline, local summary otherwise.

        ``force_remote`` extends the deadline; it does not bypass an active
        rate-limit cooldown.
        """
        transactions = list(transactions)
        local = generate_local_summary(transactions)
        if not transactions:
            return local

        if self.remote is None or not self.remote.is_available():
            logger.debug("[SUMMARY] Remote summarizer not configured, using local summary")
            return local.model_copy(update={"error": True, "error_type": "api_not_configured"})
        if self.remote.is_rate_limited():
            logger.info("[SUMMARY] Remote summarizer rate limited, using local summary")
            return local.model_copy(update={"error": True, "error_type": "rate_limit"})

        deadline = timeout if timeout is not None else (self.forced_timeout if force_remote else self.timeout)
        try:
            remote = await asyncio.wait_for(
                self.remote.summarize_batch(transactions, timeout=deadline),
                timeout=deadline,
            )
        except (asyncio.TimeoutError, RemoteTimeoutError):
            logger.warning(f"[SUMMARY] Remote summary timed out after {deadline}s, using local summary")
            return local.model_copy(update={"timed_out": True, "error": True, "error_type": "timeout"})
        except RemoteError as e:
            logger.warning(f"[SUMMARY] Remote summary failed ({e.error_type}), using local summary")
            return local.model_copy(update={"error": True, "error_type": e.error_type})

        return BatchSummary(
            summary=clamp_words(remote.summary),
            insights=remote.insights or local.insights,
            source="openai",
        )
