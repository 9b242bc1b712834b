import datetime as dt
from collections.abc import Callable, Iterable, Sequence
from typing import Literal
from uuid import uuid4

from batch_categorizer.core import settings
from batch_categorizer.domain.text import clamp_words, extract_common_words
from batch_categorizer.domain.timefmt import format_month_span, parse_date, year_month
from batch_categorizer.logger import get_logger
from batch_categorizer.models import Batch, BatchMetadata, Transaction, TransactionType
from batch_categorizer.services.statistics import aggregate_statistics, date_range_of

logger = get_logger(__name__)

MIN_MERCHANT_GROUP = 3
KEYWORD_THRESHOLD = 0.4
TYPE_ORDER: tuple[TransactionType, ...] = ("income", "expense")

FallbackGrouping = Literal["date", "source"]


def type_label(tx_type: str | None) -> str:
    return "Income" if tx_type == "income" else "Expenses"


def _tx_type(transaction: Transaction) -> TransactionType:
    return "income" if transaction.type == "income" else "expense"


def _date_key(transaction: Transaction) -> tuple[bool, dt.date]:
    parsed = parse_date(transaction.date)
    return (parsed is None, parsed or dt.date.min)


def split_by_date(transactions: Sequence[Transaction], max_size: int) -> list[list[Transaction]]:
    """Chunk a group into at most ``max_size`` members, ordered by date (undated last)."""
    if len(transactions) <= max_size:
        return [list(transactions)]
    ordered = sorted(transactions, key=_date_key)
    return [ordered[i:i + max_size] for i in range(0, len(ordered), max_size)]


class BatchOrganizer:
    """
    Partition a flat transaction list into batches.

    Three passes run in order and each only sees what earlier passes left
    unclaimed: merchant grouping, shared-keyword grouping, and a fallback by
    month (or by ingestion source). Every input transaction lands in exactly
    one batch.
    """

    def __init__(
        self,
        max_batch_size: int | None = None,
        *,
        keyword_threshold: float = KEYWORD_THRESHOLD,
        min_merchant_group: int = MIN_MERCHANT_GROUP,
        fallback: FallbackGrouping = "date",
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.max_batch_size = max_batch_size or settings.MAX_BATCH_SIZE
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if fallback not in ("date", "source"):
            raise ValueError(f"Unknown fallback grouping: {fallback}")
        self.keyword_threshold = keyword_threshold
        self.min_merchant_group = min_merchant_group
        self.fallback = fallback
        self.id_factory = id_factory or (lambda: uuid4().hex)

    def organize(self, transactions: Iterable[Transaction]) -> list[Batch]:
        transactions = list(transactions)
        claimed: set[int] = set()

        batches = self._merchant_pass(transactions, claimed)
        merchant_count = len(batches)

        batches.extend(self._keyword_pass(transactions, claimed))
        keyword_count = len(batches) - merchant_count

        remaining = [t for t in transactions if id(t) not in claimed]
        if self.fallback == "source":
            batches.extend(self._source_pass(remaining))
        else:
            batches.extend(self._date_pass(remaining))

        logger.info(
            "[BATCH] Organized %s transactions into %s batches "
            "(merchant=%s, keywords=%s, fallback=%s)",
            len(transactions),
            len(batches),
            merchant_count,
            keyword_count,
            len(batches) - merchant_count - keyword_count,
        )
        return batches

    def rebatch(self, transactions: Iterable[Transaction]) -> list[Batch]:
        """Re-run organization with the tighter keyword re-batching bound."""
        organizer = BatchOrganizer(
            settings.REBATCH_MAX_BATCH_SIZE,
            keyword_threshold=self.keyword_threshold,
            min_merchant_group=self.min_merchant_group,
            fallback=self.fallback,
            id_factory=self.id_factory,
        )
        return organizer.organize(transactions)

    def _merchant_pass(self, transactions: list[Transaction], claimed: set[int]) -> list[Batch]:
        groups: dict[tuple[str, str], list[Transaction]] = {}
        for transaction in transactions:
            merchant = (transaction.merchant or "").strip()
            if not merchant:
                continue
            groups.setdefault((merchant, _tx_type(transaction)), []).append(transaction)

        batches: list[Batch] = []
        for (merchant, tx_type), group in groups.items():
            if len(group) < self.min_merchant_group:
                continue
            claimed.update(id(t) for t in group)
            title = f"{merchant} - {type_label(tx_type)}"
            chunks = split_by_date(group, self.max_batch_size)
            source = "merchant" if len(chunks) == 1 else "merchant_type_date"
            for index, chunk in enumerate(chunks, start=1):
                batches.append(self._build(
                    chunk,
                    title,
                    BatchMetadata(source=source, type=tx_type, merchant=merchant),
                    index,
                    len(chunks),
                ))
        return batches

    def _keyword_pass(self, transactions: list[Transaction], claimed: set[int]) -> list[Batch]:
        batches: list[Batch] = []
        for tx_type in TYPE_ORDER:
            bucket = [t for t in transactions if id(t) not in claimed and _tx_type(t) == tx_type]
            if not bucket:
                continue
            keywords = extract_common_words(
                [t.description for t in bucket],
                threshold=self.keyword_threshold,
            )
            if not keywords:
                continue
            claimed.update(id(t) for t in bucket)
            title = f"{' '.join(keywords)} - {type_label(tx_type)}"
            chunks = split_by_date(bucket, self.max_batch_size)
            for index, chunk in enumerate(chunks, start=1):
                batches.append(self._build(
                    chunk,
                    title,
                    BatchMetadata(source="keywords", type=tx_type, keywords=keywords),
                    index,
                    len(chunks),
                ))
        return batches

    def _date_pass(self, transactions: list[Transaction]) -> list[Batch]:
        groups: dict[tuple[str, str | None], list[Transaction]] = {}
        for transaction in transactions:
            key = (_tx_type(transaction), year_month(parse_date(transaction.date)))
            groups.setdefault(key, []).append(transaction)

        batches: list[Batch] = []
        for (tx_type, _period), group in groups.items():
            title = f"{type_label(tx_type)} Transactions"
            chunks = split_by_date(group, self.max_batch_size)
            for index, chunk in enumerate(chunks, start=1):
                batches.append(self._build(
                    chunk,
                    title,
                    BatchMetadata(source="date", type=tx_type),
                    index,
                    len(chunks),
                ))
        return batches

    def _source_pass(self, transactions: list[Transaction]) -> list[Batch]:
        groups: dict[str, list[Transaction]] = {}
        for transaction in transactions:
            groups.setdefault(transaction.source or "unknown", []).append(transaction)

        batches: list[Batch] = []
        for group_source, group in groups.items():
            if len(group) <= self.max_batch_size:
                types = {_tx_type(t) for t in group}
                tx_type = types.pop() if len(types) == 1 else None
                title = f"{group_source} {tx_type or 'mixed'} transactions"
                batches.append(self._build(
                    group,
                    title,
                    BatchMetadata(source="source_type", type=tx_type, group_source=group_source),
                ))
                continue

            for tx_type in TYPE_ORDER:
                typed = [t for t in group if _tx_type(t) == tx_type]
                if not typed:
                    continue
                title = f"{group_source} {tx_type} transactions"
                chunks = split_by_date(typed, self.max_batch_size)
                source = "source_type" if len(chunks) == 1 else "source_type_date"
                for index, chunk in enumerate(chunks, start=1):
                    batches.append(self._build(
                        chunk,
                        title,
                        BatchMetadata(source=source, type=tx_type, group_source=group_source),
                        index,
                        len(chunks),
                    ))
        return batches

    def _build(
        self,
        members: list[Transaction],
        title: str,
        metadata: BatchMetadata,
        part: int = 1,
        parts: int = 1,
    ) -> Batch:
        title = clamp_words(title)
        date_range = date_range_of(members)
        metadata.date_range = date_range
        metadata.summary = title
        if metadata.period is None and date_range.from_ is not None:
            metadata.period = format_month_span(date_range.from_, date_range.to)
        if parts > 1:
            metadata.part = part
            metadata.parts = parts
        return Batch(
            id=self.id_factory(),
            transactions=members,
            title=title,
            metadata=metadata,
            statistics=aggregate_statistics(members),
        )


def organize_batches(
    transactions: Iterable[Transaction],
    max_batch_size: int | None = None,
) -> list[Batch]:
    return BatchOrganizer(max_batch_size).organize(transactions)
