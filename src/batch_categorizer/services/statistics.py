import datetime as dt
from collections.abc import Iterable, Sequence
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from batch_categorizer.core import settings
from batch_categorizer.domain.timefmt import parse_date
from batch_categorizer.logger import get_logger
from batch_categorizer.models import (
    Batch,
    Categorization,
    DateRange,
    Statistics,
    Transaction,
)

logger = get_logger(__name__)

ZERO = Decimal("0")


def coerce_amount(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return abs(amount)


def _percent(part: int, whole: int) -> int:
    if not whole:
        return 0
    return int((Decimal(part * 100) / Decimal(whole)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _net(total_income: Decimal, total_expense: Decimal) -> tuple[Decimal, str]:
    difference = total_income - total_expense
    if difference > 0:
        return difference, "positive"
    if difference < 0:
        return -difference, "negative"
    return ZERO, "neutral"


def _breakdown(transactions: Sequence[Transaction]) -> tuple[list[str], Categorization]:
    sources: list[str] = []
    categorized = 0
    for transaction in transactions:
        source = getattr(transaction, "source", None)
        if source and source not in sources:
            sources.append(source)
        if getattr(transaction, "category_id", None):
            categorized += 1
    return sources, Categorization(
        categorized_count=categorized,
        uncategorized_count=len(transactions) - categorized,
        percent=_percent(categorized, len(transactions)),
    )


def aggregate_statistics(
    transactions: Iterable[Transaction],
    sample_threshold: int | None = None,
) -> Statistics:
    """
    Summarize a group of transactions.

    Money totals and the date range are always computed over every record.
    Above ``sample_threshold`` records the source list and the categorization
    breakdown come from the first ``sample_threshold`` records only, and the
    result is flagged as sampled.

    A record with an unusable amount or date only loses that field's
    contribution; the rest of the record and the other records still count.
    """
    transactions = list(transactions)
    threshold = sample_threshold if sample_threshold is not None else settings.STATS_SAMPLE_THRESHOLD
    if threshold < 1:
        raise ValueError("sample_threshold must be positive")

    total_income = ZERO
    total_expense = ZERO
    income_count = 0
    expense_count = 0
    earliest: dt.date | None = None
    latest: dt.date | None = None

    for transaction in transactions:
        is_income = getattr(transaction, "type", None) == "income"
        if is_income:
            income_count += 1
        else:
            expense_count += 1

        amount = coerce_amount(getattr(transaction, "amount", None))
        if amount is None:
            logger.debug("[STATS] Skipping unusable amount on transaction %s", getattr(transaction, "id", "?"))
        elif is_income:
            total_income += amount
        else:
            total_expense += amount

        tx_date = parse_date(getattr(transaction, "date", None))
        if tx_date is None:
            continue
        if earliest is None or tx_date < earliest:
            earliest = tx_date
        if latest is None or tx_date > latest:
            latest = tx_date

    sampled = len(transactions) > threshold
    sample = transactions[:threshold] if sampled else transactions
    sources, categorization = _breakdown(sample)
    if sampled:
        logger.debug(
            "[STATS] Sampled breakdown from %s of %s transactions",
            len(sample),
            len(transactions),
        )

    net_amount, net_direction = _net(total_income, total_expense)
    return Statistics(
        total_count=len(transactions),
        income_count=income_count,
        expense_count=expense_count,
        total_income=total_income,
        total_expense=total_expense,
        net_amount=net_amount,
        net_direction=net_direction,
        date_range=DateRange(from_=earliest, to=latest),
        sources=sources,
        categorization=categorization,
        sampled=sampled,
        sample_size=len(sample) if sampled else None,
    )


def date_range_of(transactions: Iterable[Transaction]) -> DateRange:
    dates = [d for d in (parse_date(getattr(t, "date", None)) for t in transactions) if d is not None]
    if not dates:
        return DateRange()
    return DateRange(from_=min(dates), to=max(dates))


def calculate_total_statistics(batches: Iterable[Batch], sample_threshold: int | None = None) -> Statistics:
    return aggregate_statistics(
        (transaction for batch in batches for transaction in batch.transactions),
        sample_threshold=sample_threshold,
    )
