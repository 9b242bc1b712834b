import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from batch_categorizer.core import settings
from batch_categorizer.domain.timefmt import parse_date
from batch_categorizer.logger import get_logger
from batch_categorizer.models import AccountKind, CategorySuggestion, Transaction, TransactionType

logger = get_logger(__name__)

_COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("date", "transactiondate", "posteddate", "postingdate", "bookingdate"),
    "description": ("description", "memo", "details", "narrative", "name", "payeedescription"),
    "amount": ("amount", "value", "transactionamount"),
    "debit": ("debit", "withdrawal", "moneyout"),
    "credit": ("credit", "deposit", "moneyin"),
    "merchant": ("merchant", "payee", "counterparty", "vendor"),
    "account": ("account", "accountname"),
    "account_type": ("accounttype",),
    "currency": ("currency", "currencycode"),
    "type": ("type", "transactiontype", "direction"),
    "tags": ("tags", "labels"),
}

_INCOME_TYPES = {"income", "credit", "deposit", "cr", "in"}
_EXPENSE_TYPES = {"expense", "debit", "withdrawal", "payment", "dr", "out", "purchase"}

_ACCOUNT_KINDS: dict[str, AccountKind] = {
    "bank": "bank",
    "checking": "bank",
    "current": "bank",
    "savings": "bank",
    "credit_card": "credit_card",
    "credit": "credit_card",
    "card": "credit_card",
    "investment": "investment",
    "brokerage": "investment",
    "cash": "cash",
    "wallet": "wallet",
    "paypal": "wallet",
    "venmo": "wallet",
}

_CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY", "₹": "INR"}
_AMOUNT_NOISE = re.compile(r"[^\d.\-+]")


@dataclass(frozen=True)
class RecordError:
    row: int
    message: str


def _column_key(name: Any) -> str:
    return re.sub(r"[\s_\-]", "", str(name)).lower()


def _pick(row: Mapping[str, Any], field: str) -> Any:
    keyed = {_column_key(k): v for k, v in row.items()}
    for alias in _COLUMN_ALIASES[field]:
        value = keyed.get(alias)
        if value is not None and str(value).strip() != "":
            return value
    return None


def parse_amount(value: Any) -> tuple[Decimal, str | None]:
    """Signed amount plus the currency implied by a symbol, if any."""
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return Decimal(str(value)), None

    raw = str(value).strip()
    currency = next((code for symbol, code in _CURRENCY_SYMBOLS.items() if symbol in raw), None)
    negative = raw.startswith("(") and raw.endswith(")")
    cleaned = _AMOUNT_NOISE.sub("", raw)
    if cleaned.endswith("-"):
        negative = True
        cleaned = cleaned[:-1]
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return (-amount if negative else amount), currency


def account_kind(value: Any) -> AccountKind | None:
    if value is None or not str(value).strip():
        return None
    key = re.sub(r"[\s\-]+", "_", str(value).strip().lower())
    return _ACCOUNT_KINDS.get(key, _ACCOUNT_KINDS.get(key.split("_")[0], "other"))


def _explicit_type(value: Any) -> TransactionType | None:
    if value is None:
        return None
    label = str(value).strip().lower()
    if label in _INCOME_TYPES:
        return "income"
    if label in _EXPENSE_TYPES:
        return "expense"
    return None


def parse_transaction_record(
    row: Mapping[str, Any],
    source: str = "csv",
    upload_id: str | None = None,
) -> Transaction:
    """
    Build a Transaction from one uploaded row.

    The sign of the amount decides income or expense unless the row carries an
    explicit type; the stored amount is always absolute. Dates that cannot be
    parsed become None rather than rejecting the row.
    """
    description = str(_pick(row, "description") or "").strip()
    if not description:
        raise ValueError("Missing description")

    currency = None
    raw_amount = _pick(row, "amount")
    if raw_amount is not None:
        amount, currency = parse_amount(raw_amount)
    else:
        debit, credit = _pick(row, "debit"), _pick(row, "credit")
        if debit is None and credit is None:
            raise ValueError("Missing amount")
        if debit is not None:
            amount, currency = parse_amount(debit)
            amount = -abs(amount)
        else:
            amount, currency = parse_amount(credit)
            amount = abs(amount)

    tx_type = _explicit_type(_pick(row, "type")) or ("income" if amount > 0 else "expense")

    raw_date = _pick(row, "date")
    date_value = parse_date(raw_date)
    if raw_date is not None and date_value is None:
        logger.warning("[INGEST] Unparseable date %r for '%s'", raw_date, description)

    merchant = _pick(row, "merchant")
    account = _pick(row, "account")
    return Transaction(
        date=date_value,
        description=description,
        amount=abs(amount),
        type=tx_type,
        merchant=str(merchant).strip() if merchant is not None else None,
        account=str(account).strip() if account is not None else None,
        account_type=account_kind(_pick(row, "account_type")),
        currency=str(_pick(row, "currency") or currency or "USD").strip().upper(),
        source=source,
        upload_id=upload_id,
        tags=_pick(row, "tags"),
    )


def parse_transaction_records(
    rows: Iterable[Mapping[str, Any]],
    source: str = "csv",
    upload_id: str | None = None,
) -> tuple[list[Transaction], list[RecordError]]:
    transactions: list[Transaction] = []
    errors: list[RecordError] = []
    for index, row in enumerate(rows, start=1):
        try:
            transactions.append(parse_transaction_record(row, source=source, upload_id=upload_id))
        except ValueError as e:
            logger.warning("[INGEST] Skipping row %s: %s", index, e)
            errors.append(RecordError(row=index, message=str(e)))
    logger.info("[INGEST] Parsed %s transactions, %s rows rejected", len(transactions), len(errors))
    return transactions, errors


def apply_suggestion(
    transaction: Transaction,
    suggestion: CategorySuggestion,
    *,
    auto_apply: bool = True,
    threshold: float | None = None,
) -> Transaction:
    """Record a suggestion on the transaction, assigning the category when confident enough."""
    threshold = settings.CONFIDENCE_THRESHOLD if threshold is None else threshold
    transaction.suggested_category_id = suggestion.category_id
    transaction.confidence = suggestion.confidence
    confident = suggestion.category_id is not None and suggestion.confidence >= threshold
    if auto_apply and confident:
        transaction.category_id = suggestion.category_id
        transaction.needs_review = False
        transaction.enrichment_status = "completed"
    else:
        transaction.needs_review = True
        transaction.enrichment_status = "enriched"
    return transaction
