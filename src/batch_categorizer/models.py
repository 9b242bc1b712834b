import datetime as dt
from decimal import Decimal
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from batch_categorizer.domain.tags import normalize_tags

TransactionType = Literal["income", "expense"]
AccountKind = Literal["bank", "credit_card", "investment", "cash", "wallet", "other"]
EnrichmentStatus = Literal["pending", "enriched", "completed"]
NetDirection = Literal["positive", "negative", "neutral"]
SuggestionSource = Literal[
    "openai",
    "openai-cache",
    "bayes-classifier",
    "no-classifications",
    "error",
]
BatchSource = Literal[
    "merchant",
    "merchant_type",
    "merchant_type_date",
    "similar_description",
    "similar_description_date",
    "source_type",
    "source_type_date",
    "keywords",
    "date",
    "recovered",
]
ErrorType = Literal[
    "timeout",
    "rate_limit",
    "connection",
    "parse_error",
    "api_not_configured",
    "api_error",
]


def _new_id() -> str:
    return uuid4().hex


class Transaction(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_id)
    date: dt.date | None = None
    description: str = ""
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    type: TransactionType = "expense"
    merchant: str | None = None
    account: str | None = None
    account_type: AccountKind | None = None
    currency: str = "USD"
    source: str | None = None
    upload_id: str | None = None
    batch_id: str | None = None
    category_id: str | None = None
    suggested_category_id: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    needs_review: bool = False
    enrichment_status: EnrichmentStatus = "pending"

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: object) -> list[str]:
        return normalize_tags(value)


class Category(BaseModel):
    id: str
    name: str
    type: TransactionType = "expense"


class DateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: dt.date | None = Field(default=None, alias="from")
    to: dt.date | None = None


class Categorization(BaseModel):
    categorized_count: int = 0
    uncategorized_count: int = 0
    percent: int = 0


class Statistics(BaseModel):
    total_count: int = 0
    income_count: int = 0
    expense_count: int = 0
    total_income: Decimal = Decimal("0")
    total_expense: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    net_direction: NetDirection = "neutral"
    date_range: DateRange = Field(default_factory=DateRange)
    sources: list[str] = Field(default_factory=list)
    categorization: Categorization = Field(default_factory=Categorization)
    sampled: bool = False
    sample_size: int | None = None


class BatchMetadata(BaseModel):
    source: BatchSource
    type: TransactionType | None = None
    merchant: str | None = None
    keywords: list[str] = Field(default_factory=list)
    group_source: str | None = None
    period: str | None = None
    date_range: DateRange = Field(default_factory=DateRange)
    summary: str = ""
    part: int | None = None
    parts: int | None = None


class Batch(BaseModel):
    id: str = Field(default_factory=_new_id)
    transactions: list[Transaction] = Field(default_factory=list)
    title: str = ""
    summary: str | None = None
    insights: list[str] = Field(default_factory=list)
    metadata: BatchMetadata
    statistics: Statistics = Field(default_factory=Statistics)

    @property
    def transaction_ids(self) -> list[str]:
        return [transaction.id for transaction in self.transactions]


class BatchSummary(BaseModel):
    summary: str
    insights: list[str] = Field(default_factory=list)
    source: Literal["openai", "local"] = "local"
    timed_out: bool = False
    error: bool = False
    error_type: ErrorType | None = None


class CategorySuggestion(BaseModel):
    transaction_id: str | None = None
    category_id: str | None = None
    category_name: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    suggestion_source: SuggestionSource
    reasoning: str = ""
    needs_review: bool = True
    error_type: ErrorType | None = None


class SuggestionStats(BaseModel):
    total: int = 0
    automatic_count: int = 0
    manual_count: int = 0
    average_confidence: float = 0.0
    automatic_percent: int = 0
    by_source: dict[str, int] = Field(default_factory=dict)
    top_categories: list[str] = Field(default_factory=list)


class BatchSuggestionResult(BaseModel):
    automatic_suggestions: list[CategorySuggestion] = Field(default_factory=list)
    manual_review_needed: list[CategorySuggestion] = Field(default_factory=list)
    stats: SuggestionStats = Field(default_factory=SuggestionStats)

    @property
    def suggestions(self) -> list[CategorySuggestion]:
        return [*self.automatic_suggestions, *self.manual_review_needed]
