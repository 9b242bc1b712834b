import asyncio
import dataclasses
import os
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from time import time
from typing import Any

import openai
from openai import AsyncOpenAI

from batch_categorizer.core import settings
from batch_categorizer.errors import (
    NotConfiguredError,
    RateLimitedError,
    RemoteAPIError,
    RemoteConnectionError,
    RemoteError,
    RemoteTimeoutError,
    ResponseParseError,
)
from batch_categorizer.logger import get_logger
from batch_categorizer.models import Category, Transaction

from .cache import ResponseCache, make_cache_key
from .guard import RateLimitGuard
from .responses import (
    RemoteClassification,
    RemoteSummary,
    parse_batch_classifications,
    parse_classification,
    parse_summary,
)

logger = get_logger(__name__)

BATCH_CHUNK_SIZE = 10
SUMMARY_SAMPLE_SIZE = 15
MAX_RETRIES = 3

CLASSIFY_INSTRUCTIONS = (
    "Respond with a JSON object containing:\n"
    "1. category: The suggested category name\n"
    "2. confidence: Your confidence score (0.0-1.0) in this categorization\n"
    "3. reasoning: Brief explanation for why this category fits"
)
BATCH_INSTRUCTIONS = (
    'Respond with a JSON object with a "results" array where each element corresponds '
    "to a transaction and contains:\n"
    "1. transactionIndex: The index of the transaction (starting at 0)\n"
    "2. category: The suggested category name\n"
    "3. confidence: Your confidence score (0.0-1.0) in this categorization\n"
    "4. reasoning: Brief explanation for why this category fits"
)
SUMMARY_INSTRUCTIONS = (
    "You are a financial analyst assistant. Your task is to analyze transaction data and "
    "provide a concise, informative summary. Focus on identifying patterns, dominant "
    "merchants, time periods, and any notable insights.\n\n"
    "Your summary MUST be NO LONGER THAN 8 WORDS.\n\n"
    "Respond with a JSON object containing:\n"
    "1. summary: Your 8-words-or-less summary\n"
    "2. insights: Array of brief insights"
)


@dataclass
class LLMMetrics:
    api_calls: int = 0
    cache_hits: int = 0
    batch_requests: int = 0
    errors: int = 0
    rate_limit_errors: int = 0
    retries: int = 0
    timeout_errors: int = 0
    connection_errors: int = 0
    parse_failed: int = 0
    successful_calls: int = 0
    last_error: str | None = None
    last_error_time: float | None = None
    start_time: float = field(default_factory=time)


def _category_options(categories: Sequence[Category], tx_type: str | None = None) -> str:
    return "\n".join(
        f"- {category.name} ({category.type})"
        for category in categories
        if tx_type is None or category.type == tx_type or tx_type == "unknown"
    )


def _format_amount(amount: Any) -> str:
    if amount is None:
        return "an unknown amount"
    try:
        return f"${abs(Decimal(str(amount))):.2f}"
    except ArithmeticError:
        return f"${amount}"


def _is_quota_error(exc: openai.APIStatusError) -> bool:
    code = getattr(exc, "code", None)
    if code == "insufficient_quota":
        return True
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and error.get("code") == "insufficient_quota":
            return True
    return "insufficient_quota" in str(exc) or "exceeded your current quota" in str(exc)


def translate_error(exc: BaseException) -> RemoteError:
    """Map transport and SDK failures onto the package's error taxonomy."""
    if isinstance(exc, RemoteError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, openai.APITimeoutError)):
        return RemoteTimeoutError("Remote request timed out")
    if isinstance(exc, openai.APIConnectionError):
        return RemoteConnectionError(f"Connection to remote API failed: {exc}")
    if isinstance(exc, openai.RateLimitError):
        return RateLimitedError(str(exc), quota_exceeded=_is_quota_error(exc))
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 429:
            return RateLimitedError(str(exc), quota_exceeded=_is_quota_error(exc))
        return RemoteAPIError(str(exc), status_code=exc.status_code)
    return RemoteAPIError(str(exc))


class LLMClient:
    """
    Remote categorizer and summarizer backed by an OpenAI-compatible chat API.

    Cache, rate-limit guard and metrics are plain instances so that several
    clients (or tests) never share state by accident.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        *,
        client: Any | None = None,
        cache: ResponseCache[RemoteClassification] | None = None,
        guard: RateLimitGuard | None = None,
        metrics: LLMMetrics | None = None,
        request_timeout: float | None = None,
        max_retries: int = MAX_RETRIES,
        retry_base_delay: float = 1.0,
        simulate_failure: bool | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if client is None and api_key:
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url or os.getenv("OPENAI_BASE_URL") or None,
                max_retries=0,
            )
        self.client = client
        self.model = model or settings.OPENAI_MODEL
        self.cache = cache if cache is not None else ResponseCache(
            max_size=settings.CACHE_SIZE_LIMIT,
            ttl_seconds=settings.CACHE_TTL_SECONDS,
        )
        self.guard = guard or RateLimitGuard(cooldown_seconds=settings.RATE_LIMIT_COOLDOWN_SECONDS)
        self.metrics = metrics or LLMMetrics()
        self.request_timeout = request_timeout if request_timeout is not None else settings.CLASSIFY_TIMEOUT_SECONDS
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.simulate_failure = settings.SIMULATE_OPENAI_FAILURE if simulate_failure is None else simulate_failure
        self._sleep = sleep

        if self.simulate_failure:
            logger.warning("[LLM] Simulating remote API failure, remote calls disabled")
        elif self.client is None:
            logger.warning("[LLM] OPENAI_API_KEY not found. Remote classification disabled.")
        else:
            logger.info(f"[LLM] Remote classifier enabled: model={self.model}")

    def is_configured(self) -> bool:
        return self.client is not None

    def is_rate_limited(self) -> bool:
        return self.guard.is_limited()

    def is_available(self) -> bool:
        return self.is_configured() and not self.simulate_failure

    def _ensure_callable(self) -> None:
        if not self.is_available():
            raise NotConfiguredError("Remote API not configured")
        if self.guard.is_limited():
            raise RateLimitedError(
                f"Remote API rate limited for another {self.guard.remaining():.0f}s"
            )

    def _record_failure(self, error: RemoteError) -> None:
        self.metrics.errors += 1
        self.metrics.last_error = str(error)
        self.metrics.last_error_time = time()

    async def _complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        timeout: float | None,
    ) -> str:
        self.metrics.api_calls += 1
        response = await asyncio.wait_for(
            self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            ),
            timeout=timeout,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ResponseParseError("Empty response from remote API")
        return content

    async def _call_with_retry(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        timeout: float | None = None,
        retries: int | None = None,
    ) -> str:
        """
        Send one request, retrying transient failures with exponential backoff.

        Rate-limit and quota responses are never retried: they trip the guard
        and propagate as ``RateLimitedError``.
        """
        self._ensure_callable()
        retries = self.max_retries if retries is None else retries
        timeout = self.request_timeout if timeout is None else timeout
        attempt = 0
        while True:
            try:
                content = await self._complete(
                    messages, temperature=temperature, max_tokens=max_tokens, timeout=timeout
                )
            except (asyncio.TimeoutError, openai.OpenAIError, RemoteError) as exc:
                error = translate_error(exc)
                if isinstance(error, RemoteTimeoutError):
                    self.metrics.timeout_errors += 1
                elif isinstance(error, RemoteConnectionError):
                    self.metrics.connection_errors += 1

                if isinstance(error, RateLimitedError):
                    self.metrics.rate_limit_errors += 1
                    self._record_failure(error)
                    self.guard.trip()
                    if error.quota_exceeded:
                        logger.error("[LLM] Remote API quota exceeded")
                    raise error from exc

                if error.retryable and attempt < retries:
                    attempt += 1
                    self.metrics.retries += 1
                    delay = self.retry_base_delay * 2 ** (attempt - 1)
                    logger.warning(
                        f"[LLM] {error.error_type} on attempt {attempt}, retrying in {delay:.1f}s"
                    )
                    await self._sleep(delay)
                    continue

                self._record_failure(error)
                logger.error(f"[LLM] Request failed ({error.error_type}): {error}")
                if error is exc:
                    raise
                raise error from exc

            self.metrics.successful_calls += 1
            return content

    async def classify(
        self,
        description: str,
        amount: Any = None,
        tx_type: str = "expense",
        categories: Sequence[Category] = (),
    ) -> RemoteClassification:
        key = make_cache_key(description, amount, tx_type)
        cached = self.cache.get(key)
        if cached is not None:
            self.metrics.cache_hits += 1
            logger.debug(f"[LLM] Cache hit for '{description}'")
            return dataclasses.replace(cached, from_cache=True)

        system = "You are a financial transaction categorizer. Analyze the transaction and provide a category."
        options = _category_options(categories, tx_type)
        if options:
            system += (
                f"\n\nPlease categorize into one of these existing categories:\n{options}"
                "\n\nIf none fit well, suggest a new category name."
            )
        system += f"\n\n{CLASSIFY_INSTRUCTIONS}"

        logger.debug(f"[LLM] Categorizing '{description}' for {_format_amount(amount)} ({tx_type})")
        content = await self._call_with_retry(
            [
                {"role": "system", "content": system},
                {
                    "role": "user",
                    "content": f'Categorize this {tx_type} transaction: "{description}" for {_format_amount(amount)}',
                },
            ],
            temperature=0.2,
            max_tokens=300,
        )
        result = parse_classification(content)
        if result.parse_failed:
            self.metrics.parse_failed += 1
            logger.warning(f"[LLM] Unstructured response for '{description}', using first line")
        elif result.category_name:
            self.cache.set(key, result)
        return result

    async def classify_batch(
        self,
        transactions: Sequence[Transaction],
        categories: Sequence[Category] = (),
    ) -> list[RemoteClassification | None]:
        """
        Classify many transactions with one request per chunk of ten.

        The result is aligned with ``transactions``. Entries stay ``None`` when
        their chunk failed or the reply skipped them; callers handle those one
        by one.
        """
        results: list[RemoteClassification | None] = [None] * len(transactions)
        pending: list[int] = []
        for index, transaction in enumerate(transactions):
            cached = self.cache.get(make_cache_key(transaction.description, transaction.amount, transaction.type))
            if cached is not None:
                self.metrics.cache_hits += 1
                results[index] = dataclasses.replace(cached, from_cache=True)
            else:
                pending.append(index)

        if not pending:
            return results
        self._ensure_callable()

        system = "You are a financial transaction categorizer. Analyze each transaction and provide a category."
        options = _category_options(categories)
        if options:
            system += (
                f"\n\nPlease categorize each transaction into one of these existing categories:\n{options}"
                "\n\nIf none fit well, suggest a new category name."
            )
        system += f"\n\n{BATCH_INSTRUCTIONS}"

        chunks = [pending[i:i + BATCH_CHUNK_SIZE] for i in range(0, len(pending), BATCH_CHUNK_SIZE)]
        for number, chunk in enumerate(chunks, start=1):
            if self.guard.is_limited():
                logger.warning(f"[LLM] Rate limited, skipping remaining {len(chunks) - number + 1} chunks")
                break
            logger.info(f"[LLM] Processing batch chunk {number}/{len(chunks)}")
            lines = "\n".join(
                f'Transaction {position}: "{transactions[index].description}" for '
                f"{_format_amount(transactions[index].amount)} ({transactions[index].type})"
                for position, index in enumerate(chunk)
            )
            self.metrics.batch_requests += 1
            try:
                content = await self._call_with_retry(
                    [
                        {"role": "system", "content": system},
                        {"role": "user", "content": f"Please categorize these transactions:\n\n{lines}"},
                    ],
                    temperature=0.3,
                    max_tokens=1000,
                )
                parsed = parse_batch_classifications(content, len(chunk))
            except ResponseParseError as e:
                self.metrics.parse_failed += 1
                logger.warning(f"[LLM] Could not parse batch chunk {number}: {e}")
                continue
            except RemoteError as e:
                logger.warning(f"[LLM] Batch chunk {number} failed ({e.error_type}), leaving it to single requests")
                continue

            for position, index in enumerate(chunk):
                result = parsed.get(position)
                if result is None or not result.category_name:
                    continue
                transaction = transactions[index]
                if not result.parse_failed:
                    self.cache.set(make_cache_key(transaction.description, transaction.amount, transaction.type), result)
                results[index] = result
        return results

    async def summarize_batch(
        self, transactions: Sequence[Transaction], *, timeout: float | None = None
    ) -> RemoteSummary:
        """One summary request, bounded by ``timeout`` and never retried."""
        sample = transactions[:SUMMARY_SAMPLE_SIZE]
        lines = "\n".join(
            f'Transaction {i}: "{t.description}" for {_format_amount(t.amount)} ({t.type})'
            + (f" - Merchant: {t.merchant}" if t.merchant else "")
            for i, t in enumerate(sample, start=1)
        )
        if len(transactions) > SUMMARY_SAMPLE_SIZE:
            lines += f"\n(Showing {SUMMARY_SAMPLE_SIZE} of {len(transactions)} total transactions)"
        dates = sorted(t.date for t in transactions if t.date is not None)
        date_line = f"Date range: {dates[0]} to {dates[-1]}" if dates else "Date range: Unknown"
        total = sum((t.amount for t in transactions), Decimal("0"))

        content = await self._call_with_retry(
            [
                {"role": "system", "content": SUMMARY_INSTRUCTIONS},
                {
                    "role": "user",
                    "content": (
                        "Please analyze these transactions and provide a summary and key insights "
                        f"as a JSON object:\n\n{lines}\n\n{date_line}\n"
                        f"Total amount: ${total:.2f}\nTotal transactions: {len(transactions)}"
                    ),
                },
            ],
            temperature=0.3,
            max_tokens=400,
            timeout=timeout,
            retries=0,
        )
        summary = parse_summary(content)
        if summary.parse_failed:
            self.metrics.parse_failed += 1
        return summary

    def get_metrics(self) -> dict[str, Any]:
        snapshot = dataclasses.asdict(self.metrics)
        runtime = time() - self.metrics.start_time
        lookups = self.metrics.api_calls + self.metrics.cache_hits
        snapshot.update(
            runtime_seconds=round(runtime, 1),
            runtime_minutes=round(runtime / 60, 1),
            cache_size=len(self.cache),
            cache_hit_rate=round(self.metrics.cache_hits / lookups * 100) if lookups else 0,
            is_currently_rate_limited=self.guard.is_limited(),
        )
        return snapshot

    def reset_metrics(self) -> None:
        """Zero the counters; an active rate-limit cooldown keeps running."""
        self.metrics = LLMMetrics()
        logger.info("[LLM] Metrics reset")

    def clear_cache(self) -> int:
        size = len(self.cache)
        self.cache.clear()
        logger.info(f"[LLM] Cleared {size} cached responses")
        return size

    def get_status(self) -> dict[str, Any]:
        available = self.is_available()
        rate_limited = self.guard.is_limited()
        last_error = None
        if self.metrics.last_error:
            last_error = {
                "time": self.metrics.last_error_time,
                "message": self.metrics.last_error,
                "seconds_ago": round(time() - self.metrics.last_error_time)
                if self.metrics.last_error_time else None,
            }
        return {
            "available": available,
            "client_configured": self.is_configured(),
            "simulating_failure": self.simulate_failure,
            "rate_limited": rate_limited,
            "cooldown_remaining": round(self.guard.remaining(), 1),
            "ready_for_use": available and not rate_limited,
            "metrics": self.get_metrics(),
            "last_error": last_error,
        }
