import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, call

import httpx
import openai
import pytest

from batch_categorizer.classifiers.cache import ResponseCache
from batch_categorizer.classifiers.guard import RateLimitGuard
from batch_categorizer.classifiers.llm import LLMClient
from batch_categorizer.errors import (
    NotConfiguredError,
    RateLimitedError,
    RemoteAPIError,
    RemoteConnectionError,
    RemoteTimeoutError,
)
from conftest import make_tx

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def completion(content: str) -> MagicMock:
    mock_completion = MagicMock()
    mock_completion.choices[0].message.content = content
    return mock_completion


def classification(category: str = "Groceries", confidence: float = 0.9) -> MagicMock:
    return completion(json.dumps({"category": category, "confidence": confidence, "reasoning": "test"}))


def rate_limit_error(code: str | None = None) -> openai.RateLimitError:
    body = {"message": "Rate limit reached", "code": code} if code else None
    return openai.RateLimitError("Rate limit reached", response=httpx.Response(429, request=REQUEST), body=body)


def server_error() -> openai.InternalServerError:
    return openai.InternalServerError("Server error", response=httpx.Response(500, request=REQUEST), body=None)


def bad_request() -> openai.BadRequestError:
    return openai.BadRequestError("Bad request", response=httpx.Response(400, request=REQUEST), body=None)


@pytest.fixture
def mock_client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=classification())
    return client


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def llm(mock_client: MagicMock, sleep: AsyncMock) -> LLMClient:
    return LLMClient(
        client=mock_client,
        model="gpt-test",
        cache=ResponseCache(),
        guard=RateLimitGuard(cooldown_seconds=60),
        simulate_failure=False,
        sleep=sleep,
    )


@pytest.mark.anyio
async def test_classify_parses_and_caches(llm: LLMClient, mock_client: MagicMock) -> None:
    first = await llm.classify("Whole Foods", 52.3, "expense")
    second = await llm.classify("WHOLE FOODS!", "52.30", "expense")

    assert first.category_name == "Groceries"
    assert first.from_cache is False
    assert second.category_name == "Groceries"
    assert second.from_cache is True
    mock_client.chat.completions.create.assert_awaited_once()
    kwargs = mock_client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "gpt-test"
    assert kwargs["response_format"] == {"type": "json_object"}
    assert llm.get_metrics()["cache_hits"] == 1


@pytest.mark.anyio
async def test_category_options_are_filtered_by_type(llm: LLMClient, mock_client: MagicMock, categories) -> None:
    await llm.classify("Whole Foods", 10, "expense", categories)

    system = mock_client.chat.completions.create.await_args.kwargs["messages"][0]["content"]
    assert "- Groceries (expense)" in system
    assert "Salary" not in system


@pytest.mark.anyio
async def test_cache_answers_even_while_rate_limited(llm: LLMClient, mock_client: MagicMock) -> None:
    await llm.classify("Whole Foods", 10)
    llm.guard.trip()

    cached = await llm.classify("Whole Foods", 10)

    assert cached.from_cache is True
    with pytest.raises(RateLimitedError):
        await llm.classify("Something else", 10)
    assert mock_client.chat.completions.create.await_count == 1


@pytest.mark.anyio
async def test_rate_limit_trips_guard_without_retry(llm: LLMClient, mock_client: MagicMock, sleep: AsyncMock) -> None:
    mock_client.chat.completions.create.side_effect = rate_limit_error()

    with pytest.raises(RateLimitedError) as exc_info:
        await llm.classify("Whole Foods", 10)

    assert exc_info.value.quota_exceeded is False
    assert llm.is_rate_limited() is True
    sleep.assert_not_awaited()
    with pytest.raises(RateLimitedError):
        await llm.classify("Trader Joes", 10)
    assert mock_client.chat.completions.create.await_count == 1
    metrics = llm.get_metrics()
    assert metrics["rate_limit_errors"] == 1
    assert metrics["is_currently_rate_limited"] is True


@pytest.mark.anyio
async def test_quota_error_is_flagged(llm: LLMClient, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.side_effect = rate_limit_error("insufficient_quota")

    with pytest.raises(RateLimitedError) as exc_info:
        await llm.classify("Whole Foods", 10)

    assert exc_info.value.quota_exceeded is True


@pytest.mark.anyio
async def test_transient_errors_are_retried_with_backoff(
    llm: LLMClient, mock_client: MagicMock, sleep: AsyncMock
) -> None:
    mock_client.chat.completions.create.side_effect = [
        openai.APITimeoutError(request=REQUEST),
        server_error(),
        classification("Dining"),
    ]

    result = await llm.classify("Chipotle", 12)

    assert result.category_name == "Dining"
    assert sleep.await_args_list == [call(1.0), call(2.0)]
    metrics = llm.get_metrics()
    assert metrics["retries"] == 2
    assert metrics["timeout_errors"] == 1
    assert metrics["successful_calls"] == 1
    assert metrics["api_calls"] == 3


@pytest.mark.anyio
async def test_retries_stop_after_three(llm: LLMClient, mock_client: MagicMock, sleep: AsyncMock) -> None:
    mock_client.chat.completions.create.side_effect = openai.APIConnectionError(request=REQUEST)

    with pytest.raises(RemoteConnectionError):
        await llm.classify("Chipotle", 12)

    assert mock_client.chat.completions.create.await_count == 4
    assert sleep.await_args_list == [call(1.0), call(2.0), call(4.0)]
    metrics = llm.get_metrics()
    assert metrics["connection_errors"] == 4
    assert metrics["errors"] == 1
    assert metrics["last_error"]


@pytest.mark.anyio
async def test_client_errors_are_not_retried(llm: LLMClient, mock_client: MagicMock, sleep: AsyncMock) -> None:
    mock_client.chat.completions.create.side_effect = bad_request()

    with pytest.raises(RemoteAPIError) as exc_info:
        await llm.classify("Chipotle", 12)

    assert exc_info.value.status_code == 400
    sleep.assert_not_awaited()


@pytest.mark.anyio
async def test_request_deadline(mock_client: MagicMock) -> None:
    async def hang(**kwargs):
        await asyncio.sleep(5)

    mock_client.chat.completions.create.side_effect = hang
    llm = LLMClient(client=mock_client, request_timeout=0.01, max_retries=0, simulate_failure=False)

    with pytest.raises(RemoteTimeoutError):
        await llm.classify("Slow Merchant", 1)
    assert llm.get_metrics()["timeout_errors"] == 1


@pytest.mark.anyio
async def test_unstructured_reply_counts_as_parse_failure(llm: LLMClient, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = completion("Groceries")

    result = await llm.classify("Whole Foods", 10)

    assert result.category_name == "Groceries"
    assert result.confidence == pytest.approx(0.3)
    assert llm.get_metrics()["parse_failed"] == 1


@pytest.mark.anyio
async def test_unconfigured_or_simulated_failure_is_unavailable(monkeypatch, mock_client: MagicMock) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    unconfigured = LLMClient(simulate_failure=False)
    simulated = LLMClient(client=mock_client, simulate_failure=True)

    assert unconfigured.is_available() is False
    assert simulated.is_available() is False
    with pytest.raises(NotConfiguredError):
        await simulated.classify("Whole Foods", 10)
    mock_client.chat.completions.create.assert_not_awaited()


@pytest.mark.anyio
async def test_classify_batch_chunks_by_ten(llm: LLMClient, mock_client: MagicMock) -> None:
    transactions = [make_tx(f"Merchant {i}", i + 1) for i in range(12)]
    mock_client.chat.completions.create.side_effect = [
        completion(json.dumps({"results": [
            {"transactionIndex": i, "category": f"Cat {i}", "confidence": 0.8} for i in range(10)
        ]})),
        completion(json.dumps({"category0": "Cat 10", "confidence0": 0.6})),
    ]

    results = await llm.classify_batch(transactions)

    assert mock_client.chat.completions.create.await_count == 2
    assert [r.category_name if r else None for r in results] == [f"Cat {i}" for i in range(11)] + [None]
    assert llm.get_metrics()["batch_requests"] == 2
    cached = await llm.classify("Merchant 3", 4)
    assert cached.category_name == "Cat 3"
    assert cached.from_cache is True


@pytest.mark.anyio
async def test_failed_chunk_leaves_entries_empty(llm: LLMClient, mock_client: MagicMock) -> None:
    transactions = [make_tx("Coffee"), make_tx("Tea")]
    mock_client.chat.completions.create.side_effect = bad_request()

    results = await llm.classify_batch(transactions)

    assert results == [None, None]


@pytest.mark.anyio
async def test_summarize_batch(llm: LLMClient, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = completion(
        json.dumps({"summary": "Weekly coffee runs", "insights": ["Mostly Starbucks"]})
    )

    summary = await llm.summarize_batch([make_tx("Latte", merchant="Starbucks")], timeout=5)

    assert summary.summary == "Weekly coffee runs"
    assert summary.insights == ["Mostly Starbucks"]
    user_prompt = mock_client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
    assert "Merchant: Starbucks" in user_prompt


@pytest.mark.anyio
async def test_reset_metrics_keeps_cooldown_and_clear_cache(llm: LLMClient) -> None:
    await llm.classify("Whole Foods", 10)
    llm.guard.trip()

    llm.reset_metrics()
    assert llm.get_metrics()["api_calls"] == 0
    assert llm.is_rate_limited() is True

    assert llm.clear_cache() == 1
    assert llm.get_metrics()["cache_size"] == 0

    status = llm.get_status()
    assert status["available"] is True
    assert status["rate_limited"] is True
    assert status["ready_for_use"] is False


@pytest.mark.anyio
async def test_unusable_replies_are_not_cached(llm: LLMClient, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = completion("Groceries")
    await llm.classify("Whole Foods", 10)
    await llm.classify("Whole Foods", 10)

    mock_client.chat.completions.create.return_value = completion(json.dumps({"confidence": 0.8}))
    await llm.classify("Corner shop", 10)
    nameless = await llm.classify("Corner shop", 10)

    assert nameless.from_cache is False
    assert mock_client.chat.completions.create.await_count == 4
    assert llm.get_metrics()["cache_size"] == 0


@pytest.mark.anyio
async def test_cache_hit_rate_after_metrics_reset(llm: LLMClient, mock_client: MagicMock) -> None:
    await llm.classify("Whole Foods", 10)
    llm.reset_metrics()

    await llm.classify("Whole Foods", 10)

    metrics = llm.get_metrics()
    assert metrics["api_calls"] == 0
    assert metrics["cache_hits"] == 1
    assert metrics["cache_hit_rate"] == 100
