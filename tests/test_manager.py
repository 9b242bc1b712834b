import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from batch_categorizer.classifiers.bayes import BayesClassifier
from batch_categorizer.classifiers.llm import LLMClient
from batch_categorizer.manager import CategorySuggestionEngine
from batch_categorizer.models import Category, Transaction
from batch_categorizer.services.training import TrainingManager
from conftest import make_tx

HISTORY = [
    ("Whole Foods Market", "cat-groceries"),
    ("Safeway groceries", "cat-groceries"),
    ("Trader Joes groceries", "cat-groceries"),
    ("Uber trip downtown", "cat-transport"),
    ("Lyft ride airport", "cat-transport"),
    ("Uber trip airport", "cat-transport"),
]


def completion(payload) -> MagicMock:
    mock_completion = MagicMock()
    mock_completion.choices[0].message.content = json.dumps(payload)
    return mock_completion


def history() -> list[Transaction]:
    return [make_tx(description, category_id=category_id) for description, category_id in HISTORY]


@pytest.fixture
def mock_client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=completion({"category": "Groceries", "confidence": 0.9, "reasoning": "Supermarket"})
    )
    return client


@pytest.fixture
def remote(mock_client: MagicMock) -> LLMClient:
    return LLMClient(client=mock_client, simulate_failure=False, sleep=AsyncMock())


@pytest.fixture
def trained_local() -> BayesClassifier:
    local = BayesClassifier()
    descriptions, labels = zip(*HISTORY)
    local.train(descriptions, labels)
    return local


@pytest.mark.anyio
async def test_failing_remote_never_yields_remote_suggestions(
    mock_client: MagicMock, trained_local: BayesClassifier, categories: list[Category]
) -> None:
    failing = LLMClient(client=mock_client, simulate_failure=True)
    untrained_engine = CategorySuggestionEngine(BayesClassifier(), failing, categories)
    trained_engine = CategorySuggestionEngine(trained_local, failing, categories)

    for description in ("Uber trip", "Safeway", "Completely unknown thing"):
        untrained = await untrained_engine.suggest_category(description, 10)
        trained = await trained_engine.suggest_category(description, 10)
        assert untrained.suggestion_source == "no-classifications"
        assert untrained.error_type == "api_not_configured"
        assert trained.suggestion_source == "bayes-classifier"

    mock_client.chat.completions.create.assert_not_awaited()


@pytest.mark.anyio
async def test_remote_suggestion_blends_match_quality(
    remote: LLMClient, categories: list[Category]
) -> None:
    engine = CategorySuggestionEngine(BayesClassifier(), remote, categories, confidence_threshold=0.7)

    suggestion = await engine.suggest_category("Whole Foods", 52.3, transaction_id="t1")

    assert suggestion.suggestion_source == "openai"
    assert suggestion.category_id == "cat-groceries"
    assert suggestion.category_name == "Groceries"
    assert suggestion.confidence == pytest.approx(0.7 * 0.9 + 0.3 * 1.0)
    assert suggestion.needs_review is False
    assert suggestion.transaction_id == "t1"


@pytest.mark.anyio
async def test_unmatched_remote_name_halves_confidence(
    remote: LLMClient, mock_client: MagicMock, categories: list[Category]
) -> None:
    mock_client.chat.completions.create.return_value = completion({"category": "Veterinary", "confidence": 0.8})
    engine = CategorySuggestionEngine(BayesClassifier(), remote, categories)

    suggestion = await engine.suggest_category("City Vet Clinic", 80)

    assert suggestion.category_id is None
    assert suggestion.category_name == "Veterinary"
    assert suggestion.confidence == pytest.approx(0.4)
    assert suggestion.needs_review is True


@pytest.mark.anyio
async def test_repeat_request_is_served_from_cache(
    remote: LLMClient, mock_client: MagicMock, categories: list[Category]
) -> None:
    engine = CategorySuggestionEngine(BayesClassifier(), remote, categories)

    first = await engine.suggest_category("Whole Foods", 52.3)
    second = await engine.suggest_category("whole foods", "52.30")

    assert first.suggestion_source == "openai"
    assert second.suggestion_source == "openai-cache"
    assert second.category_id == first.category_id
    mock_client.chat.completions.create.assert_awaited_once()


@pytest.mark.anyio
async def test_untrained_local_classifier_trains_on_demand(categories: list[Category]) -> None:
    local = BayesClassifier()
    provider = MagicMock(return_value=history())
    trainer = TrainingManager(local, provider, categories=categories)
    engine = CategorySuggestionEngine(local, None, categories, trainer=trainer)

    suggestion = await engine.suggest_category("Uber trip home", 15)

    assert suggestion.suggestion_source == "bayes-classifier"
    assert suggestion.category_id == "cat-transport"
    assert suggestion.category_name == "Transport"
    provider.assert_called_once()


@pytest.mark.anyio
async def test_training_is_retried_after_history_grows(categories: list[Category]) -> None:
    local = BayesClassifier()
    records: list[Transaction] = []
    provider = MagicMock(side_effect=lambda: list(records))
    engine = CategorySuggestionEngine(local, None, categories, trainer=TrainingManager(local, provider))

    first = await engine.suggest_category("Uber trip", 10)
    records.extend(history())
    second = await engine.suggest_category("Uber trip", 10)

    assert first.suggestion_source == "no-classifications"
    assert second.suggestion_source == "bayes-classifier"
    assert second.category_id == "cat-transport"
    assert provider.call_count == 2


@pytest.mark.anyio
async def test_failing_history_provider_yields_no_classifications(categories: list[Category]) -> None:
    local = BayesClassifier()
    provider = MagicMock(side_effect=RuntimeError("db down"))
    engine = CategorySuggestionEngine(local, None, categories, trainer=TrainingManager(local, provider))

    suggestion = await engine.suggest_category("Uber trip", 10)

    assert suggestion.suggestion_source == "no-classifications"
    assert suggestion.confidence == 0.0
    assert suggestion.needs_review is True
    assert suggestion.error_type == "api_not_configured"
    provider.assert_called_once()


@pytest.mark.anyio
async def test_failing_local_classifier_yields_no_classifications(
    trained_local: BayesClassifier, categories: list[Category]
) -> None:
    engine = CategorySuggestionEngine(trained_local, None, categories)

    with patch.object(trained_local, "classify", side_effect=RuntimeError("model corrupted")):
        suggestion = await engine.suggest_category("Uber trip", 10)

    assert suggestion.suggestion_source == "no-classifications"
    assert suggestion.needs_review is True


@pytest.mark.anyio
async def test_invalid_input_raises(trained_local: BayesClassifier) -> None:
    engine = CategorySuggestionEngine(trained_local)

    with pytest.raises(ValueError):
        await engine.suggest_category("   ", 10)
    with pytest.raises(ValueError):
        await engine.suggest_category("Uber", 10, confidence_threshold=1.5)
    with pytest.raises(ValueError):
        CategorySuggestionEngine(trained_local, confidence_threshold=-0.1)


@pytest.mark.anyio
async def test_batch_uses_one_request_per_chunk(
    remote: LLMClient, mock_client: MagicMock, categories: list[Category]
) -> None:
    mock_client.chat.completions.create.return_value = completion({"results": [
        {"transactionIndex": 0, "category": "Groceries", "confidence": 0.95},
        {"transactionIndex": 1, "category": "Transport", "confidence": 0.9},
        {"transactionIndex": 2, "category": "Mystery", "confidence": 0.4},
    ]})
    engine = CategorySuggestionEngine(BayesClassifier(), remote, categories)
    transactions = [make_tx("Whole Foods"), make_tx("Uber trip"), make_tx("Odd charge")]

    result = await engine.suggest_for_batch(transactions, confidence_threshold=0.7)

    mock_client.chat.completions.create.assert_awaited_once()
    assert [s.transaction_id for s in result.automatic_suggestions] == [transactions[0].id, transactions[1].id]
    assert [s.transaction_id for s in result.manual_review_needed] == [transactions[2].id]
    assert result.stats.total == 3
    assert result.stats.automatic_count == 2
    assert result.stats.automatic_percent == 67
    assert result.stats.by_source == {"openai": 3}
    assert result.stats.top_categories == ["Groceries", "Transport", "Mystery"]


@pytest.mark.anyio
async def test_batch_failures_stay_isolated(trained_local: BayesClassifier, categories: list[Category]) -> None:
    engine = CategorySuggestionEngine(trained_local, None, categories)
    broken = Transaction.model_construct(id="broken", description=None, amount=None, type="expense")
    transactions = [make_tx("Uber trip downtown"), broken, make_tx("Safeway groceries")]

    result = await engine.suggest_for_batch(transactions)

    by_id = {s.transaction_id: s for s in result.suggestions}
    assert by_id["broken"].suggestion_source == "error"
    assert by_id["broken"].confidence == 0.0
    assert by_id["broken"].error_type == "api_error"
    assert by_id[transactions[0].id].suggestion_source == "bayes-classifier"
    assert by_id[transactions[2].id].suggestion_source == "bayes-classifier"
    assert result.stats.by_source["error"] == 1


@pytest.mark.anyio
async def test_rate_limited_batch_falls_back_to_local(
    remote: LLMClient, mock_client: MagicMock, trained_local: BayesClassifier, categories: list[Category]
) -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    mock_client.chat.completions.create.side_effect = openai.RateLimitError(
        "Rate limit reached", response=httpx.Response(429, request=request), body=None
    )
    engine = CategorySuggestionEngine(trained_local, remote, categories)

    result = await engine.suggest_for_batch([make_tx("Uber trip"), make_tx("Safeway")])

    assert {s.suggestion_source for s in result.suggestions} == {"bayes-classifier"}
    assert {s.error_type for s in result.suggestions} == {"rate_limit"}
    mock_client.chat.completions.create.assert_awaited_once()


def test_learn_forwards_to_local_classifier(trained_local: BayesClassifier) -> None:
    engine = CategorySuggestionEngine(trained_local)
    examples = len(trained_local.examples)

    assert engine.learn(make_tx("Costco bulk", category_id="cat-groceries")) is True
    assert engine.learn(make_tx("Unlabelled")) is False
    assert len(trained_local.examples) == examples + 1
