import json

import pytest

from batch_categorizer.classifiers.responses import (
    parse_batch_classifications,
    parse_classification,
    parse_confidence,
    parse_summary,
)
from batch_categorizer.errors import ResponseParseError


def test_single_object_response() -> None:
    result = parse_classification(json.dumps({
        "category": "Groceries",
        "confidence": 0.92,
        "reasoning": "Supermarket purchase",
    }))
    assert result.category_name == "Groceries"
    assert result.confidence == pytest.approx(0.92)
    assert result.reasoning == "Supermarket purchase"
    assert result.parse_failed is False


def test_fenced_json_is_accepted() -> None:
    result = parse_classification('```json\n{"category": "Dining", "confidence": 0.8}\n```')
    assert result.category_name == "Dining"


def test_unstructured_response_degrades_to_first_line() -> None:
    result = parse_classification("Groceries\nBecause it is a supermarket")
    assert result.category_name == "Groceries"
    assert result.confidence == pytest.approx(0.3)
    assert result.parse_failed is True


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 0.5), ("high", 0.5), ("0.75", 0.75), (85, 0.85), (-2, 0.0), (float("nan"), 0.5)],
)
def test_confidence_parsing(raw, expected) -> None:
    assert parse_confidence(raw) == pytest.approx(expected)


def test_batch_array_shape() -> None:
    payload = [
        {"transactionIndex": 1, "category": "Transport", "confidence": 0.7},
        {"transactionIndex": 0, "category": "Groceries", "confidence": 0.9},
    ]
    results = parse_batch_classifications(json.dumps(payload), 2)
    assert results[0].category_name == "Groceries"
    assert results[1].category_name == "Transport"


def test_batch_wrapped_shape_with_any_list_field() -> None:
    payload = {"categorizations": [{"category": "Coffee Shops"}, {"category": "Rent", "confidence": "bad"}]}
    results = parse_batch_classifications(json.dumps(payload), 2)
    assert results[0].category_name == "Coffee Shops"
    assert results[1].confidence == pytest.approx(0.5)


def test_batch_flattened_shape() -> None:
    payload = {
        "category0": "Groceries",
        "confidence0": 0.9,
        "reasoning0": "Food",
        "category2": "Salary",
    }
    results = parse_batch_classifications(json.dumps(payload), 3)
    assert set(results) == {0, 2}
    assert results[0].reasoning == "Food"
    assert results[2].confidence == pytest.approx(0.5)


def test_batch_indexes_outside_chunk_are_ignored() -> None:
    payload = {"results": [{"transactionIndex": 7, "category": "X"}]}
    assert parse_batch_classifications(json.dumps(payload), 2) == {}


def test_batch_invalid_json_raises() -> None:
    with pytest.raises(ResponseParseError):
        parse_batch_classifications("not json at all", 3)


def test_summary_string_insight_becomes_list() -> None:
    summary = parse_summary(json.dumps({"summary": "Coffee runs", "insights": "Mostly mornings"}))
    assert summary.summary == "Coffee runs"
    assert summary.insights == ["Mostly mornings"]


def test_summary_falls_back_to_lines() -> None:
    summary = parse_summary("Weekly groceries\nMostly Whole Foods\nSmall amounts")
    assert summary.parse_failed is True
    assert summary.summary == "Weekly groceries"
    assert summary.insights == ["Mostly Whole Foods", "Small amounts"]
