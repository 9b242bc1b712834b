import pytest

from batch_categorizer.classifiers.matching import find_matching_category
from batch_categorizer.models import Category


def test_exact_name_and_type_scores_full_confidence(categories: list[Category]) -> None:
    match = find_matching_category("groceries", categories, "expense")
    assert match.category_id == "cat-groceries"
    assert match.match_confidence == 1.0


def test_type_suffix_is_stripped(categories: list[Category]) -> None:
    match = find_matching_category("Salary (income)", categories, "expense")
    assert match.category_id == "cat-salary"
    assert match.match_confidence == 1.0


def test_substring_match_scales_with_length(categories: list[Category]) -> None:
    match = find_matching_category("Coffee", categories, "expense")
    assert match.category_id == "cat-coffee"
    assert match.match_confidence == pytest.approx(0.7 + 0.3 * len("coffee") / len("coffee shops"))


def test_word_overlap_match(categories: list[Category]) -> None:
    match = find_matching_category("Public Transport Fares", categories, "expense")
    # "transport" is a substring of the suggestion
    assert match.category_id == "cat-transport"

    overlap = find_matching_category("Shops Nearby", categories, "expense")
    assert overlap.category_id == "cat-coffee"
    assert overlap.match_confidence == pytest.approx(0.5 + 0.4 * 1 / 2)


def test_no_match_returns_zero(categories: list[Category]) -> None:
    match = find_matching_category("Veterinary", categories, "expense")
    assert match.category_id is None
    assert match.match_confidence == 0.0
    assert find_matching_category("", categories).category_id is None
    assert find_matching_category("Groceries", []).category_id is None
