"""
Adapters that turn the remote model's JSON replies into one internal shape.

Batch replies have come back in three layouts over time: a bare array, an
object wrapping the array (``{"results": [...]}``), and flattened indexed
fields (``category0``, ``confidence0``, ...). Each layout has its own adapter;
callers only ever see ``RemoteClassification`` and ``RemoteSummary``.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any

from batch_categorizer.errors import ResponseParseError

DEFAULT_CONFIDENCE = 0.5
PARSE_FAILURE_CONFIDENCE = 0.3
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


@dataclass(frozen=True)
class RemoteClassification:
    category_name: str | None
    confidence: float
    reasoning: str = "No reasoning provided"
    category_id: str | None = None
    match_confidence: float | None = None
    from_cache: bool = False
    parse_failed: bool = False


@dataclass(frozen=True)
class RemoteSummary:
    summary: str
    insights: list[str] = field(default_factory=list)
    parse_failed: bool = False


def parse_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if confidence != confidence:  # NaN
        return DEFAULT_CONFIDENCE
    if 1.0 < confidence <= 100.0:
        confidence /= 100.0
    return min(max(confidence, 0.0), 1.0)


def _load_json(text: str) -> Any:
    cleaned = _FENCE.sub("", text.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ResponseParseError(f"Invalid JSON in model response: {exc}") from exc


def _clean_name(value: Any) -> str | None:
    if value is None:
        return None
    name = str(value).strip()
    return name or None


def _from_item(item: dict[str, Any]) -> RemoteClassification:
    return RemoteClassification(
        category_name=_clean_name(item.get("category") or item.get("categoryName")),
        confidence=parse_confidence(item.get("confidence")),
        reasoning=str(item.get("reasoning") or "No reasoning provided"),
    )


def parse_classification(text: str) -> RemoteClassification:
    """Parse a single-transaction reply; unparseable text degrades to a low-confidence guess."""
    try:
        payload = _load_json(text)
    except ResponseParseError:
        first_line = text.strip().splitlines()[0] if text.strip() else None
        return RemoteClassification(
            category_name=_clean_name(first_line),
            confidence=PARSE_FAILURE_CONFIDENCE,
            reasoning="Error parsing structured response",
            parse_failed=True,
        )
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        payload = payload[0]
    if not isinstance(payload, dict):
        raise ResponseParseError(f"Unexpected classification payload: {type(payload).__name__}")
    return _from_item(payload)


def _indexed_items(items: list[Any], size: int) -> dict[int, RemoteClassification]:
    results: dict[int, RemoteClassification] = {}
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        index = item.get("transactionIndex", item.get("index", position))
        try:
            index = int(index)
        except (TypeError, ValueError):
            continue
        if 0 <= index < size:
            results[index] = _from_item(item)
    return results


def from_array(payload: list[Any], size: int) -> dict[int, RemoteClassification]:
    return _indexed_items(payload, size)


def from_wrapped_array(payload: dict[str, Any], size: int) -> dict[int, RemoteClassification] | None:
    wrapped = payload.get("results")
    if not isinstance(wrapped, list):
        wrapped = next((value for value in payload.values() if isinstance(value, list)), None)
    if wrapped is None:
        return None
    return _indexed_items(wrapped, size)


def from_flattened_fields(payload: dict[str, Any], size: int) -> dict[int, RemoteClassification]:
    results: dict[int, RemoteClassification] = {}
    for index in range(size):
        name = _clean_name(payload.get(f"category{index}"))
        if not name:
            continue
        results[index] = RemoteClassification(
            category_name=name,
            confidence=parse_confidence(payload.get(f"confidence{index}")),
            reasoning=str(payload.get(f"reasoning{index}") or "No reasoning provided"),
        )
    return results


def parse_batch_classifications(text: str, size: int) -> dict[int, RemoteClassification]:
    """Map transaction index -> classification for a chunk of ``size`` transactions."""
    payload = _load_json(text)
    if isinstance(payload, list):
        return from_array(payload, size)
    if not isinstance(payload, dict):
        raise ResponseParseError(f"Unexpected batch payload: {type(payload).__name__}")
    wrapped = from_wrapped_array(payload, size)
    if wrapped is not None:
        return wrapped
    return from_flattened_fields(payload, size)


def parse_summary(text: str) -> RemoteSummary:
    try:
        payload = _load_json(text)
    except ResponseParseError:
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        return RemoteSummary(
            summary=lines[0] if lines else "Transaction Batch",
            insights=lines[1:] or ["No additional insights available."],
            parse_failed=True,
        )
    if not isinstance(payload, dict):
        raise ResponseParseError(f"Unexpected summary payload: {type(payload).__name__}")

    insights = payload.get("insights")
    if isinstance(insights, list):
        insight_list = [str(item).strip() for item in insights if str(item).strip()]
    elif insights:
        insight_list = [str(insights).strip()]
    else:
        insight_list = []
    summary = str(payload.get("summary") or "").strip() or "Transaction Batch"
    return RemoteSummary(summary=summary, insights=insight_list)
