import math
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from time import monotonic
from typing import Generic, TypeVar

from batch_categorizer.domain.text import normalize

V = TypeVar("V")


def make_cache_key(description: str | None, amount: object, tx_type: str | None) -> str:
    if amount is None:
        amount_part = "none"
    else:
        try:
            amount_part = f"{abs(Decimal(str(amount))):.2f}"
        except InvalidOperation:
            amount_part = str(amount).lower()
    return f"{normalize(description)}_{amount_part}_{(tx_type or 'expense').lower()}"


@dataclass
class _Entry(Generic[V]):
    value: V
    stored_at: float


class ResponseCache(Generic[V]):
    """
    Bounded TTL cache for remote responses.

    When full, the oldest ``evict_fraction`` of the capacity is dropped before
    inserting.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 24 * 60 * 60,
        evict_fraction: float = 0.1,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.evict_fraction = evict_fraction
        self._clock = clock
        self._entries: dict[str, _Entry[V]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            to_remove = max(1, math.ceil(self.max_size * self.evict_fraction))
            for old_key in list(self._entries)[:to_remove]:
                del self._entries[old_key]
        self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()
