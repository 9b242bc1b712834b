from collections.abc import Callable
from time import monotonic

from batch_categorizer.logger import get_logger

logger = get_logger(__name__)


class RateLimitGuard:
    """Circuit breaker that refuses remote calls for a cooldown after a 429 or quota signal."""

    def __init__(self, cooldown_seconds: float = 60.0, clock: Callable[[], float] = monotonic) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._tripped_at: float | None = None
        self.trip_count = 0

    @property
    def tripped_at(self) -> float | None:
        return self._tripped_at

    def trip(self) -> None:
        self._tripped_at = self._clock()
        self.trip_count += 1
        logger.warning("[LLM] Rate limit signalled, pausing remote calls for %.0fs", self.cooldown_seconds)

    def is_limited(self) -> bool:
        if self._tripped_at is None:
            return False
        if self._clock() - self._tripped_at < self.cooldown_seconds:
            return True
        logger.info("[LLM] Rate limit cooldown elapsed, remote calls allowed again")
        self._tripped_at = None
        return False

    def remaining(self) -> float:
        if self._tripped_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._tripped_at))

    def reset(self) -> None:
        self._tripped_at = None
        self.trip_count = 0
