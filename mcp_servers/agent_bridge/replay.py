from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable

from .errors import MissingNonce, ReplayDetected

DEFAULT_NONCE_CACHE_SIZE = 10_000


class ReplayGuard:
    """Single-use nonce tracker.

    Eviction is insertion-order FIFO once the cache exceeds `max_entries`, so this
    bounds memory without being a true replay window: an old nonce that has not
    been evicted yet is still rejected, and one that has been evicted could be
    accepted again. `max_age_s > 0` additionally drops entries older than that.
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_NONCE_CACHE_SIZE,
        max_age_s: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_entries = max(1, int(max_entries))
        self.max_age_s = max(0.0, float(max_age_s))
        self._clock = clock
        # nonce -> first-seen timestamp (seconds)
        self._used: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._used)

    def __contains__(self, nonce: object) -> bool:
        return nonce in self._used

    def consume(self, nonce: str | None) -> bool:
        if not isinstance(nonce, str) or not nonce:
            return False
        self._expire()
        if nonce in self._used:
            return False
        self._used[nonce] = self._clock()
        while len(self._used) > self.max_entries:
            self._used.popitem(last=False)
        return True

    def check(self, nonce: str | None) -> None:
        """Like consume(), but raises the matching rejection."""
        if not isinstance(nonce, str) or not nonce:
            raise MissingNonce("Missing nonce")
        if not self.consume(nonce):
            raise ReplayDetected("Invalid or reused nonce")

    def reset(self) -> None:
        self._used.clear()

    def _expire(self) -> None:
        if self.max_age_s <= 0:
            return
        cutoff = self._clock() - self.max_age_s
        while self._used:
            oldest, seen = next(iter(self._used.items()))
            if seen >= cutoff:
                break
            del self._used[oldest]
