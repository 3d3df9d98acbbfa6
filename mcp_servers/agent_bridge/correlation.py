from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_PENDING_TTL_S = 60 * 60


@dataclass(frozen=True, slots=True)
class PendingRequest:
    request_id: str
    origin: str
    timestamp: float
    tab_id: int


class PendingRequestTracker:
    """Remembers which origin/tab an outstanding request id belongs to.

    Entries older than `ttl_s` are pruned on every insert.
    """

    def __init__(self, *, ttl_s: float = DEFAULT_PENDING_TTL_S, clock: Callable[[], float] = time.time) -> None:
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._pending: dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def track(self, request_id: str, origin: str, tab_id: int) -> PendingRequest:
        now = self._clock()
        rec = PendingRequest(request_id=request_id, origin=origin, timestamp=now, tab_id=tab_id)
        self._pending[request_id] = rec
        self.prune(now)
        return rec

    def get(self, request_id: str) -> PendingRequest | None:
        return self._pending.get(request_id)

    def complete(self, request_id: str) -> PendingRequest | None:
        return self._pending.pop(request_id, None)

    def prune(self, now: float | None = None) -> int:
        cutoff = (self._clock() if now is None else now) - self.ttl_s
        stale = [rid for rid, rec in self._pending.items() if rec.timestamp < cutoff]
        for rid in stale:
            del self._pending[rid]
        return len(stale)

    def reset(self) -> None:
        self._pending.clear()
