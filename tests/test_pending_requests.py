from __future__ import annotations

from mcp_servers.agent_bridge.correlation import PendingRequestTracker


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_track_and_complete() -> None:
    tracker = PendingRequestTracker(clock=_Clock())
    rec = tracker.track("r-1", "https://app.com", 7)
    assert tracker.get("r-1") == rec
    assert rec.tab_id == 7
    assert tracker.complete("r-1") == rec
    assert tracker.complete("r-1") is None
    assert len(tracker) == 0


def test_stale_entries_are_pruned_on_insert() -> None:
    clock = _Clock()
    tracker = PendingRequestTracker(ttl_s=60, clock=clock)
    tracker.track("old", "https://app.com", 1)
    clock.now += 61
    tracker.track("new", "https://app.com", 2)
    assert tracker.get("old") is None
    assert tracker.get("new") is not None

    clock.now += 61
    assert tracker.prune() == 1
    assert len(tracker) == 0
