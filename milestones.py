from __future__ import annotations

import threading
from typing import Callable, Optional

from errors import MissingMilestone
from profiler import RequestOutcome


class MilestoneTracker:
    """Keeps the request outcome with the smallest value of one timing field.

    ``update`` may be called from any number of worker coroutines or threads.
    A candidate is published only when it is strictly earlier than the
    current best, so the retained value never moves forward in time.
    """

    def __init__(self, name: str, key: Callable[[RequestOutcome], int]) -> None:
        self.name = name
        self._key = key
        self._best: Optional[RequestOutcome] = None
        self._lock = threading.Lock()

    def update(self, candidate: RequestOutcome) -> bool:
        candidate_key = self._key(candidate)
        current = self._best
        # Lock-free rejection when a better value is already published.
        if current is not None and self._key(current) <= candidate_key:
            return False
        with self._lock:
            current = self._best
            if current is None or candidate_key < self._key(current):
                self._best = candidate
                return True
            return False

    def peek(self) -> Optional[RequestOutcome]:
        return self._best

    @property
    def value(self) -> RequestOutcome:
        best = self._best
        if best is None:
            raise MissingMilestone(f"No frame request succeeded; {self.name} is undefined")
        return best


def first_response_tracker() -> MilestoneTracker:
    return MilestoneTracker("first byte received", key=lambda outcome: outcome.response_time)


def first_frame_tracker() -> MilestoneTracker:
    return MilestoneTracker("first frame read", key=lambda outcome: outcome.end_time)


class IterationMilestones:
    """The two milestone trackers of one iteration."""

    def __init__(self) -> None:
        self.first_response = first_response_tracker()
        self.first_frame = first_frame_tracker()

    def offer(self, outcome: RequestOutcome) -> None:
        self.first_response.update(outcome)
        self.first_frame.update(outcome)
