from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from errors import MissingMilestone
from profiler import RequestOutcome

# Bytes per millisecond to megabytes per second, kept as in the original reports.
TRANSFER_RATE_DIVISOR = 1048.576


def compute_transfer_rate(total_bytes_read: int, total_latency_ms: int) -> float:
    if total_latency_ms <= 0:
        return 0.0
    return float(total_bytes_read) / float(total_latency_ms) / TRANSFER_RATE_DIVISOR


def compute_frame_rate(frame_count: int, total_latency_ms: int) -> float:
    if total_latency_ms <= 0:
        return 0.0
    return float(frame_count) / (float(total_latency_ms) / 1000.0)


@dataclass(frozen=True)
class IterationResult:
    iteration: int
    instance_count: int
    frame_count: int
    workers: int
    query_latency: int
    first_response: Optional[RequestOutcome]
    first_frame: Optional[RequestOutcome]
    total_latency: int
    total_bytes_read: int
    transfer_rate: float
    frame_rate: float
    cache_hits: int = 0
    cache_misses: int = 0
    failed_frames: int = 0

    @property
    def has_milestones(self) -> bool:
        return self.first_response is not None and self.first_frame is not None

    @property
    def first_response_latency(self) -> int:
        if self.first_response is None:
            raise MissingMilestone(
                f"Iteration {self.iteration}: no frame response was received"
            )
        return self.first_response.response_latency

    @property
    def first_frame_latency(self) -> int:
        if self.first_frame is None:
            raise MissingMilestone(f"Iteration {self.iteration}: no frame was read")
        return self.first_frame.total_latency

    def to_row(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "instance_count": self.instance_count,
            "frame_count": self.frame_count,
            "workers": self.workers,
            "query_latency": self.query_latency,
            "first_response_latency": (
                self.first_response.response_latency if self.first_response else None
            ),
            "first_frame_latency": (
                self.first_frame.total_latency if self.first_frame else None
            ),
            "total_latency": self.total_latency,
            "total_bytes_read": self.total_bytes_read,
            "transfer_rate": self.transfer_rate,
            "frame_rate": self.frame_rate,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "failed_frames": self.failed_frames,
        }
