from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

from dicomweb import FrameRef, StudyInstance
from errors import FrameRequestError
from milestones import IterationMilestones
from profiler import RequestOutcome

logger = logging.getLogger(__name__)

FrameFetcher = Callable[[FrameRef], Awaitable[RequestOutcome]]
ProgressCallback = Callable[[], None]


@dataclass
class FrameTaskResult:
    frame: FrameRef
    outcome: Optional[RequestOutcome] = None
    error: Optional[FrameRequestError] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not None


@dataclass
class FrameSchedule:
    frames: list[FrameRef] = field(default_factory=list)
    workers: int = 0

    @property
    def frame_count(self) -> int:
        return len(self.frames)


def build_frame_tasks(instances: Iterable[StudyInstance]) -> list[FrameRef]:
    frames: list[FrameRef] = []
    for instance in instances:
        if not instance.is_addressable:
            continue
        assert instance.series_id is not None and instance.instance_id is not None
        for frame_index in range(1, instance.frame_count + 1):
            frames.append(
                FrameRef(
                    series_id=instance.series_id,
                    instance_id=instance.instance_id,
                    frame_index=frame_index,
                )
            )
    return frames


def worker_count(max_threads: int, frame_count: int) -> int:
    return max(0, min(max_threads, frame_count))


async def run_frame_task(
    frame: FrameRef,
    fetch: FrameFetcher,
    milestones: IterationMilestones,
    on_progress: Optional[ProgressCallback] = None,
) -> RequestOutcome:
    """Retrieve one frame and publish its timings.

    Any failure of the fetch or of the milestone update is raised as
    ``FrameRequestError``; it is not retried here. A failing progress
    callback is logged and does not fail the frame.
    """
    try:
        outcome = await fetch(frame)
        milestones.offer(outcome)
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise FrameRequestError(frame, exc) from exc

    if on_progress is not None:
        try:
            on_progress()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Progress callback failed for %s: %s", frame, exc)
    return outcome


class FrameRetrievalScheduler:
    """Fans frame retrievals out over a bounded set of worker coroutines.

    A new pool is started for every ``run`` call and fully torn down before
    it returns, even if the caller is cancelled.
    """

    def __init__(
        self,
        fetch: FrameFetcher,
        max_threads: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        if max_threads <= 0:
            raise ValueError(f"max_threads must be > 0, got {max_threads}")
        self.fetch = fetch
        self.max_threads = max_threads
        self.on_progress = on_progress

    def plan(self, instances: Iterable[StudyInstance]) -> FrameSchedule:
        frames = build_frame_tasks(instances)
        return FrameSchedule(frames=frames, workers=worker_count(self.max_threads, len(frames)))

    async def run(
        self,
        schedule: FrameSchedule,
        milestones: IterationMilestones,
    ) -> list[FrameTaskResult]:
        if not schedule.frames or schedule.workers <= 0:
            return []

        queue: asyncio.Queue[tuple[int, FrameRef]] = asyncio.Queue()
        for index, frame in enumerate(schedule.frames):
            queue.put_nowait((index, frame))
        results: list[Optional[FrameTaskResult]] = [None] * len(schedule.frames)

        async def worker_loop(worker_id: int) -> None:
            while True:
                try:
                    index, frame = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    outcome = await run_frame_task(
                        frame, self.fetch, milestones, self.on_progress
                    )
                    results[index] = FrameTaskResult(frame=frame, outcome=outcome)
                except FrameRequestError as exc:
                    logger.debug("Worker %d: %s", worker_id, exc)
                    results[index] = FrameTaskResult(frame=frame, error=exc)
                finally:
                    queue.task_done()

        workers = [
            asyncio.create_task(worker_loop(worker_id))
            for worker_id in range(schedule.workers)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        return [result for result in results if result is not None]
