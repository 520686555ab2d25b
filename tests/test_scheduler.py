"""Unit tests for the frame retrieval scheduler."""

import asyncio

import pytest

from conftest import make_outcome
from dicomweb import FrameRef, StudyInstance
from errors import FrameRequestError, RequestError
from milestones import IterationMilestones
from scheduler import FrameRetrievalScheduler, build_frame_tasks, run_frame_task, worker_count


def _instances() -> list[StudyInstance]:
    return [
        StudyInstance(series_id="s1", instance_id="i1", frame_count=3),
        StudyInstance(series_id="s1", instance_id=None, frame_count=5),
        StudyInstance(series_id=None, instance_id="i3", frame_count=2),
        StudyInstance(series_id="s2", instance_id="i4", frame_count=1),
        StudyInstance(series_id="s2", instance_id="i5", frame_count=0),
    ]


class TestBuildFrameTasks:
    def test_skips_instances_without_identifiers(self) -> None:
        frames = build_frame_tasks(_instances())

        assert frames == [
            FrameRef("s1", "i1", 1),
            FrameRef("s1", "i1", 2),
            FrameRef("s1", "i1", 3),
            FrameRef("s2", "i4", 1),
        ]

    def test_empty_manifest(self) -> None:
        assert build_frame_tasks([]) == []


class TestWorkerCount:
    @pytest.mark.parametrize(
        ("max_threads", "frames", "expected"),
        [(10, 3, 3), (2, 3, 2), (4, 0, 0), (1, 100, 1)],
    )
    def test_bounded_by_frames_and_threads(self, max_threads, frames, expected) -> None:
        assert worker_count(max_threads, frames) == expected

    def test_plan_uses_filtered_frame_count(self) -> None:
        scheduler = FrameRetrievalScheduler(fetch=None, max_threads=16)
        schedule = scheduler.plan(_instances())

        assert schedule.frame_count == 4
        assert schedule.workers == 4

    def test_rejects_non_positive_threads(self) -> None:
        with pytest.raises(ValueError):
            FrameRetrievalScheduler(fetch=None, max_threads=0)


class TestRunFrameTask:
    @pytest.mark.asyncio
    async def test_success_updates_milestones_and_progress(self) -> None:
        milestones = IterationMilestones()
        progress = []
        outcome = make_outcome(response=1_005, end=1_020)

        async def fetch(frame):
            return outcome

        result = await run_frame_task(
            FrameRef("s", "i", 1), fetch, milestones, lambda: progress.append(1)
        )

        assert result is outcome
        assert milestones.first_response.value is outcome
        assert milestones.first_frame.value is outcome
        assert progress == [1]

    @pytest.mark.asyncio
    async def test_failure_is_wrapped(self) -> None:
        milestones = IterationMilestones()
        progress = []
        frame = FrameRef("s", "i", 2)

        async def fetch(frame):
            raise RequestError("boom", url="http://example")

        with pytest.raises(FrameRequestError) as exc_info:
            await run_frame_task(frame, fetch, milestones, lambda: progress.append(1))

        assert exc_info.value.frame == frame
        assert isinstance(exc_info.value.cause, RequestError)
        assert milestones.first_response.peek() is None
        assert progress == []


class TestSchedulerRun:
    @pytest.mark.asyncio
    async def test_produces_one_result_per_frame_in_order(self) -> None:
        async def fetch(frame):
            # finish in reverse order of submission
            await asyncio.sleep(0.001 * (10 - frame.frame_index))
            return make_outcome(
                response=1_000 + frame.frame_index, end=2_000 + frame.frame_index
            )

        scheduler = FrameRetrievalScheduler(fetch=fetch, max_threads=4)
        schedule = scheduler.plan([StudyInstance("s", "i", 10)])
        milestones = IterationMilestones()

        results = await scheduler.run(schedule, milestones)

        assert [r.frame.frame_index for r in results] == list(range(1, 11))
        assert all(r.ok for r in results)
        assert milestones.first_response.value.response_time == 1_001
        assert milestones.first_frame.value.end_time == 2_001

    @pytest.mark.asyncio
    async def test_failures_do_not_cancel_siblings(self) -> None:
        async def fetch(frame):
            await asyncio.sleep(0)
            if frame.frame_index % 3 == 0:
                raise RequestError("HTTP 503", url="http://example", http_status=503)
            return make_outcome()

        scheduler = FrameRetrievalScheduler(fetch=fetch, max_threads=2)
        schedule = scheduler.plan([StudyInstance("s", "i", 9)])

        results = await scheduler.run(schedule, IterationMilestones())

        assert len(results) == 9
        failed = [r for r in results if not r.ok]
        assert [r.frame.frame_index for r in failed] == [3, 6, 9]
        assert all(isinstance(r.error, FrameRequestError) for r in failed)

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_isolated(self) -> None:
        async def fetch(frame):
            if frame.frame_index == 1:
                raise RuntimeError("socket exploded")
            return make_outcome()

        scheduler = FrameRetrievalScheduler(fetch=fetch, max_threads=3)
        results = await scheduler.run(
            scheduler.plan([StudyInstance("s", "i", 3)]), IterationMilestones()
        )

        assert [r.ok for r in results] == [False, True, True]

    @pytest.mark.asyncio
    async def test_broken_progress_callback_keeps_every_frame(self) -> None:
        calls = []

        def on_progress():
            calls.append(1)
            if len(calls) == 1:
                raise BrokenPipeError("stdout closed")

        async def fetch(frame):
            await asyncio.sleep(0)
            return make_outcome()

        scheduler = FrameRetrievalScheduler(fetch=fetch, max_threads=4, on_progress=on_progress)
        results = await scheduler.run(
            scheduler.plan([StudyInstance("s", "i", 8)]), IterationMilestones()
        )

        assert len(results) == 8
        assert all(r.ok for r in results)
        assert len(calls) == 8

    @pytest.mark.asyncio
    async def test_milestone_failure_fails_only_that_frame(self) -> None:
        class FlakyMilestones(IterationMilestones):
            def offer(self, outcome):
                if outcome.bytes_read == 2:
                    raise RuntimeError("tracker broke")
                super().offer(outcome)

        async def fetch(frame):
            return make_outcome(bytes_read=frame.frame_index)

        scheduler = FrameRetrievalScheduler(fetch=fetch, max_threads=4)
        results = await scheduler.run(
            scheduler.plan([StudyInstance("s", "i", 5)]), FlakyMilestones()
        )

        assert [r.ok for r in results] == [True, False, True, True, True]
        assert isinstance(results[1].error.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self) -> None:
        inflight = 0
        peak = 0

        async def fetch(frame):
            nonlocal inflight, peak
            inflight += 1
            peak = max(peak, inflight)
            await asyncio.sleep(0.005)
            inflight -= 1
            return make_outcome()

        scheduler = FrameRetrievalScheduler(fetch=fetch, max_threads=3)
        results = await scheduler.run(
            scheduler.plan([StudyInstance("s", "i", 12)]), IterationMilestones()
        )

        assert len(results) == 12
        assert peak == 3

    @pytest.mark.asyncio
    async def test_no_frames_submits_nothing(self) -> None:
        calls = []

        async def fetch(frame):
            calls.append(frame)
            return make_outcome()

        scheduler = FrameRetrievalScheduler(fetch=fetch, max_threads=3)
        results = await scheduler.run(
            scheduler.plan([StudyInstance(None, "i", 4)]), IterationMilestones()
        )

        assert results == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_cancellation_releases_workers(self) -> None:
        started = 0
        cancelled = 0
        never = asyncio.Event()

        async def fetch(frame):
            nonlocal started, cancelled
            started += 1
            try:
                await never.wait()
            except asyncio.CancelledError:
                cancelled += 1
                raise
            return make_outcome()

        scheduler = FrameRetrievalScheduler(fetch=fetch, max_threads=4)
        task = asyncio.create_task(
            scheduler.run(scheduler.plan([StudyInstance("s", "i", 10)]), IterationMilestones())
        )
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert started == 4
        assert cancelled == 4
