from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from aggregates import DEFAULT_PERCENTILES, MetricSummary, StudyAggregates
from dicomweb import StudyInstance, parse_instances
from errors import ManifestQueryError, MissingMilestone, RequestError
from milestones import IterationMilestones
from profiler import CacheStatus, RequestOutcome, now_unix_ms
from report import (
    CsvReportSink,
    ProgressPrinter,
    print_instances_found,
    print_iteration_metrics,
)
from results import IterationResult, compute_frame_rate, compute_transfer_rate
from scheduler import FrameRetrievalScheduler, FrameTaskResult

logger = logging.getLogger(__name__)


class IterationPhase(enum.Enum):
    IDLE = "idle"
    QUERYING_MANIFEST = "querying_manifest"
    SCHEDULING = "scheduling"
    AGGREGATING = "aggregating"
    REPORTING = "reporting"
    DONE = "done"


@dataclass
class FrameTotals:
    bytes_read: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    failed: int = 0


def fold_frame_results(task_results: Iterable[FrameTaskResult]) -> FrameTotals:
    totals = FrameTotals()
    for task_result in task_results:
        if task_result.outcome is None:
            totals.failed += 1
            logger.warning("Request failed: %s", task_result.error)
            continue
        totals.bytes_read += task_result.outcome.bytes_read
        if task_result.outcome.cache_status is CacheStatus.HIT:
            totals.cache_hits += 1
        elif task_result.outcome.cache_status is CacheStatus.MISS:
            totals.cache_misses += 1
    return totals


class RetrieveStudyBenchmark:
    """Measures how fast a whole study can be retrieved.

    Every iteration queries the study's instance list, then retrieves every
    frame of every instance in parallel, and records six metrics: instance
    query latency, latency of the first byte received, latency of the first
    fully read frame, latency of the whole study, transfer rate and frame
    rate. Iterations run strictly one after another.

    ``client`` must provide ``query_instances()`` returning the query outcome
    and raw payload, and ``retrieve_frame(frame)`` returning an outcome.
    """

    def __init__(
        self,
        client: Any,
        iterations: int,
        max_threads: int,
        sink: Optional[CsvReportSink] = None,
        progress: Optional[ProgressPrinter] = None,
        percentiles: Iterable[float] = DEFAULT_PERCENTILES,
    ) -> None:
        if iterations <= 0:
            raise ValueError(f"iterations must be > 0, got {iterations}")
        self.client = client
        self.iterations = iterations
        self.sink = sink
        self.progress = progress
        self.percentiles = tuple(percentiles)
        self.aggregates = StudyAggregates(iterations)
        self.scheduler = FrameRetrievalScheduler(
            fetch=client.retrieve_frame,
            max_threads=max_threads,
            on_progress=progress.tick if progress is not None else None,
        )
        self.phase = IterationPhase.IDLE

    def _enter(self, phase: IterationPhase, iteration: int) -> None:
        logger.debug("Iteration %d: %s -> %s", iteration, self.phase.value, phase.value)
        self.phase = phase

    async def _query_manifest(self) -> tuple[RequestOutcome, list[StudyInstance]]:
        try:
            outcome, payload = await self.client.query_instances()
        except RequestError as exc:
            raise ManifestQueryError(f"Querying study instances failed: {exc}") from exc
        try:
            instances = parse_instances(payload)
        except ValueError as exc:
            raise ManifestQueryError(f"Cannot parse study instances: {exc}") from exc
        return outcome, instances

    def _update_aggregates(self, result: IterationResult) -> None:
        self.aggregates.query_latency.add_value(result.query_latency)
        try:
            first_response_latency = result.first_response_latency
            first_frame_latency = result.first_frame_latency
        except MissingMilestone as exc:
            logger.warning("Iteration produced no usable timing data: %s", exc)
        else:
            self.aggregates.first_response_latency.add_value(first_response_latency)
            self.aggregates.first_frame_latency.add_value(first_frame_latency)
        self.aggregates.total_latency.add_value(result.total_latency)
        self.aggregates.transfer_rate.add_value(result.transfer_rate)
        self.aggregates.frame_rate.add_value(result.frame_rate)

    async def run_iteration(self, iteration: int) -> Optional[IterationResult]:
        """Runs one iteration.

        Returns ``None`` when the study has no instances; nothing is recorded
        for such an iteration. Raises ``ManifestQueryError`` if the instance
        list cannot be obtained.
        """
        milestones = IterationMilestones()

        self._enter(IterationPhase.QUERYING_MANIFEST, iteration)
        iteration_start = now_unix_ms()
        try:
            query_outcome, instances = await self._query_manifest()
        except ManifestQueryError:
            self._enter(IterationPhase.DONE, iteration)
            raise
        schedule = self.scheduler.plan(instances)
        print_instances_found(len(instances), schedule.frame_count, schedule.workers)

        if not instances:
            logger.warning("Iteration %d: study has no instances, nothing to retrieve", iteration)
            self._enter(IterationPhase.DONE, iteration)
            return None

        self._enter(IterationPhase.SCHEDULING, iteration)
        task_results = await self.scheduler.run(schedule, milestones)
        total_latency = now_unix_ms() - iteration_start
        if self.progress is not None:
            self.progress.end()

        self._enter(IterationPhase.AGGREGATING, iteration)
        totals = fold_frame_results(task_results)
        total_bytes_read = query_outcome.bytes_read + totals.bytes_read
        result = IterationResult(
            iteration=iteration,
            instance_count=len(instances),
            frame_count=schedule.frame_count,
            workers=schedule.workers,
            query_latency=query_outcome.total_latency,
            first_response=milestones.first_response.peek(),
            first_frame=milestones.first_frame.peek(),
            total_latency=total_latency,
            total_bytes_read=total_bytes_read,
            transfer_rate=compute_transfer_rate(total_bytes_read, total_latency),
            frame_rate=compute_frame_rate(schedule.frame_count, total_latency),
            cache_hits=totals.cache_hits,
            cache_misses=totals.cache_misses,
            failed_frames=totals.failed,
        )
        self._update_aggregates(result)

        self._enter(IterationPhase.REPORTING, iteration)
        print_iteration_metrics(result)
        if self.sink is not None:
            self.sink.write_iteration(result)

        self._enter(IterationPhase.DONE, iteration)
        return result

    async def run(self, continue_on_error: bool = False) -> list[MetricSummary]:
        for iteration in range(self.iterations):
            try:
                await self.run_iteration(iteration)
            except ManifestQueryError as exc:
                if not continue_on_error:
                    raise
                logger.error("Iteration %d aborted: %s", iteration, exc)
        return self.aggregates.summarize(self.percentiles)
