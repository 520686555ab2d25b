from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import httpx

from aggregates import DEFAULT_PERCENTILES, MetricSummary
from benchmark import RetrieveStudyBenchmark
from dicomweb import DEFAULT_BASE_URL, DicomStudyClient, DicomStudyConfig
from profiler import RequestSettings
from report import (
    CsvReportSink,
    ProgressPrinter,
    print_aggregates,
    write_summary_json,
    write_summary_markdown,
)

logger = logging.getLogger(__name__)


@dataclass
class RunConfig:
    project: str
    location: str
    dataset: str
    dicom_store: str
    study: str
    base_url: str = DEFAULT_BASE_URL
    iterations: int = 1
    max_threads: int = 10
    timeout_s: float = 300.0
    access_token: Optional[str] = None
    output: Optional[Path] = None
    summary_json: Optional[Path] = None
    summary_markdown: Optional[Path] = None
    run_name: Optional[str] = None
    continue_on_error: bool = False
    percentiles: list[float] = field(default_factory=lambda: list(DEFAULT_PERCENTILES))

    def study_config(self) -> DicomStudyConfig:
        return DicomStudyConfig(
            project=self.project,
            location=self.location,
            dataset=self.dataset,
            dicom_store=self.dicom_store,
            study=self.study,
            base_url=self.base_url,
        )

    def request_settings(self) -> RequestSettings:
        return RequestSettings(timeout_s=float(self.timeout_s), access_token=self.access_token)


def _resolved_config_dict(config: RunConfig) -> dict[str, Any]:
    payload = asdict(config)
    payload["access_token"] = "<redacted>" if config.access_token else None
    for key in ("output", "summary_json", "summary_markdown"):
        value = payload[key]
        payload[key] = str(value) if value else None
    payload["started_at_utc"] = datetime.now(timezone.utc).isoformat()
    return payload


def _client_limits(max_threads: int) -> httpx.Limits:
    max_connections = max(max_threads, 1)
    return httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max_connections,
    )


async def run_benchmark(
    config: RunConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[MetricSummary]:
    """Runs every configured iteration and reports the aggregates.

    ``transport`` replaces the network transport of the HTTP client; it is
    meant for tests.
    """
    resolved_config = _resolved_config_dict(config)
    logger.info(
        "Retrieving study %s: %d iterations, up to %d concurrent frame requests",
        config.study,
        config.iterations,
        config.max_threads,
    )

    sink = CsvReportSink.open(config.output) if config.output else None
    try:
        async with httpx.AsyncClient(
            limits=_client_limits(config.max_threads),
            timeout=config.timeout_s,
            follow_redirects=True,
            transport=transport,
        ) as http_client:
            client = DicomStudyClient(
                http_client, config.study_config(), config.request_settings()
            )
            benchmark = RetrieveStudyBenchmark(
                client=client,
                iterations=config.iterations,
                max_threads=config.max_threads,
                sink=sink,
                progress=ProgressPrinter(),
                percentiles=config.percentiles,
            )
            summaries = await benchmark.run(continue_on_error=config.continue_on_error)
    finally:
        if sink is not None:
            sink.close()

    print_aggregates(summaries)
    if config.summary_json:
        write_summary_json(config.summary_json, summaries, resolved_config)
    if config.summary_markdown:
        write_summary_markdown(
            output_path=config.summary_markdown,
            run_name=config.run_name or config.study,
            resolved_config=resolved_config,
            summaries=summaries,
        )
    return summaries
