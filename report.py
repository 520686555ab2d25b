from __future__ import annotations

import json
import math
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TextIO

from aggregates import MetricSummary
from results import IterationResult

CSV_COLUMNS = [
    "ITERATION",
    "QUERYING_INSTANCES_LATENCY",
    "FIRST_BYTE_RECEIVED_LATENCY",
    "READING_FIRST_FRAME_LATENCY",
    "READING_WHOLE_STUDY_LATENCY",
    "TOTAL_BYTES_READ",
    "MB_READ_PER_SECOND",
    "FRAMES_READ_PER_SECOND",
]
CSV_HEADER = ", ".join(CSV_COLUMNS)


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


class CsvReportSink:
    """Writes one CSV row per iteration, preceded by a single header line."""

    def __init__(self, stream: TextIO, owns_stream: bool = False) -> None:
        self._stream = stream
        self._owns_stream = owns_stream
        self._header_written = False

    @classmethod
    def open(cls, path: Path) -> "CsvReportSink":
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(path.open("w", encoding="utf-8", buffering=1), owns_stream=True)

    def write_iteration(self, result: IterationResult) -> None:
        if not self._header_written:
            self._stream.write(CSV_HEADER + "\n")
            self._header_written = True
        row = result.to_row()
        cells = [
            row["iteration"],
            row["query_latency"],
            row["first_response_latency"],
            row["first_frame_latency"],
            row["total_latency"],
            row["total_bytes_read"],
            row["transfer_rate"],
            row["frame_rate"],
        ]
        self._stream.write(", ".join(_cell(value) for value in cells) + "\n")

    def close(self) -> None:
        if self._owns_stream:
            self._stream.close()
        else:
            self._stream.flush()


def print_instances_found(
    instance_count: int,
    frame_count: int,
    workers: int,
    out: Optional[TextIO] = None,
) -> None:
    print(
        f"Found {instance_count} instances with {frame_count} frames, "
        f"retrieving with {workers} workers",
        file=out,
    )


class ProgressPrinter:
    """Prints one dot per retrieved frame and closes the line when the iteration ends."""

    def __init__(self, out: Optional[TextIO] = None) -> None:
        self.out = out
        self._dots = 0

    def _stream(self) -> TextIO:
        return self.out or sys.stdout

    def tick(self) -> None:
        stream = self._stream()
        stream.write(".")
        stream.flush()
        self._dots += 1

    def end(self) -> None:
        if not self._dots:
            return
        self._dots = 0
        stream = self._stream()
        stream.write("\n")
        stream.flush()


def _milestone_text(result: IterationResult, attribute: str) -> str:
    outcome = getattr(result, attribute)
    if outcome is None:
        return "n/a (no frame retrieved)"
    latency = (
        outcome.response_latency if attribute == "first_response" else outcome.total_latency
    )
    return f"{latency} ms"


def print_iteration_metrics(result: IterationResult, out: Optional[TextIO] = None) -> None:
    lines = [
        f"Iteration {result.iteration}:",
        f"  Querying instances latency:  {result.query_latency} ms",
        f"  First byte received latency: {_milestone_text(result, 'first_response')}",
        f"  Reading first frame latency: {_milestone_text(result, 'first_frame')}",
        f"  Reading whole study latency: {result.total_latency} ms",
        f"  Total bytes read:            {result.total_bytes_read}",
        f"  Transfer rate:               {_fmt(result.transfer_rate, 3)} MB/s",
        f"  Frame rate:                  {_fmt(result.frame_rate, 3)} frames/s",
        f"  Cache hits/misses:           {result.cache_hits}/{result.cache_misses}",
    ]
    if result.failed_frames:
        lines.append(f"  Failed frame requests:       {result.failed_frames}")
    print("\n".join(lines), file=out)


def _percentile_keys(summaries: list[MetricSummary]) -> list[str]:
    keys: list[str] = []
    for summary in summaries:
        for key in summary.percentiles:
            if key not in keys:
                keys.append(key)
    return keys


def print_aggregates(summaries: list[MetricSummary], out: Optional[TextIO] = None) -> None:
    pct_keys = _percentile_keys(summaries)
    header = ["Metric", "Unit", "Count", "Min", "Mean", "Max", "Stdev"] + pct_keys
    rows = [header]
    for summary in summaries:
        rows.append(
            [
                summary.name,
                summary.unit,
                str(summary.count),
                _fmt(summary.min),
                _fmt(summary.mean),
                _fmt(summary.max),
                _fmt(summary.stdev),
            ]
            + [_fmt(summary.percentiles.get(key)) for key in pct_keys]
        )
    widths = [max(len(row[column]) for row in rows) for column in range(len(header))]
    print("Aggregates:", file=out)
    for row in rows:
        cells = [
            cell.ljust(width) if column == 0 else cell.rjust(width)
            for column, (cell, width) in enumerate(zip(row, widths))
        ]
        print("  " + "  ".join(cells), file=out)


def write_summary_json(
    output_path: Path,
    summaries: list[MetricSummary],
    resolved_config: dict[str, Any],
) -> None:
    payload = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "config": resolved_config,
        "metrics": [summary.to_dict() for summary in summaries],
    }
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    summaries: list[MetricSummary],
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    pct_keys = _percentile_keys(summaries)
    lines: list[str] = []
    lines.append(f"# Retrieve Study Benchmark Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")
    lines.append("")
    lines.append("## Aggregates")
    lines.append("")
    header = ["Metric", "Unit", "Count", "Min", "Mean", "Max", "Stdev"] + pct_keys
    lines.append("| " + " | ".join(header) + " |")
    lines.append("|---|---|" + "---:|" * (5 + len(pct_keys)))

    for summary in summaries:
        cells = [
            summary.name,
            summary.unit,
            str(summary.count),
            _fmt(summary.min),
            _fmt(summary.mean),
            _fmt(summary.max),
            _fmt(summary.stdev),
        ] + [_fmt(summary.percentiles.get(key)) for key in pct_keys]
        lines.append("| " + " | ".join(cells) + " |")

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
