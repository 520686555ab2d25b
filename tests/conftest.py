"""Shared helpers for the benchmark tests."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import pytest

from dicomweb import FrameRef
from profiler import CacheStatus, RequestOutcome


def make_outcome(
    start: int = 1_000,
    response: int = 1_010,
    end: int = 1_050,
    bytes_read: int = 100,
    cache_status: CacheStatus = CacheStatus.UNKNOWN,
) -> RequestOutcome:
    return RequestOutcome(
        start_time=start,
        response_time=response,
        end_time=end,
        bytes_read=bytes_read,
        cache_status=cache_status,
    )


def dicom_instance(
    series_id: Optional[str],
    instance_id: Optional[str],
    frames: Optional[int] = None,
) -> dict[str, Any]:
    """Build one QIDO-RS DICOM JSON instance entry."""
    attributes: dict[str, Any] = {
        "00080016": {"vr": "UI", "Value": ["1.2.840.10008.5.1.4.1.1.7"]},
    }
    if series_id is not None:
        attributes["0020000E"] = {"vr": "UI", "Value": [series_id]}
    if instance_id is not None:
        attributes["00080018"] = {"vr": "UI", "Value": [instance_id]}
    if frames is not None:
        attributes["00280008"] = {"vr": "IS", "Value": [frames]}
    return attributes


def manifest_payload(*instances: dict[str, Any]) -> bytes:
    return json.dumps(list(instances)).encode("utf-8")


class FakeStudyClient:
    """In-memory stand-in for DicomStudyClient."""

    def __init__(
        self,
        payload: bytes,
        frame_handler: Optional[Callable[[FrameRef], Awaitable[RequestOutcome]]] = None,
        query_error: Optional[Exception] = None,
        query_bytes: Optional[int] = None,
    ) -> None:
        self.payload = payload
        self.frame_handler = frame_handler or self._default_frame
        self.query_error = query_error
        self.query_bytes = len(payload) if query_bytes is None else query_bytes
        self.query_calls = 0
        self.requested_frames: list[FrameRef] = []

    async def _default_frame(self, frame: FrameRef) -> RequestOutcome:
        await asyncio.sleep(0)
        return make_outcome(
            start=1_000,
            response=1_000 + frame.frame_index,
            end=1_100 + frame.frame_index,
            bytes_read=1_000,
            cache_status=CacheStatus.HIT if frame.frame_index % 2 else CacheStatus.MISS,
        )

    async def query_instances(self) -> tuple[RequestOutcome, bytes]:
        self.query_calls += 1
        if self.query_error is not None:
            raise self.query_error
        outcome = make_outcome(start=900, response=920, end=950, bytes_read=self.query_bytes)
        return outcome, self.payload

    async def retrieve_frame(self, frame: FrameRef) -> RequestOutcome:
        self.requested_frames.append(frame)
        return await self.frame_handler(frame)


@pytest.fixture
def three_frame_manifest() -> bytes:
    """Two instances: one with three frames, one missing its instance UID."""
    return manifest_payload(
        dicom_instance("1.2.3", "1.2.3.1", frames=3),
        dicom_instance("1.2.3", None, frames=5),
    )
