from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import httpx

from profiler import RequestOutcome, RequestSettings, build_headers, execute_request

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://healthcare.googleapis.com/v1"

SERIES_INSTANCE_UID_TAG = "0020000E"
SOP_INSTANCE_UID_TAG = "00080018"
NUMBER_OF_FRAMES_TAG = "00280008"

QUERY_ACCEPT = "application/dicom+json"
FRAME_ACCEPT = 'multipart/related; type="application/octet-stream"; transfer-syntax=*'


@dataclass(frozen=True)
class StudyInstance:
    series_id: Optional[str]
    instance_id: Optional[str]
    frame_count: int

    @property
    def is_addressable(self) -> bool:
        return self.series_id is not None and self.instance_id is not None


@dataclass(frozen=True)
class FrameRef:
    series_id: str
    instance_id: str
    frame_index: int

    def __str__(self) -> str:
        return f"series {self.series_id} instance {self.instance_id} frame {self.frame_index}"


@dataclass
class DicomStudyConfig:
    project: str
    location: str
    dataset: str
    dicom_store: str
    study: str
    base_url: str = DEFAULT_BASE_URL

    def dicomweb_url(self) -> str:
        return (
            f"{self.base_url.rstrip('/')}/projects/{quote(self.project)}"
            f"/locations/{quote(self.location)}/datasets/{quote(self.dataset)}"
            f"/dicomStores/{quote(self.dicom_store)}/dicomWeb"
        )

    def study_url(self) -> str:
        return f"{self.dicomweb_url()}/studies/{quote(self.study)}"

    def instances_url(self) -> str:
        return f"{self.study_url()}/instances"

    def frame_url(self, frame: FrameRef) -> str:
        return (
            f"{self.study_url()}/series/{quote(frame.series_id)}"
            f"/instances/{quote(frame.instance_id)}/frames/{frame.frame_index}"
        )


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _first_value(attributes: dict[str, Any], tag: str) -> Any:
    element = attributes.get(tag)
    if not isinstance(element, dict):
        return None
    values = element.get("Value")
    if not isinstance(values, list) or not values:
        return None
    return values[0]


def _parse_instance(attributes: Any) -> StudyInstance:
    if not isinstance(attributes, dict):
        return StudyInstance(series_id=None, instance_id=None, frame_count=0)

    series_id = _first_value(attributes, SERIES_INSTANCE_UID_TAG)
    instance_id = _first_value(attributes, SOP_INSTANCE_UID_TAG)
    frames = _safe_int(_first_value(attributes, NUMBER_OF_FRAMES_TAG))
    # QIDO omits NumberOfFrames for single-frame objects
    if frames is None:
        frames = 1
    return StudyInstance(
        series_id=str(series_id) if series_id is not None else None,
        instance_id=str(instance_id) if instance_id is not None else None,
        frame_count=max(0, frames),
    )


def parse_instances(payload: bytes) -> list[StudyInstance]:
    """Decode a QIDO-RS DICOM JSON instance list.

    Raises ``ValueError`` if the payload is not a JSON array.
    """
    try:
        decoded = json.loads(payload.decode("utf-8") if payload else "[]")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Instance list is not valid JSON: {exc}") from exc
    if not isinstance(decoded, list):
        raise ValueError(
            f"Instance list must be a JSON array, got {type(decoded).__name__}"
        )
    return [_parse_instance(item) for item in decoded]


class DicomStudyClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        study: DicomStudyConfig,
        settings: RequestSettings,
    ) -> None:
        self.client = client
        self.study = study
        self.settings = settings

    async def query_instances(self) -> tuple[RequestOutcome, bytes]:
        buffer = bytearray()
        url = self.study.instances_url()
        outcome = await execute_request(
            self.client,
            url,
            headers=build_headers(self.settings, QUERY_ACCEPT),
            timeout_s=self.settings.timeout_s,
            sink=buffer,
        )
        logger.debug("Instance list of %s: %d bytes", self.study.study, len(buffer))
        return outcome, bytes(buffer)

    async def retrieve_frame(self, frame: FrameRef) -> RequestOutcome:
        return await execute_request(
            self.client,
            self.study.frame_url(frame),
            headers=build_headers(self.settings, FRAME_ACCEPT),
            timeout_s=self.settings.timeout_s,
        )
