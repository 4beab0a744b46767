import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from pydantic import ValidationError

from defect_map.core.detection_store import order_recent
from defect_map.core.models import DefectMetadata, Detection


logger = logging.getLogger(__name__)

BACKEND_ERRORS = (GoogleAPIError, GoogleAuthError, OSError)
SIGNING_ERRORS = BACKEND_ERRORS + (AttributeError, ValueError)


class DefectObjectStore(Protocol):
    is_configured: bool

    async def is_ready(self) -> bool: ...

    def metadata_key(self, detection_id: str) -> str: ...

    def list_metadata_keys(self) -> List[str]: ...

    def read_metadata(self, key: str) -> Optional[object]: ...

    def signed_url(self, key: str) -> str: ...


def detection_id_from_key(key: str) -> str:
    name = key.rsplit("/", 1)[-1]
    return name[: -len(".json")] if name.endswith(".json") else name


def image_key_for(key: str) -> str:
    return key[: -len(".json")] + ".jpg" if key.endswith(".json") else key + ".jpg"


@dataclass
class FetchReport:
    """Counts for the most recent fetch, so partial success is visible."""

    listed: int = 0
    read: int = 0
    accepted: int = 0
    rejected: int = 0
    failed: int = 0
    unsigned: int = 0


class DetectionFetchService:
    """Bounded, batched reads of detection objects from the defect store."""

    def __init__(
        self,
        store: DefectObjectStore,
        *,
        default_limit: int = 1000,
        max_limit: int = 10000,
        batch_size: int = 10,
    ) -> None:
        self.store = store
        self.max_limit = max(max_limit, 1)
        self.default_limit = min(max(default_limit, 1), self.max_limit)
        self.batch_size = max(batch_size, 1)
        self.last_report = FetchReport()

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_limit
        return min(max(int(limit), 1), self.max_limit)

    async def fetch_detections(
        self,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> List[Detection]:
        report = FetchReport()
        self.last_report = report
        if not self.store.is_configured or not await self.store.is_ready():
            logger.warning("Defect store not ready - returning no detections")
            return []

        try:
            keys = await asyncio.to_thread(self.store.list_metadata_keys)
        except BACKEND_ERRORS as exc:
            logger.warning("Error listing metadata files: %s", exc)
            return []
        report.listed = len(keys)
        candidates = keys[: self.clamp_limit(limit)]

        detections: List[Detection] = []
        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start : start + self.batch_size]
            results = await asyncio.gather(*(self._load(key, report) for key in batch))
            detections.extend(item for item in results if item is not None)

        ordered = order_recent(detections)
        if since is not None:
            ordered = _newer_than(ordered, since)
        logger.debug(
            "Fetched %d detections (listed=%d read=%d rejected=%d failed=%d)",
            len(ordered),
            report.listed,
            report.read,
            report.rejected,
            report.failed,
        )
        return ordered

    async def get_detection(self, detection_id: str) -> Optional[Detection]:
        if not detection_id or "/" in detection_id:
            return None
        if not self.store.is_configured or not await self.store.is_ready():
            return None
        return await self._load(self.store.metadata_key(detection_id), FetchReport())

    async def _load(self, key: str, report: FetchReport) -> Optional[Detection]:
        try:
            payload = await asyncio.to_thread(self.store.read_metadata, key)
        except BACKEND_ERRORS as exc:
            logger.warning("Error reading metadata %s: %s", key, exc)
            report.failed += 1
            return None
        except ValueError:
            report.read += 1
            report.rejected += 1
            logger.debug("Skipping undecodable metadata %s", key)
            return None
        if payload is None:
            report.failed += 1
            return None
        report.read += 1

        metadata = parse_metadata(payload)
        if metadata is None:
            report.rejected += 1
            logger.debug("Skipping metadata without a valid GPS location: %s", key)
            return None

        image_key = image_key_for(key)
        try:
            image_url = await asyncio.to_thread(self.store.signed_url, image_key)
        except SIGNING_ERRORS as exc:
            logger.warning("Error getting signed URL for %s: %s", image_key, exc)
            image_url = ""
        if not image_url:
            report.unsigned += 1

        report.accepted += 1
        return Detection(
            id=detection_id_from_key(key),
            name=key,
            image_url=image_url,
            location=metadata.gps_location,
            metadata=metadata,
        )


def parse_metadata(payload: object) -> Optional[DefectMetadata]:
    if not isinstance(payload, dict):
        return None
    try:
        return DefectMetadata.model_validate(payload)
    except ValidationError:
        return None


def _newer_than(detections: List[Detection], since: datetime) -> List[Detection]:
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return [
        detection
        for detection in detections
        if detection.processed_at is not None and detection.processed_at > since
    ]

