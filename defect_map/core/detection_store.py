from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from defect_map.core.models import Detection


@dataclass(frozen=True)
class DetectionSnapshot:
    detections: Tuple[Detection, ...]
    version: int
    last_updated: Optional[datetime]

    def ids(self) -> List[str]:
        return [detection.id for detection in self.detections]

    def __len__(self) -> int:
        return len(self.detections)


_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def order_recent(detections: Iterable[Detection]) -> List[Detection]:
    """Newest ``ProcessingTimestamp`` first; ties keep their incoming order."""

    items = list(detections)
    # two stable passes: dated entries newest first, undated ones last
    items.sort(key=lambda item: item.processed_at or _OLDEST, reverse=True)
    items.sort(key=lambda item: item.processed_at is None)
    return items


class DetectionStore:
    """Hold the merged detection set, keyed by id in arrival order."""

    def __init__(self) -> None:
        self._detections: Dict[str, Detection] = {}
        self._version = 0
        self.last_updated: Optional[datetime] = None

    def replace(self, detections: Iterable[Detection]) -> None:
        self._detections = {}
        for detection in detections:
            self._detections[detection.id] = detection
        self._version += 1

    def upsert(self, detections: Iterable[Detection]) -> int:
        written = 0
        for detection in detections:
            # reassigning an existing key keeps its original position
            self._detections[detection.id] = detection
            written += 1
        if written:
            self._version += 1
        return written

    def retain_only(self, ids: Iterable[str]) -> List[str]:
        keep: Set[str] = set(ids)
        evicted = [detection_id for detection_id in self._detections if detection_id not in keep]
        for detection_id in evicted:
            del self._detections[detection_id]
        if evicted:
            self._version += 1
        return evicted

    def mark_updated(self, timestamp: datetime) -> datetime:
        previous = self.last_updated
        if previous is not None and timestamp <= previous:
            timestamp = previous + timedelta(microseconds=1)
        self.last_updated = timestamp
        return timestamp

    def get(self, detection_id: str) -> Optional[Detection]:
        return self._detections.get(detection_id)

    def ids(self) -> List[str]:
        return list(self._detections)

    def snapshot(self) -> DetectionSnapshot:
        return DetectionSnapshot(
            detections=tuple(self._detections.values()),
            version=self._version,
            last_updated=self.last_updated,
        )

    def recent(self, limit: Optional[int] = None) -> List[Detection]:
        ordered = order_recent(self._detections.values())
        if limit is not None:
            return ordered[: max(limit, 0)]
        return ordered

    def __len__(self) -> int:
        return len(self._detections)

    def __contains__(self, detection_id: object) -> bool:
        return detection_id in self._detections
