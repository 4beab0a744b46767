import asyncio
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from google.api_core.exceptions import ServiceUnavailable

from defect_map.adapters.local_bucket import LocalFolderBucket
from defect_map.services.fetch_service import (
    DetectionFetchService,
    detection_id_from_key,
    image_key_for,
)


class MemoryStore:
    """In-memory defect store that records how it is read."""

    is_configured = True

    def __init__(
        self,
        objects: Dict[str, object],
        *,
        unsigned: Iterable[str] = (),
        broken: Iterable[str] = (),
        read_delay: float = 0.0,
    ) -> None:
        self.objects = objects
        self.unsigned = set(unsigned)
        self.broken = set(broken)
        self.read_delay = read_delay
        self.reads: List[str] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    async def is_ready(self) -> bool:
        return True

    def metadata_key(self, detection_id: str) -> str:
        return f"detections/{detection_id}.json"

    def list_metadata_keys(self) -> List[str]:
        return sorted((key for key in self.objects if key.endswith(".json")), reverse=True)

    def read_metadata(self, key: str) -> Optional[object]:
        with self._lock:
            self.reads.append(key)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.read_delay:
                time.sleep(self.read_delay)
            if key in self.broken:
                raise ServiceUnavailable("backend down")
            return self.objects.get(key)
        finally:
            with self._lock:
                self.active -= 1

    def signed_url(self, key: str) -> str:
        if key in self.unsigned:
            raise AttributeError("you need a private key to sign credentials")
        return f"https://signed.example/{key}"


def _objects(make_metadata, count: int) -> Dict[str, object]:
    return {
        f"detections/detection_{index:03d}.json": make_metadata(
            ProcessingTimestamp=f"2025-03-01T08:{index % 60:02d}:00+00:00"
        )
        for index in range(count)
    }


def test_key_helpers() -> None:
    assert detection_id_from_key("folder/sub/detection_001.json") == "detection_001"
    assert detection_id_from_key("detection_002.json") == "detection_002"
    assert image_key_for("folder/detection_001.json") == "folder/detection_001.jpg"


def test_fetch_excludes_records_without_gps(tmp_path, write_detection, make_metadata) -> None:
    for index in range(3):
        write_detection(f"detection_00{index}", make_metadata(ProcessingTimestamp=f"2025-03-0{index + 1}T08:00:00Z"))
    missing_gps = make_metadata()
    del missing_gps["GPSLocation"]
    write_detection("detection_009", missing_gps)

    service = DetectionFetchService(LocalFolderBucket(tmp_path, "detections"))
    detections = asyncio.run(service.fetch_detections(limit=10))

    assert [item.id for item in detections] == ["detection_002", "detection_001", "detection_000"]
    assert all(item.image_url.startswith("file://") for item in detections)
    assert all(len(item.location) == 2 for item in detections)
    assert service.last_report.listed == 4
    assert service.last_report.accepted == 3
    assert service.last_report.rejected == 1


def test_fetch_skips_undecodable_and_non_object_json(tmp_path, write_detection) -> None:
    write_detection("detection_001")
    write_detection("detection_002", raw="{not json")
    write_detection("detection_003", raw="[1, 2, 3]")

    service = DetectionFetchService(LocalFolderBucket(tmp_path, "detections"))
    detections = asyncio.run(service.fetch_detections())

    assert [item.id for item in detections] == ["detection_001"]
    assert service.last_report.rejected == 2


def test_limit_is_clamped_to_ceiling(make_metadata) -> None:
    store = MemoryStore(_objects(make_metadata, 25))
    service = DetectionFetchService(store, default_limit=5, max_limit=10, batch_size=4)

    detections = asyncio.run(service.fetch_detections(limit=999999))
    assert len(store.reads) == 10
    assert len(detections) == 10

    store.reads.clear()
    asyncio.run(service.fetch_detections())
    assert len(store.reads) == 5

    store.reads.clear()
    asyncio.run(service.fetch_detections(limit=-3))
    assert len(store.reads) == 1


def test_reads_newest_keys_first(make_metadata) -> None:
    store = MemoryStore(_objects(make_metadata, 6))
    service = DetectionFetchService(store)

    asyncio.run(service.fetch_detections(limit=2))

    assert sorted(store.reads) == ["detections/detection_004.json", "detections/detection_005.json"]


def test_batches_bound_concurrent_reads(make_metadata) -> None:
    store = MemoryStore(_objects(make_metadata, 9), read_delay=0.02)
    service = DetectionFetchService(store, batch_size=3)

    detections = asyncio.run(service.fetch_detections())

    assert len(detections) == 9
    assert 1 <= store.peak <= 3


def test_signing_failure_degrades_to_empty_url(make_metadata) -> None:
    objects = _objects(make_metadata, 2)
    store = MemoryStore(objects, unsigned={"detections/detection_001.jpg"})
    service = DetectionFetchService(store)

    detections = {item.id: item for item in asyncio.run(service.fetch_detections())}

    assert detections["detection_001"].image_url == ""
    assert detections["detection_000"].image_url.endswith("detection_000.jpg")
    assert service.last_report.unsigned == 1


def test_backend_error_skips_only_that_record(make_metadata) -> None:
    store = MemoryStore(_objects(make_metadata, 3), broken={"detections/detection_001.json"})
    service = DetectionFetchService(store)

    detections = asyncio.run(service.fetch_detections())

    assert sorted(item.id for item in detections) == ["detection_000", "detection_002"]
    assert service.last_report.failed == 1


def test_since_keeps_strictly_newer_records(make_metadata) -> None:
    objects = {
        "detections/a.json": make_metadata(ProcessingTimestamp="2025-03-01T08:00:00Z"),
        "detections/b.json": make_metadata(ProcessingTimestamp="2025-03-01T09:00:00Z"),
        "detections/c.json": make_metadata(ProcessingTimestamp="2025-03-01T10:00:00Z"),
        "detections/d.json": make_metadata(ProcessingTimestamp="not a timestamp"),
    }
    service = DetectionFetchService(MemoryStore(objects))
    since = datetime(2025, 3, 1, 9, tzinfo=timezone.utc)

    detections = asyncio.run(service.fetch_detections(since=since))

    assert [item.id for item in detections] == ["c"]
    naive = asyncio.run(service.fetch_detections(since=datetime(2025, 3, 1, 8, 30)))
    assert [item.id for item in naive] == ["c", "b"]


def test_fetch_is_idempotent(make_metadata) -> None:
    objects = _objects(make_metadata, 12)
    service = DetectionFetchService(MemoryStore(objects), batch_size=5)

    first = asyncio.run(service.fetch_detections(limit=10))
    second = asyncio.run(service.fetch_detections(limit=10))

    assert [item.id for item in first] == [item.id for item in second]
    assert first == second


def test_unconfigured_store_returns_nothing(tmp_path) -> None:
    service = DetectionFetchService(LocalFolderBucket(tmp_path / "missing"))

    assert asyncio.run(service.fetch_detections()) == []
    assert asyncio.run(service.get_detection("detection_001")) is None


def test_get_detection_by_id(tmp_path, write_detection, make_metadata) -> None:
    write_detection("detection_001", make_metadata(DominantDefectType="patch"))
    missing_gps = make_metadata()
    del missing_gps["GPSLocation"]
    write_detection("detection_002", missing_gps)
    service = DetectionFetchService(LocalFolderBucket(tmp_path, "detections"))

    found = asyncio.run(service.get_detection("detection_001"))

    assert found is not None
    assert found.metadata.dominant_defect_type == "patch"
    assert found.name == "detections/detection_001.json"
    assert asyncio.run(service.get_detection("detection_002")) is None
    assert asyncio.run(service.get_detection("unknown")) is None
    assert asyncio.run(service.get_detection("../detections/detection_001")) is None
