import json
from pathlib import Path
from typing import Callable, Optional

import pytest

from defect_map.core.models import DefectMetadata, Detection


def _metadata(**overrides: object) -> dict:
    payload = {
        "GPSLocation": [14.5995, 120.9842],
        "SeverityLevel": 0.42,
        "FuzzySeverity": 0.4,
        "RepairProbability": 1,
        "DefectCounts": {"pothole": 2, "linear-crack": 1},
        "DominantDefectType": "pothole",
        "AverageLength": 35.2,
        "AverageWidth": 20.1,
        "RealWorldArea": 0.07,
        "ProcessingTimestamp": "2025-03-01T08:00:00+00:00",
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def make_metadata() -> Callable[..., dict]:
    return _metadata


@pytest.fixture()
def write_detection(tmp_path: Path) -> Callable[..., Path]:
    """Write ``<folder>/<name>.json`` (and a tiny ``.jpg``) under ``tmp_path``."""

    def _write(
        name: str,
        metadata: Optional[dict] = None,
        *,
        folder: str = "detections",
        image: bool = True,
        raw: Optional[str] = None,
    ) -> Path:
        target_dir = tmp_path / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        json_path = target_dir / f"{name}.json"
        json_path.write_text(raw if raw is not None else json.dumps(metadata or _metadata()))
        if image:
            (target_dir / f"{name}.jpg").write_bytes(b"\xff\xd8\xff\xd9")
        return json_path

    return _write


@pytest.fixture()
def make_detection() -> Callable[..., Detection]:
    def _make(detection_id: str, timestamp: str = "2025-03-01T08:00:00+00:00", **overrides: object) -> Detection:
        metadata = DefectMetadata.model_validate(_metadata(ProcessingTimestamp=timestamp, **overrides))
        return Detection(
            id=detection_id,
            name=f"detections/{detection_id}.json",
            image_url=f"https://example.test/{detection_id}.jpg",
            location=metadata.gps_location,
            metadata=metadata,
        )

    return _make
