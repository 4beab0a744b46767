"""GeoJSON shapes handed to the map renderer and list views."""

from typing import Any, Dict, Iterable, List, Optional

from defect_map.core.models import Detection
from defect_map.core.severity import classify, severity_color

PLACEHOLDER_IMAGE_URL = "/placeholder.svg?height=64&width=64"

_DEFECT_TYPE_LABELS: Dict[str, str] = {
    "linear-crack": "Linear Crack",
    "alligator-crack": "Alligator Crack",
    "pothole": "Pothole",
    "patch": "Patch",
}


def format_defect_type(defect_type: str) -> str:
    label = _DEFECT_TYPE_LABELS.get(defect_type)
    if label:
        return label
    return defect_type[:1].upper() + defect_type[1:]


def format_defect_counts(counts: Dict[str, int]) -> str:
    return ", ".join(f"{format_defect_type(name)}: {count}" for name, count in counts.items())


def display_image_url(detection: Detection) -> str:
    return detection.image_url or PLACEHOLDER_IMAGE_URL


def filter_by_type(detections: Iterable[Detection], defect_type: Optional[str]) -> List[Detection]:
    """Keep detections whose dominant type matches ``defect_type`` ignoring case."""

    if not defect_type or not defect_type.strip():
        return list(detections)
    wanted = defect_type.strip().casefold()
    return [
        detection
        for detection in detections
        if detection.metadata.dominant_defect_type.strip().casefold() == wanted
    ]


def available_defect_types(detections: Iterable[Detection]) -> List[str]:
    types = set()
    for detection in detections:
        types.update(detection.metadata.defect_counts.keys())
        if detection.metadata.dominant_defect_type:
            types.add(detection.metadata.dominant_defect_type)
    return sorted(types)


def to_feature(detection: Detection) -> Dict[str, Any]:
    severity = detection.metadata.severity_level
    return {
        "type": "Feature",
        "id": detection.id,
        "geometry": {
            "type": "Point",
            "coordinates": [detection.longitude, detection.latitude],
        },
        "properties": {
            "id": detection.id,
            "severity": severity,
            "severityLevel": classify(severity).value,
            "type": detection.metadata.dominant_defect_type,
            "color": severity_color(severity),
            "imageUrl": display_image_url(detection),
            "timestamp": detection.metadata.processing_timestamp,
            "needsRepair": detection.metadata.needs_repair,
        },
    }


def build_feature_collection(
    detections: Iterable[Detection],
    defect_type: Optional[str] = None,
) -> Dict[str, Any]:
    features = [to_feature(detection) for detection in filter_by_type(detections, defect_type)]
    return {"type": "FeatureCollection", "features": features}


def summarize(detection: Detection) -> Dict[str, Any]:
    """Flatten a detection into the fields a recent-defects list shows."""

    metadata = detection.metadata
    return {
        "id": detection.id,
        "type": metadata.dominant_defect_type,
        "severity": metadata.severity_level,
        "severityLevel": classify(metadata.severity_level).value,
        "timestamp": metadata.processing_timestamp,
        "defects": format_defect_counts(metadata.defect_counts),
        "repair": "Yes" if metadata.needs_repair else "No",
        "imageUrl": display_image_url(detection),
        "location": list(detection.location),
    }
