import math
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EvictionPolicy(str, Enum):
    """How an incremental refresh treats ids missing from the latest response."""

    PRUNE = "prune"
    RETAIN = "retain"


class SeverityBucket(str, Enum):
    LOW = "Low"
    MODERATE = "Moderate"
    SEVERE = "Severe"


def parse_timestamp(value: object) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce_optional_float(value: object) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


class DefectMetadata(BaseModel):
    """Per-detection metadata as written upstream next to each image."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    gps_location: Tuple[float, float] = Field(alias="GPSLocation")
    severity_level: float = Field(default=0.0, alias="SeverityLevel")
    fuzzy_severity: Optional[float] = Field(default=None, alias="FuzzySeverity")
    repair_probability: float = Field(default=0.0, alias="RepairProbability")
    defect_counts: Dict[str, int] = Field(default_factory=dict, alias="DefectCounts")
    dominant_defect_type: str = Field(default="", alias="DominantDefectType")
    average_length: Optional[float] = Field(default=None, alias="AverageLength")
    average_width: Optional[float] = Field(default=None, alias="AverageWidth")
    real_world_area: Optional[float] = Field(default=None, alias="RealWorldArea")
    defect_pixel_count: Optional[float] = Field(default=None, alias="DefectPixelCount")
    total_pixel_count: Optional[float] = Field(default=None, alias="TotalPixelCount")
    distance_to_object: Optional[float] = Field(default=None, alias="DistanceToObject")
    defect_ratio: Optional[float] = Field(default=None, alias="DefectRatio")
    image_shape: Optional[List[int]] = Field(default=None, alias="ImageShape")
    processing_timestamp: str = Field(default="", alias="ProcessingTimestamp")

    @field_validator("gps_location", mode="before")
    @classmethod
    def _validate_gps(cls, value: object) -> Tuple[float, float]:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValueError("GPSLocation must be a [latitude, longitude] pair")
        if not all(_is_number(item) for item in value):
            raise ValueError("GPSLocation must contain numbers")
        latitude, longitude = float(value[0]), float(value[1])
        if not (math.isfinite(latitude) and math.isfinite(longitude)):
            raise ValueError("GPSLocation must be finite")
        if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
            raise ValueError("GPSLocation out of range")
        return latitude, longitude

    @field_validator("severity_level", "repair_probability", mode="before")
    @classmethod
    def _unit_interval(cls, value: object) -> float:
        result = _coerce_optional_float(value)
        if result is None:
            return 0.0
        return min(max(result, 0.0), 1.0)

    @field_validator(
        "fuzzy_severity",
        "average_length",
        "average_width",
        "real_world_area",
        "defect_pixel_count",
        "total_pixel_count",
        "distance_to_object",
        "defect_ratio",
        mode="before",
    )
    @classmethod
    def _lenient_float(cls, value: object) -> Optional[float]:
        return _coerce_optional_float(value)

    @field_validator("defect_counts", mode="before")
    @classmethod
    def _coerce_counts(cls, value: object) -> Dict[str, int]:
        if not isinstance(value, dict):
            return {}
        counts: Dict[str, int] = {}
        for key, raw in value.items():
            if isinstance(raw, bool):
                continue
            try:
                count = int(raw)
            except (TypeError, ValueError):
                continue
            if count >= 0:
                counts[str(key)] = count
        return counts

    @field_validator("image_shape", mode="before")
    @classmethod
    def _coerce_shape(cls, value: object) -> Optional[List[int]]:
        if not isinstance(value, (list, tuple)):
            return None
        try:
            return [int(item) for item in value]
        except (TypeError, ValueError):
            return None

    @field_validator("dominant_defect_type", "processing_timestamp", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> str:
        if value is None:
            return ""
        return str(value)

    @property
    def processed_at(self) -> Optional[datetime]:
        return parse_timestamp(self.processing_timestamp)

    @property
    def needs_repair(self) -> bool:
        return self.repair_probability >= 1.0


class Detection(BaseModel):
    """One recorded road-surface defect with its location, image and metadata."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    name: str = ""
    image_url: str = Field(default="", alias="imageUrl")
    location: Tuple[float, float]
    metadata: DefectMetadata

    @property
    def latitude(self) -> float:
        return self.location[0]

    @property
    def longitude(self) -> float:
        return self.location[1]

    @property
    def processed_at(self) -> Optional[datetime]:
        return self.metadata.processed_at


class FocusRequest(BaseModel):
    """Ask the map to fly to a detection and open its detail popup."""

    id: str
    center: Tuple[float, float]
    zoom: float = 17.0
    open_popup: bool = True
