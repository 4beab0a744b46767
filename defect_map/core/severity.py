import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict

from defect_map.core.models import SeverityBucket

SEVERE_THRESHOLD = Decimal("0.5")
MODERATE_THRESHOLD = Decimal("0.3")

SEVERITY_COLORS: Dict[SeverityBucket, str] = {
    SeverityBucket.SEVERE: "#ef4444",
    SeverityBucket.MODERATE: "#eab308",
    SeverityBucket.LOW: "#22c55e",
}


def classify(severity: float) -> SeverityBucket:
    """Bucket a 0-1 severity value, rounding half up to two decimals first."""

    value = float(severity)
    if not math.isfinite(value):
        return SeverityBucket.LOW
    rounded = Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if rounded >= SEVERE_THRESHOLD:
        return SeverityBucket.SEVERE
    if rounded >= MODERATE_THRESHOLD:
        return SeverityBucket.MODERATE
    return SeverityBucket.LOW


def severity_color(severity: float) -> str:
    return SEVERITY_COLORS[classify(severity)]


def format_severity(severity: float) -> str:
    return f"{classify(severity).value} ({float(severity) * 100:.1f}%)"
