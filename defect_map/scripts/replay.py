"""Replay a folder of detection files through the sync engine for offline evaluation."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from defect_map.adapters.local_bucket import LocalFolderBucket
from defect_map.core.detection_store import order_recent
from defect_map.core.models import Detection, EvictionPolicy
from defect_map.services.fetch_service import DetectionFetchService
from defect_map.services.sync_engine import SyncEngine


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ReplaySource:
    """Simple source that reveals detections chronologically during replay."""

    def __init__(self, detections: Iterable[Detection], wave_size: int = 5) -> None:
        self._detections: List[Detection] = list(reversed(order_recent(detections)))
        self.wave_size = max(wave_size, 1)
        self._cursor = 0

    def advance(self) -> bool:
        if self._cursor >= len(self._detections):
            return False
        self._cursor = min(self._cursor + self.wave_size, len(self._detections))
        return True

    def now(self) -> datetime:
        if self._cursor == 0:
            return _EPOCH
        return self._detections[self._cursor - 1].processed_at or _EPOCH

    async def fetch_detections(
        self,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> List[Detection]:
        revealed = order_recent(self._detections[: self._cursor])
        if limit is not None:
            revealed = revealed[:limit]
        if since is None:
            return revealed
        return [item for item in revealed if item.processed_at is not None and item.processed_at > since]


async def _load_detections(folder: Path, prefix: str) -> List[Detection]:
    service = DetectionFetchService(LocalFolderBucket(folder, prefix), default_limit=100000, max_limit=100000)
    detections = await service.fetch_detections()
    if not detections:
        raise RuntimeError(f"No valid detections found in {folder}")
    return detections


async def run_replay(
    folder: Path,
    prefix: str,
    wave_size: int,
    eviction: EvictionPolicy,
    output_json: Optional[Path],
) -> Dict:
    detections = await _load_detections(folder, prefix)
    source = ReplaySource(detections, wave_size)
    engine = SyncEngine(source, eviction=eviction, clock=source.now)

    held_per_cycle: List[int] = []
    evicted_total = 0
    while source.advance():
        result = await engine.refresh()
        held_per_cycle.append(len(result.snapshot))
        evicted_total += len(result.evicted)

    final = engine.snapshot()
    summary = {
        "detections": len(detections),
        "cycles": len(held_per_cycle),
        "eviction_policy": eviction.value,
        "held_per_cycle": held_per_cycle,
        "evicted_total": evicted_total,
        "final_held": len(final),
        "final_types": dict(Counter(item.metadata.dominant_defect_type or "unknown" for item in final.detections)),
        "last_updated": final.last_updated.isoformat() if final.last_updated else None,
    }

    if output_json is not None:
        output_json.parent.mkdir(parents=True, exist_ok=True)
        output_json.write_text(json.dumps(summary, indent=2))

    return summary


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay stored detections through the sync engine.")
    parser.add_argument("folder", type=Path, help="Folder holding <name>.json / <name>.jpg pairs.")
    parser.add_argument("--prefix", default="", help="Sub-folder inside the folder to replay.")
    parser.add_argument("--wave-size", type=int, default=5, help="Detections revealed per cycle.")
    parser.add_argument(
        "--eviction",
        choices=[policy.value for policy in EvictionPolicy],
        default=EvictionPolicy.PRUNE.value,
        help="Eviction policy for incremental refreshes.",
    )
    parser.add_argument("--output-json", type=Path, help="Optional path to write the summary as JSON.")
    args = parser.parse_args()

    summary = asyncio.run(
        run_replay(args.folder, args.prefix, args.wave_size, EvictionPolicy(args.eviction), args.output_json)
    )

    print("Replay complete. Summary:")
    for key, value in summary.items():
        print(f"- {key}: {value}")


if __name__ == "__main__":
    main()
