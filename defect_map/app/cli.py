"""Convenience CLI for fetching detections and watching the live sync loop."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Optional

import uvicorn

from defect_map.adapters.cloud_storage import open_bucket
from defect_map.adapters.http_source import DefectApiClient
from defect_map.app.settings import AppSettings, get_settings, setup_logging
from defect_map.core.detection_store import DetectionSnapshot, DetectionStore
from defect_map.core.models import EvictionPolicy
from defect_map.core.presentation import build_feature_collection, format_defect_counts
from defect_map.core.severity import format_severity
from defect_map.services.fetch_service import DetectionFetchService
from defect_map.services.sync_engine import DetectionSource, SyncEngine


def _build_source(settings: AppSettings, api_url: Optional[str]) -> DetectionSource:
    if api_url:
        return DefectApiClient(api_url, timeout=settings.http_timeout_seconds)
    return DetectionFetchService(
        open_bucket(settings),
        default_limit=settings.fetch_default_limit,
        max_limit=settings.fetch_max_limit,
        batch_size=settings.fetch_batch_size,
    )


def _dump(obj: object) -> str:
    return json.dumps(
        obj,
        indent=2,
        default=lambda value: value.isoformat() if hasattr(value, "isoformat") else str(value),
    )


def _print_snapshot(snapshot: DetectionSnapshot, defect_type: Optional[str]) -> None:
    print(f"Held detections: {len(snapshot)} (version {snapshot.version})")
    for detection in snapshot.detections:
        if defect_type and detection.metadata.dominant_defect_type.casefold() != defect_type.casefold():
            continue
        print(
            "  {id} | {type} | {severity} | {lat:.6f},{lon:.6f} | {counts}".format(
                id=detection.id,
                type=detection.metadata.dominant_defect_type or "unknown",
                severity=format_severity(detection.metadata.severity_level),
                lat=detection.latitude,
                lon=detection.longitude,
                counts=format_defect_counts(detection.metadata.defect_counts) or "-",
            )
        )


async def _watch(engine: SyncEngine, cycles: int, interval: float, defect_type: Optional[str]) -> None:
    for cycle in range(1, cycles + 1):
        result = await engine.refresh()
        status = "ok" if result.ok else f"failed ({engine.last_error})"
        print(
            f"[Cycle {cycle:02d}] {status} | fetched={result.fetched} "
            f"held={len(result.snapshot)} evicted={len(result.evicted)}"
        )
        if cycle < cycles:
            await asyncio.sleep(interval)
    _print_snapshot(engine.snapshot(), defect_type)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Fetch road defect detections and run the sync loop.")
    parser.add_argument("--api-url", type=str, default=None, help="Read from a running service instead of storage")
    parser.add_argument("--log-format", choices=["text", "json"], default=None, help="Logging format")
    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch_parser = subparsers.add_parser("fetch", help="Fetch detections once and print them")
    fetch_parser.add_argument("--limit", type=int, default=None, help="Maximum metadata objects to read")
    fetch_parser.add_argument("--type", dest="defect_type", default=None, help="Only show this dominant defect type")
    fetch_parser.add_argument("--geojson", action="store_true", help="Print a GeoJSON FeatureCollection")

    watch_parser = subparsers.add_parser("watch", help="Run several sync cycles and print the merged set")
    watch_parser.add_argument("--cycles", type=int, default=3, help="Number of refresh cycles (default: 3)")
    watch_parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles")
    watch_parser.add_argument("--limit", type=int, default=None, help="Maximum metadata objects per cycle")
    watch_parser.add_argument("--type", dest="defect_type", default=None, help="Only show this dominant defect type")
    watch_parser.add_argument(
        "--eviction",
        choices=[policy.value for policy in EvictionPolicy],
        default=None,
        help="Eviction policy for incremental refreshes",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(argv)
    settings = get_settings()
    if args.log_format:
        settings.log_format = args.log_format
    # stdout carries the command output
    setup_logging(settings, stream=sys.stderr)

    if args.command == "serve":
        uvicorn.run("defect_map.app.main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
        return

    source = _build_source(settings, args.api_url)
    try:
        if args.command == "fetch":
            detections = asyncio.run(source.fetch_detections(limit=args.limit))
            if args.geojson:
                print(_dump(build_feature_collection(detections, args.defect_type)))
                return
            store = DetectionStore()
            store.replace(detections)
            _print_snapshot(store.snapshot(), args.defect_type)
            return

        eviction = EvictionPolicy(args.eviction) if args.eviction else settings.eviction_policy
        engine = SyncEngine(source, limit=args.limit, eviction=eviction)
        interval = args.interval if args.interval is not None else settings.poll_interval_seconds
        asyncio.run(_watch(engine, max(args.cycles, 1), interval, args.defect_type))
    finally:
        if isinstance(source, DefectApiClient):
            source.close()


if __name__ == "__main__":
    main()
