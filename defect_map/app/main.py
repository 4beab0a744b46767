import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from defect_map.adapters.cloud_storage import open_bucket
from defect_map.app.settings import get_settings
from defect_map.core.detection_store import DetectionStore
from defect_map.core.presentation import available_defect_types, build_feature_collection, summarize
from defect_map.core.selection import SelectionState
from defect_map.services.fetch_service import DetectionFetchService, image_key_for
from defect_map.services.sync_engine import SyncEngine


logger = logging.getLogger(__name__)
settings = get_settings()

bucket = open_bucket(settings)
fetch_service = DetectionFetchService(
    bucket,
    default_limit=settings.fetch_default_limit,
    max_limit=settings.fetch_max_limit,
    batch_size=settings.fetch_batch_size,
)
sync_engine = SyncEngine(
    fetch_service,
    DetectionStore(),
    eviction=settings.eviction_policy,
)
selection = SelectionState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.enable_background_worker:
        sync_engine.start(settings.poll_interval_seconds)
    try:
        yield
    finally:
        await sync_engine.stop()


app = FastAPI(title="Road Defect Map", version="0.1.0", lifespan=lifespan)

# The map front end is served from a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


class SelectionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    defect_type: Optional[str] = Field(default=None, alias="defectType")


def get_fetch_service() -> DetectionFetchService:
    return fetch_service


def get_engine() -> SyncEngine:
    return sync_engine


def get_selection() -> SelectionState:
    return selection


def _environment_status() -> dict:
    return {
        "projectId": "✓ Set" if settings.google_project_id else "✗ Missing",
        "bucketName": "✓ Set" if settings.google_cloud_bucket_name else "✗ Missing",
        "region": "✓ Set" if settings.google_cloud_region else "✗ Missing",
        "folderPath": "✓ Set" if settings.google_cloud_folder_path else "✗ Missing",
    }


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/defects")
async def list_defects(
    limit: Optional[int] = Query(default=None),
    since: Optional[datetime] = Query(default=None),
    service: DetectionFetchService = Depends(get_fetch_service),
):
    try:
        detections = await service.fetch_detections(limit=limit, since=since)
    except Exception as exc:
        logger.exception("Error fetching defects")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to fetch defects", "message": str(exc)},
        )
    return {"detections": jsonable_encoder(detections)}


@app.get("/api/defects/{defect_id}")
async def get_defect(
    defect_id: str,
    service: DetectionFetchService = Depends(get_fetch_service),
):
    try:
        detection = await service.get_detection(defect_id)
    except Exception as exc:
        logger.exception("Error fetching defect %s", defect_id)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to fetch defect", "message": str(exc)},
        )
    if detection is None:
        return JSONResponse(status_code=404, content={"error": "Defect not found"})
    return jsonable_encoder(detection)


@app.get("/api/config")
async def config_status() -> dict:
    return {"configStatus": settings.config_status()}


@app.get("/api/test-gcs")
async def test_storage():
    if not await bucket.is_ready():
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Defect storage is not ready",
                "error": "Storage initialization failed or bucket is not accessible",
                "environment": _environment_status(),
            },
        )
    try:
        metadata_files = await asyncio.to_thread(bucket.list_metadata_keys)
        sample_detection = None
        if metadata_files:
            sample_metadata = await asyncio.to_thread(bucket.read_metadata, metadata_files[0])
            if sample_metadata is not None:
                try:
                    image_url = await asyncio.to_thread(bucket.signed_url, image_key_for(metadata_files[0]))
                except Exception:
                    logger.exception("Error signing sample image for %s", metadata_files[0])
                    image_url = ""
                sample_detection = {
                    "metadata": sample_metadata,
                    "imageUrl": "✓ Generated" if image_url else "✗ Failed",
                }
    except Exception as exc:
        logger.exception("Defect storage diagnostic failed")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Defect storage connection failed",
                "error": str(exc),
                "environment": _environment_status(),
            },
        )
    return {
        "success": True,
        "message": "Defect storage connection successful",
        "location": bucket.location,
        "fileCount": len(metadata_files),
        "sampleFiles": metadata_files[:5],
        "sampleDetection": jsonable_encoder(sample_detection),
        "environment": _environment_status(),
    }


@app.get("/api/live")
async def live_features(
    defect_type: Optional[str] = Query(default=None, alias="type"),
    engine: SyncEngine = Depends(get_engine),
    state: SelectionState = Depends(get_selection),
) -> dict:
    snapshot = engine.snapshot()
    active_type = defect_type if defect_type is not None else state.selected_defect_type
    collection = build_feature_collection(snapshot.detections, active_type)
    collection["selectedDefectType"] = active_type
    collection["lastUpdated"] = snapshot.last_updated
    collection["version"] = snapshot.version
    collection["total"] = len(snapshot)
    return jsonable_encoder(collection)


@app.get("/api/live/recent")
async def live_recent(
    limit: int = Query(default=50, ge=1),
    engine: SyncEngine = Depends(get_engine),
) -> list[dict]:
    return jsonable_encoder([summarize(detection) for detection in engine.recent(limit)])


@app.get("/api/live/types")
async def live_types(engine: SyncEngine = Depends(get_engine)) -> list[str]:
    return available_defect_types(engine.snapshot().detections)


@app.post("/api/live/refresh")
async def live_refresh(engine: SyncEngine = Depends(get_engine)) -> dict:
    result = await engine.refresh()
    return jsonable_encoder(
        {
            "ok": result.ok,
            "initial": result.initial,
            "fetched": result.fetched,
            "evicted": result.evicted,
            "held": len(result.snapshot),
            "lastUpdated": result.snapshot.last_updated,
            "error": engine.last_error,
        }
    )


@app.get("/api/live/selection")
async def get_live_selection(state: SelectionState = Depends(get_selection)) -> dict:
    return {"defectType": state.selected_defect_type}


@app.put("/api/live/selection")
async def put_live_selection(
    update: SelectionUpdate,
    state: SelectionState = Depends(get_selection),
) -> dict:
    return {"defectType": state.select(update.defect_type)}


@app.delete("/api/live/selection", status_code=204)
async def clear_live_selection(state: SelectionState = Depends(get_selection)) -> None:
    state.clear()


@app.post("/api/live/focus/{defect_id}")
async def focus_defect(
    defect_id: str,
    engine: SyncEngine = Depends(get_engine),
    state: SelectionState = Depends(get_selection),
):
    detection = engine.get(defect_id)
    if detection is None:
        return JSONResponse(status_code=404, content={"error": "Defect not found"})
    return jsonable_encoder(state.focus(detection))
