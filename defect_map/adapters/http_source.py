import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from defect_map.core.models import Detection


LOGGER = logging.getLogger(__name__)


class DefectApiClient:
    """Fetch detections from a running service over ``GET /api/defects``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def get_detections(self, limit: Optional[int] = None, since: Optional[datetime] = None) -> List[Detection]:
        params: Dict[str, Any] = {}
        if limit is not None:
            params["limit"] = limit
        if since is not None:
            params["since"] = since.isoformat()
        response = self._session.get(f"{self.base_url}/api/defects", params=params, timeout=self.timeout)
        if response.status_code >= 400:
            raise requests.HTTPError(f"Received status {response.status_code}", response=response)
        payload = response.json()
        records = payload.get("detections", []) if isinstance(payload, dict) else []
        detections: List[Detection] = []
        for record in records:
            try:
                detections.append(Detection.model_validate(record))
            except ValueError as exc:
                LOGGER.debug("Skipping malformed detection from API: %s", exc)
        return detections

    async def fetch_detections(
        self,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> List[Detection]:
        return await asyncio.to_thread(self.get_detections, limit, since)

    def close(self) -> None:
        self._session.close()
