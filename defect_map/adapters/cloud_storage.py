import asyncio
import json
import logging
from datetime import timedelta
from typing import List, Optional, Union

from google.api_core.exceptions import GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage
from google.oauth2 import service_account

from defect_map.adapters.local_bucket import LocalFolderBucket
from defect_map.app.settings import AppSettings


logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"


class DefectBucket:
    """Read detection objects from a Google Cloud Storage bucket.

    Built once at startup. A bucket without a client (missing settings or
    credentials) stays unconfigured and every operation reports nothing.
    Readiness is an explicit awaited check instead of a flag flipped in the
    background.
    """

    def __init__(
        self,
        bucket_name: str,
        folder_prefix: str = "",
        *,
        client: Optional[storage.Client] = None,
        signed_url_ttl: timedelta = timedelta(minutes=15),
    ) -> None:
        self.bucket_name = bucket_name
        self.folder_prefix = folder_prefix.strip().strip("/")
        self.signed_url_ttl = signed_url_ttl
        self._client = client
        self._bucket = client.bucket(bucket_name) if client is not None and bucket_name else None
        self._ready = False

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "DefectBucket":
        ttl = timedelta(minutes=settings.signed_url_ttl_minutes)
        if not settings.google_project_id or not settings.google_cloud_bucket_name:
            logger.warning("Cloud storage not initialized - missing project id or bucket name")
            return cls(settings.google_cloud_bucket_name, settings.folder_prefix, signed_url_ttl=ttl)
        try:
            client = _build_client(settings)
        except (GoogleAuthError, OSError, ValueError) as exc:
            logger.warning("Cloud storage not initialized - could not load credentials: %s", exc)
            return cls(settings.google_cloud_bucket_name, settings.folder_prefix, signed_url_ttl=ttl)
        return cls(
            settings.google_cloud_bucket_name,
            settings.folder_prefix,
            client=client,
            signed_url_ttl=ttl,
        )

    @property
    def is_configured(self) -> bool:
        return self._bucket is not None

    @property
    def location(self) -> str:
        if self.folder_prefix:
            return f"gs://{self.bucket_name}/{self.folder_prefix}"
        return f"gs://{self.bucket_name}"

    async def is_ready(self) -> bool:
        if self._bucket is None:
            return False
        if self._ready:
            return True
        try:
            exists = await asyncio.to_thread(self._bucket.exists)
        except (GoogleAPIError, GoogleAuthError, OSError) as exc:
            logger.warning("Cloud storage readiness check failed for %s: %s", self.bucket_name, exc)
            return False
        if not exists:
            logger.warning("Cloud storage not ready - bucket %s does not exist", self.bucket_name)
            return False
        self._ready = True
        logger.info("Cloud storage ready: %s", self.location)
        return True

    def metadata_key(self, detection_id: str) -> str:
        if self.folder_prefix:
            return f"{self.folder_prefix}/{detection_id}.json"
        return f"{detection_id}.json"

    def list_metadata_keys(self) -> List[str]:
        if self._client is None or self._bucket is None:
            return []
        prefix = f"{self.folder_prefix}/" if self.folder_prefix else None
        blobs = self._client.list_blobs(self._bucket, prefix=prefix)
        # key order stands in for recency: upstream names objects by capture time
        return sorted((blob.name for blob in blobs if blob.name.endswith(".json")), reverse=True)

    def read_metadata(self, key: str) -> Optional[object]:
        if self._bucket is None:
            return None
        try:
            payload = self._bucket.blob(key).download_as_bytes()
        except NotFound:
            logger.warning("JSON file not found: %s", key)
            return None
        return json.loads(payload)

    def signed_url(self, key: str) -> str:
        if self._bucket is None:
            return ""
        return self._bucket.blob(key).generate_signed_url(
            version="v4",
            expiration=self.signed_url_ttl,
            method="GET",
        )


def _build_client(settings: AppSettings) -> storage.Client:
    project = settings.google_project_id
    if settings.google_credentials_path is not None:
        return storage.Client.from_service_account_json(str(settings.google_credentials_path), project=project)
    if settings.has_inline_credentials:
        credentials = service_account.Credentials.from_service_account_info(
            {
                "type": "service_account",
                "project_id": project,
                "client_email": settings.google_client_email,
                "private_key": settings.google_private_key,
                "token_uri": TOKEN_URI,
            }
        )
        return storage.Client(project=project, credentials=credentials)
    return storage.Client(project=project)


def open_bucket(settings: AppSettings) -> Union[DefectBucket, LocalFolderBucket]:
    if settings.local_bucket_path is not None:
        logger.info("Serving detections from local folder %s", settings.local_bucket_path)
        return LocalFolderBucket(settings.local_bucket_path, settings.folder_prefix)
    return DefectBucket.from_settings(settings)
