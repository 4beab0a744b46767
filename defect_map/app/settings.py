import logging
import sys
from pathlib import Path
from typing import Dict, Optional, TextIO

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from defect_map.core.models import EvictionPolicy


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DEFECTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mapbox_access_token: str = ""
    google_project_id: str = ""
    google_cloud_bucket_name: str = ""
    google_cloud_region: str = ""
    google_cloud_folder_path: str = ""
    google_credentials_path: Optional[Path] = None
    google_client_email: str = ""
    google_private_key: str = ""
    local_bucket_path: Optional[Path] = None
    fetch_default_limit: int = Field(default=1000, ge=1)
    fetch_max_limit: int = Field(default=10000, ge=1)
    fetch_batch_size: int = Field(default=10, ge=1)
    signed_url_ttl_minutes: float = Field(default=15.0, gt=0.0)
    poll_interval_seconds: float = Field(default=20.0, gt=0.0)
    eviction_policy: EvictionPolicy = EvictionPolicy.PRUNE
    enable_background_worker: bool = True
    api_base_url: str = "http://localhost:8000"
    http_timeout_seconds: float = Field(default=10.0, gt=0.0)
    log_format: str = Field(default="text")
    log_level: str = Field(default="INFO")

    @field_validator("google_credentials_path", "local_bucket_path", mode="before")
    @classmethod
    def _expand_path(cls, value: object) -> Optional[Path]:
        if value is None or value == "":
            return None
        return Path(str(value)).expanduser()

    @field_validator("google_private_key", mode="before")
    @classmethod
    def _unescape_private_key(cls, value: object) -> str:
        # keys pasted into .env files usually carry literal "\n" sequences
        return str(value or "").replace("\\n", "\n")

    @model_validator(mode="after")
    def _bound_default_limit(self) -> "AppSettings":
        if self.fetch_default_limit > self.fetch_max_limit:
            self.fetch_default_limit = self.fetch_max_limit
        return self

    @property
    def folder_prefix(self) -> str:
        return self.google_cloud_folder_path.strip().rstrip("/")

    @property
    def has_inline_credentials(self) -> bool:
        return bool(self.google_client_email and self.google_private_key)

    def config_status(self) -> Dict[str, bool]:
        return {
            "mapboxToken": bool(self.mapbox_access_token),
            "googleProjectId": bool(self.google_project_id),
            "googleCloudBucketName": bool(self.google_cloud_bucket_name),
            "googleCloudRegion": bool(self.google_cloud_region),
            "googleCloudFolderPath": bool(self.google_cloud_folder_path),
        }


def get_settings() -> AppSettings:
    return AppSettings()


def setup_logging(settings: AppSettings, stream: Optional[TextIO] = None) -> None:
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if settings.log_format == "json":
        formatter = logging.Formatter(
            '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)
    logging.basicConfig(level=log_level, handlers=[handler], force=True)
