import asyncio
import json
from pathlib import Path
from typing import List, Optional


class LocalFolderBucket:
    """Serve detection metadata and images from a directory on disk.

    Mirrors the object layout of the cloud bucket: keys are POSIX paths
    relative to ``root`` and every ``<name>.json`` sits next to ``<name>.jpg``.
    Image "signed URLs" are plain ``file://`` URIs.
    """

    def __init__(self, root: Path, folder_prefix: str = "") -> None:
        self.root = Path(root)
        self.folder_prefix = folder_prefix.strip().strip("/")

    @property
    def is_configured(self) -> bool:
        return self.root.is_dir()

    @property
    def location(self) -> str:
        return str(self.root)

    async def is_ready(self) -> bool:
        return await asyncio.to_thread(self.root.is_dir)

    def metadata_key(self, detection_id: str) -> str:
        if self.folder_prefix:
            return f"{self.folder_prefix}/{detection_id}.json"
        return f"{detection_id}.json"

    def list_metadata_keys(self) -> List[str]:
        base = self.root / self.folder_prefix if self.folder_prefix else self.root
        if not base.is_dir():
            return []
        keys = [path.relative_to(self.root).as_posix() for path in base.rglob("*.json") if path.is_file()]
        return sorted(keys, reverse=True)

    def read_metadata(self, key: str) -> Optional[object]:
        path = self.root / key
        if not path.is_file():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def signed_url(self, key: str) -> str:
        path = self.root / key
        if not path.is_file():
            raise FileNotFoundError(f"No image at {path}")
        return path.resolve().as_uri()
