"""Filesystem-backed object storage."""

import shutil
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import UnsafeArgumentError
from scene_pipeline.services.ports import ObjectStorage


class LocalObjectStorage(ObjectStorage):
    """Stores objects as files under `<storage_path>/objects`."""

    def __init__(self, settings: Settings, logger: Any):
        """
        Initialize the storage.

        Args:
            settings: Application settings
            logger: Logger instance
        """
        self.settings = settings
        self.logger = logger
        self.root = Path(settings.storage_path) / "objects"
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise UnsafeArgumentError(f"Invalid object key: {key!r}")
        return self.root / key

    def upload(self, local_path: Path, key: str) -> str:
        target = self._path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, target)
        self.logger.info(f"Uploaded {local_path} -> {key}")
        return key

    def exists(self, key: str) -> bool:
        return self._path_for(key).exists()

    def presigned_url(self, key: str, expires_in_seconds: int = 3600) -> str:
        """file:// URL with an expiry hint; local files need no signature."""
        path = self._path_for(key).resolve()
        expires_at = int(time.time()) + expires_in_seconds
        return f"file://{quote(str(path))}?expires={expires_at}"

    def download(self, key: str, local_path: Path) -> Path:
        source = self._path_for(key)
        if not source.exists():
            raise FileNotFoundError(f"Object not found: {key}")
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, local_path)
        return local_path
