"""Storage repository for scene records."""

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.models.schemas import Scene


class SceneStore:
    """
    Thread-safe scene records keyed by scene id.

    Each key has its own lock; updates are applied to a copy and swapped in,
    so readers never observe a half-applied change.
    """

    def __init__(self, settings: Settings, logger: Any):
        """
        Initialize the store.

        Args:
            settings: Application settings
            logger: Logger instance
        """
        self.settings = settings
        self.logger = logger
        self.storage_path = Path(settings.storage_path)
        self._scenes: dict[str, Scene] = {}
        self._locks: dict[str, Lock] = {}
        self._registry_lock = Lock()

    def _lock_for(self, scene_id: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(scene_id)
            if lock is None:
                lock = Lock()
                self._locks[scene_id] = lock
            return lock

    def add(self, scene: Scene) -> Scene:
        with self._lock_for(scene.scene_id):
            self._scenes[scene.scene_id] = scene.model_copy(deep=True)
        return self.get(scene.scene_id)

    def get(self, scene_id: str) -> Scene:
        """
        Get a copy of a scene record.

        Raises:
            KeyError: If the scene is unknown
        """
        with self._lock_for(scene_id):
            if scene_id not in self._scenes:
                raise KeyError(f"Unknown scene: {scene_id}")
            return self._scenes[scene_id].model_copy(deep=True)

    def update(self, scene_id: str, mutator: Callable[[Scene], None]) -> Scene:
        """
        Apply a mutation to a scene under its lock.

        Args:
            scene_id: Scene identifier
            mutator: Callable that edits the scene in place; may raise to abort

        Returns:
            Copy of the updated scene
        """
        with self._lock_for(scene_id):
            if scene_id not in self._scenes:
                raise KeyError(f"Unknown scene: {scene_id}")
            working = self._scenes[scene_id].model_copy(deep=True)
            mutator(working)
            working.updated_at = datetime.now()
            self._scenes[scene_id] = working
            return working.model_copy(deep=True)

    def list_scenes(self, scene_ids: Optional[list[str]] = None) -> list[Scene]:
        """Return scene copies ordered by order_index."""
        with self._registry_lock:
            ids = list(scene_ids) if scene_ids is not None else list(self._scenes)
        scenes = [self.get(scene_id) for scene_id in ids]
        return sorted(scenes, key=lambda scene: scene.order_index)

    def save_snapshot(self, job_id: str, scene_ids: Optional[list[str]] = None) -> Path:
        """
        Save the job's scenes to a JSON file.

        Args:
            job_id: Job identifier
            scene_ids: Scenes to include (defaults to all)

        Returns:
            Path of the snapshot file
        """
        self.storage_path.mkdir(parents=True, exist_ok=True)
        file_path = self.storage_path / f"{job_id}.json"

        scenes = [scene.model_dump(mode="json") for scene in self.list_scenes(scene_ids)]
        with open(file_path, "w", encoding="utf-8") as f:
            json.dump({"job_id": job_id, "scenes": scenes}, f, indent=2, ensure_ascii=False)

        self.logger.info(f"Scene snapshot saved to: {file_path}")
        return file_path

    def load_snapshot(self, job_id: str) -> Optional[list[Scene]]:
        """
        Load a job's scenes from its snapshot and register them.

        Returns:
            Scenes ordered by order_index, or None if no snapshot exists
        """
        file_path = self.storage_path / f"{job_id}.json"
        if not file_path.exists():
            self.logger.warning(f"Scene snapshot not found: {job_id}")
            return None

        with open(file_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        scenes = [self.add(Scene(**scene_dict)) for scene_dict in data.get("scenes", [])]
        self.logger.info(f"Loaded {len(scenes)} scenes for job {job_id}")
        return sorted(scenes, key=lambda scene: scene.order_index)
