"""Scene State Machine - lifecycle and retry bookkeeping for one scene's media."""

from typing import Any, Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import InvalidTransitionError
from scene_pipeline.models.schemas import MediaKind, Scene, SceneStatus
from scene_pipeline.storage.scene_store import SceneStore

ALLOWED_TRANSITIONS: dict[SceneStatus, set[SceneStatus]] = {
    SceneStatus.PENDING: {SceneStatus.GENERATING, SceneStatus.FAILED},
    SceneStatus.GENERATING: {SceneStatus.MEDIA_READY, SceneStatus.FAILED},
    SceneStatus.MEDIA_READY: {SceneStatus.COMPLETED, SceneStatus.FAILED},
    SceneStatus.COMPLETED: set(),
    # FAILED -> GENERATING only through retry()
    SceneStatus.FAILED: set(),
}

TERMINAL_STATES = {SceneStatus.COMPLETED, SceneStatus.FAILED}


class SceneStateMachine:
    """Drives scene records through PENDING -> GENERATING -> MEDIA_READY -> COMPLETED."""

    def __init__(self, settings: Settings, logger: Any, store: SceneStore):
        """
        Initialize the state machine.

        Args:
            settings: Application settings
            logger: Logger instance
            store: Scene record store
        """
        self.settings = settings
        self.logger = logger
        self.store = store

    @staticmethod
    def _check(scene: Scene, target: SceneStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[scene.status]:
            raise InvalidTransitionError(scene.scene_id, scene.status.value, target.value)

    def start_generation(self, scene_id: str) -> Scene:
        def mutate(scene: Scene) -> None:
            self._check(scene, SceneStatus.GENERATING)
            scene.status = SceneStatus.GENERATING

        return self.store.update(scene_id, mutate)

    def mark_media_ready(self, scene_id: str, media_path: str, media_kind: MediaKind = MediaKind.IMAGE) -> Scene:
        """Record the visual asset; audio may only be attached after this."""

        def mutate(scene: Scene) -> None:
            self._check(scene, SceneStatus.MEDIA_READY)
            scene.media_path = media_path
            scene.media_kind = media_kind
            scene.status = SceneStatus.MEDIA_READY

        return self.store.update(scene_id, mutate)

    def attach_audio(self, scene_id: str, audio_path: str, audio_duration: Optional[float]) -> Scene:
        def mutate(scene: Scene) -> None:
            if scene.status != SceneStatus.MEDIA_READY:
                raise InvalidTransitionError(scene.scene_id, scene.status.value, "audio_attached")
            scene.audio_path = audio_path
            scene.audio_duration = audio_duration

        return self.store.update(scene_id, mutate)

    def attach_subtitles(self, scene_id: str, payload: Optional[str]) -> Scene:
        def mutate(scene: Scene) -> None:
            if scene.status != SceneStatus.MEDIA_READY:
                raise InvalidTransitionError(scene.scene_id, scene.status.value, "subtitles_attached")
            scene.subtitle_payload = payload

        return self.store.update(scene_id, mutate)

    def mark_completed(self, scene_id: str, clip_path: str) -> Scene:
        """Set the composed clip and clear any error left from a previous attempt."""

        def mutate(scene: Scene) -> None:
            self._check(scene, SceneStatus.COMPLETED)
            scene.clip_path = clip_path
            scene.error_message = None
            scene.status = SceneStatus.COMPLETED

        scene = self.store.update(scene_id, mutate)
        self.logger.info(f"✅ Scene {scene_id} completed: {clip_path}")
        return scene

    def mark_failed(self, scene_id: str, message: str) -> Scene:
        def mutate(scene: Scene) -> None:
            self._check(scene, SceneStatus.FAILED)
            scene.clip_path = None
            scene.error_message = message
            scene.status = SceneStatus.FAILED

        scene = self.store.update(scene_id, mutate)
        self.logger.error(f"❌ Scene {scene_id} failed: {message}")
        return scene

    def retry(self, scene_id: str) -> Scene:
        """
        Move a FAILED scene back to GENERATING.

        The retry counter increments by exactly one; the error message stays
        until the next successful completion.
        """

        def mutate(scene: Scene) -> None:
            if scene.status != SceneStatus.FAILED:
                raise InvalidTransitionError(scene.scene_id, scene.status.value, SceneStatus.GENERATING.value)
            scene.retry_count += 1
            scene.status = SceneStatus.GENERATING

        scene = self.store.update(scene_id, mutate)
        self.logger.info(f"Retrying scene {scene_id} (attempt {scene.retry_count + 1})")
        return scene

    def is_terminal(self, scene_id: str) -> bool:
        return self.store.get(scene_id).status in TERMINAL_STATES
