"""Composition/Concatenation Engine - renders scene clips and joins them into the final video."""

import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import (
    CommandFailedError,
    CommandTimeoutError,
    ResourceExhausted,
    ValidationFailure,
)
from scene_pipeline.models.context import PipelineContext
from scene_pipeline.models.schemas import Scene
from scene_pipeline.services.failure_policy import ResourceRetryPolicy
from scene_pipeline.services.ffmpeg_commands import FfmpegCommandBuilder, write_concat_list
from scene_pipeline.utils.subprocess_runner import CommandRunner, MediaCommand

TIER_SINGLE = "single_clip"
TIER_COPY = "stream_copy"
TIER_REENCODE = "filtered_reencode"
TIER_PAIRWISE = "pairwise_merge"

RECOVERABLE_ERRORS = (CommandFailedError, CommandTimeoutError, ResourceExhausted)


class VideoComposerError(Exception):
    """Raised when every concatenation tier failed."""


@dataclass
class ConcatResult:
    """Outcome of a final concatenation."""

    output_path: Path
    tier: str
    clip_count: int


class ReencodeCircuitBreaker:
    """
    Skips the filtered re-encode tier after repeated failures.

    Shared by every job using the same engine: once the tier has failed
    `threshold` times in a row it is bypassed for `cooldown_seconds`.
    """

    def __init__(self, threshold: int, cooldown_seconds: float):
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._lock = Lock()

    @property
    def is_open(self) -> bool:
        with self._lock:
            if self._opened_at is None:
                return False
            if time.monotonic() - self._opened_at >= self.cooldown_seconds:
                # Half-open: allow one more try
                self._opened_at = None
                self._failures = self.threshold - 1
                return False
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self.threshold > 0 and self._failures >= self.threshold:
                self._opened_at = time.monotonic()


class CompositionEngine:
    """Builds and runs encoder invocations for scenes and the final concatenation."""

    def __init__(
        self,
        settings: Settings,
        logger: Any,
        runner: Optional[CommandRunner] = None,
        commands: Optional[FfmpegCommandBuilder] = None,
        resource_policy: Optional[ResourceRetryPolicy] = None,
    ):
        """
        Initialize the composition engine.

        Args:
            settings: Application settings
            logger: Logger instance
            runner: Subprocess runner (default: CommandRunner)
            commands: Command builder (default: FfmpegCommandBuilder)
            resource_policy: OOM retry policy (default: ResourceRetryPolicy)
        """
        self.settings = settings
        self.logger = logger
        self.runner = runner or CommandRunner(settings, logger)
        self.commands = commands or FfmpegCommandBuilder(settings)
        self.resource_policy = resource_policy or ResourceRetryPolicy(settings, logger)
        self.reencode_breaker = ReencodeCircuitBreaker(
            settings.reencode_breaker_threshold, settings.reencode_breaker_cooldown_seconds
        )

    @staticmethod
    def scene_duration(scene: Scene) -> float:
        """A scene lasts as long as its narration, and never less than its target."""
        return max(scene.target_duration, scene.audio_duration or 0.0)

    def _run(self, command: MediaCommand, context: PipelineContext) -> None:
        self.resource_policy.run(
            lambda attempt: self.runner.run(command, cancellation=context.cancellation),
            command.task_name,
        )

    def compose_scene(
        self,
        scene: Scene,
        output_path: Path,
        context: PipelineContext,
        subtitle_path: Optional[Path] = None,
    ) -> Path:
        """
        Render one scene clip.

        The clip is written next to `output_path` and moved into place only
        after the encoder succeeds, so an earlier clip is never half-replaced.

        Args:
            scene: Scene with media_path (and optionally audio_path)
            output_path: Final clip location
            context: Pipeline context (resolution, cancellation)
            subtitle_path: Caption file to burn in, if any

        Returns:
            Path to the composed clip
        """
        if not scene.media_path:
            raise ValidationFailure(f"Scene {scene.scene_id} has no visual asset")

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = output_path.with_name(f"{output_path.stem}.part{output_path.suffix}")

        command = self.commands.compose_scene(
            media_path=scene.media_path,
            media_kind=scene.media_kind,
            duration=self.scene_duration(scene),
            output_path=str(temp_path),
            width=context.video_width,
            height=context.video_height,
            audio_path=scene.audio_path,
            subtitle_path=str(subtitle_path) if subtitle_path else None,
            task_name=f"compose_scene[{scene.scene_id}]",
        )

        try:
            self._run(command, context)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

        os.replace(temp_path, output_path)
        return output_path

    def concatenate(self, clip_paths: list[str], output_path: Path, context: PipelineContext) -> ConcatResult:
        """
        Join scene clips in order, degrading through three tiers.

        1. stream copy through the concat demuxer
        2. one filtered re-encode over every clip (skipped for large batches
           or while the re-encode breaker is open)
        3. sequential pairwise merges, never more than two clips per invocation

        Args:
            clip_paths: Scene clips in playback order
            output_path: Final video location
            context: Pipeline context

        Returns:
            ConcatResult naming the tier that produced the output

        Raises:
            ValidationFailure: If there are no clips
            VideoComposerError: If every tier failed
        """
        if not clip_paths:
            raise ValidationFailure("No clips to concatenate")

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        work_dir = output_path.parent / f".{output_path.stem}_concat"
        work_dir.mkdir(parents=True, exist_ok=True)

        try:
            if len(clip_paths) == 1:
                shutil.copyfile(clip_paths[0], output_path)
                return ConcatResult(output_path=output_path, tier=TIER_SINGLE, clip_count=1)

            if self._try_stream_copy(clip_paths, output_path, work_dir, context):
                return ConcatResult(output_path=output_path, tier=TIER_COPY, clip_count=len(clip_paths))

            if len(clip_paths) > self.settings.sequential_merge_threshold:
                self.logger.info(
                    f"{len(clip_paths)} clips exceed the sequential merge threshold "
                    f"({self.settings.sequential_merge_threshold}), skipping filtered re-encode"
                )
            elif self.reencode_breaker.is_open:
                self.logger.warning("Filtered re-encode tier is tripped after repeated failures, skipping it")
            elif self._try_reencode(clip_paths, output_path, work_dir, context):
                return ConcatResult(output_path=output_path, tier=TIER_REENCODE, clip_count=len(clip_paths))

            self._pairwise_merge(clip_paths, output_path, work_dir, context)
            return ConcatResult(output_path=output_path, tier=TIER_PAIRWISE, clip_count=len(clip_paths))
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def _try_stream_copy(
        self, clip_paths: list[str], output_path: Path, work_dir: Path, context: PipelineContext
    ) -> bool:
        list_file = write_concat_list(clip_paths, work_dir / "concat_list.txt")
        temp_path = work_dir / f"copy{output_path.suffix}"
        command = self.commands.concat_copy(str(list_file), str(temp_path), clip_paths)
        try:
            self.runner.run(command, cancellation=context.cancellation)
        except RECOVERABLE_ERRORS as e:
            self.logger.warning(f"Stream-copy concatenation failed, falling back to re-encode: {e}")
            return False
        os.replace(temp_path, output_path)
        self.logger.info(f"✅ Concatenated {len(clip_paths)} clips by stream copy")
        return True

    def _try_reencode(
        self, clip_paths: list[str], output_path: Path, work_dir: Path, context: PipelineContext
    ) -> bool:
        temp_path = work_dir / f"reencode{output_path.suffix}"
        command = self.commands.concat_reencode(
            clip_paths, str(temp_path), context.video_width, context.video_height
        )
        try:
            self._run(command, context)
        except RECOVERABLE_ERRORS as e:
            self.reencode_breaker.record_failure()
            self.logger.warning(f"Filtered re-encode failed, falling back to pairwise merge: {e}")
            return False
        self.reencode_breaker.record_success()
        os.replace(temp_path, output_path)
        self.logger.info(f"✅ Concatenated {len(clip_paths)} clips by filtered re-encode")
        return True

    def _pairwise_merge(
        self, clip_paths: list[str], output_path: Path, work_dir: Path, context: PipelineContext
    ) -> None:
        accumulator = clip_paths[0]
        try:
            for index, next_clip in enumerate(clip_paths[1:], start=1):
                merged = work_dir / f"merge_{index:04d}{output_path.suffix}"
                command = self.commands.pairwise_merge(
                    accumulator, next_clip, str(merged), context.video_width, context.video_height
                )
                self._run(command, context)
                if accumulator != clip_paths[0]:
                    Path(accumulator).unlink(missing_ok=True)
                accumulator = str(merged)
                self.logger.debug(f"Pairwise merge {index}/{len(clip_paths) - 1} done")
        except RECOVERABLE_ERRORS as e:
            raise VideoComposerError(f"All concatenation tiers failed; pairwise merge: {e}") from e

        os.replace(accumulator, output_path)
        self.logger.info(f"✅ Concatenated {len(clip_paths)} clips by pairwise merge")
