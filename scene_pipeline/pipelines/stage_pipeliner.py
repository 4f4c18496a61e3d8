"""Stage Pipeliner - overlaps speech synthesis of one scene with composition of the previous one."""

from concurrent.futures import Future
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import PipelineCancelled, PipelineError, ValidationFailure
from scene_pipeline.core.logging_config import scene_logger
from scene_pipeline.models.context import PipelineContext
from scene_pipeline.models.schemas import Scene, SceneStatus
from scene_pipeline.services.ports import AudioAnalyzer, SpeechSynthesizer
from scene_pipeline.services.progress_tracker import ProgressTracker
from scene_pipeline.services.scene_state import SceneStateMachine
from scene_pipeline.services.subtitle_engine import SubtitleTimingEngine
from scene_pipeline.services.video_composer import CompositionEngine
from scene_pipeline.utils.composition_executor import CompositionExecutor
from scene_pipeline.utils.error_handler import format_error_message, format_scene_error, get_fallback_suggestion
from scene_pipeline.utils.text_utils import split_sentences


@dataclass
class StageOutcome:
    """Scene ids by final state after one pipelined pass."""

    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class StagePipeliner:
    """
    Runs audio, subtitle and composition stages for scenes whose visuals are ready.

    Synthesis runs on the caller's thread; composition runs on the single
    composition worker. While scene i is being composed, scene i+1 is being
    synthesized.
    """

    def __init__(
        self,
        settings: Settings,
        logger: Any,
        state_machine: SceneStateMachine,
        synthesizer: SpeechSynthesizer,
        analyzer: AudioAnalyzer,
        subtitle_engine: SubtitleTimingEngine,
        composer: CompositionEngine,
        executor: CompositionExecutor,
        progress: Optional[ProgressTracker] = None,
    ):
        """
        Initialize the pipeliner.

        Args:
            settings: Application settings
            logger: Logger instance
            state_machine: Scene lifecycle
            synthesizer: Speech synthesis collaborator
            analyzer: Audio analysis collaborator
            subtitle_engine: Caption timing
            composer: Scene clip composition
            executor: Single-worker composition executor
            progress: Optional progress tracker
        """
        self.settings = settings
        self.logger = logger
        self.state = state_machine
        self.synthesizer = synthesizer
        self.analyzer = analyzer
        self.subtitles = subtitle_engine
        self.composer = composer
        self.executor = executor
        self.progress = progress

    def run(self, scenes: list[Scene], context: PipelineContext, work_dir: Path) -> StageOutcome:
        """
        Process MEDIA_READY scenes in ascending order index.

        Args:
            scenes: Scenes whose visual asset is ready
            context: Pipeline context
            work_dir: Job working directory (audio/, subtitles/, clips/)

        Returns:
            StageOutcome

        Raises:
            PipelineCancelled: If the job was cancelled; unprocessed scenes are marked FAILED
        """
        outcome = StageOutcome()
        ordered = sorted(scenes, key=lambda scene: scene.order_index)
        previous: Optional[Future] = None
        futures: list[tuple[str, Future]] = []
        cancelled = False

        for position, scene in enumerate(ordered):
            if context.cancellation.cancelled:
                cancelled = True
                self._fail_remaining(ordered[position:], "Job cancelled", context)
                break

            # (1) bound the wait on the previous composition
            self.executor.wait(
                previous,
                self.settings.pipeline_wait_timeout_seconds,
                task_name=f"composition of scene before {scene.scene_id}",
            )

            try:
                # (2) speech, (3) subtitles
                subtitle_path = self._prepare_audio_and_subtitles(scene, context, work_dir)
            except PipelineCancelled:
                cancelled = True
                self._fail_remaining(ordered[position:], "Job cancelled", context)
                break
            except Exception as e:
                self._fail(scene.scene_id, format_scene_error("Speech synthesis", e), context)
                scene_logger(self.logger, scene.scene_id).error(
                    format_error_message(
                        "Synthesizing narration",
                        e,
                        context={"job_id": context.job_id, "scene_id": scene.scene_id},
                        suggestion=get_fallback_suggestion("TTS", e),
                    )
                )
                continue

            # (4) hand off to the composition worker
            clip_path = work_dir / "clips" / f"{scene.scene_id}.mp4"
            previous = self.executor.submit(
                partial(self._compose, scene.scene_id, clip_path, subtitle_path, context),
                task_name=f"compose_scene[{scene.scene_id}]",
            )
            futures.append((scene.scene_id, previous))
            self.logger.debug(f"Scene {scene.scene_id} queued for composition -> {clip_path}")

        # (5) the worker runs tasks in order, so the last future finishing means all did
        if previous is not None:
            while not self.executor.wait(previous, self.settings.pipeline_wait_timeout_seconds, "final composition"):
                if context.cancellation.cancelled:
                    cancelled = True
                    self._fail_remaining(ordered, "Job cancelled", context)
                    break

        for scene_id, _ in futures:
            status = self.state.store.get(scene_id).status
            if status == SceneStatus.COMPLETED:
                outcome.completed.append(scene_id)
        for scene in ordered:
            if scene.scene_id not in outcome.completed:
                outcome.failed.append(scene.scene_id)

        if cancelled or context.cancellation.cancelled:
            raise PipelineCancelled(f"Job {context.job_id} cancelled")
        return outcome

    def _prepare_audio_and_subtitles(
        self, scene: Scene, context: PipelineContext, work_dir: Path
    ) -> Optional[Path]:
        """Synthesize narration and write captions; returns the caption file, if any."""
        if not scene.has_narration:
            self.logger.info(f"Scene {scene.scene_id} has no narration, skipping audio and subtitles")
            return None

        audio_path = self._synthesize_with_retries(scene, context, work_dir)
        audio_duration = self.analyzer.measure_duration(audio_path)
        self.state.attach_audio(scene.scene_id, str(audio_path), audio_duration)

        sentence_count = len(split_sentences(scene.narration))
        segments = (
            self.analyzer.detect_sentence_boundaries(audio_path, sentence_count) if sentence_count > 1 else None
        )
        cues = self.subtitles.build_cues_for_context(
            scene.narration,
            scene.target_duration,
            context,
            speech_segments=segments,
            audio_duration=audio_duration,
        )
        if not cues:
            self.state.attach_subtitles(scene.scene_id, None)
            return None

        payload = self.subtitles.render_ass(cues, context)
        subtitle_path = work_dir / "subtitles" / f"{scene.scene_id}.ass"
        subtitle_path.parent.mkdir(parents=True, exist_ok=True)
        subtitle_path.write_text(payload, encoding="utf-8")
        self.state.attach_subtitles(scene.scene_id, payload)
        return subtitle_path

    def _synthesize_with_retries(self, scene: Scene, context: PipelineContext, work_dir: Path) -> Path:
        """Up to tts_max_attempts tries; the rate limiter's own wait is the only pause."""
        output_path = work_dir / "audio" / f"{scene.scene_id}.mp3"
        max_attempts = self.settings.tts_max_attempts
        for attempt in range(1, max_attempts + 1):
            context.cancellation.raise_if_cancelled()
            try:
                return self.synthesizer.synthesize(
                    scene.narration, context.quality_tier, context.voice_profile, output_path
                )
            except ValidationFailure:
                raise
            except (PipelineError, OSError) as e:
                if attempt >= max_attempts:
                    raise
                self.logger.warning(
                    f"Speech synthesis for scene {scene.scene_id} failed (attempt {attempt}/{max_attempts}): {e}"
                )
        raise ValidationFailure("tts_max_attempts must be at least 1")

    def _compose(self, scene_id: str, clip_path: Path, subtitle_path: Optional[Path], context: PipelineContext) -> bool:
        """Composition task body; records the outcome on the scene and never raises."""
        scene = self.state.store.get(scene_id)
        try:
            clip = self.composer.compose_scene(scene, clip_path, context, subtitle_path)
        except PipelineCancelled:
            if not self.state.is_terminal(scene_id):
                self._fail(scene_id, "Job cancelled", context)
            return False
        except Exception as e:
            self._fail(scene_id, format_scene_error("Composition", e), context)
            scene_logger(self.logger, scene_id).error(
                format_error_message(
                    "Composing scene clip",
                    e,
                    context={"job_id": context.job_id, "scene_id": scene_id},
                    suggestion=get_fallback_suggestion("Composition", e),
                )
            )
            return False

        if self.state.is_terminal(scene_id):
            self.logger.warning(f"⚠️ Scene {scene_id} was closed while composing, discarding {clip}")
            return False
        self.state.mark_completed(scene_id, str(clip))
        if self.progress is not None:
            self.progress.record_scene(context.job_id, succeeded=True)
        return True

    def _fail(self, scene_id: str, message: str, context: PipelineContext) -> None:
        self.state.mark_failed(scene_id, message)
        if self.progress is not None:
            self.progress.record_scene(context.job_id, succeeded=False)

    def _fail_remaining(self, scenes: list[Scene], message: str, context: PipelineContext) -> None:
        for scene in scenes:
            if not self.state.is_terminal(scene.scene_id):
                self._fail(scene.scene_id, message, context)
