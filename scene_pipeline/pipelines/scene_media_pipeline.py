"""Scene media pipeline orchestrator - visuals, pipelined stages, then final concatenation."""

import time
from functools import partial
from pathlib import Path
from typing import Any, Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import PipelineCancelled, PipelineError, ValidationFailure
from scene_pipeline.models.context import PipelineContext
from scene_pipeline.models.results import ContentBlocked, Ok, Overloaded
from scene_pipeline.models.schemas import BatchResult, MediaKind, ProgressStatus, Scene, SceneStatus
from scene_pipeline.pipelines.stage_pipeliner import StagePipeliner
from scene_pipeline.services.ports import AudioAnalyzer, ObjectStorage, SpeechSynthesizer, VisualGenerator
from scene_pipeline.services.progress_tracker import ProgressTracker
from scene_pipeline.services.scene_state import SceneStateMachine
from scene_pipeline.services.subtitle_engine import SubtitleTimingEngine
from scene_pipeline.services.video_composer import CompositionEngine, VideoComposerError
from scene_pipeline.storage.scene_store import SceneStore
from scene_pipeline.utils.composition_executor import CompositionExecutor
from scene_pipeline.utils.error_handler import format_error_message, format_scene_error, get_fallback_suggestion
from scene_pipeline.utils.io_utils import create_job_work_dir


class SceneMediaPipeline:
    """
    Turns a batch of scenes into scene clips and one final video.

    1. Visual asset per scene (collaborator), PENDING -> GENERATING -> MEDIA_READY
    2. Pipelined speech/subtitle/composition stages -> COMPLETED or FAILED
    3. Final concatenation, only when every scene completed (or allow_partial)
    """

    def __init__(
        self,
        settings: Settings,
        logger: Any,
        visual_generator: VisualGenerator,
        synthesizer: SpeechSynthesizer,
        analyzer: AudioAnalyzer,
        composer: Optional[CompositionEngine] = None,
        store: Optional[SceneStore] = None,
        progress: Optional[ProgressTracker] = None,
        object_storage: Optional[ObjectStorage] = None,
        executor: Optional[CompositionExecutor] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            settings: Application settings
            logger: Logger instance
            visual_generator: Image/video generation collaborator
            synthesizer: Speech synthesis collaborator
            analyzer: Audio analysis collaborator
            composer: Composition engine (default: CompositionEngine)
            store: Scene store (default: new SceneStore)
            progress: Progress tracker (default: new ProgressTracker)
            object_storage: Where the final video is published, if anywhere
            executor: Single composition worker shared by every job (default: new CompositionExecutor)
        """
        self.settings = settings
        self.logger = logger
        self.visual_generator = visual_generator
        self.synthesizer = synthesizer
        self.analyzer = analyzer
        self.composer = composer or CompositionEngine(settings, logger)
        self.store = store or SceneStore(settings, logger)
        self.progress = progress or ProgressTracker(settings, logger)
        self.object_storage = object_storage
        self.executor = executor or CompositionExecutor(settings, logger)
        self.state = SceneStateMachine(settings, logger, self.store)
        self.subtitles = SubtitleTimingEngine(settings, logger)
        self._jobs: dict[str, list[str]] = {}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, scenes: list[Scene], context: PipelineContext, allow_partial: bool = False) -> BatchResult:
        """
        Process a new batch of scenes.

        Args:
            scenes: Scenes to process (PENDING)
            context: Pipeline context
            allow_partial: Concatenate completed scenes even if some failed

        Returns:
            BatchResult
        """
        if not scenes:
            raise ValidationFailure("A batch needs at least one scene")

        job_id = context.job_id
        self._jobs[job_id] = [self.store.add(scene).scene_id for scene in scenes]
        self.logger.info(f"Starting job {job_id} with {len(scenes)} scenes")
        return self._process(job_id, self._jobs[job_id], context, allow_partial)

    def retry_failed_scenes(self, context: PipelineContext, allow_partial: bool = False) -> BatchResult:
        """
        Retry every FAILED scene of a job, then finalize the whole job again.

        Args:
            context: Pipeline context of the job to retry
            allow_partial: Concatenate completed scenes even if some still fail

        Returns:
            BatchResult
        """
        job_id = context.job_id
        scene_ids = self._jobs.get(job_id)
        if scene_ids is None:
            loaded = self.store.load_snapshot(job_id)
            if not loaded:
                raise ValidationFailure(f"Unknown job: {job_id}")
            scene_ids = [scene.scene_id for scene in loaded]
            self._jobs[job_id] = scene_ids

        failed = [scene.scene_id for scene in self.store.list_scenes(scene_ids) if scene.status == SceneStatus.FAILED]
        self.logger.info(f"Retrying {len(failed)} failed scenes of job {job_id}")
        for scene_id in failed:
            self.state.retry(scene_id)
        return self._process(job_id, scene_ids, context, allow_partial)

    def finalize(self, context: PipelineContext, allow_partial: bool = False) -> BatchResult:
        """Re-evaluate a job whose scenes are all terminal, e.g. to proceed without failed scenes."""
        scene_ids = self._jobs.get(context.job_id)
        if scene_ids is None:
            raise ValidationFailure(f"Unknown job: {context.job_id}")
        if self.progress.get(context.job_id) is None:
            self.progress.start(context.job_id, len(scene_ids))
        return self._finalize(context, scene_ids, allow_partial)

    def close(self) -> None:
        """Stop the composition worker once queued work has finished."""
        self.executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _process(
        self, job_id: str, scene_ids: list[str], context: PipelineContext, allow_partial: bool
    ) -> BatchResult:
        start_time = time.time()
        work_dir = create_job_work_dir(self.settings.work_dir, job_id)
        already_done = sum(1 for scene in self.store.list_scenes(scene_ids) if scene.status == SceneStatus.COMPLETED)
        self.progress.start(job_id, len(scene_ids), completed=already_done)

        try:
            ready = self._generate_visuals(scene_ids, context, work_dir)
            pipeliner = StagePipeliner(
                self.settings,
                self.logger,
                self.state,
                self.synthesizer,
                self.analyzer,
                self.subtitles,
                self.composer,
                self.executor,
                self.progress,
            )
            pipeliner.run(ready, context, work_dir)
        except PipelineCancelled as e:
            self.logger.warning(f"Job {job_id} cancelled: {e}")
            for scene in self.store.list_scenes(scene_ids):
                if not self.state.is_terminal(scene.scene_id):
                    self.state.mark_failed(scene.scene_id, "Job cancelled")
            self.progress.update(job_id, status=ProgressStatus.FAILED, message="Job cancelled")
            self.store.save_snapshot(job_id, scene_ids)
            return self._batch_result(job_id, scene_ids, ProgressStatus.FAILED, "Job cancelled")

        result = self._finalize(context, scene_ids, allow_partial)
        self.logger.info(f"Job {job_id} finished in {time.time() - start_time:.2f}s: {result.message}")
        return result

    def _generate_visuals(self, scene_ids: list[str], context: PipelineContext, work_dir: Path) -> list[Scene]:
        """Bring each non-terminal scene to MEDIA_READY; returns the ready scenes in order."""
        ready = []
        for scene in self.store.list_scenes(scene_ids):
            if scene.status == SceneStatus.COMPLETED:
                continue
            if scene.status == SceneStatus.PENDING:
                scene = self.state.start_generation(scene.scene_id)
            if scene.status != SceneStatus.GENERATING:
                continue

            context.cancellation.raise_if_cancelled()
            try:
                media_path, media_kind = self._visual_for(scene, context, work_dir)
            except PipelineCancelled:
                raise
            except Exception as e:
                self.state.mark_failed(scene.scene_id, format_scene_error("Visual generation", e))
                self.progress.record_scene(context.job_id, succeeded=False)
                self.logger.error(
                    format_error_message(
                        "Generating scene visual",
                        e,
                        context={"job_id": context.job_id, "scene_id": scene.scene_id},
                        suggestion=get_fallback_suggestion("Image Generation", e),
                    )
                )
                continue

            ready.append(self.state.mark_media_ready(scene.scene_id, str(media_path), media_kind))
        return ready

    def _visual_for(self, scene: Scene, context: PipelineContext, work_dir: Path) -> tuple[Path, MediaKind]:
        """Reuse an existing asset or ask the collaborator for a new one."""
        if scene.media_path and Path(scene.media_path).exists():
            return Path(scene.media_path), scene.media_kind
        if not scene.prompt:
            raise ValidationFailure(f"Scene {scene.scene_id} has neither a media asset nor a prompt")

        output_dir = work_dir / "media" / scene.scene_id
        if scene.media_kind == MediaKind.VIDEO:
            result = self.visual_generator.generate_video(scene.prompt, context, output_dir)
        else:
            result = self.visual_generator.generate_images([scene.prompt], context, output_dir)[0]

        if isinstance(result, PipelineError):
            raise result
        if isinstance(result, Ok):
            return Path(result.value), scene.media_kind
        if isinstance(result, ContentBlocked):
            raise PipelineError(f"Content blocked after rephrasing: {result.reason}")
        if isinstance(result, Overloaded):
            raise PipelineError(f"Generator overloaded ({result.kind.value}): {result.message}")
        raise PipelineError(f"Unexpected generation result: {result!r}")

    def _finalize(self, context: PipelineContext, scene_ids: list[str], allow_partial: bool) -> BatchResult:
        """Concatenate when the batch allows it and record the job outcome."""
        job_id = context.job_id
        scenes = self.store.list_scenes(scene_ids)
        completed = [scene for scene in scenes if scene.status == SceneStatus.COMPLETED]
        failed = [scene for scene in scenes if scene.status != SceneStatus.COMPLETED]

        if not completed:
            message = f"All {len(scenes)} scenes failed"
            return self._close(job_id, scene_ids, ProgressStatus.FAILED, message)

        if failed and not allow_partial:
            message = (
                f"{len(completed)}/{len(scenes)} scenes completed, {len(failed)} failed "
                f"({', '.join(scene.scene_id for scene in failed)}); final video not assembled. "
                f"Retry the failed scenes or proceed without them."
            )
            return self._close(job_id, scene_ids, ProgressStatus.PARTIAL_FAILED, message)

        work_dir = create_job_work_dir(self.settings.work_dir, job_id)
        output_path = work_dir / "final.mp4"
        future = self.executor.submit(
            partial(self.composer.concatenate, [scene.clip_path for scene in completed], output_path, context),
            task_name=f"concatenate[{job_id}]",
        )
        try:
            concat = future.result()
        except (VideoComposerError, PipelineError, OSError) as e:
            self.logger.error(
                format_error_message(
                    "Concatenating scene clips",
                    e,
                    context={"job_id": job_id, "clips": len(completed)},
                    suggestion=get_fallback_suggestion("Concatenation", e),
                )
            )
            return self._close(job_id, scene_ids, ProgressStatus.FAILED, format_scene_error("Concatenation", e))

        total_duration = sum(CompositionEngine.scene_duration(scene) for scene in completed)
        final_path = str(concat.output_path)
        if self.object_storage is not None:
            self.object_storage.upload(concat.output_path, f"{job_id}/final.mp4")

        if failed:
            status = ProgressStatus.PARTIAL_FAILED
            message = (
                f"Final video assembled from {len(completed)}/{len(scenes)} scenes "
                f"({len(failed)} skipped) via {concat.tier}"
            )
        else:
            status = ProgressStatus.COMPLETED
            message = f"All {len(scenes)} scenes completed; final video assembled via {concat.tier}"

        return self._close(job_id, scene_ids, status, message, final_path, total_duration)

    def _close(
        self,
        job_id: str,
        scene_ids: list[str],
        status: ProgressStatus,
        message: str,
        final_video_path: Optional[str] = None,
        total_duration: Optional[float] = None,
    ) -> BatchResult:
        self.progress.update(job_id, status=status, message=message, total_duration=total_duration)
        self.store.save_snapshot(job_id, scene_ids)
        if status == ProgressStatus.COMPLETED:
            self.logger.info(f"✅ Job {job_id}: {message}")
        else:
            self.logger.warning(f"Job {job_id} {status.value}: {message}")
        return self._batch_result(job_id, scene_ids, status, message, final_video_path, total_duration)

    def _batch_result(
        self,
        job_id: str,
        scene_ids: list[str],
        status: ProgressStatus,
        message: str,
        final_video_path: Optional[str] = None,
        total_duration: Optional[float] = None,
    ) -> BatchResult:
        scenes = self.store.list_scenes(scene_ids)
        failed_ids = [scene.scene_id for scene in scenes if scene.status != SceneStatus.COMPLETED]
        return BatchResult(
            job_id=job_id,
            status=status,
            total=len(scenes),
            completed=len(scenes) - len(failed_ids),
            failed=len(failed_ids),
            failed_scene_ids=failed_ids,
            final_video_path=final_video_path,
            total_duration=total_duration,
            message=message,
        )
