"""Command-line entry point: turn a scenes file into scene clips and a final video."""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from scene_pipeline.core.config import Settings, settings
from scene_pipeline.core.exceptions import PipelineError
from scene_pipeline.core.logging_config import get_logger, setup_logging
from scene_pipeline.models.context import PipelineContext
from scene_pipeline.models.schemas import BatchResult, ProgressStatus, QualityTier, Scene, VideoFormat
from scene_pipeline.pipelines.scene_media_pipeline import SceneMediaPipeline
from scene_pipeline.services.audio_analyzer import FfmpegAudioAnalyzer
from scene_pipeline.services.ffmpeg_commands import FfmpegCommandBuilder
from scene_pipeline.services.image_client import HFEndpointClient
from scene_pipeline.services.subtitle_templates import get_template
from scene_pipeline.services.tts_client import TTSClient
from scene_pipeline.services.video_composer import CompositionEngine
from scene_pipeline.storage.object_storage import LocalObjectStorage
from scene_pipeline.storage.scene_store import SceneStore
from scene_pipeline.utils.composition_executor import CompositionExecutor
from scene_pipeline.utils.rate_limiter import AdaptiveRateLimiter
from scene_pipeline.utils.subprocess_runner import CommandRunner


def load_scenes(path: Path) -> list[Scene]:
    """
    Load scenes from a JSON file.

    Accepts either a list of scene objects or {"scenes": [...]}. Scenes
    without an order_index are numbered in file order.

    Args:
        path: JSON file path

    Returns:
        List of Scene
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("scenes", [])
    if not isinstance(data, list):
        raise PipelineError(f"Scenes file must contain a list of scenes: {path}")

    scenes = []
    for index, item in enumerate(data):
        item = dict(item)
        item.setdefault("scene_id", f"scene_{index + 1:03d}")
        item.setdefault("order_index", index)
        scenes.append(Scene(**item))
    return scenes


def build_pipeline(app_settings: Settings, logger: Any) -> SceneMediaPipeline:
    """Wire the pipeline with its production collaborators."""
    rate_limiter = AdaptiveRateLimiter(app_settings, logger)
    runner = CommandRunner(app_settings, logger)
    commands = FfmpegCommandBuilder(app_settings)
    return SceneMediaPipeline(
        app_settings,
        logger,
        visual_generator=HFEndpointClient(app_settings, logger, rate_limiter=rate_limiter),
        synthesizer=TTSClient(app_settings, logger, rate_limiter=rate_limiter),
        analyzer=FfmpegAudioAnalyzer(app_settings, logger, runner=runner, commands=commands),
        composer=CompositionEngine(app_settings, logger, runner=runner, commands=commands),
        store=SceneStore(app_settings, logger),
        object_storage=LocalObjectStorage(app_settings, logger),
        executor=CompositionExecutor(app_settings, logger),
    )


def build_context(args: argparse.Namespace, app_settings: Settings) -> PipelineContext:
    profile = app_settings.locale_profile(args.locale)
    return PipelineContext.for_format(
        args.job_id,
        VideoFormat(args.format),
        width=app_settings.video_width,
        height=app_settings.video_height,
        subtitle_template=get_template(args.template),
        font_size_level=args.font_size_level,
        subtitle_position=args.position,
        locale=args.locale,
        chars_per_second=profile.chars_per_second,
        max_chars_per_line=profile.max_chars_per_line,
        quality_tier=QualityTier(args.quality or app_settings.default_quality_tier),
        voice_profile=args.voice,
    )


def log_result(logger: Any, result: BatchResult) -> None:
    logger.info("=" * 60)
    logger.info(f"Job: {result.job_id}")
    logger.info(f"Status: {result.status.value}")
    logger.info(f"Scenes: {result.completed}/{result.total} completed, {result.failed} failed")
    if result.failed_scene_ids:
        logger.info(f"Failed scenes: {', '.join(result.failed_scene_ids)}")
    if result.final_video_path:
        logger.info(f"Final video: {result.final_video_path}")
    if result.total_duration is not None:
        logger.info(f"Duration: {result.total_duration:.2f}s")
    logger.info(result.message)
    logger.info("=" * 60)


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Scene Media Pipeline - narrated, captioned scene clips joined into one video",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Process a new batch
  python -m scene_pipeline.pipelines.run_scene_pipeline scenes.json --job-id demo

  # Vertical output, captions at the top, medium font
  python -m scene_pipeline.pipelines.run_scene_pipeline scenes.json --job-id demo --format vertical --position 3 --font-size-level 2

  # Retry the failed scenes of a previous run
  python -m scene_pipeline.pipelines.run_scene_pipeline --job-id demo --retry-failed

  # Assemble the final video even if some scenes failed
  python -m scene_pipeline.pipelines.run_scene_pipeline scenes.json --job-id demo --allow-partial
        """,
    )
    parser.add_argument("scenes_file", nargs="?", type=Path, help="JSON file with the scenes to process")
    parser.add_argument("--job-id", type=str, required=True, help="Job identifier")
    parser.add_argument(
        "--format",
        type=str,
        choices=[f.value for f in VideoFormat],
        default=VideoFormat.HORIZONTAL.value,
        help="Output aspect ratio (default: horizontal)",
    )
    parser.add_argument("--locale", type=str, default="ko", help="Narration locale (default: ko)")
    parser.add_argument("--template", type=str, default="default", help="Caption template id (default: default)")
    parser.add_argument(
        "--font-size-level", type=int, choices=[1, 2, 3], default=3, help="1 = small, 2 = medium, 3 = large"
    )
    parser.add_argument("--position", type=int, choices=[1, 2, 3], default=1, help="1 = bottom, 2 = middle, 3 = top")
    parser.add_argument(
        "--quality", type=str, choices=[t.value for t in QualityTier], default=None, help="Speech synthesis tier"
    )
    parser.add_argument("--voice", type=str, default=None, help="Voice profile (e.g. 'deep male')")
    parser.add_argument(
        "--allow-partial", action="store_true", help="Assemble the final video from the completed scenes only"
    )
    parser.add_argument("--retry-failed", action="store_true", help="Retry the failed scenes of an existing job")
    parser.add_argument("--output-dir", type=str, default=None, help=f"Working directory (default: {settings.work_dir})")

    args = parser.parse_args(argv)
    if not args.retry_failed and args.scenes_file is None:
        parser.error("scenes_file is required unless --retry-failed is given")

    setup_logging(
        log_level=settings.log_level,
        log_file=Path(settings.log_file) if settings.log_file else None,
        serialize_file=settings.log_file_json,
    )
    logger = get_logger(__name__, job_id=args.job_id)

    app_settings = settings
    if args.output_dir:
        app_settings = settings.model_copy(update={"work_dir": args.output_dir})

    logger.info("=" * 60)
    logger.info(f"{app_settings.app_name} v{app_settings.app_version}")
    logger.info(f"Job: {args.job_id} ({'retry failed scenes' if args.retry_failed else 'new batch'})")
    logger.info("=" * 60)

    try:
        context = build_context(args, app_settings)
        with build_pipeline(app_settings, logger) as pipeline:
            if args.retry_failed:
                result = pipeline.retry_failed_scenes(context, allow_partial=args.allow_partial)
            else:
                scenes = load_scenes(args.scenes_file)
                logger.info(f"Loaded {len(scenes)} scenes from {args.scenes_file}")
                result = pipeline.run(scenes, context, allow_partial=args.allow_partial)

        log_result(logger, result)
        return 0 if result.status == ProgressStatus.COMPLETED else 1

    except KeyboardInterrupt:
        logger.warning("Pipeline interrupted by user")
        return 1
    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        logger.error(f"\n❌ Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
