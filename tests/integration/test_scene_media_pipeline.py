"""End-to-end tests for the scene media pipeline with fake media collaborators."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from scene_pipeline.core.exceptions import ValidationFailure
from scene_pipeline.models.context import PipelineContext
from scene_pipeline.models.schemas import BatchResult, MediaKind, ProgressStatus, Scene, SceneStatus, VideoFormat
from scene_pipeline.pipelines.run_scene_pipeline import load_scenes, main
from scene_pipeline.pipelines.scene_media_pipeline import SceneMediaPipeline
from scene_pipeline.services.failure_policy import ResourceRetryPolicy
from scene_pipeline.services.ffmpeg_commands import FfmpegCommandBuilder
from scene_pipeline.services.image_client import HFEndpointClient
from scene_pipeline.services.progress_tracker import ProgressTracker
from scene_pipeline.services.video_composer import CompositionEngine
from scene_pipeline.storage.object_storage import LocalObjectStorage
from scene_pipeline.storage.scene_store import SceneStore


def _scenes():
    return [
        Scene(scene_id="intro", order_index=0, narration="안녕하세요. 오늘의 이야기를 시작합니다.", prompt="sunrise"),
        Scene(scene_id="middle", order_index=1, narration="조용한 항구에 배가 들어옵니다.", prompt="harbour"),
        Scene(scene_id="outro", order_index=2, narration=None, prompt="sunset"),
    ]


@pytest.fixture
def runner(make_runner):
    return make_runner()


@pytest.fixture
def storage(settings, logger):
    return LocalObjectStorage(settings, logger)


@pytest.fixture
def build(settings, logger, runner, fake_analyzer, storage):
    """Build a pipeline around the given visual and speech fakes; closed after the test."""
    built = []

    def _build(visuals, synthesizer, store=None):
        composer = CompositionEngine(
            settings,
            logger,
            runner=runner,
            commands=FfmpegCommandBuilder(settings),
            resource_policy=ResourceRetryPolicy(settings, logger, sleep=lambda seconds: None),
        )
        pipeline = SceneMediaPipeline(
            settings,
            logger,
            visual_generator=visuals,
            synthesizer=synthesizer,
            analyzer=fake_analyzer,
            composer=composer,
            store=store or SceneStore(settings, logger),
            progress=ProgressTracker(settings, logger),
            object_storage=storage,
        )
        built.append(pipeline)
        return pipeline

    yield _build
    for pipeline in built:
        pipeline.close()


def test_full_batch_completes(build, settings, context, runner, storage, fake_visuals, fake_synthesizer):
    pipeline = build(fake_visuals, fake_synthesizer)

    result = pipeline.run(_scenes(), context)

    assert result.status == ProgressStatus.COMPLETED
    assert (result.total, result.completed, result.failed) == (3, 3, 0)
    assert result.final_video_path == str(Path(settings.work_dir) / "job_test" / "final.mp4")
    assert Path(result.final_video_path).exists()
    assert result.total_duration == pytest.approx(15.0)
    assert storage.exists("job_test/final.mp4")

    names = runner.task_names()
    assert [name for name in names if name.startswith("compose_scene")] == [
        "compose_scene[intro]",
        "compose_scene[middle]",
        "compose_scene[outro]",
    ]
    assert names[-1] == "concat_copy"
    assert fake_visuals.prompts == ["sunrise", "harbour", "sunset"]

    progress = pipeline.progress.get("job_test")
    assert progress.status == ProgressStatus.COMPLETED
    assert progress.completed == 3


def test_empty_batch_rejected(build, context, fake_visuals, fake_synthesizer):
    with pytest.raises(ValidationFailure):
        build(fake_visuals, fake_synthesizer).run([], context)


def test_failed_scene_blocks_final_video(build, context, runner, storage, fake_visuals, make_synthesizer):
    synthesizer = make_synthesizer(fail_texts={"조용한 항구에 배가 들어옵니다."})
    pipeline = build(fake_visuals, synthesizer)

    result = pipeline.run(_scenes(), context)

    assert result.status == ProgressStatus.PARTIAL_FAILED
    assert result.failed_scene_ids == ["middle"]
    assert result.final_video_path is None
    assert "concat_copy" not in runner.task_names()
    assert not storage.exists("job_test/final.mp4")
    # Scenes that did complete keep their clips
    assert pipeline.store.get("intro").clip_path is not None
    assert pipeline.store.get("outro").status == SceneStatus.COMPLETED


def test_retry_failed_scenes_completes_job(build, context, runner, fake_visuals, make_synthesizer):
    synthesizer = make_synthesizer(fail_texts={"조용한 항구에 배가 들어옵니다."})
    pipeline = build(fake_visuals, synthesizer)
    pipeline.run(_scenes(), context)

    synthesizer.fail_texts.clear()
    result = pipeline.retry_failed_scenes(context)

    assert result.status == ProgressStatus.COMPLETED
    assert result.final_video_path is not None
    retried = pipeline.store.get("middle")
    assert retried.retry_count == 1
    assert retried.error_message is None
    assert pipeline.store.get("intro").retry_count == 0
    # Completed scenes are not composed again; the existing image is reused
    composes = [name for name in runner.task_names() if name.startswith("compose_scene")]
    assert composes.count("compose_scene[intro]") == 1
    assert composes.count("compose_scene[middle]") == 1
    assert fake_visuals.prompts.count("harbour") == 1


def test_retry_from_snapshot(build, settings, logger, context, fake_visuals, make_synthesizer):
    synthesizer = make_synthesizer(fail_texts={"조용한 항구에 배가 들어옵니다."})
    build(fake_visuals, synthesizer).run(_scenes(), context)

    fresh = build(fake_visuals, make_synthesizer(), store=SceneStore(settings, logger))
    result = fresh.retry_failed_scenes(context)

    assert result.status == ProgressStatus.COMPLETED
    assert fresh.store.get("middle").retry_count == 1


def test_retry_unknown_job(build, context, fake_visuals, fake_synthesizer):
    with pytest.raises(ValidationFailure):
        build(fake_visuals, fake_synthesizer).retry_failed_scenes(context)


def test_allow_partial_assembles_completed_scenes(build, context, storage, make_visuals, fake_synthesizer):
    pipeline = build(make_visuals(fail_prompts={"harbour"}), fake_synthesizer)

    result = pipeline.run(_scenes(), context, allow_partial=True)

    assert result.status == ProgressStatus.PARTIAL_FAILED
    assert result.failed_scene_ids == ["middle"]
    assert result.final_video_path is not None
    assert result.total_duration == pytest.approx(10.0)
    assert storage.exists("job_test/final.mp4")
    assert "Visual generation failed" in pipeline.store.get("middle").error_message


def test_finalize_without_failed_scenes(build, context, make_visuals, fake_synthesizer):
    pipeline = build(make_visuals(fail_prompts={"harbour"}), fake_synthesizer)
    first = pipeline.run(_scenes(), context)
    assert first.final_video_path is None

    result = pipeline.finalize(context, allow_partial=True)

    assert result.status == ProgressStatus.PARTIAL_FAILED
    assert result.final_video_path is not None


def test_all_scenes_failed(build, context, runner, make_visuals, fake_synthesizer):
    pipeline = build(make_visuals(fail_prompts={"sunrise", "harbour", "sunset"}), fake_synthesizer)

    result = pipeline.run(_scenes(), context, allow_partial=True)

    assert result.status == ProgressStatus.FAILED
    assert result.completed == 0
    assert result.final_video_path is None
    assert runner.task_names() == []


def test_cancelled_job_fails_every_scene(build, context, fake_visuals, fake_synthesizer):
    pipeline = build(fake_visuals, fake_synthesizer)
    context.cancellation.cancel()

    result = pipeline.run(_scenes(), context)

    assert result.status == ProgressStatus.FAILED
    assert result.failed == 3
    assert all(scene.error_message == "Job cancelled" for scene in pipeline.store.list_scenes())
    assert pipeline.progress.get("job_test").status == ProgressStatus.FAILED


def test_all_encoder_work_runs_on_one_shared_worker(build, runner, fake_visuals, fake_synthesizer):
    pipeline = build(fake_visuals, fake_synthesizer)
    first = PipelineContext.for_format("job_one", VideoFormat.HORIZONTAL)
    second = PipelineContext.for_format("job_two", VideoFormat.HORIZONTAL)

    pipeline.run(_scenes(), first)
    runner.threads.pop("concat_copy")
    pipeline.run([scene.model_copy(update={"scene_id": f"{scene.scene_id}_2"}) for scene in _scenes()], second)

    worker_threads = {
        name: thread for name, thread in runner.threads.items() if name.startswith(("compose_scene", "concat"))
    }
    assert "concat_copy" in worker_threads
    assert "compose_scene[intro_2]" in worker_threads
    assert all(thread.startswith("composition") for thread in worker_threads.values())
    assert len(set(worker_threads.values())) == 1


def test_closed_pipeline_rejects_new_work(build, context, fake_visuals, fake_synthesizer):
    pipeline = build(fake_visuals, fake_synthesizer)
    pipeline.close()

    with pytest.raises(RuntimeError):
        pipeline.executor.submit(lambda: None, task_name="late")


@patch("scene_pipeline.services.image_client.requests.post")
def test_video_scene_server_error_fails_scene(
    mock_post, build, settings, logger, context, tmp_path, fake_synthesizer
):
    settings.hf_video_endpoint_url = "https://hf.example/video"
    response = MagicMock()
    response.status_code = 500
    response.text = "internal server error"
    response.content = b""
    response.headers = {"Content-Type": "text/plain"}
    mock_post.return_value = response

    still = tmp_path / "still.png"
    still.write_bytes(b"png")
    scenes = [
        Scene(scene_id="still", order_index=0, narration="정지 화면입니다.", media_path=str(still)),
        Scene(
            scene_id="moving",
            order_index=1,
            narration="움직이는 화면입니다.",
            prompt="waves",
            media_kind=MediaKind.VIDEO,
        ),
    ]
    pipeline = build(HFEndpointClient(settings, logger), fake_synthesizer)

    result = pipeline.run(scenes, context)

    assert result.status == ProgressStatus.PARTIAL_FAILED
    assert result.failed_scene_ids == ["moving"]
    moving = pipeline.store.get("moving")
    assert moving.status == SceneStatus.FAILED
    assert "GenerationFailed" in moving.error_message
    assert "500" in moving.error_message
    assert pipeline.store.get("still").status == SceneStatus.COMPLETED


def test_unexpected_visual_error_fails_scene(build, context, make_visuals, fake_synthesizer):
    class BrokenVisuals(make_visuals):
        def generate_images(self, prompts, context, output_dir):
            if prompts == ["harbour"]:
                raise KeyError("image")
            return super().generate_images(prompts, context, output_dir)

    pipeline = build(BrokenVisuals(), fake_synthesizer)

    result = pipeline.run(_scenes(), context)

    assert result.status == ProgressStatus.PARTIAL_FAILED
    assert result.failed_scene_ids == ["middle"]
    assert "KeyError" in pipeline.store.get("middle").error_message
    assert pipeline.progress.get("job_test").failed == 1

def test_load_scenes_defaults(tmp_path):
    scenes_file = tmp_path / "scenes.json"
    scenes_file.write_text(
        json.dumps({"scenes": [{"narration": "첫 장면.", "prompt": "a"}, {"prompt": "b", "target_duration": 3}]}),
        encoding="utf-8",
    )

    scenes = load_scenes(scenes_file)

    assert [scene.scene_id for scene in scenes] == ["scene_001", "scene_002"]
    assert [scene.order_index for scene in scenes] == [0, 1]
    assert scenes[1].target_duration == 3.0


def _batch_result(status):
    return BatchResult(job_id="demo", status=status, total=1, completed=1, failed=0, message="done")


@patch("scene_pipeline.pipelines.run_scene_pipeline.setup_logging")
@patch("scene_pipeline.pipelines.run_scene_pipeline.build_pipeline")
def test_cli_new_batch(mock_build, mock_setup_logging, tmp_path):
    scenes_file = tmp_path / "scenes.json"
    scenes_file.write_text(json.dumps([{"narration": "하나.", "prompt": "p"}]), encoding="utf-8")
    pipeline = MagicMock()
    pipeline.__enter__.return_value = pipeline
    pipeline.__exit__.return_value = False
    pipeline.run.return_value = _batch_result(ProgressStatus.COMPLETED)
    mock_build.return_value = pipeline

    exit_code = main(
        [str(scenes_file), "--job-id", "demo", "--format", "vertical", "--output-dir", str(tmp_path / "out")]
    )

    assert exit_code == 0
    app_settings = mock_build.call_args.args[0]
    assert app_settings.work_dir == str(tmp_path / "out")
    scenes, context = pipeline.run.call_args.args
    assert len(scenes) == 1
    assert context.job_id == "demo"
    assert (context.video_width, context.video_height) == (1080, 1920)
    pipeline.__exit__.assert_called_once()


@patch("scene_pipeline.pipelines.run_scene_pipeline.setup_logging")
@patch("scene_pipeline.pipelines.run_scene_pipeline.build_pipeline")
def test_cli_retry_partial_returns_failure(mock_build, mock_setup_logging):
    pipeline = MagicMock()
    pipeline.__enter__.return_value = pipeline
    pipeline.__exit__.return_value = False
    pipeline.retry_failed_scenes.return_value = _batch_result(ProgressStatus.PARTIAL_FAILED)
    mock_build.return_value = pipeline

    assert main(["--job-id", "demo", "--retry-failed", "--allow-partial"]) == 1
    assert pipeline.retry_failed_scenes.call_args.kwargs["allow_partial"] is True


@patch("scene_pipeline.pipelines.run_scene_pipeline.setup_logging")
@patch("scene_pipeline.pipelines.run_scene_pipeline.build_pipeline")
def test_cli_pipeline_error(mock_build, mock_setup_logging, tmp_path):
    mock_build.side_effect = ValidationFailure("HF endpoint URL is not configured")
    scenes_file = tmp_path / "scenes.json"
    scenes_file.write_text("[]", encoding="utf-8")

    assert main([str(scenes_file), "--job-id", "demo"]) == 1


def test_cli_requires_scenes_file():
    with pytest.raises(SystemExit):
        main(["--job-id", "demo"])
