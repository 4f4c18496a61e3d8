"""Tests for scene composition and tiered concatenation."""

from unittest.mock import patch

import pytest

from scene_pipeline.core.exceptions import CommandFailedError, CommandTimeoutError, ResourceExhausted, ValidationFailure
from scene_pipeline.models.schemas import MediaKind, Scene, SceneStatus
from scene_pipeline.services.failure_policy import ResourceRetryPolicy
from scene_pipeline.services.ffmpeg_commands import FfmpegCommandBuilder
from scene_pipeline.services.video_composer import (
    TIER_COPY,
    TIER_PAIRWISE,
    TIER_REENCODE,
    TIER_SINGLE,
    CompositionEngine,
    ReencodeCircuitBreaker,
    VideoComposerError,
)


def _engine(settings, logger, runner):
    return CompositionEngine(
        settings,
        logger,
        runner=runner,
        commands=FfmpegCommandBuilder(settings),
        resource_policy=ResourceRetryPolicy(settings, logger, sleep=lambda seconds: None),
    )


def _clips(tmp_path, count):
    paths = []
    for index in range(count):
        path = tmp_path / "clips" / f"scene_{index}.mp4"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"clip")
        paths.append(str(path))
    return paths


def _media_ready_scene(tmp_path, **overrides):
    image = tmp_path / "media" / "s1.png"
    image.parent.mkdir(parents=True, exist_ok=True)
    image.write_bytes(b"png")
    fields = dict(
        scene_id="s1",
        order_index=0,
        narration="안녕하세요.",
        target_duration=5.0,
        media_path=str(image),
        media_kind=MediaKind.IMAGE,
        status=SceneStatus.MEDIA_READY,
    )
    fields.update(overrides)
    return Scene(**fields)


def test_scene_duration_is_max_of_target_and_audio():
    assert CompositionEngine.scene_duration(Scene(scene_id="a", order_index=0, target_duration=5.0)) == 5.0
    assert (
        CompositionEngine.scene_duration(Scene(scene_id="a", order_index=0, target_duration=5.0, audio_duration=7.5))
        == 7.5
    )


def test_compose_scene_writes_clip(settings, logger, context, make_runner, tmp_path):
    runner = make_runner()
    engine = _engine(settings, logger, runner)
    scene = _media_ready_scene(tmp_path, audio_path=str(tmp_path / "s1.mp3"), audio_duration=6.0)
    subtitle = tmp_path / "s1.ass"
    subtitle.write_text("[Script Info]", encoding="utf-8")

    clip = engine.compose_scene(scene, tmp_path / "clips" / "s1.mp4", context, subtitle)

    assert clip.exists()
    assert not (tmp_path / "clips" / "s1.part.mp4").exists()
    argv = runner.commands[0].argv
    assert "-loop" in argv
    assert "6.000" in argv
    assert any("subtitles=" in arg for arg in argv)


def test_compose_scene_without_audio_uses_silent_track(settings, logger, context, make_runner, tmp_path):
    runner = make_runner()
    engine = _engine(settings, logger, runner)

    engine.compose_scene(_media_ready_scene(tmp_path, narration=None), tmp_path / "out.mp4", context)

    argv = runner.commands[0].argv
    assert any(arg.startswith("anullsrc") for arg in argv)
    assert not any("subtitles=" in arg for arg in argv)


def test_compose_scene_video_asset_loops(settings, logger, context, make_runner, tmp_path):
    runner = make_runner()
    engine = _engine(settings, logger, runner)
    scene = _media_ready_scene(tmp_path, media_kind=MediaKind.VIDEO)

    engine.compose_scene(scene, tmp_path / "out.mp4", context)

    argv = runner.commands[0].argv
    assert argv[argv.index("-stream_loop") + 1] == "-1"


def test_compose_scene_requires_media(settings, logger, context, make_runner, tmp_path):
    engine = _engine(settings, logger, make_runner())
    with pytest.raises(ValidationFailure):
        engine.compose_scene(Scene(scene_id="x", order_index=0), tmp_path / "out.mp4", context)


def test_compose_failure_keeps_previous_clip(settings, logger, context, make_runner, tmp_path):
    runner = make_runner(failures={"compose_scene": CommandFailedError("compose_scene[s1]", 1, "bad input")})
    engine = _engine(settings, logger, runner)
    output = tmp_path / "clips" / "s1.mp4"
    output.parent.mkdir(parents=True)
    output.write_bytes(b"previous")

    with pytest.raises(CommandFailedError):
        engine.compose_scene(_media_ready_scene(tmp_path), output, context)
    assert output.read_bytes() == b"previous"


def test_compose_retries_after_oom(settings, logger, context, make_runner, tmp_path):
    runner = make_runner()
    engine = _engine(settings, logger, runner)
    attempts = []
    original_run = runner.run

    def flaky_run(command, cancellation=None, check=True):
        attempts.append(command.task_name)
        if len(attempts) == 1:
            raise ResourceExhausted("killed by the OS", 137)
        return original_run(command, cancellation=cancellation, check=check)

    runner.run = flaky_run
    clip = engine.compose_scene(_media_ready_scene(tmp_path), tmp_path / "out.mp4", context)

    assert clip.exists()
    assert len(attempts) == 2


def test_single_clip_is_copied(settings, logger, context, make_runner, tmp_path):
    runner = make_runner()
    result = _engine(settings, logger, runner).concatenate(_clips(tmp_path, 1), tmp_path / "final.mp4", context)

    assert result.tier == TIER_SINGLE
    assert (tmp_path / "final.mp4").exists()
    assert runner.commands == []


def test_stream_copy_first(settings, logger, context, make_runner, tmp_path):
    runner = make_runner()
    result = _engine(settings, logger, runner).concatenate(_clips(tmp_path, 3), tmp_path / "final.mp4", context)

    assert result.tier == TIER_COPY
    assert result.clip_count == 3
    assert runner.task_names() == ["concat_copy"]
    assert (tmp_path / "final.mp4").exists()
    assert not (tmp_path / ".final_concat").exists()


def test_falls_back_to_reencode(settings, logger, context, make_runner, tmp_path):
    runner = make_runner(failures={"concat_copy": CommandFailedError("concat_copy", 1, "codec mismatch")})
    result = _engine(settings, logger, runner).concatenate(_clips(tmp_path, 3), tmp_path / "final.mp4", context)

    assert result.tier == TIER_REENCODE
    assert runner.task_names() == ["concat_copy", "concat_reencode"]


def test_falls_back_to_pairwise_with_two_inputs_each(settings, logger, context, make_runner, tmp_path):
    runner = make_runner(
        failures={
            "concat_copy": CommandFailedError("concat_copy", 1, "codec mismatch"),
            "concat_reencode": CommandTimeoutError("concat_reencode", 600),
        }
    )
    clips = _clips(tmp_path, 4)
    result = _engine(settings, logger, runner).concatenate(clips, tmp_path / "final.mp4", context)

    assert result.tier == TIER_PAIRWISE
    merges = [command for command in runner.commands if command.task_name == "pairwise_merge"]
    assert len(merges) == 3
    for command in merges:
        assert command.argv.count("-i") == 2
    # Order is preserved: the first merge joins the first two clips
    assert merges[0].input_paths == clips[:2]
    assert merges[1].input_paths[1] == clips[2]
    assert merges[2].input_paths[1] == clips[3]
    assert (tmp_path / "final.mp4").exists()


def test_large_batches_skip_reencode(settings, logger, context, make_runner, tmp_path):
    settings.sequential_merge_threshold = 3
    runner = make_runner(failures={"concat_copy": CommandFailedError("concat_copy", 1, "mismatch")})
    result = _engine(settings, logger, runner).concatenate(_clips(tmp_path, 4), tmp_path / "final.mp4", context)

    assert result.tier == TIER_PAIRWISE
    assert "concat_reencode" not in runner.task_names()


def test_all_tiers_fail(settings, logger, context, make_runner, tmp_path):
    error = CommandFailedError("x", 1, "broken")
    runner = make_runner(failures={"concat_copy": error, "concat_reencode": error, "pairwise_merge": error})

    with pytest.raises(VideoComposerError):
        _engine(settings, logger, runner).concatenate(_clips(tmp_path, 2), tmp_path / "final.mp4", context)
    assert not (tmp_path / "final.mp4").exists()


def test_no_clips(settings, logger, context, make_runner, tmp_path):
    with pytest.raises(ValidationFailure):
        _engine(settings, logger, make_runner()).concatenate([], tmp_path / "final.mp4", context)


def test_reencode_breaker_skips_tier_across_jobs(settings, logger, context, make_runner, tmp_path):
    settings.reencode_breaker_threshold = 2
    error = CommandFailedError("x", 1, "broken")
    runner = make_runner(failures={"concat_copy": error, "concat_reencode": error})
    engine = _engine(settings, logger, runner)

    for job in range(3):
        engine.concatenate(_clips(tmp_path / f"job{job}", 2), tmp_path / f"final{job}.mp4", context)

    assert runner.task_names().count("concat_reencode") == 2


def test_breaker_half_opens_after_cooldown():
    breaker = ReencodeCircuitBreaker(threshold=2, cooldown_seconds=60)
    with patch("scene_pipeline.services.video_composer.time.monotonic", return_value=100.0):
        breaker.record_failure()
        assert not breaker.is_open
        breaker.record_failure()
        assert breaker.is_open

    with patch("scene_pipeline.services.video_composer.time.monotonic", return_value=161.0):
        assert not breaker.is_open
        # One more failure re-opens it immediately
        breaker.record_failure()
        assert breaker.is_open

    breaker.record_success()
    assert not breaker.is_open
