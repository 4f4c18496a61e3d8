"""Tests for narration audio analysis."""

from pathlib import Path

import pytest

from scene_pipeline.core.exceptions import CommandFailedError
from scene_pipeline.services.audio_analyzer import FfmpegAudioAnalyzer, boundaries_from_silences, parse_silences
from scene_pipeline.services.ffmpeg_commands import FfmpegCommandBuilder
from scene_pipeline.utils.subprocess_runner import CommandResult

SILENCEDETECT_OUTPUT = [
    "Input #0, mp3, from 'scene.mp3':",
    "[silencedetect @ 0x1] silence_start: 0",
    "[silencedetect @ 0x1] silence_end: 0.2 | silence_duration: 0.2",
    "[silencedetect @ 0x1] silence_start: 2.1",
    "[silencedetect @ 0x1] silence_end: 2.9 | silence_duration: 0.8",
    "[silencedetect @ 0x1] silence_start: 3.0",
    "[silencedetect @ 0x1] silence_end: 3.1 | silence_duration: 0.1",
    "[silencedetect @ 0x1] silence_start: 5.6",
]


class ScriptedRunner:
    """Returns canned output per task name."""

    def __init__(self, outputs, failures=None):
        self.outputs = outputs
        self.failures = failures or {}

    def run(self, command, cancellation=None, check=True):
        if command.task_name in self.failures:
            raise self.failures[command.task_name]
        return CommandResult(returncode=0, output_lines=self.outputs[command.task_name], elapsed_seconds=0.0)


def _analyzer(settings, logger, runner):
    return FfmpegAudioAnalyzer(settings, logger, runner=runner, commands=FfmpegCommandBuilder(settings))


def test_parse_silences_closes_trailing_silence():
    silences = parse_silences(SILENCEDETECT_OUTPUT, total_duration=6.0)
    assert silences == [(0.0, 0.2), (2.1, 2.9), (3.0, 3.1), (5.6, 6.0)]


def test_boundaries_use_longest_silences():
    silences = [(0.0, 0.2), (2.1, 2.5), (3.0, 3.1), (4.0, 4.6)]
    segments = boundaries_from_silences(silences, 6.0, expected_count=3)

    assert segments[0].start == pytest.approx(0.2)
    assert [round(segment.end, 2) for segment in segments] == [2.3, 4.3, 6.0]
    assert segments[1].start == pytest.approx(2.3)


def test_boundaries_without_silences():
    segments = boundaries_from_silences([], 4.0, expected_count=2)
    assert len(segments) == 1
    assert (segments[0].start, segments[0].end) == (0.0, 4.0)


def test_measure_duration(settings, logger):
    analyzer = _analyzer(settings, logger, ScriptedRunner({"probe_duration": ["7.25"]}))
    assert analyzer.measure_duration(Path("/tmp/a.mp3")) == 7.25


def test_measure_duration_defaults_on_failure(settings, logger):
    runner = ScriptedRunner({}, failures={"probe_duration": CommandFailedError("probe_duration", 1, "no such file")})
    assert _analyzer(settings, logger, runner).measure_duration(Path("/tmp/a.mp3")) == 5.0


def test_measure_duration_defaults_on_garbage(settings, logger):
    analyzer = _analyzer(settings, logger, ScriptedRunner({"probe_duration": ["N/A"]}))
    assert analyzer.measure_duration(Path("/tmp/a.mp3")) == 5.0


def test_detect_sentence_boundaries(settings, logger):
    runner = ScriptedRunner({"probe_duration": ["6.0"], "silence_detect": SILENCEDETECT_OUTPUT})
    segments = _analyzer(settings, logger, runner).detect_sentence_boundaries(Path("/tmp/a.mp3"), 2)

    assert len(segments) == 2
    assert segments[0].start == pytest.approx(0.2)
    assert segments[0].end == pytest.approx(2.5)
    assert segments[1].start == pytest.approx(2.5)
    assert segments[1].end == pytest.approx(6.0)


def test_detect_falls_back_to_whole_file(settings, logger):
    runner = ScriptedRunner(
        {"probe_duration": ["4.0"]},
        failures={"silence_detect": CommandFailedError("silence_detect", 1, "bad audio")},
    )
    segments = _analyzer(settings, logger, runner).detect_sentence_boundaries(Path("/tmp/a.mp3"), 3)

    assert len(segments) == 1
    assert segments[0].end == 4.0
