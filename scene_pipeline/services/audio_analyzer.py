"""Audio analysis - narration duration and silence-based sentence boundaries."""

import re
from pathlib import Path
from typing import Any, Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import CommandFailedError, CommandTimeoutError, ResourceExhausted
from scene_pipeline.models.schemas import SpeechSegment
from scene_pipeline.services.ffmpeg_commands import FfmpegCommandBuilder
from scene_pipeline.services.ports import AudioAnalyzer
from scene_pipeline.utils.subprocess_runner import CommandRunner

DEFAULT_DURATION_SECONDS = 5.0
LEADING_SILENCE_THRESHOLD = 0.05

SILENCE_START_PATTERN = re.compile(r"silence_start:\s*(-?[\d.]+)")
SILENCE_END_PATTERN = re.compile(r"silence_end:\s*([\d.]+)\s*\|\s*silence_duration:\s*([\d.]+)")

ANALYSIS_ERRORS = (CommandFailedError, CommandTimeoutError, ResourceExhausted, ValueError)


def parse_silences(lines: list[str], total_duration: Optional[float] = None) -> list[tuple[float, float]]:
    """
    Extract (start, end) silence intervals from silencedetect output.

    A silence still open at end of stream is closed at `total_duration`.
    """
    silences = []
    pending_start: Optional[float] = None
    for line in lines:
        start_match = SILENCE_START_PATTERN.search(line)
        if start_match:
            pending_start = max(0.0, float(start_match.group(1)))
            continue
        end_match = SILENCE_END_PATTERN.search(line)
        if end_match:
            end = float(end_match.group(1))
            start = pending_start if pending_start is not None else max(0.0, end - float(end_match.group(2)))
            silences.append((start, end))
            pending_start = None
    if pending_start is not None and total_duration is not None and total_duration > pending_start:
        silences.append((pending_start, total_duration))
    return silences


def boundaries_from_silences(
    silences: list[tuple[float, float]], total_duration: float, expected_count: int
) -> list[SpeechSegment]:
    """
    Turn silence intervals into spoken-sentence segments.

    A leading silence moves the first onset; the (expected_count - 1) longest
    remaining silences become boundaries at their midpoints.
    """
    silences = list(silences)
    onset = 0.0
    if silences and silences[0][0] < LEADING_SILENCE_THRESHOLD:
        onset = silences[0][1]
        silences = silences[1:]

    if not silences:
        return [SpeechSegment(start=onset, end=total_duration)]

    needed = max(0, expected_count - 1)
    if len(silences) > needed:
        silences = sorted(silences, key=lambda s: s[1] - s[0], reverse=True)[:needed]
    midpoints = sorted((start + end) / 2 for start, end in silences)

    starts = [onset] + midpoints
    ends = midpoints + [total_duration]
    return [SpeechSegment(start=start, end=end) for start, end in zip(starts, ends)]


class FfmpegAudioAnalyzer(AudioAnalyzer):
    """Audio analyzer backed by ffprobe and ffmpeg's silencedetect filter."""

    def __init__(
        self,
        settings: Settings,
        logger: Any,
        runner: Optional[CommandRunner] = None,
        commands: Optional[FfmpegCommandBuilder] = None,
    ):
        """
        Initialize the analyzer.

        Args:
            settings: Application settings
            logger: Logger instance
            runner: Subprocess runner
            commands: Command builder
        """
        self.settings = settings
        self.logger = logger
        self.runner = runner or CommandRunner(settings, logger)
        self.commands = commands or FfmpegCommandBuilder(settings)

    def measure_duration(self, path: Path) -> float:
        """Probe the duration; falls back to 5 seconds when probing fails."""
        try:
            result = self.runner.run(self.commands.probe_duration(str(path)))
            duration = float(result.output.strip().splitlines()[-1])
        except (IndexError, *ANALYSIS_ERRORS) as e:
            self.logger.warning(f"Could not measure duration of {path}, using {DEFAULT_DURATION_SECONDS}s: {e}")
            return DEFAULT_DURATION_SECONDS
        if duration <= 0:
            return DEFAULT_DURATION_SECONDS
        return duration

    def detect_sentence_boundaries(self, path: Path, expected_count: int) -> list[SpeechSegment]:
        """
        Detect spoken-sentence intervals from silences in the narration.

        Args:
            path: Narration audio
            expected_count: Number of sentences in the narration

        Returns:
            Ordered segments; a single whole-file segment when detection is not possible
        """
        total = self.measure_duration(path)
        if expected_count <= 1:
            return [SpeechSegment(start=0.0, end=total)]

        try:
            result = self.runner.run(self.commands.silence_detect(str(path)))
            silences = parse_silences(result.output_lines, total)
        except ANALYSIS_ERRORS as e:
            self.logger.warning(f"Silence detection failed for {path}: {e}")
            return [SpeechSegment(start=0.0, end=total)]

        segments = boundaries_from_silences(silences, total, expected_count)
        self.logger.debug(
            f"Detected {len(segments)} speech segments ({len(silences)} silences) for {expected_count} sentences"
        )
        return segments
