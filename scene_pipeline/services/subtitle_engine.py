"""Subtitle Timing Engine - times caption cues to synthesized narration."""

import math
import re
from typing import Any, Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.models.context import PipelineContext
from scene_pipeline.models.schemas import CueStyle, SpeechSegment, SubtitleCue
from scene_pipeline.services.subtitle_templates import resolve_style
from scene_pipeline.utils.text_utils import count_spoken_chars, estimate_spoken_duration, split_sentences

DEFAULT_AVAILABLE_DURATION = 10.0
SHORT_CHUNK_MERGE_SLACK = 1.2

COMMA_BOUNDARY_PATTERN = re.compile(r"(?<=[,，、])")
EMPHATIC_MARKERS = ("!", "?!", "!!", "...", "…", "！")

ASS_STYLE_NAMES = {
    CueStyle.NEUTRAL: "Default",
    CueStyle.EMPHATIC: "Emotion",
}

ASS_STYLE_FORMAT = (
    "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, "
    "Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, Shadow, "
    "Alignment, MarginL, MarginR, MarginV, Encoding"
)
ASS_EVENT_FORMAT = "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text"


def format_ass_time(seconds: float) -> str:
    """Format seconds as H:MM:SS.cc."""
    centis = int(round(max(0.0, seconds) * 100))
    hours, rest = divmod(centis, 360000)
    minutes, rest = divmod(rest, 6000)
    secs, centis = divmod(rest, 100)
    return f"{hours}:{minutes:02d}:{secs:02d}.{centis:02d}"


def format_srt_time(seconds: float) -> str:
    """Format seconds as HH:MM:SS,mmm."""
    millis = int(round(max(0.0, seconds) * 1000))
    hours, rest = divmod(millis, 3600000)
    minutes, rest = divmod(rest, 60000)
    secs, millis = divmod(rest, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def cue_style_for(text: str) -> CueStyle:
    """Emphatic for exclamations and trailing-off ellipses, neutral otherwise."""
    if any(marker in text for marker in EMPHATIC_MARKERS):
        return CueStyle.EMPHATIC
    return CueStyle.NEUTRAL


class SubtitleTimingEngine:
    """Converts narration plus optional speech boundaries into timed caption cues."""

    def __init__(self, settings: Settings, logger: Any):
        """
        Initialize the subtitle engine.

        Args:
            settings: Application settings
            logger: Logger instance
        """
        self.settings = settings
        self.logger = logger
        self.min_chunk_chars = settings.subtitle_min_chunk_chars

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------

    def build_cues(
        self,
        narration: Optional[str],
        target_duration: float,
        speech_segments: Optional[list[SpeechSegment]] = None,
        audio_duration: Optional[float] = None,
        chars_per_second: Optional[float] = None,
        max_chars_per_line: Optional[int] = None,
    ) -> list[SubtitleCue]:
        """
        Build ordered caption cues for one scene.

        Args:
            narration: Narration text
            target_duration: Target scene duration in seconds
            speech_segments: Detected spoken-sentence intervals, if any
            audio_duration: Measured narration audio duration, if known
            chars_per_second: Speaking rate (defaults to settings)
            max_chars_per_line: Maximum chunk length (defaults to settings)

        Returns:
            Cues ordered by start time
        """
        chars_per_second = chars_per_second or self.settings.subtitle_chars_per_second
        max_chars_per_line = max_chars_per_line or self.settings.subtitle_max_chars_per_line

        sentences = split_sentences(narration or "")
        if not sentences:
            return []

        intervals = self.allocate_sentence_times(
            sentences,
            speech_segments or [],
            self._available_duration(target_duration, audio_duration),
            chars_per_second,
        )

        cues = []
        for sentence, (start, end) in zip(sentences, intervals):
            chunks = self.split_display_chunks(sentence, max_chars_per_line)
            for text, chunk_start, chunk_end in self.distribute_chunks(chunks, start, end):
                cues.append(SubtitleCue(style=cue_style_for(text), start=chunk_start, end=chunk_end, text=text))

        self.logger.debug(f"Built {len(cues)} cues from {len(sentences)} sentences")
        return cues

    def build_cues_for_context(
        self,
        narration: Optional[str],
        target_duration: float,
        context: PipelineContext,
        speech_segments: Optional[list[SpeechSegment]] = None,
        audio_duration: Optional[float] = None,
    ) -> list[SubtitleCue]:
        """Build cues using the job's locale pacing and explicit overrides."""
        profile = self.settings.locale_profile(context.locale)
        return self.build_cues(
            narration,
            target_duration,
            speech_segments=speech_segments,
            audio_duration=audio_duration,
            chars_per_second=context.chars_per_second or profile.chars_per_second,
            max_chars_per_line=context.max_chars_per_line or profile.max_chars_per_line,
        )

    @staticmethod
    def _available_duration(target_duration: float, audio_duration: Optional[float]) -> float:
        if audio_duration and audio_duration > 0:
            return audio_duration
        if target_duration and target_duration > 0:
            return target_duration
        return DEFAULT_AVAILABLE_DURATION

    def allocate_sentence_times(
        self,
        sentences: list[str],
        segments: list[SpeechSegment],
        available_duration: float,
        chars_per_second: float,
    ) -> list[tuple[float, float]]:
        """
        Assign a [start, end] interval to each sentence.

        Detected segments are authoritative when there are at least as many as
        sentences; otherwise durations are estimated from character counts.
        """
        if segments and len(segments) == len(sentences):
            return [(segment.start, segment.end) for segment in segments]

        if segments and len(segments) > len(sentences):
            merged = self.merge_segments(segments, len(sentences))
            return [(segment.start, segment.end) for segment in merged]

        if segments:
            self.logger.debug(
                f"Only {len(segments)} speech segments for {len(sentences)} sentences, estimating timings"
            )
        return self._estimate_sentence_times(sentences, available_duration, chars_per_second)

    @staticmethod
    def merge_segments(segments: list[SpeechSegment], count: int) -> list[SpeechSegment]:
        """Merge segments down to `count` groups by proportional index boundaries, rounding halves up."""
        per_group = len(segments) / count
        merged = []
        for i in range(count):
            first = min(math.floor(i * per_group + 0.5), len(segments) - 1)
            last = min(max(math.floor((i + 1) * per_group + 0.5) - 1, first), len(segments) - 1)
            merged.append(SpeechSegment(start=segments[first].start, end=segments[last].end))
        return merged

    @staticmethod
    def _estimate_sentence_times(
        sentences: list[str],
        available_duration: float,
        chars_per_second: float,
    ) -> list[tuple[float, float]]:
        estimates = [estimate_spoken_duration(sentence, chars_per_second) for sentence in sentences]
        total = sum(estimates)
        scale = available_duration / total if total > available_duration else 1.0

        intervals = []
        cursor = 0.0
        for estimate in estimates:
            end = cursor + estimate * scale
            intervals.append((cursor, end))
            cursor = end

        last_start, _ = intervals[-1]
        intervals[-1] = (min(last_start, available_duration), available_duration)
        return intervals

    # ------------------------------------------------------------------
    # Display subdivision
    # ------------------------------------------------------------------

    def split_display_chunks(self, sentence: str, max_chars: int) -> list[str]:
        """
        Split a long sentence into caption-sized chunks.

        Comma boundaries are tried first, then whitespace; short chunks are
        merged back into a neighbour.
        """
        if len(sentence) <= max_chars:
            return [sentence]

        chunks = []
        current = ""
        for part in COMMA_BOUNDARY_PATTERN.split(sentence):
            if not part:
                continue
            if current and len(current) + len(part) > max_chars:
                chunks.extend(self._flush_chunk(current, max_chars))
                current = part
            else:
                current += part
        if current:
            chunks.extend(self._flush_chunk(current, max_chars))

        return self._merge_short_chunks(chunks, max_chars)

    def _flush_chunk(self, chunk: str, max_chars: int) -> list[str]:
        chunk = chunk.strip()
        if not chunk:
            return []
        if len(chunk) <= max_chars:
            return [chunk]
        return self._split_on_whitespace(chunk, max_chars)

    @staticmethod
    def _split_on_whitespace(chunk: str, max_chars: int) -> list[str]:
        pieces = []
        current = ""
        for word in chunk.split():
            # Unspaced scripts can produce a single word over the limit
            while len(word) > max_chars:
                if current:
                    pieces.append(current)
                    current = ""
                pieces.append(word[:max_chars])
                word = word[max_chars:]
            if not word:
                continue
            if current and len(current) + 1 + len(word) > max_chars:
                pieces.append(current)
                current = word
            else:
                current = f"{current} {word}" if current else word
        if current:
            pieces.append(current)
        return pieces

    def _merge_short_chunks(self, chunks: list[str], max_chars: int) -> list[str]:
        merged: list[str] = []
        limit = max_chars * SHORT_CHUNK_MERGE_SLACK
        for chunk in chunks:
            if merged and (len(chunk) < self.min_chunk_chars or len(merged[-1]) < self.min_chunk_chars):
                candidate = f"{merged[-1]} {chunk}"
                if len(candidate) <= limit:
                    merged[-1] = candidate
                    continue
            merged.append(chunk)
        return merged

    @staticmethod
    def distribute_chunks(chunks: list[str], start: float, end: float) -> list[tuple[str, float, float]]:
        """
        Split a sentence interval across its chunks by non-whitespace character count.

        The last chunk always ends exactly at `end`.
        """
        weights = [max(1, count_spoken_chars(chunk)) for chunk in chunks]
        total_weight = sum(weights)
        span = max(0.0, end - start)

        timed = []
        cursor = start
        for index, (chunk, weight) in enumerate(zip(chunks, weights)):
            if index == len(chunks) - 1:
                chunk_end = end
            else:
                chunk_end = cursor + span * weight / total_weight
            timed.append((chunk, cursor, chunk_end))
            cursor = chunk_end
        return timed

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_ass(self, cues: list[SubtitleCue], context: PipelineContext) -> str:
        """
        Render cues as an ASS document sized to the job's resolution.

        Args:
            cues: Timed cues
            context: Pipeline context (resolution, template, font level, position)

        Returns:
            ASS document text
        """
        template = context.subtitle_template
        style = resolve_style(template, context)
        bold = -1 if template.bold else 0

        def style_line(name: str, font_size: int, colour: str) -> str:
            return (
                f"Style: {name},{template.font_name},{font_size},{colour},{template.secondary_colour},"
                f"{template.outline_colour},{template.back_colour},{bold},0,0,0,100,100,{template.spacing},0,"
                f"{template.border_style},{template.outline},{template.shadow},{style.alignment},"
                f"{template.margin_l},{template.margin_r},{style.margin_v},1"
            )

        lines = [
            "[Script Info]",
            "ScriptType: v4.00+",
            f"PlayResX: {context.video_width}",
            f"PlayResY: {context.video_height}",
            "WrapStyle: 0",
            "ScaledBorderAndShadow: yes",
            "",
            "[V4+ Styles]",
            ASS_STYLE_FORMAT,
            style_line(ASS_STYLE_NAMES[CueStyle.NEUTRAL], style.font_size, template.primary_colour),
            style_line(ASS_STYLE_NAMES[CueStyle.EMPHATIC], style.emphatic_font_size, template.emphatic_colour),
            "",
            "[Events]",
            ASS_EVENT_FORMAT,
        ]
        for cue in cues:
            text = cue.text.replace("{", "(").replace("}", ")").replace("\n", "\\N")
            lines.append(
                f"Dialogue: 0,{format_ass_time(cue.start)},{format_ass_time(cue.end)},"
                f"{ASS_STYLE_NAMES[cue.style]},,0,0,0,,{text}"
            )
        return "\n".join(lines) + "\n"

    @staticmethod
    def render_srt(cues: list[SubtitleCue]) -> str:
        """Render cues as SRT."""
        blocks = []
        for index, cue in enumerate(cues, start=1):
            blocks.append(f"{index}\n{format_srt_time(cue.start)} --> {format_srt_time(cue.end)}\n{cue.text}\n")
        return "\n".join(blocks)
