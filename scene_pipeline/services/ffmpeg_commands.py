"""Typed builders for ffmpeg/ffprobe invocations."""

from pathlib import Path
from typing import Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.models.schemas import MediaKind
from scene_pipeline.utils.subprocess_runner import MediaCommand

VIDEO_CODEC = "libx264"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
PIXEL_FORMAT = "yuv420p"
SILENCE_THRESHOLD = "-30dB"
SILENCE_MIN_DURATION = 0.1


def escape_filter_path(path: str) -> str:
    """Escape a file path for use inside an ffmpeg filter argument."""
    return path.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def write_concat_list(paths: list[str], list_file: Path) -> Path:
    """
    Write a concat demuxer list file.

    Args:
        paths: Clip paths in playback order
        list_file: Destination of the list

    Returns:
        Path to the list file
    """
    list_file.parent.mkdir(parents=True, exist_ok=True)
    with open(list_file, "w", encoding="utf-8") as f:
        for path in paths:
            absolute = str(Path(path).resolve()).replace("'", "'\\''")
            f.write(f"file '{absolute}'\n")
    return list_file


class FfmpegCommandBuilder:
    """Builds every encoder command the pipeline runs, each with its declared timeout."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def _encode_args(self, fps: int) -> list[str]:
        s = self.settings
        return [
            "-c:v", VIDEO_CODEC,
            "-preset", s.video_preset,
            "-crf", str(s.video_crf),
            "-pix_fmt", PIXEL_FORMAT,
            "-r", str(fps),
            "-c:a", AUDIO_CODEC,
            "-b:a", AUDIO_BITRATE,
            "-ar", str(s.audio_sample_rate),
            "-ac", "2",
            "-movflags", "+faststart",
        ]

    @staticmethod
    def _scale_filter(width: int, height: int) -> str:
        return f"scale={width}:{height}:force_original_aspect_ratio=increase,crop={width}:{height},setsar=1"

    def probe_duration(self, path: str) -> MediaCommand:
        return MediaCommand(
            argv=[
                self.settings.ffprobe_binary,
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                path,
            ],
            timeout_seconds=self.settings.probe_timeout_seconds,
            task_name="probe_duration",
            input_paths=[path],
        )

    def silence_detect(self, path: str) -> MediaCommand:
        return MediaCommand(
            argv=[
                self.settings.ffmpeg_binary,
                "-hide_banner",
                "-nostats",
                "-i", path,
                "-af", f"silencedetect=n={SILENCE_THRESHOLD}:d={SILENCE_MIN_DURATION}",
                "-f", "null",
                "-",
            ],
            timeout_seconds=self.settings.silence_detect_timeout_seconds,
            task_name="silence_detect",
            input_paths=[path],
        )

    def compose_scene(
        self,
        media_path: str,
        media_kind: MediaKind,
        duration: float,
        output_path: str,
        width: int,
        height: int,
        audio_path: Optional[str] = None,
        subtitle_path: Optional[str] = None,
        task_name: str = "compose_scene",
    ) -> MediaCommand:
        """
        Build the single invocation that renders one scene clip.

        Stills are looped for the scene duration and videos pass through; both
        are scaled/cropped to the output resolution, captioned, faded and
        re-encoded to one common codec profile so clips can be stream-copied
        together later. Scenes without narration get a silent stereo track.

        Args:
            media_path: Image or video asset
            media_kind: IMAGE or VIDEO
            duration: Clip duration in seconds
            output_path: Clip destination
            width: Output width
            height: Output height
            audio_path: Narration audio, if any
            subtitle_path: ASS/SRT file to burn in, if any
            task_name: Name used in logs and errors

        Returns:
            MediaCommand
        """
        s = self.settings
        fps = s.video_fps
        fade = min(s.fade_duration_seconds, duration / 2)
        fade_out_start = max(0.0, duration - fade)
        duration_arg = f"{duration:.3f}"

        argv = [s.ffmpeg_binary, "-y", "-hide_banner"]
        if media_kind == MediaKind.IMAGE:
            argv += ["-loop", "1", "-framerate", str(fps), "-t", duration_arg, "-i", media_path]
        else:
            # Short videos repeat until the narration ends
            argv += ["-stream_loop", "-1", "-i", media_path]

        input_paths = [media_path]
        if audio_path:
            argv += ["-i", audio_path]
            input_paths.append(audio_path)
        else:
            argv += [
                "-f", "lavfi",
                "-t", duration_arg,
                "-i", f"anullsrc=channel_layout=stereo:sample_rate={s.audio_sample_rate}",
            ]

        video_filters = [self._scale_filter(width, height), f"fps={fps}"]
        if subtitle_path:
            video_filters.append(f"subtitles=filename='{escape_filter_path(subtitle_path)}'")
            input_paths.append(subtitle_path)
        if fade > 0:
            video_filters.append(f"fade=t=in:st=0:d={fade:.3f}")
            video_filters.append(f"fade=t=out:st={fade_out_start:.3f}:d={fade:.3f}")
        video_filters.append(f"format={PIXEL_FORMAT}")

        audio_filters = ["apad"]
        if fade > 0:
            audio_filters.append(f"afade=t=in:st=0:d={fade:.3f}")
            audio_filters.append(f"afade=t=out:st={fade_out_start:.3f}:d={fade:.3f}")

        argv += [
            "-vf", ",".join(video_filters),
            "-af", ",".join(audio_filters),
            "-map", "0:v:0",
            "-map", "1:a:0",
            *self._encode_args(fps),
            "-t", duration_arg,
            output_path,
        ]
        return MediaCommand(
            argv=argv,
            timeout_seconds=s.scene_compose_timeout_seconds,
            task_name=task_name,
            input_paths=input_paths,
            output_path=output_path,
        )

    def concat_copy(self, list_file: str, output_path: str, clip_paths: list[str]) -> MediaCommand:
        """Tier 1: concat demuxer with stream copy."""
        return MediaCommand(
            argv=[
                self.settings.ffmpeg_binary,
                "-y", "-hide_banner",
                "-f", "concat",
                "-safe", "0",
                "-i", list_file,
                "-c", "copy",
                "-movflags", "+faststart",
                output_path,
            ],
            timeout_seconds=self.settings.concat_copy_timeout_seconds,
            task_name="concat_copy",
            input_paths=[list_file, *clip_paths],
            output_path=output_path,
        )

    def _filter_concat(
        self,
        inputs: list[str],
        output_path: str,
        width: int,
        height: int,
        timeout_seconds: float,
        task_name: str,
    ) -> MediaCommand:
        fps = self.settings.video_fps
        argv = [self.settings.ffmpeg_binary, "-y", "-hide_banner"]
        for path in inputs:
            argv += ["-i", path]

        graph = []
        streams = []
        for index in range(len(inputs)):
            graph.append(
                f"[{index}:v]{self._scale_filter(width, height)},fps={fps},format={PIXEL_FORMAT}[v{index}]"
            )
            graph.append(
                f"[{index}:a]aresample={self.settings.audio_sample_rate},"
                f"aformat=channel_layouts=stereo[a{index}]"
            )
            streams.append(f"[v{index}][a{index}]")
        graph.append(f"{''.join(streams)}concat=n={len(inputs)}:v=1:a=1[outv][outa]")

        argv += [
            "-filter_complex", ";".join(graph),
            "-map", "[outv]",
            "-map", "[outa]",
            *self._encode_args(fps),
            output_path,
        ]
        return MediaCommand(
            argv=argv,
            timeout_seconds=timeout_seconds,
            task_name=task_name,
            input_paths=list(inputs),
            output_path=output_path,
        )

    def concat_reencode(self, inputs: list[str], output_path: str, width: int, height: int) -> MediaCommand:
        """Tier 2: one filtered re-encode over every input."""
        return self._filter_concat(
            inputs, output_path, width, height, self.settings.concat_reencode_timeout_seconds, "concat_reencode"
        )

    def pairwise_merge(
        self, accumulator: str, next_clip: str, output_path: str, width: int, height: int
    ) -> MediaCommand:
        """Tier 3: re-encode exactly two clips into one."""
        return self._filter_concat(
            [accumulator, next_clip],
            output_path,
            width,
            height,
            self.settings.pairwise_merge_timeout_seconds,
            "pairwise_merge",
        )
