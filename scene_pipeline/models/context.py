"""Request context passed explicitly through every pipeline call."""

import threading
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from scene_pipeline.core.exceptions import PipelineCancelled
from scene_pipeline.models.schemas import QualityTier, SubtitleTemplate, VideoFormat


class CancellationToken:
    """Thread-safe cancellation flag with kill callbacks for in-flight work."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Mark the job cancelled and fire every registered callback once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback; runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled("Job was cancelled")


class PipelineContext(BaseModel):
    """Per-job settings that used to live in request-scoped globals."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    job_id: str = Field(..., description="Job identifier")
    format_id: VideoFormat = Field(default=VideoFormat.HORIZONTAL, description="Output aspect ratio")
    video_width: int = Field(default=1920, description="Output width in pixels")
    video_height: int = Field(default=1080, description="Output height in pixels")
    subtitle_template: SubtitleTemplate = Field(default_factory=SubtitleTemplate, description="Caption style template")
    font_size_level: int = Field(default=3, ge=1, le=3, description="1 = small (x0.6), 2 = medium (x0.8), 3 = large")
    subtitle_position: int = Field(default=1, ge=1, le=3, description="1 = bottom, 2 = middle, 3 = top")
    creator_id: Optional[str] = Field(default=None, description="Creator whose settings apply")
    locale: str = Field(default="ko", description="Narration locale")
    chars_per_second: Optional[float] = Field(default=None, description="Override for the locale speaking rate")
    max_chars_per_line: Optional[int] = Field(default=None, description="Override for the locale caption length")
    quality_tier: QualityTier = Field(default=QualityTier.STANDARD, description="Speech synthesis tier")
    voice_profile: Optional[str] = Field(default=None, description="Voice profile (e.g. 'deep male')")
    cancellation: CancellationToken = Field(default_factory=CancellationToken, description="Job cancellation token")

    @property
    def is_vertical(self) -> bool:
        return self.format_id == VideoFormat.VERTICAL

    @classmethod
    def for_format(cls, job_id: str, format_id: VideoFormat, width: int = 1920, height: int = 1080, **kwargs):
        """
        Build a context whose resolution matches the requested aspect ratio.

        Args:
            job_id: Job identifier
            format_id: Output aspect ratio
            width: Long edge is max(width, height)
            height: Short edge is min(width, height)
            **kwargs: Remaining context fields

        Returns:
            PipelineContext
        """
        long_edge, short_edge = max(width, height), min(width, height)
        if format_id == VideoFormat.VERTICAL:
            width, height = short_edge, long_edge
        else:
            width, height = long_edge, short_edge
        return cls(job_id=job_id, format_id=format_id, video_width=width, video_height=height, **kwargs)
