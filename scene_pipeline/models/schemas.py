"""Pydantic models and schemas for the scene media pipeline."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ============================================================================
# Enums
# ============================================================================


class SceneType(str, Enum):
    """Role of a scene within the final video."""

    OPENING = "opening"
    SLIDE = "slide"
    THUMBNAIL = "thumbnail"
    ENDING = "ending"


class SceneStatus(str, Enum):
    """Lifecycle state of a scene's media."""

    PENDING = "pending"
    GENERATING = "generating"
    MEDIA_READY = "media_ready"
    COMPLETED = "completed"
    FAILED = "failed"


class MediaKind(str, Enum):
    """Kind of visual asset backing a scene."""

    IMAGE = "image"
    VIDEO = "video"


class QualityTier(str, Enum):
    """Speech synthesis quality tier."""

    STANDARD = "standard"
    PREMIUM = "premium"


class CueStyle(str, Enum):
    """Caption style selected per subtitle chunk."""

    NEUTRAL = "neutral"
    EMPHATIC = "emphatic"


class OverloadKind(str, Enum):
    """Sub-type of an external service overload."""

    GLOBALLY_UNAVAILABLE = "globally_unavailable"
    QUOTA_EXHAUSTED = "quota_exhausted"
    UNKNOWN = "unknown"


class ProgressStatus(str, Enum):
    """Status of an in-flight job."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL_FAILED = "partial_failed"
    FAILED = "failed"


class VideoFormat(str, Enum):
    """Output aspect ratio."""

    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"


# ============================================================================
# Scene Models
# ============================================================================


class Scene(BaseModel):
    """One narrated unit of the final video."""

    scene_id: str = Field(..., description="Unique scene identifier")
    order_index: int = Field(..., ge=0, description="Position of the scene in the final video")
    scene_type: SceneType = Field(default=SceneType.SLIDE, description="Scene role")
    narration: Optional[str] = Field(default=None, description="Narration text; None or blank skips audio and subtitles")
    prompt: str = Field(default="", description="Visual generation prompt")
    target_duration: float = Field(default=5.0, gt=0, description="Target scene duration in seconds")
    audio_duration: Optional[float] = Field(default=None, description="Measured narration audio duration in seconds")
    media_path: Optional[str] = Field(default=None, description="Local path of the visual asset")
    media_kind: MediaKind = Field(default=MediaKind.IMAGE, description="Kind of visual asset")
    audio_path: Optional[str] = Field(default=None, description="Local path of the narration audio")
    subtitle_payload: Optional[str] = Field(default=None, description="Rendered subtitle document (ASS or SRT)")
    clip_path: Optional[str] = Field(default=None, description="Composed scene clip; set only when COMPLETED")
    status: SceneStatus = Field(default=SceneStatus.PENDING, description="Lifecycle state")
    retry_count: int = Field(default=0, ge=0, description="Number of explicit retry requests")
    error_message: Optional[str] = Field(default=None, description="Last failure message")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last state change")

    @property
    def has_narration(self) -> bool:
        return bool(self.narration and self.narration.strip())


class SpeechSegment(BaseModel):
    """Detected spoken interval within one scene's audio."""

    start: float = Field(..., ge=0, description="Start time in seconds")
    end: float = Field(..., ge=0, description="End time in seconds")


class SubtitleCue(BaseModel):
    """One timed caption entry."""

    style: CueStyle = Field(default=CueStyle.NEUTRAL, description="Caption style")
    start: float = Field(..., description="Start time in seconds")
    end: float = Field(..., description="End time in seconds")
    text: str = Field(..., description="Caption text")


class SubtitleTemplate(BaseModel):
    """ASS style template for burned-in captions."""

    template_id: str = Field(default="default", description="Template identifier")
    font_name: str = Field(default="SUIT-Bold", description="Caption font family")
    font_size: int = Field(default=72, description="Font size for horizontal output")
    font_size_vertical: int = Field(default=100, description="Font size for vertical output")
    emphatic_font_size: int = Field(default=80, description="Emphatic cue font size for horizontal output")
    emphatic_font_size_vertical: int = Field(default=100, description="Emphatic cue font size for vertical output")
    bold: bool = Field(default=True, description="Bold captions")
    spacing: int = Field(default=2, description="Letter spacing")
    primary_colour: str = Field(default="&H00FFFFFF", description="Text colour (ASS &HAABBGGRR)")
    secondary_colour: str = Field(default="&H000000FF", description="Karaoke colour")
    outline_colour: str = Field(default="&H00000000", description="Outline colour")
    back_colour: str = Field(default="&HB0000000", description="Shadow/box colour")
    emphatic_colour: str = Field(default="&H0000FFFF", description="Text colour for emphatic cues")
    border_style: int = Field(default=1, description="1 = outline + shadow, 3 = opaque box")
    outline: int = Field(default=4, description="Outline width")
    shadow: int = Field(default=2, description="Shadow depth")
    alignment: int = Field(default=2, description="Numpad alignment (2 = bottom centre)")
    margin_l: int = Field(default=20, description="Left margin")
    margin_r: int = Field(default=20, description="Right margin")
    margin_v: int = Field(default=80, description="Vertical margin for horizontal output")
    margin_v_vertical: int = Field(default=300, description="Vertical margin for vertical output")


class RateLimitStatus(BaseModel):
    """Snapshot of one service's adaptive delay state."""

    service: str = Field(..., description="External service name")
    current_delay_ms: int = Field(..., description="Current delay before each call")
    consecutive_successes: int = Field(default=0, description="Successes since the last error or delay reduction")
    consecutive_failures: int = Field(default=0, description="Errors since the last success")


# ============================================================================
# Job Models
# ============================================================================


class ProgressRecord(BaseModel):
    """Progress of one in-flight job."""

    job_id: str = Field(..., description="Job identifier")
    process_type: str = Field(default="scene_media", description="Process type tag")
    total: int = Field(default=0, description="Total scenes")
    completed: int = Field(default=0, description="Scenes completed")
    failed: int = Field(default=0, description="Scenes failed")
    status: ProgressStatus = Field(default=ProgressStatus.PROCESSING, description="Job status")
    message: str = Field(default="", description="Human-readable status message")
    total_duration: Optional[float] = Field(default=None, description="Aggregate duration of the final video")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last update")


class BatchResult(BaseModel):
    """Outcome of processing a batch of scenes."""

    job_id: str = Field(..., description="Job identifier")
    status: ProgressStatus = Field(..., description="Batch status")
    total: int = Field(..., description="Scenes in the batch")
    completed: int = Field(..., description="Scenes completed")
    failed: int = Field(..., description="Scenes failed")
    failed_scene_ids: list[str] = Field(default_factory=list, description="Identifiers of failed scenes")
    final_video_path: Optional[str] = Field(default=None, description="Concatenated output, if produced")
    total_duration: Optional[float] = Field(default=None, description="Duration of the final video")
    message: str = Field(default="", description="Human-readable summary")
