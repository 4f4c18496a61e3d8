"""Application configuration using pydantic-settings."""

from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LocaleProfile(BaseModel):
    """Per-locale subtitle pacing overrides."""

    chars_per_second: float = Field(default=4.5, gt=0, description="Average TTS speaking rate in characters per second")
    max_chars_per_line: int = Field(default=45, gt=0, description="Maximum characters shown in one caption chunk")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via environment variables or a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================================================
    # Application Settings
    # ========================================================================
    app_name: str = Field(default="Scene Media Pipeline", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_file: Optional[str] = Field(default=None, description="Optional log file path (rotated, zip-compressed)")
    log_file_json: bool = Field(default=False, description="Write the log file as JSON lines")

    # ========================================================================
    # TTS (Text-to-Speech) Settings
    # ========================================================================
    elevenlabs_api_key: Optional[str] = Field(default=None, description="ElevenLabs API key")
    elevenlabs_voice_id: Optional[str] = Field(default=None, description="ElevenLabs voice ID")
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key (used for OpenAI TTS)")
    tts_max_attempts: int = Field(default=3, ge=1, description="Speech synthesis attempts per scene (default: 3)")
    tts_request_timeout_seconds: float = Field(default=60.0, description="HTTP timeout for a single TTS request")
    default_quality_tier: str = Field(default="standard", description="Default TTS quality tier: 'standard' or 'premium'")

    # ========================================================================
    # Image Generation Settings
    # ========================================================================
    hf_endpoint_url: Optional[str] = Field(
        default=None,
        description="Hugging Face Inference Endpoint URL for scene images. Set via HF_ENDPOINT_URL env var.",
    )
    hf_endpoint_token: Optional[str] = Field(
        default=None,
        description="Hugging Face Inference Endpoint token. Set via HF_ENDPOINT_TOKEN env var.",
    )
    hf_fallback_endpoint_urls: list[str] = Field(
        default_factory=list,
        description="Fallback endpoint URLs (model variants) tried when the primary endpoint is overloaded",
    )
    hf_fallback_tokens: list[str] = Field(
        default_factory=list,
        description="Additional endpoint tokens rotated in when a quota is exhausted",
    )
    hf_video_endpoint_url: Optional[str] = Field(
        default=None,
        description="Endpoint URL for scene video clips (optional; scenes fall back to stills)",
    )
    image_request_timeout_seconds: float = Field(default=120.0, description="HTTP timeout for a single image request")

    # ========================================================================
    # Rate Limiting Settings
    # ========================================================================
    enable_rate_limiting: bool = Field(
        default=True,
        description="Sleep the adaptive delay before every external call (default: true)",
    )
    rate_limit_initial_delay_ms: int = Field(default=5000, description="Initial per-service delay in milliseconds")
    rate_limit_min_delay_ms: int = Field(default=2000, description="Delay floor in milliseconds")
    rate_limit_max_delay_429_ms: int = Field(default=120000, description="Delay ceiling after HTTP 429 responses")
    rate_limit_max_delay_503_ms: int = Field(default=60000, description="Delay ceiling after HTTP 503 and other errors")
    rate_limit_success_threshold: int = Field(default=5, description="Consecutive successes needed before the delay shrinks")

    # ========================================================================
    # Subtitle Settings
    # ========================================================================
    subtitle_chars_per_second: float = Field(default=4.5, gt=0, description="Default TTS speaking rate (chars/sec)")
    subtitle_max_chars_per_line: int = Field(default=45, gt=0, description="Default maximum caption chunk length")
    subtitle_min_chunk_chars: int = Field(default=15, description="Chunks shorter than this are merged into a neighbour")
    locale_profiles: dict[str, LocaleProfile] = Field(
        default_factory=lambda: {
            "ko": LocaleProfile(chars_per_second=4.5, max_chars_per_line=45),
            "ja": LocaleProfile(chars_per_second=7.0, max_chars_per_line=30),
            "en": LocaleProfile(chars_per_second=14.0, max_chars_per_line=42),
        },
        description="Per-locale subtitle pacing (chars/sec, max chars/line)",
    )

    # ========================================================================
    # Video Rendering Settings
    # ========================================================================
    video_width: int = Field(default=1920, description="Output width in pixels (default: 1920 for 16:9)")
    video_height: int = Field(default=1080, description="Output height in pixels (default: 1080 for 16:9)")
    video_fps: int = Field(default=30, description="Output framerate")
    video_crf: int = Field(default=23, description="libx264 constant rate factor")
    video_preset: str = Field(default="veryfast", description="libx264 preset")
    audio_sample_rate: int = Field(default=44100, description="Output audio sample rate")
    fade_duration_seconds: float = Field(default=0.5, description="Fade in/out length applied to each scene clip")
    ffmpeg_binary: str = Field(default="ffmpeg", description="ffmpeg executable")
    ffprobe_binary: str = Field(default="ffprobe", description="ffprobe executable")
    allowed_media_roots: list[str] = Field(
        default_factory=list,
        description="If set, absolute media paths passed to ffmpeg must live under one of these directories",
    )

    # ========================================================================
    # Timeouts (seconds)
    # ========================================================================
    probe_timeout_seconds: float = Field(default=30.0, description="ffprobe duration probes")
    silence_detect_timeout_seconds: float = Field(default=120.0, description="silencedetect analysis")
    scene_compose_timeout_seconds: float = Field(default=300.0, description="Per-scene composition")
    concat_copy_timeout_seconds: float = Field(default=120.0, description="Stream-copy concatenation")
    concat_reencode_timeout_seconds: float = Field(default=600.0, description="Filtered re-encode concatenation")
    pairwise_merge_timeout_seconds: float = Field(default=300.0, description="One pairwise merge round")
    pipeline_wait_timeout_seconds: float = Field(default=300.0, description="Wait for the previous scene's composition")

    # ========================================================================
    # Recovery Settings
    # ========================================================================
    sequential_merge_threshold: int = Field(
        default=20,
        description="Clip count above which the filtered re-encode tier is skipped in favour of pairwise merging",
    )
    reencode_breaker_threshold: int = Field(
        default=3,
        description="Consecutive filtered re-encode failures after which that tier is skipped process-wide",
    )
    reencode_breaker_cooldown_seconds: float = Field(
        default=600.0,
        description="How long the filtered re-encode tier stays skipped once the breaker opens",
    )
    oom_max_attempts: int = Field(default=5, description="Attempts for a subprocess killed for memory use")
    oom_extra_delay_seconds: float = Field(default=10.0, description="Extra delay added after an OOM kill")
    retry_base_delay_seconds: float = Field(default=2.0, description="Base for exponential backoff between attempts")
    retry_max_delay_seconds: float = Field(default=30.0, description="Backoff ceiling")
    overload_fast_retries: int = Field(default=2, description="Fast retries per recovery step for an overloaded service")
    overload_backoff_seconds: list[float] = Field(
        default_factory=lambda: [3.0, 6.0],
        description="Fast retry waits for an overloaded service before escalating to a fallback",
    )
    content_policy_max_attempts: int = Field(default=3, description="Attempts for a request rejected by content policy")

    # ========================================================================
    # Storage Settings
    # ========================================================================
    storage_path: str = Field(default="storage/scenes", description="Scene snapshot and object storage root")
    work_dir: str = Field(default="outputs", description="Base directory for per-job working files")

    def locale_profile(self, locale: Optional[str]) -> LocaleProfile:
        """Return pacing for a locale, falling back to the global subtitle defaults."""
        if locale and locale in self.locale_profiles:
            return self.locale_profiles[locale]
        return LocaleProfile(
            chars_per_second=self.subtitle_chars_per_second,
            max_chars_per_line=self.subtitle_max_chars_per_line,
        )


# Global settings instance
settings = Settings()
