"""TTS (Text-to-Speech) client abstraction for multiple providers."""

from pathlib import Path
from typing import Any, Optional

import requests
from pydub import AudioSegment

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import PipelineError, RateLimitExceeded, ServiceOverload, ValidationFailure
from scene_pipeline.models.schemas import QualityTier
from scene_pipeline.services.failure_policy import parse_overload_kind
from scene_pipeline.services.ports import SpeechSynthesizer
from scene_pipeline.utils.rate_limiter import TTS_GENERATION, AdaptiveRateLimiter
from scene_pipeline.utils.text_utils import count_spoken_chars

ELEVENLABS_MODELS = {
    QualityTier.STANDARD: "eleven_turbo_v2_5",
    QualityTier.PREMIUM: "eleven_multilingual_v2",
}
OPENAI_MODELS = {
    QualityTier.STANDARD: "tts-1",
    QualityTier.PREMIUM: "tts-1-hd",
}


class TTSClient(SpeechSynthesizer):
    """TTS client supporting ElevenLabs, OpenAI and a silent stub."""

    def __init__(self, settings: Settings, logger: Any, rate_limiter: Optional[AdaptiveRateLimiter] = None):
        """
        Initialize TTS client.

        Args:
            settings: Application settings
            logger: Logger instance
            rate_limiter: Shared adaptive rate limiter
        """
        self.settings = settings
        self.logger = logger
        self.rate_limiter = rate_limiter or AdaptiveRateLimiter(settings, logger)
        self.provider = self._detect_provider()

    def _detect_provider(self) -> str:
        """Detect which TTS provider to use based on available credentials."""
        if self.settings.elevenlabs_api_key:
            return "elevenlabs"
        elif self.settings.openai_api_key:
            return "openai"
        else:
            return "stub"

    def synthesize(
        self,
        text: str,
        quality_tier: QualityTier,
        voice_profile: Optional[str],
        output_path: Path,
    ) -> Path:
        """
        Generate speech from text and save to file.

        Args:
            text: Text to convert to speech
            quality_tier: STANDARD or PREMIUM
            voice_profile: Optional voice profile string (e.g., "deep male", "young female")
            output_path: Path to save audio file

        Returns:
            Path of the written audio (the stub writes WAV)

        Raises:
            ValidationFailure: If text is empty
            RateLimitExceeded: On HTTP 429
            ServiceOverload: On HTTP 503
            PipelineError: On any other provider failure
        """
        if not text or not text.strip():
            raise ValidationFailure("Text cannot be empty")

        voice_id = self._map_voice_profile_to_id(voice_profile)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        self.logger.info(f"Generating speech using {self.provider} provider for {len(text)} characters...")

        if self.provider == "elevenlabs":
            self.rate_limiter.wait(TTS_GENERATION)
            self._generate_elevenlabs(text, output_path, quality_tier, voice_id)
        elif self.provider == "openai":
            self.rate_limiter.wait(TTS_GENERATION)
            self._generate_openai(text, output_path, quality_tier, voice_id)
        else:
            output_path = self._generate_stub(text, output_path)

        self.logger.info(f"Speech generated: {output_path}")
        return output_path

    def _map_voice_profile_to_id(self, voice_profile: Optional[str]) -> Optional[str]:
        """
        Map a voice profile string to a provider-specific voice ID.

        Args:
            voice_profile: Voice profile string (e.g., "deep male", "young female")

        Returns:
            Voice ID if mapping exists, None otherwise
        """
        if not voice_profile:
            return None

        profile_lower = voice_profile.lower()

        # OpenAI has: alloy, echo, fable, onyx, nova, shimmer
        if self.provider == "openai":
            if "female" in profile_lower or "woman" in profile_lower or "young" in profile_lower:
                return "nova"
            elif "male" in profile_lower or "man" in profile_lower or "deep" in profile_lower:
                return "onyx"
            else:
                return "alloy"

        # ElevenLabs voices are account-specific; a raw voice id passes through
        elif self.provider == "elevenlabs" and " " not in voice_profile:
            return voice_profile

        return None

    def _record_status(self, status_code: int, body: str) -> None:
        """Feed the outcome to the rate limiter and raise for failures."""
        if status_code == 200:
            self.rate_limiter.record_success(TTS_GENERATION)
            return
        if status_code == 429:
            self.rate_limiter.record_rate_limited(TTS_GENERATION)
            raise RateLimitExceeded(f"TTS rate limited (429): {body[:200]}")
        if status_code == 503:
            self.rate_limiter.record_overloaded(TTS_GENERATION)
            raise ServiceOverload(parse_overload_kind(body).value, f"TTS unavailable (503): {body[:200]}")
        self.rate_limiter.record_other_error(TTS_GENERATION)
        raise PipelineError(f"TTS API returned status {status_code}: {body[:200]}")

    def _generate_elevenlabs(
        self, text: str, output_path: Path, quality_tier: QualityTier, voice_id: Optional[str] = None
    ) -> None:
        """Generate speech using ElevenLabs API."""
        voice_id = voice_id or self.settings.elevenlabs_voice_id
        if not voice_id:
            raise ValidationFailure("ElevenLabs voice ID not configured")

        url = f"https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"

        headers = {
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
            "xi-api-key": self.settings.elevenlabs_api_key,
        }

        data = {
            "text": text,
            "model_id": ELEVENLABS_MODELS[quality_tier],
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
            },
        }

        try:
            response = requests.post(url, json=data, headers=headers, timeout=self.settings.tts_request_timeout_seconds)
        except requests.exceptions.RequestException as e:
            self.rate_limiter.record_other_error(TTS_GENERATION)
            raise PipelineError(f"Network error calling ElevenLabs API: {e}") from e

        self._record_status(response.status_code, response.text if response.status_code != 200 else "")

        with open(output_path, "wb") as f:
            f.write(response.content)

    def _generate_openai(
        self, text: str, output_path: Path, quality_tier: QualityTier, voice_id: Optional[str] = None
    ) -> None:
        """Generate speech using OpenAI TTS API."""
        import openai

        client = openai.OpenAI(
            api_key=self.settings.openai_api_key,
            timeout=self.settings.tts_request_timeout_seconds,
        )

        try:
            response = client.audio.speech.create(
                model=OPENAI_MODELS[quality_tier],
                voice=voice_id or "alloy",
                input=text,
            )
        except openai.APIStatusError as e:
            self._record_status(e.status_code, str(e))
            raise
        except openai.APIError as e:
            self.rate_limiter.record_other_error(TTS_GENERATION)
            raise PipelineError(f"OpenAI TTS API error: {e}") from e

        self._record_status(200, "")
        response.write_to_file(str(output_path))

    def _generate_stub(self, text: str, output_path: Path) -> Path:
        """
        Generate stub audio (silent placeholder).

        This creates a silent WAV sized to the estimated speaking time, for
        runs without a TTS provider configured.
        """
        self.logger.warning("Using stub TTS - generating silent audio placeholder")
        duration_seconds = max(1.0, count_spoken_chars(text) / self.settings.subtitle_chars_per_second)

        output_path = output_path.with_suffix(".wav")
        silent_audio = AudioSegment.silent(duration=int(duration_seconds * 1000))
        silent_audio.export(str(output_path), format="wav")
        return output_path
