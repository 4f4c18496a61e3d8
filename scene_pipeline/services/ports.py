"""Collaborator interfaces consumed by the scene media pipeline."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from scene_pipeline.core.exceptions import PipelineError
from scene_pipeline.models.context import PipelineContext
from scene_pipeline.models.results import GenerationResult
from scene_pipeline.models.schemas import QualityTier, SpeechSegment


class SpeechSynthesizer(ABC):
    """Turns narration text into an audio file."""

    @abstractmethod
    def synthesize(
        self,
        text: str,
        quality_tier: QualityTier,
        voice_profile: Optional[str],
        output_path: Path,
    ) -> Path:
        """Synthesize speech and return the written audio path."""


class AudioAnalyzer(ABC):
    """Measures narration audio."""

    @abstractmethod
    def measure_duration(self, path: Path) -> float:
        """Duration of an audio file in seconds."""

    @abstractmethod
    def detect_sentence_boundaries(self, path: Path, expected_count: int) -> list[SpeechSegment]:
        """Spoken-sentence intervals, ideally `expected_count` of them."""


class VisualGenerator(ABC):
    """Produces the visual asset behind each scene."""

    @abstractmethod
    def generate_images(
        self, prompts: list[str], context: PipelineContext, output_dir: Path
    ) -> list[Union[GenerationResult, PipelineError]]:
        """One entry per prompt: a tagged result (Ok carries the image Path) or the error."""

    @abstractmethod
    def generate_video(self, prompt: str, context: PipelineContext, output_dir: Path) -> GenerationResult:
        """Tagged result; Ok carries the video Path."""


class ObjectStorage(ABC):
    """Opaque-key blob storage for published artifacts."""

    @abstractmethod
    def upload(self, local_path: Path, key: str) -> str:
        """Store a file under `key` and return the key."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Whether an object exists."""

    @abstractmethod
    def presigned_url(self, key: str, expires_in_seconds: int = 3600) -> str:
        """Time-limited URL for an object."""

    @abstractmethod
    def download(self, key: str, local_path: Path) -> Path:
        """Copy an object to a local file."""
