"""Shared pytest fixtures and configuration."""

import threading
from pathlib import Path
from typing import Optional

import pytest

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import PipelineError
from scene_pipeline.core.logging_config import get_logger
from scene_pipeline.models.context import PipelineContext
from scene_pipeline.models.results import Ok
from scene_pipeline.models.schemas import SpeechSegment, VideoFormat
from scene_pipeline.services.ports import AudioAnalyzer, SpeechSynthesizer, VisualGenerator
from scene_pipeline.utils.subprocess_runner import CommandResult, MediaCommand


@pytest.fixture
def settings(tmp_path):
    """Create test settings instance with fast, local-only behaviour."""
    return Settings(
        storage_path=str(tmp_path / "storage"),
        work_dir=str(tmp_path / "outputs"),
        enable_rate_limiting=False,
        elevenlabs_api_key=None,
        openai_api_key=None,
        hf_endpoint_url="https://hf.example/endpoint",
        hf_endpoint_token="hf_token_primary",
        hf_fallback_endpoint_urls=[],
        hf_fallback_tokens=[],
        overload_backoff_seconds=[0.0, 0.0],
        oom_extra_delay_seconds=0.0,
        retry_base_delay_seconds=0.0,
        allowed_media_roots=[],
    )


@pytest.fixture
def logger():
    """Create test logger instance."""
    return get_logger(__name__)


@pytest.fixture
def context():
    """Horizontal pipeline context for a test job."""
    return PipelineContext.for_format("job_test", VideoFormat.HORIZONTAL)


class FakeRunner:
    """
    Records MediaCommands instead of running them.

    Output files are created so later stages find them. `failures` maps a
    task name prefix to an exception raised for matching commands; `holds`
    maps a prefix to an Event the command waits on before it runs.
    """

    def __init__(self, failures: Optional[dict] = None, probe_output: str = "4.0", holds: Optional[dict] = None):
        self.commands: list[MediaCommand] = []
        self.failures = dict(failures or {})
        self.holds = dict(holds or {})
        self.probe_output = probe_output
        self.threads: dict[str, str] = {}
        self.timeline: list[str] = []

    def run(self, command: MediaCommand, cancellation=None, check: bool = True) -> CommandResult:
        self.commands.append(command)
        self.threads[command.task_name] = threading.current_thread().name
        for prefix, release in self.holds.items():
            if command.task_name.startswith(prefix):
                release.wait(timeout=5)
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        for prefix, error in self.failures.items():
            if command.task_name.startswith(prefix):
                raise error
        if command.task_name == "probe_duration":
            return CommandResult(returncode=0, output_lines=[self.probe_output], elapsed_seconds=0.0)
        if command.output_path:
            output = Path(command.output_path)
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(b"clip")
        self.timeline.append(f"finished {command.task_name}")
        return CommandResult(returncode=0, output_lines=[], elapsed_seconds=0.0)

    def task_names(self) -> list[str]:
        return [command.task_name for command in self.commands]


class FakeSynthesizer(SpeechSynthesizer):
    """Writes a placeholder audio file; fails for scene texts listed in `fail_texts`."""

    def __init__(self, fail_texts: Optional[set] = None, failures_before_success: int = 0):
        self.fail_texts = set(fail_texts or ())
        self.failures_before_success = failures_before_success
        self.calls: list[str] = []

    def synthesize(self, text, quality_tier, voice_profile, output_path):
        self.calls.append(text)
        if text in self.fail_texts:
            raise PipelineError(f"TTS API returned status 500 for {text[:10]}")
        if self.failures_before_success > 0:
            self.failures_before_success -= 1
            raise PipelineError("TTS API returned status 500")
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"audio")
        return output_path


class FakeAnalyzer(AudioAnalyzer):
    """Fixed duration; one even segment per expected sentence."""

    def __init__(self, duration: float = 4.0):
        self.duration = duration

    def measure_duration(self, path):
        return self.duration

    def detect_sentence_boundaries(self, path, expected_count):
        step = self.duration / max(1, expected_count)
        return [SpeechSegment(start=i * step, end=(i + 1) * step) for i in range(expected_count)]


class FakeVisualGenerator(VisualGenerator):
    """Writes a placeholder image per prompt; prompts in `fail_prompts` return an error."""

    def __init__(self, fail_prompts: Optional[set] = None):
        self.fail_prompts = set(fail_prompts or ())
        self.prompts: list[str] = []

    def generate_images(self, prompts, context, output_dir):
        results = []
        for index, prompt in enumerate(prompts):
            self.prompts.append(prompt)
            if prompt in self.fail_prompts:
                results.append(PipelineError(f"Image generation failed for {prompt}"))
                continue
            path = Path(output_dir) / f"image_{index:03d}.png"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"png")
            results.append(Ok(path))
        return results

    def generate_video(self, prompt, context, output_dir):
        self.prompts.append(prompt)
        path = Path(output_dir) / "video.mp4"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"mp4")
        return Ok(path)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def fake_analyzer():
    return FakeAnalyzer()


@pytest.fixture
def fake_visuals():
    return FakeVisualGenerator()


@pytest.fixture
def make_runner():
    """FakeRunner factory for tests that need failures or a custom probe result."""
    return FakeRunner


@pytest.fixture
def make_synthesizer():
    return FakeSynthesizer


@pytest.fixture
def make_visuals():
    return FakeVisualGenerator
