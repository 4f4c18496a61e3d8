"""Exception taxonomy for the scene media pipeline."""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationFailure(PipelineError):
    """Required input (narration, prompt, media) is missing or malformed. Never retried."""


class ContentPolicyRejection(PipelineError):
    """An external generator refused the request on content-policy grounds."""

    def __init__(self, reason: str):
        super().__init__(f"Content blocked: {reason}")
        self.reason = reason


class ServiceOverload(PipelineError):
    """An external service signalled it cannot serve the request right now."""

    def __init__(self, kind: str, message: str = ""):
        super().__init__(message or f"Service overloaded ({kind})")
        self.kind = kind


class RateLimitExceeded(PipelineError):
    """An external service answered HTTP 429."""


class GenerationFailed(PipelineError):
    """An external generator failed for a reason that is neither an overload nor a content block."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ResourceExhausted(PipelineError):
    """A local subprocess was killed by the OS for excessive memory use."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class CommandTimeoutError(PipelineError):
    """A subprocess exceeded its declared timeout and was killed."""

    def __init__(self, task_name: str, timeout_seconds: float):
        super().__init__(f"{task_name} timed out after {timeout_seconds:.0f}s")
        self.task_name = task_name
        self.timeout_seconds = timeout_seconds


class CommandFailedError(PipelineError):
    """A subprocess exited with a non-zero status."""

    def __init__(self, task_name: str, returncode: int, output_tail: str = ""):
        message = f"{task_name} exited with code {returncode}"
        if output_tail:
            message += f": {output_tail}"
        super().__init__(message)
        self.task_name = task_name
        self.returncode = returncode
        self.output_tail = output_tail


class UnsafeArgumentError(PipelineError):
    """A command argument failed path/argument sanitization."""


class InvalidTransitionError(PipelineError):
    """A scene state change that the lifecycle does not allow."""

    def __init__(self, scene_id: str, current: str, target: str):
        super().__init__(f"Scene {scene_id}: illegal transition {current} -> {target}")
        self.scene_id = scene_id
        self.current = current
        self.target = target


class PipelineCancelled(PipelineError):
    """The job was cancelled by its caller."""
