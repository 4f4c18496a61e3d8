"""Failure Classifier & Retry Policy - overload fallback chains, OOM recovery, content-policy rephrasing."""

import gc
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import ContentPolicyRejection, GenerationFailed, ResourceExhausted, ServiceOverload
from scene_pipeline.models.results import ContentBlocked, GenerationResult, Ok, Overloaded
from scene_pipeline.models.schemas import OverloadKind

T = TypeVar("T")

QUOTA_MARKER = "RESOURCE_EXHAUSTED"
UNAVAILABLE_MARKER = "UNAVAILABLE"
CONTENT_POLICY_MARKERS = (
    "content policy",
    "content_policy",
    "safety",
    "nsfw",
    "prohibited",
    "blocked",
)


def parse_overload_kind(body: Optional[str]) -> OverloadKind:
    """Read the overload sub-type out of an error body."""
    text = (body or "").upper()
    if QUOTA_MARKER in text:
        return OverloadKind.QUOTA_EXHAUSTED
    if UNAVAILABLE_MARKER in text:
        return OverloadKind.GLOBALLY_UNAVAILABLE
    return OverloadKind.UNKNOWN


def is_content_policy_message(body: Optional[str]) -> bool:
    text = (body or "").lower()
    return any(marker in text for marker in CONTENT_POLICY_MARKERS)


def classify_http_failure(status_code: int, body: Optional[str] = None) -> GenerationResult:
    """
    Map a failed HTTP response onto a tagged result.

    Args:
        status_code: HTTP status code (non-2xx)
        body: Response body, if any

    Returns:
        Overloaded for 429/503 (and bodies naming an overload), ContentBlocked
        for content-policy refusals. Anything else raises.

    Raises:
        GenerationFailed: For failures that are neither overloads nor content blocks
    """
    if status_code in (429, 503) or QUOTA_MARKER in (body or "") or UNAVAILABLE_MARKER in (body or ""):
        kind = parse_overload_kind(body)
        if kind == OverloadKind.UNKNOWN and status_code == 429:
            kind = OverloadKind.QUOTA_EXHAUSTED
        return Overloaded(kind=kind, message=f"status {status_code}")
    if status_code in (400, 403, 422) and is_content_policy_message(body):
        return ContentBlocked(reason=(body or "").strip()[:300])
    raise GenerationFailed(f"Request failed with status {status_code}: {(body or '')[:300]}", status_code)


def unwrap(result: GenerationResult) -> Any:
    """Return the value of an Ok result; raise the matching exception otherwise."""
    if isinstance(result, Ok):
        return result.value
    if isinstance(result, ContentBlocked):
        raise ContentPolicyRejection(result.reason)
    if isinstance(result, Overloaded):
        raise ServiceOverload(result.kind.value, result.message)
    raise TypeError(f"Unexpected result type: {type(result).__name__}")


@dataclass(frozen=True)
class RecoveryTarget:
    """One (model variant, credential) combination to call."""

    model: str
    credential: str


class OverloadRecoveryPolicy:
    """
    Fast retries, then a fallback chain ordered by overload kind.

    Globally unavailable (and unknown) overloads try other model variants
    before other credentials; exhausted quotas rotate credentials first.
    """

    def __init__(self, settings: Settings, logger: Any, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the policy.

        Args:
            settings: Application settings
            logger: Logger instance
            sleep: Sleep function (injectable for tests)
        """
        self.settings = settings
        self.logger = logger
        self.sleep = sleep
        backoff = list(settings.overload_backoff_seconds) or [0.0]
        retries = settings.overload_fast_retries
        self.backoff_seconds = [backoff[min(i, len(backoff) - 1)] for i in range(retries)]

    @staticmethod
    def fallback_order(
        kind: OverloadKind, models: list[str], credentials: list[str]
    ) -> list[RecoveryTarget]:
        """Fallback targets after the primary (models[0], credentials[0]) is exhausted."""
        primary_model, primary_credential = models[0], credentials[0]
        model_steps = [RecoveryTarget(model, primary_credential) for model in models[1:]]
        credential_steps = [RecoveryTarget(primary_model, credential) for credential in credentials[1:]]
        if kind == OverloadKind.QUOTA_EXHAUSTED:
            return credential_steps + model_steps
        return model_steps + credential_steps

    def _with_fast_retries(
        self, call: Callable[[RecoveryTarget], GenerationResult], target: RecoveryTarget
    ) -> GenerationResult:
        result = call(target)
        for wait_seconds in self.backoff_seconds:
            if not isinstance(result, Overloaded):
                return result
            self.logger.warning(
                f"Service overloaded ({result.kind.value}) on {target.model}, retrying in {wait_seconds:.0f}s"
            )
            self.sleep(wait_seconds)
            result = call(target)
        return result

    def execute(
        self,
        call: Callable[[RecoveryTarget], GenerationResult],
        models: list[str],
        credentials: list[str],
    ) -> GenerationResult:
        """
        Call a generator, recovering from overloads.

        Args:
            call: Performs one request against a target and returns a tagged result
            models: Model variants, primary first
            credentials: Credentials, primary first

        Returns:
            The first non-overloaded result, or the last Overloaded if every step was exhausted
        """
        if not models or not credentials:
            raise ValueError("At least one model and one credential are required")

        result = self._with_fast_retries(call, RecoveryTarget(models[0], credentials[0]))
        if not isinstance(result, Overloaded):
            return result

        for target in self.fallback_order(result.kind, models, credentials):
            self.logger.info(f"Escalating to fallback: model={target.model}, credential=...{target.credential[-4:]}")
            result = self._with_fast_retries(call, target)
            if not isinstance(result, Overloaded):
                return result

        self.logger.error(f"❌ All fallbacks exhausted ({result.kind.value})")
        return result


class ResourceRetryPolicy:
    """Retries work killed by the OS for memory use, releasing memory between attempts."""

    def __init__(self, settings: Settings, logger: Any, sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.logger = logger
        self.sleep = sleep
        self.max_attempts = settings.oom_max_attempts

    def backoff_seconds(self, attempt: int) -> float:
        """Exponential backoff plus the fixed OOM delay for a failed attempt (1-based)."""
        base = min(
            self.settings.retry_base_delay_seconds * (2 ** (attempt - 1)),
            self.settings.retry_max_delay_seconds,
        )
        return base + self.settings.oom_extra_delay_seconds

    def run(self, operation: Callable[[int], T], task_name: str) -> T:
        """
        Run an operation, retrying only on ResourceExhausted.

        Args:
            operation: Called with the 1-based attempt number
            task_name: Name used in logs

        Returns:
            The operation's result

        Raises:
            ResourceExhausted: After the last attempt
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation(attempt)
            except ResourceExhausted as e:
                if attempt >= self.max_attempts:
                    self.logger.error(f"❌ {task_name}: out of memory on all {self.max_attempts} attempts")
                    raise
                wait_seconds = self.backoff_seconds(attempt)
                collected = gc.collect()
                self.logger.warning(
                    f"{task_name}: killed for memory use ({e}), attempt {attempt}/{self.max_attempts}; "
                    f"released {collected} objects, retrying in {wait_seconds:.1f}s"
                )
                self.sleep(wait_seconds)
        raise ResourceExhausted(f"{task_name}: no attempts configured")


class ContentPolicyRetry:
    """Resubmits a blocked request only after the caller's transform has been applied."""

    def __init__(self, settings: Settings, logger: Any):
        self.settings = settings
        self.logger = logger
        self.max_attempts = settings.content_policy_max_attempts

    def run(
        self,
        request: T,
        attempt: Callable[[T], GenerationResult],
        transform: Callable[[T, str], T],
    ) -> GenerationResult:
        """
        Call `attempt`, transforming the request once after each block.

        Args:
            request: Initial request (e.g. a prompt)
            attempt: Performs the call and returns a tagged result
            transform: Rephrases a blocked request given the block reason

        Returns:
            The first non-blocked result, or the last ContentBlocked
        """
        result: GenerationResult = ContentBlocked(reason="not attempted")
        for number in range(1, self.max_attempts + 1):
            result = attempt(request)
            if not isinstance(result, ContentBlocked):
                return result
            self.logger.warning(f"Content blocked (attempt {number}/{self.max_attempts}): {result.reason}")
            if number < self.max_attempts:
                request = transform(request, result.reason)
        return result
