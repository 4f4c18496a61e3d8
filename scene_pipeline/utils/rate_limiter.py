"""Rate Limiter - adapts the delay before each external call to observed outcomes."""

import time
from threading import Lock
from typing import Any, Optional

from scene_pipeline.core.config import Settings
from scene_pipeline.models.schemas import RateLimitStatus

# Service keys used across the pipeline
IMAGE_GENERATION = "image_generation"
VIDEO_GENERATION = "video_generation"
TTS_GENERATION = "tts_generation"
SCENARIO_GENERATION = "scenario_generation"

SUCCESS_REDUCTION = 0.8
RATE_LIMITED_FACTOR = 2.0
OVERLOADED_FACTOR = 1.5
OTHER_ERROR_FACTOR = 1.2


class _ServiceState:
    """Delay state for one service key, guarded by its own lock."""

    def __init__(self, initial_delay_ms: float):
        self.lock = Lock()
        self.delay_ms = initial_delay_ms
        self.consecutive_successes = 0
        self.consecutive_failures = 0


class AdaptiveRateLimiter:
    """
    Thread-safe per-service adaptive delay.

    Successes shrink the delay after a streak; 429, 503 and other errors grow
    it by different factors up to per-class ceilings. Callers wait before
    every external call; this is the only backpressure applied to generators.
    """

    def __init__(self, settings: Settings, logger: Any):
        """
        Initialize rate limiter.

        Args:
            settings: Application settings
            logger: Logger instance
        """
        self.settings = settings
        self.logger = logger
        self.initial_delay_ms = float(settings.rate_limit_initial_delay_ms)
        self.min_delay_ms = float(settings.rate_limit_min_delay_ms)
        self.max_delay_429_ms = float(settings.rate_limit_max_delay_429_ms)
        self.max_delay_503_ms = float(settings.rate_limit_max_delay_503_ms)
        self.success_threshold = settings.rate_limit_success_threshold
        self.enabled = settings.enable_rate_limiting

        self._states: dict[str, _ServiceState] = {}
        self._registry_lock = Lock()

    def _state(self, service: str) -> _ServiceState:
        state = self._states.get(service)
        if state is None:
            with self._registry_lock:
                state = self._states.get(service)
                if state is None:
                    state = _ServiceState(self.initial_delay_ms)
                    self._states[service] = state
        return state

    def delay(self, service: str) -> float:
        """
        Current delay for a service.

        Args:
            service: Service key (e.g., "tts_generation")

        Returns:
            Delay in seconds
        """
        state = self._state(service)
        with state.lock:
            return state.delay_ms / 1000.0

    def wait(self, service: str) -> float:
        """Sleep for the current delay of a service and return the seconds slept."""
        if not self.enabled:
            return 0.0
        seconds = self.delay(service)
        if seconds > 0:
            self.logger.debug(f"Rate limiter: waiting {seconds:.2f}s before {service} call")
            time.sleep(seconds)
        return seconds

    def record_success(self, service: str) -> None:
        state = self._state(service)
        with state.lock:
            state.consecutive_failures = 0
            state.consecutive_successes += 1
            if state.consecutive_successes >= self.success_threshold:
                previous = state.delay_ms
                state.delay_ms = max(self.min_delay_ms, state.delay_ms * SUCCESS_REDUCTION)
                state.consecutive_successes = 0
                if state.delay_ms != previous:
                    self.logger.debug(
                        f"Rate limiter: {service} delay reduced {previous:.0f}ms -> {state.delay_ms:.0f}ms"
                    )

    def record_rate_limited(self, service: str) -> None:
        """Record an HTTP 429 response."""
        self._record_error(service, RATE_LIMITED_FACTOR, self.max_delay_429_ms, "rate limited (429)")

    def record_overloaded(self, service: str) -> None:
        """Record an HTTP 503 response."""
        self._record_error(service, OVERLOADED_FACTOR, self.max_delay_503_ms, "overloaded (503)")

    def record_other_error(self, service: str) -> None:
        self._record_error(service, OTHER_ERROR_FACTOR, self.max_delay_503_ms, "error")

    def _record_error(self, service: str, factor: float, ceiling_ms: float, label: str) -> None:
        state = self._state(service)
        with state.lock:
            state.consecutive_successes = 0
            state.consecutive_failures += 1
            state.delay_ms = max(self.min_delay_ms, min(state.delay_ms * factor, ceiling_ms))
            self.logger.warning(
                f"Rate limiter: {service} {label}, delay now {state.delay_ms:.0f}ms "
                f"({state.consecutive_failures} consecutive failures)"
            )

    def reset(self, service: Optional[str] = None) -> None:
        """
        Restore the initial delay and zero the counters.

        Args:
            service: Service key, or None for every known service
        """
        if service is None:
            with self._registry_lock:
                services = list(self._states)
        else:
            services = [service]
        for name in services:
            state = self._state(name)
            with state.lock:
                state.delay_ms = self.initial_delay_ms
                state.consecutive_successes = 0
                state.consecutive_failures = 0

    def status(self, service: str) -> RateLimitStatus:
        state = self._state(service)
        with state.lock:
            return RateLimitStatus(
                service=service,
                current_delay_ms=int(round(state.delay_ms)),
                consecutive_successes=state.consecutive_successes,
                consecutive_failures=state.consecutive_failures,
            )

    def all_statuses(self) -> list[RateLimitStatus]:
        with self._registry_lock:
            services = sorted(self._states)
        return [self.status(name) for name in services]
