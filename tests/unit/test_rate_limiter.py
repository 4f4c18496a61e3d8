"""Tests for the adaptive rate limiter."""

import threading
from unittest.mock import patch

import pytest

from scene_pipeline.utils.rate_limiter import IMAGE_GENERATION, TTS_GENERATION, AdaptiveRateLimiter


@pytest.fixture
def limiter(settings, logger):
    return AdaptiveRateLimiter(settings, logger)


def test_initial_delay(limiter):
    """Every service starts at the initial delay."""
    assert limiter.delay(IMAGE_GENERATION) == pytest.approx(5.0)
    assert limiter.status(TTS_GENERATION).current_delay_ms == 5000


def test_delay_shrinks_after_success_streak(limiter):
    """Five consecutive successes reduce the delay by 20%."""
    for _ in range(4):
        limiter.record_success(IMAGE_GENERATION)
    assert limiter.status(IMAGE_GENERATION).current_delay_ms == 5000

    limiter.record_success(IMAGE_GENERATION)
    status = limiter.status(IMAGE_GENERATION)
    assert status.current_delay_ms == 4000
    assert status.consecutive_successes == 0


def test_delay_never_below_floor(limiter):
    """The delay floor holds however many successes are recorded."""
    for _ in range(100):
        limiter.record_success(IMAGE_GENERATION)
    assert limiter.status(IMAGE_GENERATION).current_delay_ms == 2000


def test_rate_limited_doubles_up_to_ceiling(limiter):
    """429 doubles the delay, capped at 120s."""
    limiter.record_rate_limited(IMAGE_GENERATION)
    assert limiter.status(IMAGE_GENERATION).current_delay_ms == 10000

    for _ in range(10):
        limiter.record_rate_limited(IMAGE_GENERATION)
    status = limiter.status(IMAGE_GENERATION)
    assert status.current_delay_ms == 120000
    assert status.consecutive_failures == 11


def test_overloaded_grows_by_half_up_to_ceiling(limiter):
    """503 multiplies the delay by 1.5, capped at 60s."""
    limiter.record_overloaded(IMAGE_GENERATION)
    assert limiter.status(IMAGE_GENERATION).current_delay_ms == 7500

    for _ in range(10):
        limiter.record_overloaded(IMAGE_GENERATION)
    assert limiter.status(IMAGE_GENERATION).current_delay_ms == 60000


def test_other_error_grows_by_fifth(limiter):
    limiter.record_other_error(IMAGE_GENERATION)
    assert limiter.status(IMAGE_GENERATION).current_delay_ms == 6000


def test_error_clamps_delay_to_its_own_ceiling(limiter):
    """A 503 or other error after a run of 429s brings the delay back under the 60s ceiling."""
    for _ in range(6):
        limiter.record_rate_limited(IMAGE_GENERATION)
    assert limiter.status(IMAGE_GENERATION).current_delay_ms == 120000

    limiter.record_overloaded(IMAGE_GENERATION)
    assert limiter.status(IMAGE_GENERATION).current_delay_ms == 60000

    for _ in range(6):
        limiter.record_rate_limited(TTS_GENERATION)
    limiter.record_other_error(TTS_GENERATION)
    assert limiter.status(TTS_GENERATION).current_delay_ms == 60000


def test_error_resets_success_streak(limiter):
    for _ in range(4):
        limiter.record_success(IMAGE_GENERATION)
    limiter.record_other_error(IMAGE_GENERATION)
    limiter.record_success(IMAGE_GENERATION)

    status = limiter.status(IMAGE_GENERATION)
    assert status.consecutive_successes == 1
    assert status.consecutive_failures == 0
    assert status.current_delay_ms == 6000


def test_services_are_independent(limiter):
    limiter.record_rate_limited(IMAGE_GENERATION)
    assert limiter.status(TTS_GENERATION).current_delay_ms == 5000


def test_reset_single_service_and_all(limiter):
    limiter.record_rate_limited(IMAGE_GENERATION)
    limiter.record_rate_limited(TTS_GENERATION)

    limiter.reset(IMAGE_GENERATION)
    assert limiter.status(IMAGE_GENERATION).current_delay_ms == 5000
    assert limiter.status(TTS_GENERATION).current_delay_ms == 10000

    limiter.reset()
    assert all(status.current_delay_ms == 5000 for status in limiter.all_statuses())


def test_wait_disabled_does_not_sleep(limiter):
    with patch("scene_pipeline.utils.rate_limiter.time.sleep") as mock_sleep:
        assert limiter.wait(IMAGE_GENERATION) == 0.0
    mock_sleep.assert_not_called()


def test_wait_enabled_sleeps_current_delay(settings, logger):
    settings.enable_rate_limiting = True
    limiter = AdaptiveRateLimiter(settings, logger)
    with patch("scene_pipeline.utils.rate_limiter.time.sleep") as mock_sleep:
        assert limiter.wait(TTS_GENERATION) == pytest.approx(5.0)
    mock_sleep.assert_called_once_with(pytest.approx(5.0))


def test_concurrent_updates_keep_counters_consistent(limiter):
    """Concurrent successes from many threads are all counted."""

    def record():
        for _ in range(100):
            limiter.record_success(TTS_GENERATION)

    threads = [threading.Thread(target=record) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # 800 successes = 160 reductions, no partial streak left over
    status = limiter.status(TTS_GENERATION)
    assert status.consecutive_successes == 0
    assert status.current_delay_ms == 2000
