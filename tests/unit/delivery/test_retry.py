"""
Module: test_retry.py
Description: Unit tests for backoff delay computation.

Covers exponential and fixed delays, the max-delay cap, jitter bounds,
configuration validation and the tenacity wait adapter.
"""

import random
from unittest.mock import MagicMock

import pytest

from eventrelay.delivery.retry import RetryConfig, RetryPolicyWait, next_delay


class TestNextDelay:
    """Test cases for next_delay()."""

    def test_exponential_sequence(self):
        """Delays double from the initial delay."""
        config = RetryConfig(initial_delay=1.0, max_delay=30.0, multiplier=2.0, jitter=False)

        assert [next_delay(n, config) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_exponential_capped_at_max_delay(self):
        config = RetryConfig(initial_delay=1.0, max_delay=30.0, multiplier=2.0, jitter=False)

        assert next_delay(6, config) == 30.0
        assert next_delay(50, config) == 30.0

    def test_huge_attempt_does_not_overflow(self):
        config = RetryConfig(initial_delay=1.0, max_delay=30.0, multiplier=10.0, jitter=False)

        assert next_delay(10_000, config) == 30.0

    def test_fixed_interval(self):
        config = RetryConfig(initial_delay=2.5, max_delay=30.0, exponential=False, jitter=False)

        assert [next_delay(n, config) for n in (1, 2, 7)] == [2.5, 2.5, 2.5]

    def test_attempt_zero_uses_initial_delay(self):
        config = RetryConfig(initial_delay=1.5, jitter=False)

        assert next_delay(0, config) == 1.5

    def test_negative_attempt_rejected(self):
        with pytest.raises(ValueError, match="attempt must be >= 0"):
            next_delay(-1, RetryConfig())

    def test_jitter_stays_within_bounds(self):
        """Jittered delays fall within [0.75x, 1.25x] of the base delay."""
        config = RetryConfig(initial_delay=1.0, max_delay=30.0, jitter=True)
        rng = random.Random(42)

        for attempt in range(1, 8):
            base = min(30.0, 2.0 ** (attempt - 1))
            for _ in range(50):
                delay = next_delay(attempt, config, rng)
                assert base * 0.75 <= delay <= base * 1.25

    def test_jitter_is_reproducible_with_seeded_rng(self):
        config = RetryConfig(jitter=True)

        first = [next_delay(3, config, random.Random(7)) for _ in range(3)]
        second = [next_delay(3, config, random.Random(7)) for _ in range(3)]

        assert first == second

    def test_zero_delay_skips_jitter(self):
        config = RetryConfig(initial_delay=0.0, max_delay=0.0, jitter=True)

        assert next_delay(3, config) == 0.0


class TestRetryConfig:
    """Test cases for RetryConfig validation and construction."""

    def test_defaults(self):
        config = RetryConfig()

        assert config.max_retries == 3
        assert config.initial_delay == 1.0
        assert config.max_delay == 30.0
        assert config.multiplier == 2.0
        assert config.exponential is True
        assert config.jitter is True

    @pytest.mark.parametrize("kwargs, message", [
        ({'max_retries': -1}, "max_retries must be >= 0"),
        ({'initial_delay': -0.5}, "delays must be >= 0"),
        ({'multiplier': 0.5}, "multiplier must be >= 1.0"),
    ])
    def test_invalid_values(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            RetryConfig(**kwargs)

    def test_no_retry(self):
        assert RetryConfig.no_retry().max_retries == 0

    def test_from_settings(self, test_settings):
        config = RetryConfig.from_settings(test_settings)

        assert config.max_retries == test_settings.max_retries
        assert config.initial_delay == test_settings.initial_delay_seconds
        assert config.max_delay == test_settings.max_delay_seconds
        assert config.jitter is False


class TestRetryPolicyWait:
    """Test cases for the tenacity wait adapter."""

    def test_uses_attempt_number_as_retry_number(self):
        wait = RetryPolicyWait(RetryConfig(initial_delay=1.0, jitter=False))
        retry_state = MagicMock()

        retry_state.attempt_number = 1
        assert wait(retry_state) == 1.0

        retry_state.attempt_number = 3
        assert wait(retry_state) == 4.0
