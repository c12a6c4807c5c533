"""Tests for the retry backoff policy."""

from wa_gateway.core.config import Settings
from wa_gateway.services.backoff import BackoffPolicy


class TestBackoffPolicy:
    def test_doubles_until_cap(self):
        policy = BackoffPolicy(base_delay=2, max_delay=30, max_attempts=6)
        assert [policy.delay(n) for n in range(1, 7)] == [2, 4, 8, 16, 30, 30]

    def test_monotonic_and_bounded_up_to_ceiling(self):
        """Delays never shrink and never exceed the cap within max_attempts."""
        policy = BackoffPolicy(base_delay=1.5, max_delay=20, max_attempts=12)
        delays = [policy.delay(n) for n in range(1, policy.max_attempts + 1)]
        assert delays == sorted(delays)
        assert max(delays) <= 20

    def test_slow_interval_after_max_attempts(self):
        policy = BackoffPolicy(max_attempts=6, slow_interval=30)
        assert not policy.exhausted(6)
        assert policy.exhausted(7)
        assert policy.delay(7) == 30
        assert policy.delay(100) == 30

    def test_no_delay_before_first_failure(self):
        assert BackoffPolicy().delay(0) == 0.0

    def test_from_settings(self):
        settings = Settings(
            store_url="x.db",
            retry_base_delay=1,
            retry_max_delay=8,
            retry_max_attempts=3,
            retry_slow_interval=60,
        )
        assert BackoffPolicy.from_settings(settings) == BackoffPolicy(1, 8, 3, 60)
