import random

import pytest

from relay_client.backoff import ReconnectPolicy


class TestReconnectPolicy:

    def test_exponential_delays(self):
        policy = ReconnectPolicy(initial_delay=1.0, multiplier=2.0, max_delay=60.0, jitter=0.0)
        assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_delay_capped(self):
        policy = ReconnectPolicy(initial_delay=1.0, multiplier=2.0, max_delay=60.0, jitter=0.0)
        assert policy.delay(7) == 60.0
        assert policy.delay(500) == 60.0

    def test_jitter_within_bounds(self):
        policy = ReconnectPolicy(initial_delay=4.0, jitter=0.1)
        rng = random.Random(42)
        for _ in range(100):
            assert 4.0 <= policy.delay(1, rng) <= 4.4

    def test_jitter_is_reproducible_with_seed(self):
        policy = ReconnectPolicy()
        assert policy.delay(3, random.Random(7)) == policy.delay(3, random.Random(7))

    def test_failure_number_starts_at_one(self):
        with pytest.raises(ValueError, match="starts at 1"):
            ReconnectPolicy().delay(0)

    def test_retry_budget(self):
        policy = ReconnectPolicy(max_attempts=5)
        assert policy.should_retry(4)
        assert not policy.should_retry(5)

    def test_elapsed_budget(self):
        policy = ReconnectPolicy(max_attempts=100, max_elapsed=30.0)
        assert policy.should_retry(3, elapsed=29.0)
        assert not policy.should_retry(3, elapsed=30.0)

    @pytest.mark.parametrize("kwargs", [
        {"initial_delay": 0},
        {"multiplier": 0.5},
        {"initial_delay": 10.0, "max_delay": 5.0},
        {"jitter": 1.5},
        {"max_attempts": 0},
    ])
    def test_invalid_policy_rejected(self, kwargs):
        with pytest.raises(ValueError):
            ReconnectPolicy(**kwargs)
