"""
Retry Policy Tests.
"""

import random

import pytest

from dilemma.scheduler import RetryDecision, RetryPolicy


class TestBackoff:
    """Exponential backoff with cap."""

    @pytest.mark.parametrize(
        "attempts,expected",
        [(1, 2.0), (2, 4.0), (3, 8.0), (4, 16.0), (5, 32.0), (6, 60.0), (10, 60.0)],
    )
    def test_default_backoff(self, attempts, expected):
        assert RetryPolicy().backoff_for(attempts) == expected

    def test_uncapped_backoff(self):
        policy = RetryPolicy(max_delay_seconds=None)
        assert policy.backoff_for(8) == 256.0

    def test_jitter_stays_within_ratio(self):
        policy = RetryPolicy(jitter_ratio=0.5, rng=random.Random(7))

        for attempts in range(1, 6):
            base = RetryPolicy().backoff_for(attempts)
            delay = policy.backoff_for(attempts)
            assert base <= delay <= base * 1.5


class TestDecide:
    """Retry or give up, from post-increment attempts."""

    def test_retries_while_attempts_remain(self):
        policy = RetryPolicy()

        assert policy.decide(1) == RetryDecision.retry_after(2.0)
        assert policy.decide(2) == RetryDecision.retry_after(4.0)

    def test_gives_up_at_budget(self):
        policy = RetryPolicy()

        assert policy.decide(3) == RetryDecision.give_up()
        assert policy.decide(4).retry is False

    def test_job_budget_overrides_policy_default(self):
        policy = RetryPolicy(max_attempts=3)

        assert policy.decide(1, max_attempts=1).retry is False
        assert policy.decide(4, max_attempts=5).retry is True

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"base_delay_seconds": 0}])
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)
