import time
import unittest

import pytest

from stackpilot.utils.backoff import ExponentialBackoff, retry_with_backoff


class TestExponentialBackoff(unittest.TestCase):
    def test_next_backoff(self):
        initial_expected_backoff = 0.5  # 500ms
        multiplication_factor = 1.5  # increase by x1.5 each iteration

        boff = ExponentialBackoff(randomization_factor=0)  # no jitter for deterministic testing

        self.assertEqual(boff.next_backoff(), initial_expected_backoff)
        self.assertEqual(boff.next_backoff(), initial_expected_backoff * multiplication_factor)
        self.assertEqual(boff.next_backoff(), initial_expected_backoff * multiplication_factor**2)

    def test_max_interval_caps_the_base_interval(self):
        boff = ExponentialBackoff(
            initial_interval=1, multiplier=2, max_interval=3, randomization_factor=0
        )
        self.assertEqual([boff.next_backoff() for _ in range(4)], [1, 2, 3, 3])

    def test_jitter_stays_within_the_randomization_range(self):
        boff = ExponentialBackoff(initial_interval=2, randomization_factor=0.5)
        self.assertTrue(1 <= boff.next_backoff() <= 3)

    def test_backoff_retry_limit(self):
        initial_expected_backoff = 0.5

        boff = ExponentialBackoff(randomization_factor=0, max_retries=1)

        self.assertEqual(boff.next_backoff(), initial_expected_backoff)

        # max_retries exceeded, only 0 should be returned until reset() called
        self.assertEqual(boff.next_backoff(), 0)
        self.assertEqual(boff.next_backoff(), 0)

        boff.reset()

        self.assertEqual(boff.next_backoff(), initial_expected_backoff)
        self.assertEqual(boff.next_backoff(), 0)

    def test_backoff_retry_limit_disable_retries(self):
        boff = ExponentialBackoff(randomization_factor=0, max_retries=0)

        # zero max_retries means backoff will always fail
        self.assertEqual(boff.next_backoff(), 0)

        boff.reset()

        # reset has no effect since backoff is disabled
        self.assertEqual(boff.next_backoff(), 0)

    def test_backoff_time_elapsed_limit(self):
        boff = ExponentialBackoff(randomization_factor=0, max_time_elapsed=0.2)
        self.assertEqual(boff.next_backoff(), 0.5)

        time.sleep(0.3)

        # max_time_elapsed exceeded, only 0 should be returned until reset() called
        self.assertEqual(boff.next_backoff(), 0)

        boff.reset()

        self.assertEqual(boff.next_backoff(), 0.5)


class TransientError(Exception):
    pass


class Flaky:
    def __init__(self, failures: int, error: Exception = None):
        self.failures = failures
        self.error = error or TransientError("try again")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "done"


def is_transient(e: Exception) -> bool:
    return isinstance(e, TransientError)


class TestRetryWithBackoff:
    def test_retries_until_success(self):
        function = Flaky(failures=2)
        sleeps = []
        retries = []

        result = retry_with_backoff(
            function,
            ExponentialBackoff(randomization_factor=0, max_retries=5),
            is_retryable=is_transient,
            sleep=sleeps.append,
            on_retry=lambda error, attempt, delay: retries.append(attempt),
        )

        assert result == "done"
        assert function.calls == 3
        assert sleeps == [0.5, 0.75]
        assert retries == [1, 2]

    def test_gives_up_when_backoff_is_exhausted(self):
        function = Flaky(failures=10)
        sleeps = []

        with pytest.raises(TransientError):
            retry_with_backoff(
                function,
                ExponentialBackoff(randomization_factor=0, max_retries=2),
                is_retryable=is_transient,
                sleep=sleeps.append,
            )
        assert function.calls == 3
        assert len(sleeps) == 2

    def test_does_not_retry_permanent_errors(self):
        function = Flaky(failures=1, error=ValueError("invalid"))
        sleeps = []

        with pytest.raises(ValueError):
            retry_with_backoff(
                function, ExponentialBackoff(), is_retryable=is_transient, sleep=sleeps.append
            )
        assert function.calls == 1
        assert sleeps == []

    def test_backoff_is_reset_before_the_first_attempt(self):
        backoff = ExponentialBackoff(randomization_factor=0, max_retries=1)
        backoff.next_backoff()
        backoff.next_backoff()
        sleeps = []

        assert retry_with_backoff(Flaky(failures=1), backoff, is_transient, sleep=sleeps.append) == "done"
        assert sleeps == [0.5]
