"""Tests for the shared retry policy."""

import pytest

from leadflow.retry import RetryPolicy


class Flaky:
    def __init__(self, failures, error=RuntimeError):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self, value="ok"):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("transient")
        return value


class TestRetryPolicy:
    """Tests for exponential backoff behaviour."""

    def test_succeeds_after_transient_failures(self):
        sleeps = []
        flaky = Flaky(failures=2)

        result = RetryPolicy(retries=3, base_delay=1.0, sleep=sleeps.append).call(flaky, "done")

        assert result == "done"
        assert flaky.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_reraises_after_exhausting_retries(self):
        sleeps = []
        flaky = Flaky(failures=10)

        with pytest.raises(RuntimeError):
            RetryPolicy(retries=3, base_delay=1.0, sleep=sleeps.append).call(flaky)

        assert flaky.calls == 4
        assert sleeps == [1.0, 2.0, 4.0]

    def test_only_configured_errors_are_retried(self):
        flaky = Flaky(failures=1, error=ValueError)

        with pytest.raises(ValueError):
            RetryPolicy(retries=3, retry_on=(OSError,), sleep=lambda _: None).call(flaky)

        assert flaky.calls == 1

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(retries=-1)
