"""
Unit tests for backoff and transient error retries.
"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from jobqueue.queue.retry import compute_backoff, is_transient_error, retry_transient


class TestComputeBackoff:
    """Tests for the job retry backoff curve."""

    def test_first_failure_uses_base(self):
        assert compute_backoff(1, base_ms=1000, factor=2.0) == 1.0

    def test_grows_exponentially(self):
        delays = [compute_backoff(n, base_ms=1000, factor=2.0) for n in (1, 2, 3, 4)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max(self):
        assert compute_backoff(30, base_ms=1000, factor=2.0, max_ms=60_000) == 60.0

    def test_zero_base_means_no_delay(self):
        assert compute_backoff(5, base_ms=0) == 0.0


class TestTransientErrors:
    """Tests for transient store error detection and retry."""

    def test_operational_error_is_transient(self):
        assert is_transient_error(OperationalError("SELECT 1", {}, Exception("gone")))

    def test_connection_errors_are_transient(self):
        assert is_transient_error(ConnectionResetError())
        assert is_transient_error(TimeoutError())

    def test_integrity_error_is_not_transient(self):
        assert not is_transient_error(IntegrityError("INSERT", {}, Exception("dup")))
        assert not is_transient_error(ValueError("bad"))

    async def test_retry_transient_recovers(self):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise ConnectionResetError("reset")
            return "ok"

        result = await retry_transient(flaky, attempts=3, base_delay=0)

        assert result == "ok"
        assert calls == 3

    async def test_retry_transient_gives_up(self):
        calls = 0

        async def always_down():
            nonlocal calls
            calls += 1
            raise ConnectionResetError("reset")

        with pytest.raises(ConnectionResetError):
            await retry_transient(always_down, attempts=2, base_delay=0)

        assert calls == 2

    async def test_retry_transient_does_not_retry_other_errors(self):
        calls = 0

        async def broken():
            nonlocal calls
            calls += 1
            raise ValueError("bug")

        with pytest.raises(ValueError):
            await retry_transient(broken, attempts=5, base_delay=0)

        assert calls == 1
