import pytest

from copybot.core.errors import APIError, TransientError
from copybot.services.retry import backoff_delay, retry_read


class Flaky:
    def __init__(self, failures, error=None, value="ok"):
        self.failures = failures
        self.error = error or TransientError("HTTP 503")
        self.value = value
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


class TestBackoffDelay:

    def test_doubles_then_caps(self):
        assert [backoff_delay(n, 0.5, 2.0) for n in range(1, 6)] == [0.5, 1.0, 2.0, 2.0, 2.0]


class TestRetryRead:

    @pytest.mark.asyncio
    async def test_recovers_from_transient_failures(self, no_sleep):
        call = Flaky(failures=2)
        assert await retry_read(call, sleep=no_sleep) == "ok"
        assert call.calls == 3
        assert no_sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, no_sleep):
        call = Flaky(failures=10)
        with pytest.raises(TransientError):
            await retry_read(call, attempts=3, sleep=no_sleep)
        assert call.calls == 3
        assert len(no_sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_non_transient_error_is_not_retried(self, no_sleep):
        call = Flaky(failures=1, error=APIError("HTTP 400"))
        with pytest.raises(APIError):
            await retry_read(call, sleep=no_sleep)
        assert call.calls == 1
        assert no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_passes_arguments_through(self, no_sleep):
        seen = {}

        async def call(a, b=None):
            seen.update(a=a, b=b)
            return a

        assert await retry_read(call, 1, b=2, sleep=no_sleep) == 1
        assert seen == {"a": 1, "b": 2}
