"""Tests for RetryPolicy and the default retryability predicate."""

import httpx
import pytest

from coda.engine.errors import MalformedResponseError, ProviderError
from coda.engine.retry import RetryPolicy, is_retryable
from tests.conftest import make_settings


class TestIsRetryable:
    @pytest.mark.parametrize("status", [429, 500, 501, 502, 503, 504, 505, 529])
    def test_transient_status_codes(self, status):
        assert is_retryable(ProviderError("x", status_code=status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 408, 413])
    def test_client_errors(self, status):
        assert not is_retryable(ProviderError("x", status_code=status))

    def test_flagged_provider_error(self):
        assert is_retryable(ProviderError("connection reset", retryable=True))

    def test_malformed_response(self):
        assert not is_retryable(MalformedResponseError("garbage"))

    def test_httpx_transport_errors(self):
        assert is_retryable(httpx.ReadTimeout("slow"))
        assert is_retryable(httpx.ConnectError("refused"))

    def test_other_exceptions(self):
        assert not is_retryable(ValueError("nope"))


class TestRetryPolicy:
    def test_exponential_schedule_with_cap(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in range(7)] == [0.5, 1.0, 2.0, 4.0, 8.0, 15.0, 15.0]

    def test_retry_after_wins_within_cap(self):
        policy = RetryPolicy()
        assert policy.delay_for(0, ProviderError("x", status_code=429, retry_after=3.0)) == 3.0
        assert policy.delay_for(0, ProviderError("x", status_code=429, retry_after=120)) == 15.0

    def test_should_retry_respects_attempts(self):
        policy = RetryPolicy(max_attempts=3)
        error = ProviderError("x", status_code=529)
        assert policy.should_retry(0, error)
        assert policy.should_retry(1, error)
        assert not policy.should_retry(2, error)

    def test_should_not_retry_permanent_error(self):
        assert not RetryPolicy().should_retry(0, ProviderError("x", status_code=400))

    def test_request_timeout_status_fails_fast(self):
        assert not RetryPolicy().should_retry(0, ProviderError("x", status_code=408))

    def test_custom_predicate(self):
        policy = RetryPolicy(retryable=lambda e: isinstance(e, KeyError))
        assert policy.should_retry(0, KeyError("k"))
        assert not policy.should_retry(0, ProviderError("x", status_code=529))

    def test_from_settings(self):
        policy = RetryPolicy.from_settings(
            make_settings(retry_max_attempts=5, retry_initial_delay=1.0, retry_max_delay=4.0)
        )
        assert policy.max_attempts == 5
        assert policy.delay_for(0) == 1.0
        assert policy.delay_for(5) == 4.0
