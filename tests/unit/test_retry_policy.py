"""Tests for exponential backoff of transient action failures."""

from datetime import timedelta

import pytest

from crm_automation.core.config import RetryConfig
from crm_automation.core.enrollment import Enrollment
from crm_automation.workflow.retry import RetryPolicy


def _enrollment() -> Enrollment:
    return Enrollment(workflow_id="wf", subject_id="contact-1", current_step_id="email")


class TestRetryPolicy:
    def test_backoff_grows_and_is_capped(self):
        policy = RetryPolicy(initial_backoff=60, max_backoff=300, multiplier=2)
        assert [policy.calculate_backoff(n) for n in range(1, 6)] == [60, 120, 240, 300, 300]

    def test_max_attempts_counts_every_dispatch(self):
        policy = RetryPolicy(max_attempts=3)
        enrollment = _enrollment()

        assert policy.should_retry(enrollment)      # first dispatch failed
        enrollment.retry_count = 1
        assert policy.should_retry(enrollment)      # second dispatch failed
        enrollment.retry_count = 2
        assert not policy.should_retry(enrollment)  # third dispatch was the last

    def test_single_attempt_never_retries(self):
        assert not RetryPolicy(max_attempts=1).should_retry(_enrollment())

    def test_schedule_retry_parks_enrollment(self, now):
        policy = RetryPolicy(initial_backoff=30, multiplier=3)
        enrollment = _enrollment()

        first = policy.schedule_retry(enrollment, "rate limited", now)
        assert first == now + timedelta(seconds=30)
        assert enrollment.retry_count == 1
        assert enrollment.last_error == "rate limited"
        assert enrollment.next_step_at == first

        second = policy.schedule_retry(enrollment, "rate limited", now)
        assert second == now + timedelta(seconds=90)


class TestRetryConfig:
    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)

    def test_rejects_initial_above_max(self):
        with pytest.raises(ValueError, match="cannot exceed"):
            RetryConfig(backoff_initial=7200, backoff_max=3600)
