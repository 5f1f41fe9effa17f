"""Retry policy for transient action failures."""

from datetime import datetime, timedelta

from ..core.enrollment import Enrollment


class RetryPolicy:
    """
    Exponential backoff for action steps.

    Logic:
    - Backoff: initial * multiplier^(attempt-1), capped at max_backoff seconds
    - ``max_attempts`` counts every dispatch of the step, the first included
    - Retry state lives on the enrollment (retry_count, next_step_at) so a
      worker restart resumes the schedule instead of resetting it
    """

    def __init__(
        self,
        initial_backoff: int = 60,
        max_backoff: int = 3600,
        multiplier: int = 2,
        max_attempts: int = 3,
    ):
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier
        self.max_attempts = max_attempts

    def calculate_backoff(self, attempt: int) -> int:
        """Seconds to wait after the given failed attempt (1-based)."""
        backoff = self.initial_backoff * (self.multiplier ** (max(attempt, 1) - 1))
        return min(backoff, self.max_backoff)

    def should_retry(self, enrollment: Enrollment) -> bool:
        """Called after a failed attempt, before it is recorded on the enrollment."""
        return enrollment.retry_count + 1 < self.max_attempts

    def schedule_retry(self, enrollment: Enrollment, error: str, now: datetime) -> datetime:
        """Record a failed attempt and park the enrollment until its backoff elapses."""
        enrollment.retry_count += 1
        enrollment.last_error = error
        retry_at = now + timedelta(seconds=self.calculate_backoff(enrollment.retry_count))
        enrollment.next_step_at = retry_at
        enrollment.updated_at = now
        return retry_at
