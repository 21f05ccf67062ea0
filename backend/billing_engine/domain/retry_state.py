"""
Dunning Retry State

Typed view of the retry bookkeeping stored in Payment.metadata.

Schedule: a failure schedules attempt 1 after delays[0] days; after attempt N
the next window opens delays[N] days later (the last delay is reused past the
end of the list). Once retry_attempts reaches max_retries the payment is
escalated to permanent failure on the next evaluation.
"""

from datetime import datetime
from typing import Any, Optional, Sequence

from pydantic import BaseModel, Field

from billing_engine.domain.periods import add_days, ensure_utc


DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS_DAYS = (3, 5, 7)

# Keys owned by RetryState inside Payment.metadata
RETRY_KEYS = (
    "retry_attempts",
    "max_retries",
    "next_retry_at",
    "last_retry_at",
    "permanently_failed",
    "retry_in_progress",
    "retry_claimed_at",
    "failure_reason",
    "failed_at",
)


class RetryState(BaseModel):
    """Retry bookkeeping for a failed payment."""

    retry_attempts: int = Field(default=0, ge=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    next_retry_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None
    permanently_failed: bool = False
    retry_in_progress: bool = False
    retry_claimed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failed_at: Optional[datetime] = None

    @classmethod
    def from_metadata(
        cls,
        metadata: Optional[dict[str, Any]],
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> "RetryState":
        """Read the retry keys out of a payment metadata blob."""
        data = {key: value for key, value in (metadata or {}).items() if key in RETRY_KEYS}
        data.setdefault("max_retries", max_retries)
        state = cls.model_validate(data)
        for name in ("next_retry_at", "last_retry_at", "retry_claimed_at", "failed_at"):
            value = getattr(state, name)
            if value is not None:
                setattr(state, name, ensure_utc(value))
        return state

    def merge_into(self, metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
        """Return a new metadata dict with the retry keys replaced."""
        merged = dict(metadata or {})
        merged.update(self.model_dump(mode="json"))
        return merged

    # =========================================================================
    # State queries
    # =========================================================================

    @property
    def exhausted(self) -> bool:
        return self.retry_attempts >= self.max_retries

    def is_due(self, now: datetime) -> bool:
        """A missing next_retry_at means the failure predates scheduling."""
        return self.next_retry_at is None or self.next_retry_at <= now

    def is_claimed(self, lease_cutoff: Optional[datetime] = None) -> bool:
        """
        A worker holds the retry. With ``lease_cutoff``, a claim made before
        the cutoff (or with no claim time) has lapsed.
        """
        if not self.retry_in_progress:
            return False
        if lease_cutoff is None:
            return True
        return self.retry_claimed_at is not None and self.retry_claimed_at >= lease_cutoff

    def is_eligible(self, now: datetime, lease_cutoff: Optional[datetime] = None) -> bool:
        """Due for a retry attempt (not exhausted, not terminal, not claimed)."""
        return (
            not self.permanently_failed
            and not self.is_claimed(lease_cutoff)
            and not self.exhausted
            and self.is_due(now)
        )

    def needs_escalation(self, now: datetime, lease_cutoff: Optional[datetime] = None) -> bool:
        """Exhausted and due, but not yet marked permanent."""
        return (
            not self.permanently_failed
            and not self.is_claimed(lease_cutoff)
            and self.exhausted
            and self.is_due(now)
        )


def retry_delay_days(attempt: int, delays: Sequence[int] = DEFAULT_RETRY_DELAYS_DAYS) -> int:
    """Days to wait before retry ``attempt`` (1-based)."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    index = min(attempt, len(delays)) - 1
    return delays[index]


def record_failure(
    state: RetryState,
    reason: Optional[str],
    now: datetime,
    delays: Sequence[int] = DEFAULT_RETRY_DELAYS_DAYS,
) -> RetryState:
    """
    State after a payment fails.

    The attempt counter is untouched; the next window is scheduled from the
    number of attempts already made.
    """
    updated = state.model_copy()
    updated.failure_reason = reason
    updated.failed_at = now
    updated.retry_in_progress = False
    if not updated.permanently_failed:
        updated.next_retry_at = add_days(now, retry_delay_days(updated.retry_attempts + 1, delays))
    return updated


def record_attempt(
    state: RetryState,
    now: datetime,
    delays: Sequence[int] = DEFAULT_RETRY_DELAYS_DAYS,
) -> RetryState:
    """State after a retry attempt was made (successful initiation or not)."""
    updated = state.model_copy()
    updated.retry_attempts += 1
    updated.last_retry_at = now
    updated.retry_in_progress = False
    updated.next_retry_at = add_days(now, retry_delay_days(updated.retry_attempts + 1, delays))
    return updated


def claim(state: RetryState, now: datetime) -> RetryState:
    """State after the scan hands the retry to a worker."""
    updated = state.model_copy()
    updated.retry_in_progress = True
    updated.retry_claimed_at = now
    return updated


def mark_permanent(state: RetryState, now: datetime) -> RetryState:
    updated = state.model_copy()
    updated.permanently_failed = True
    updated.retry_in_progress = False
    updated.next_retry_at = None
    updated.failed_at = updated.failed_at or now
    return updated
