"""
Unit tests for the dunning retry state machine.
"""

from datetime import datetime, timedelta, timezone

import pytest

from billing_engine.domain import retry_state
from billing_engine.domain.retry_state import RetryState, retry_delay_days


NOW = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)


class TestRetryDelays:
    @pytest.mark.parametrize("attempt, days", [(1, 3), (2, 5), (3, 7), (4, 7), (10, 7)])
    def test_default_schedule(self, attempt, days):
        assert retry_delay_days(attempt) == days

    def test_custom_schedule(self):
        assert retry_delay_days(2, [1, 2]) == 2
        assert retry_delay_days(5, [1, 2]) == 2

    def test_attempt_is_one_based(self):
        with pytest.raises(ValueError):
            retry_delay_days(0)


class TestTransitions:
    """record_failure / record_attempt / mark_permanent."""

    def test_first_failure_schedules_first_retry(self):
        state = retry_state.record_failure(RetryState(), "card_declined", NOW)

        assert state.retry_attempts == 0
        assert state.failure_reason == "card_declined"
        assert state.failed_at == NOW
        assert state.next_retry_at == NOW + timedelta(days=3)

    def test_attempts_follow_the_schedule(self):
        state = retry_state.record_failure(RetryState(), "declined", NOW)

        state = retry_state.record_attempt(state, NOW + timedelta(days=3))
        assert state.retry_attempts == 1
        assert state.next_retry_at == NOW + timedelta(days=8)

        state = retry_state.record_attempt(state, NOW + timedelta(days=8))
        assert state.retry_attempts == 2
        assert state.next_retry_at == NOW + timedelta(days=15)

        state = retry_state.record_attempt(state, NOW + timedelta(days=15))
        assert state.retry_attempts == 3
        assert state.exhausted is True
        assert state.next_retry_at == NOW + timedelta(days=22)

    def test_transitions_do_not_mutate_input(self):
        original = RetryState()
        retry_state.record_attempt(original, NOW)
        assert original.retry_attempts == 0

    def test_failure_after_permanent_keeps_no_schedule(self):
        state = retry_state.mark_permanent(RetryState(retry_attempts=3), NOW)
        state = retry_state.record_failure(state, "late callback", NOW + timedelta(days=1))

        assert state.permanently_failed is True
        assert state.next_retry_at is None

    def test_mark_permanent(self):
        state = retry_state.mark_permanent(
            RetryState(retry_attempts=3, retry_in_progress=True, next_retry_at=NOW), NOW
        )
        assert state.permanently_failed is True
        assert state.retry_in_progress is False
        assert state.next_retry_at is None
        assert state.failed_at == NOW


class TestQueries:
    def test_due_retry_is_eligible(self):
        state = RetryState(retry_attempts=1, next_retry_at=NOW - timedelta(minutes=1))
        assert state.is_eligible(NOW) is True
        assert state.needs_escalation(NOW) is False

    def test_future_retry_is_not_due(self):
        state = RetryState(next_retry_at=NOW + timedelta(hours=1))
        assert state.is_eligible(NOW) is False

    def test_in_progress_blocks_everything(self):
        state = RetryState(retry_attempts=3, retry_in_progress=True, next_retry_at=NOW)
        assert state.is_eligible(NOW) is False
        assert state.needs_escalation(NOW) is False

    def test_exhausted_and_due_needs_escalation(self):
        state = RetryState(retry_attempts=3, max_retries=3, next_retry_at=NOW)
        assert state.is_eligible(NOW) is False
        assert state.needs_escalation(NOW) is True

    def test_exhausted_but_not_yet_due_waits(self):
        state = RetryState(retry_attempts=3, max_retries=3, next_retry_at=NOW + timedelta(days=7))
        assert state.needs_escalation(NOW) is False

    def test_missing_schedule_counts_as_due(self):
        assert RetryState().is_due(NOW) is True

    def test_claim_within_lease_blocks_retry(self):
        state = retry_state.claim(RetryState(next_retry_at=NOW), NOW)
        later = NOW + timedelta(hours=5)
        cutoff = later - timedelta(hours=6)

        assert state.retry_in_progress is True
        assert state.retry_claimed_at == NOW
        assert state.is_claimed(cutoff) is True
        assert state.is_eligible(later, cutoff) is False

    def test_lapsed_claim_is_eligible_again(self):
        state = retry_state.claim(RetryState(next_retry_at=NOW), NOW)
        later = NOW + timedelta(hours=7)
        cutoff = later - timedelta(hours=6)

        assert state.is_claimed(cutoff) is False
        assert state.is_eligible(later, cutoff) is True

    def test_lapsed_claim_on_exhausted_payment_escalates(self):
        state = retry_state.claim(RetryState(retry_attempts=3, next_retry_at=NOW), NOW)
        later = NOW + timedelta(hours=7)

        assert state.needs_escalation(later, later - timedelta(hours=6)) is True

    def test_claim_without_timestamp_counts_as_lapsed(self):
        state = RetryState(retry_in_progress=True, next_retry_at=NOW)

        assert state.is_claimed() is True
        assert state.is_claimed(NOW) is False


class TestMetadata:
    def test_merge_keeps_foreign_keys(self):
        state = retry_state.record_failure(RetryState(), "declined", NOW)
        merged = state.merge_into({"redirect_url": "https://checkout.test/cs_1"})

        assert merged["redirect_url"] == "https://checkout.test/cs_1"
        assert merged["retry_attempts"] == 0
        assert isinstance(merged["next_retry_at"], str)

    def test_from_metadata_reads_back_aware_datetimes(self):
        stored = retry_state.record_failure(RetryState(), "declined", NOW).merge_into({"gateway": {}})
        state = RetryState.from_metadata(stored)

        assert state.next_retry_at == NOW + timedelta(days=3)
        assert state.next_retry_at.tzinfo is not None
        assert state.failure_reason == "declined"

    def test_from_empty_metadata(self):
        state = RetryState.from_metadata(None, max_retries=5)
        assert state.retry_attempts == 0
        assert state.max_retries == 5
