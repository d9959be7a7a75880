"""Unit tests for retry policy and retry/dead-letter handling."""

from datetime import timedelta

import pytest

from notifier.delivery.retry import RetryHandler, RetryPolicy, backoff_delay_ms
from notifier.domain.models import ErrorType, NotificationStatus
from notifier.persistence import (
    ConcurrentUpdateError,
    DeadLetterRepository,
    NotificationRepository,
    close_database,
    get_session,
    init_database,
)
from tests.helpers import FixedClock, RecordingPublisher, make_message, make_notification


@pytest.fixture
def database(tmp_path):
    init_database(f"sqlite:///{tmp_path / 'retry.db'}")
    yield
    close_database()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def handler(database, publisher, clock):
    return RetryHandler(publisher, RetryPolicy(max_attempts=3), clock=clock)


def create(**overrides):
    with get_session() as session:
        return NotificationRepository(session).create(make_notification(**overrides))


def reload(notification_id):
    with get_session() as session:
        return NotificationRepository(session).get_by_id(notification_id)


def dead_letter_for(notification_id):
    with get_session() as session:
        return DeadLetterRepository(session).get_by_notification_id(notification_id)


class TestRetryPolicy:
    """Tests for the exponential backoff schedule."""

    def test_default_schedule(self):
        policy = RetryPolicy()
        assert [policy.backoff_delay_ms(n) for n in range(6)] == [
            1000, 2000, 4000, 8000, 16000, 32000,
        ]

    def test_delay_is_capped(self):
        policy = RetryPolicy()
        assert policy.backoff_delay_ms(12) == 3_600_000
        assert policy.backoff_delay_ms(40) == 3_600_000

    def test_overflow_returns_cap(self):
        policy = RetryPolicy(multiplier=10.0)
        assert policy.backoff_delay_ms(10_000) == 3_600_000

    def test_negative_retry_count_treated_as_zero(self):
        assert RetryPolicy().backoff_delay_ms(-3) == 1000

    def test_module_helper(self):
        assert backoff_delay_ms(3) == 8000
        assert backoff_delay_ms(1, RetryPolicy(initial_backoff_ms=500, multiplier=3.0)) == 1500


class TestHandleSuccess:
    def test_marks_delivered(self, handler, clock):
        notification = create(status=NotificationStatus.PROCESSING)

        handler.handle_success(notification, "msg-1", '{"status": "accepted"}')

        stored = reload(notification.id)
        assert stored.status == NotificationStatus.DELIVERED
        assert stored.external_id == "msg-1"
        assert stored.provider_response == '{"status": "accepted"}'
        assert stored.delivered_at == clock.now


class TestHandleFailure:
    """Tests for the retry or dead-letter decision."""

    def test_retriable_failure_schedules_retry(self, handler, publisher, clock):
        notification = create(status=NotificationStatus.PROCESSING)

        retried = handler.handle_failure(
            notification, make_message(notification), "Read timed out", "TRANSPORT_ERROR",
            ErrorType.RETRIABLE,
        )

        assert retried is True
        stored = reload(notification.id)
        assert stored.status == NotificationStatus.RETRY
        assert stored.retry_count == 1
        assert stored.next_retry_at == clock.now + timedelta(seconds=1)
        assert stored.error_message == "Read timed out"
        assert stored.error_code == "TRANSPORT_ERROR"

        message, delay_ms = publisher.delayed[0]
        assert delay_ms == 1000
        assert message.notification_id == notification.id
        assert message.retry_count == 1

    def test_backoff_uses_retries_already_consumed(self, handler, publisher):
        notification = create(status=NotificationStatus.PROCESSING, retry_count=2)

        handler.handle_failure(notification, None, "timeout", None, ErrorType.RETRIABLE)

        assert publisher.delayed[0][1] == 4000
        assert reload(notification.id).retry_count == 3

    def test_permanent_failure_dead_letters(self, handler, publisher):
        notification = create(status=NotificationStatus.PROCESSING)

        retried = handler.handle_failure(
            notification, None, "Mailbox unavailable", "550", ErrorType.PERMANENT
        )

        assert retried is False
        stored = reload(notification.id)
        assert stored.status == NotificationStatus.FAILED_PERMANENT
        assert stored.retry_count == 0
        assert stored.failed_at is not None

        entry = dead_letter_for(notification.id)
        assert entry.failure_reason == "Permanent error: Mailbox unavailable"
        assert entry.last_error_code == "550"
        assert publisher.delayed == []

    def test_exhausted_retries_dead_letter(self, handler, publisher):
        notification = create(status=NotificationStatus.PROCESSING, retry_count=3)

        retried = handler.handle_failure(notification, None, "timeout", None, ErrorType.RETRIABLE)

        assert retried is False
        assert reload(notification.id).status == NotificationStatus.FAILED_MAX_RETRY
        entry = dead_letter_for(notification.id)
        assert entry.failure_reason == "Max retry attempts reached. Last error: timeout"
        assert entry.retry_count == 3
        assert publisher.delayed == []

    def test_stored_retry_count_wins_over_message(self, handler, publisher):
        """Test the decision uses the row's retry_count, not the message's."""
        notification = create(status=NotificationStatus.PROCESSING, retry_count=3)
        stale_message = make_message(notification, retry_count=0)

        retried = handler.handle_failure(
            notification, stale_message, "timeout", None, ErrorType.RETRIABLE
        )

        assert retried is False
        assert reload(notification.id).status == NotificationStatus.FAILED_MAX_RETRY

    def test_zero_max_attempts_dead_letters_first_failure(self, database, publisher, clock):
        handler = RetryHandler(publisher, RetryPolicy(max_attempts=0), clock=clock)
        notification = create(status=NotificationStatus.PROCESSING)

        assert handler.handle_failure(notification, None, "timeout", None, ErrorType.RETRIABLE) is False
        assert reload(notification.id).status == NotificationStatus.FAILED_MAX_RETRY

    def test_publish_failure_leaves_row_in_retry(self, database, clock):
        handler = RetryHandler(RecordingPublisher(fail=True), RetryPolicy(max_attempts=3), clock=clock)
        notification = create(status=NotificationStatus.PROCESSING)

        retried = handler.handle_failure(notification, None, "timeout", None, ErrorType.RETRIABLE)

        assert retried is True
        stored = reload(notification.id)
        assert stored.status == NotificationStatus.RETRY
        assert stored.next_retry_at is not None


class TestMoveToDlq:
    def test_single_entry_per_notification(self, handler):
        notification = create(status=NotificationStatus.PROCESSING)
        copy = reload(notification.id)
        handler.move_to_dlq(notification, "first")

        # A second attempt from a copy loaded before the first must not write another entry
        with pytest.raises(ConcurrentUpdateError):
            handler.move_to_dlq(copy, "second")

        with get_session() as session:
            assert DeadLetterRepository(session).count() == 1
        assert dead_letter_for(notification.id).failure_reason == "first"
        assert reload(notification.id).status == NotificationStatus.FAILED_PERMANENT

    def test_status_depends_on_retry_count(self, handler):
        fresh = create(status=NotificationStatus.PENDING)
        exhausted = create(status=NotificationStatus.PENDING, retry_count=3)

        handler.move_to_dlq(fresh, "stuck")
        handler.move_to_dlq(exhausted, "stuck")

        assert reload(fresh.id).status == NotificationStatus.FAILED_PERMANENT
        assert reload(exhausted.id).status == NotificationStatus.FAILED_MAX_RETRY


class TestStaleCopies:
    """Two workers holding the same row: the first writer wins."""

    def test_failure_after_delivery_leaves_row_delivered(self, handler, publisher, clock):
        notification = create(status=NotificationStatus.PROCESSING)
        first = reload(notification.id)
        second = reload(notification.id)

        handler.handle_success(first, "msg-1", '{"status": "accepted"}')
        with pytest.raises(ConcurrentUpdateError):
            handler.handle_failure(second, None, "Read timed out", "TRANSPORT_ERROR", ErrorType.RETRIABLE)

        stored = reload(notification.id)
        assert stored.status == NotificationStatus.DELIVERED
        assert stored.delivered_at == clock.now
        assert stored.retry_count == 0
        assert stored.error_code is None
        assert publisher.delayed == []

    def test_permanent_failure_after_delivery_writes_no_dead_letter(self, handler):
        notification = create(status=NotificationStatus.PROCESSING)
        first = reload(notification.id)
        second = reload(notification.id)

        handler.handle_success(first, "msg-1", None)
        with pytest.raises(ConcurrentUpdateError):
            handler.handle_failure(second, None, "Mailbox unavailable", "550", ErrorType.PERMANENT)

        assert reload(notification.id).status == NotificationStatus.DELIVERED
        assert dead_letter_for(notification.id) is None

    def test_success_after_dead_letter_is_refused(self, handler):
        notification = create(status=NotificationStatus.PROCESSING)
        first = reload(notification.id)
        second = reload(notification.id)

        handler.handle_failure(first, None, "Mailbox unavailable", "550", ErrorType.PERMANENT)
        with pytest.raises(ConcurrentUpdateError):
            handler.handle_success(second, "msg-1", None)

        stored = reload(notification.id)
        assert stored.status == NotificationStatus.FAILED_PERMANENT
        assert stored.external_id is None

    def test_second_retry_from_same_attempt_is_refused(self, handler, publisher):
        notification = create(status=NotificationStatus.PROCESSING, retry_count=1)
        first = reload(notification.id)
        second = reload(notification.id)

        handler.handle_failure(first, None, "timeout", None, ErrorType.RETRIABLE)
        with pytest.raises(ConcurrentUpdateError):
            handler.handle_failure(second, None, "timeout", None, ErrorType.RETRIABLE)

        assert reload(notification.id).retry_count == 2
        assert len(publisher.delayed) == 1


class TestProviderResponseOnFailure:
    def test_raw_response_kept_on_dead_letter(self, handler):
        notification = create(status=NotificationStatus.PROCESSING)
        body = '{"error": {"status": "NOT_FOUND", "details": [{"errorCode": "UNREGISTERED"}]}}'

        handler.handle_failure(
            notification, None, "FCM error UNREGISTERED", "UNREGISTERED", ErrorType.PERMANENT,
            provider_response=body,
        )

        assert reload(notification.id).provider_response == body
        assert dead_letter_for(notification.id).last_provider_response == body

    def test_raw_response_kept_on_retry(self, handler):
        notification = create(status=NotificationStatus.PROCESSING)

        handler.handle_failure(
            notification, None, "Rate limited", "429", ErrorType.RETRIABLE,
            provider_response='{"code": 20429}',
        )

        assert reload(notification.id).provider_response == '{"code": 20429}'
