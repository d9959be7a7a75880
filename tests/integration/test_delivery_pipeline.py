"""Integration tests for the delivery pipeline.

Wires the real NotificationService, ChannelPublisher, NotificationWorker,
RetryHandler and Reconciler against a SQLite file database, kombu's in-memory
broker and a fake Redis. Providers are scripted.

The in-memory broker does not expire messages, so the step a real broker
performs (delay queue TTL dead-lettering back into the channel queue) is done
by the test: it consumes from the delay queue and advances the clock.
"""

import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests
from kombu import Connection

from notifier.delivery.reconciler import Reconciler
from notifier.delivery.retry import RetryHandler, RetryPolicy
from notifier.delivery.worker import NotificationWorker
from notifier.domain.models import (
    Channel,
    NotificationMessage,
    NotificationStatus,
    ProviderResponse,
)
from notifier.messaging import ChannelPublisher, QueueTopology
from notifier.orchestrator import NotificationService
from notifier.persistence import (
    DeadLetterRepository,
    NotificationRepository,
    close_database,
    get_session,
    init_database,
)
from notifier.providers import FcmPushProvider, InAppProvider
from notifier.providers.base import Provider
from notifier.ratelimit import RateLimiter, RateLimitRule
from notifier.templates import FileTemplateRenderer
from tests.helpers import FakeRedis, FixedClock, RecordingPublisher

DELAYS_USED = (1000, 2000, 4000)


class ScriptedProvider(Provider):
    """Provider that replays a list of responses, repeating the last one."""

    def __init__(self, channel, *responses):
        super().__init__()
        self.channel = channel
        self.responses = list(responses)
        self.sent = []

    def _send(self, message):
        self.sent.append(message)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


@pytest.fixture
def database(tmp_path):
    init_database(f"sqlite:///{tmp_path / 'pipeline.db'}")
    yield
    close_database()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def topology():
    return QueueTopology()


@pytest.fixture
def connection(topology):
    conn = Connection("memory://")
    topology.declare(conn)
    channel = conn.channel()
    try:
        # The in-memory broker is shared by every connection in the process
        for queue in topology.all_queues():
            queue(channel).purge()
        for route_channel in Channel:
            for delay_ms in DELAYS_USED:
                delay_queue = topology.delay_queue_for(route_channel, delay_ms)(channel)
                delay_queue.declare()
                delay_queue.purge()
    finally:
        channel.close()
    yield conn
    conn.release()


@pytest.fixture
def publisher(connection, topology):
    return ChannelPublisher(connection, topology)


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(
        FakeRedis(clock),
        {
            Channel.SMS: RateLimitRule(max_requests=1, window_seconds=3600),
            Channel.EMAIL: RateLimitRule(max_requests=50, window_seconds=3600),
            Channel.PUSH: RateLimitRule(max_requests=50, window_seconds=3600),
            Channel.IN_APP: RateLimitRule(max_requests=50, window_seconds=3600),
        },
    )


@pytest.fixture
def service(database, rate_limiter, publisher, clock):
    return NotificationService(rate_limiter, FileTemplateRenderer(), publisher, clock=clock)


@pytest.fixture
def retry_handler(database, publisher, clock):
    return RetryHandler(publisher, RetryPolicy(max_attempts=3), clock=clock)


@pytest.fixture
def make_worker(connection, topology, retry_handler, clock):
    def _make(channel, provider):
        return NotificationWorker(connection, topology, channel, provider, retry_handler, clock=clock)

    return _make


def deliver(worker, connection, queue):
    """Consume one message from queue and hand it to the worker."""
    simple = connection.SimpleQueue(queue)
    try:
        message = simple.get(timeout=1)
        worker.on_message(message.payload, message)
        return message
    finally:
        simple.close()


def queue_size(connection, queue):
    simple = connection.SimpleQueue(queue)
    try:
        return simple.qsize()
    finally:
        simple.close()


def load(notification_id):
    with get_session() as session:
        return NotificationRepository(session).get_by_id(notification_id)


def dead_letter(notification_id):
    with get_session() as session:
        return DeadLetterRepository(session).get_by_notification_id(notification_id)


class TestRetryUntilExhausted:
    """A retriable failure walks the backoff schedule and then dead-letters."""

    def test_email_backoff_then_max_retry(self, service, make_worker, connection, topology, clock):
        provider = ScriptedProvider(
            Channel.EMAIL, ProviderResponse.retriable_failure("Connection timed out", "TRANSPORT_ERROR")
        )
        worker = make_worker(Channel.EMAIL, provider)
        notification_id = service.send_otp_email(42, "user@example.com", "123456")

        first = deliver(worker, connection, topology.queue_for(Channel.EMAIL))
        assert first.acknowledged

        stored = load(notification_id)
        assert stored.status == NotificationStatus.RETRY
        assert stored.retry_count == 1
        assert stored.next_retry_at == clock.now + timedelta(milliseconds=1000)

        for retry_count, delay_ms in ((1, 1000), (2, 2000), (3, 4000)):
            assert queue_size(connection, topology.delay_queue_for(Channel.EMAIL, delay_ms)) == 1
            clock.advance(milliseconds=delay_ms)
            message = deliver(worker, connection, topology.delay_queue_for(Channel.EMAIL, delay_ms))
            assert message.payload["retry_count"] == retry_count
            assert message.acknowledged

        stored = load(notification_id)
        assert stored.status == NotificationStatus.FAILED_MAX_RETRY
        assert stored.retry_count == 3
        assert stored.error_code == "TRANSPORT_ERROR"
        assert stored.failed_at == clock.now
        assert len(provider.sent) == 4

        entry = dead_letter(notification_id)
        assert entry.failure_reason.startswith("Max retry attempts reached")
        assert entry.retry_count == 3
        assert entry.last_error_code == "TRANSPORT_ERROR"

    def test_recovers_after_transient_failure(self, service, make_worker, connection, topology, clock):
        provider = ScriptedProvider(
            Channel.EMAIL,
            ProviderResponse.retriable_failure("Service temporarily unavailable", "421"),
            ProviderResponse.ok("<abc@example.com>", '{"status": "accepted"}'),
        )
        worker = make_worker(Channel.EMAIL, provider)
        notification_id = service.send_otp_email(42, "user@example.com", "123456")

        deliver(worker, connection, topology.queue_for(Channel.EMAIL))
        clock.advance(seconds=1)
        deliver(worker, connection, topology.delay_queue_for(Channel.EMAIL, 1000))

        stored = load(notification_id)
        assert stored.status == NotificationStatus.DELIVERED
        assert stored.external_id == "<abc@example.com>"
        assert stored.retry_count == 1
        assert dead_letter(notification_id) is None

    def test_early_arrival_is_redelayed(self, service, make_worker, connection, topology, clock):
        provider = ScriptedProvider(
            Channel.EMAIL, ProviderResponse.retriable_failure("Connection reset", "TRANSPORT_ERROR")
        )
        worker = make_worker(Channel.EMAIL, provider)
        service.send_otp_email(42, "user@example.com", "123456")
        deliver(worker, connection, topology.queue_for(Channel.EMAIL))

        clock.advance(milliseconds=200)
        message = deliver(worker, connection, topology.delay_queue_for(Channel.EMAIL, 1000))

        assert message.acknowledged
        assert len(provider.sent) == 1
        # 800ms still remaining, re-staged in the 1000ms queue
        simple = connection.SimpleQueue(topology.delay_queue_for(Channel.EMAIL, 1000))
        try:
            redelayed = simple.get(timeout=1)
            assert redelayed.payload["retry_count"] == 1
            redelayed.ack()
        finally:
            simple.close()


class TestPermanentFailure:
    def test_unregistered_push_token(self, service, make_worker, connection, topology):
        response = requests.Response()
        response.status_code = 404
        response.reason = "Not Found"
        response._content = json.dumps(
            {
                "error": {
                    "code": 404,
                    "message": "Requested entity was not found.",
                    "status": "NOT_FOUND",
                    "details": [
                        {
                            "@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError",
                            "errorCode": "UNREGISTERED",
                        }
                    ],
                }
            }
        ).encode()
        session = MagicMock()
        session.post.return_value = response
        worker = make_worker(Channel.PUSH, FcmPushProvider(session, "my-project"))

        notification_id = service.send_push(42, "stale-token", "otp", {"otp": "1"})
        message = deliver(worker, connection, topology.queue_for(Channel.PUSH))

        assert message.acknowledged
        stored = load(notification_id)
        assert stored.status == NotificationStatus.FAILED_PERMANENT
        assert stored.retry_count == 0
        assert stored.error_code == "UNREGISTERED"

        entry = dead_letter(notification_id)
        assert entry.failure_reason.startswith("Permanent error: FCM error UNREGISTERED")
        assert json.loads(entry.last_provider_response)["error"]["status"] == "NOT_FOUND"
        for delay_ms in DELAYS_USED:
            assert queue_size(connection, topology.delay_queue_for(Channel.PUSH, delay_ms)) == 0


class TestDuplicateDelivery:
    def test_redelivered_message_is_noop(self, service, make_worker, publisher, connection, topology):
        provider = ScriptedProvider(Channel.EMAIL, ProviderResponse.ok("msg-1"))
        worker = make_worker(Channel.EMAIL, provider)
        notification_id = service.send_email(42, "user@example.com", "otp", {"otp": "1"})

        # Broker redelivery after a lost ack
        simple = connection.SimpleQueue(topology.queue_for(Channel.EMAIL))
        try:
            original = simple.get(timeout=1)
            duplicate_payload = dict(original.payload)
            worker.on_message(original.payload, original)
        finally:
            simple.close()
        publisher.publish(NotificationMessage.from_payload(duplicate_payload))

        message = deliver(worker, connection, topology.queue_for(Channel.EMAIL))

        assert message.acknowledged
        assert len(provider.sent) == 1
        assert load(notification_id).status == NotificationStatus.DELIVERED


class TestRateLimiting:
    def test_second_sms_rejected_before_queueing(self, service, connection, topology):
        first = service.send_sms(42, "+15551234567", "otp", {"otp": "1"})
        second = service.send_sms(42, "+15551234567", "otp", {"otp": "2"})

        assert first is not None
        assert second is None
        assert queue_size(connection, topology.queue_for(Channel.SMS)) == 1
        with get_session() as session:
            rows = NotificationRepository(session).find_by_user_and_channel(42, Channel.SMS)
        assert len(rows) == 1


class TestInApp:
    def test_in_app_delivered_and_readable(self, service, make_worker, connection, topology):
        worker = make_worker(Channel.IN_APP, InAppProvider())
        notification_id = service.send_in_app(42, "welcome", {"name": "Sam"})

        deliver(worker, connection, topology.queue_for(Channel.IN_APP))

        assert load(notification_id).status == NotificationStatus.DELIVERED
        assert service.get_unread_count(42) == 1
        assert service.mark_as_read(notification_id, 42)
        assert service.get_unread_count(42) == 0


class TestReconciliation:
    def test_failed_publish_recovered_by_sweep(
        self, database, rate_limiter, publisher, retry_handler, make_worker, connection, topology, clock
    ):
        offline = NotificationService(
            rate_limiter, FileTemplateRenderer(), RecordingPublisher(fail=True), clock=clock
        )
        assert offline.send_email(42, "user@example.com", "otp", {"otp": "1"}) is None
        with get_session() as session:
            (stranded,) = NotificationRepository(session).find_by_status(NotificationStatus.PENDING)

        clock.advance(minutes=10)
        result = Reconciler(publisher, retry_handler, clock=clock).run_once()
        assert result.pending_republished == 1

        provider = ScriptedProvider(Channel.EMAIL, ProviderResponse.ok("msg-9"))
        deliver(make_worker(Channel.EMAIL, provider), connection, topology.queue_for(Channel.EMAIL))

        assert load(stranded.id).status == NotificationStatus.DELIVERED
