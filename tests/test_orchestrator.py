"""Unit tests for the notification service (submission and read side)."""

import json

import pytest

from notifier.domain.models import Channel, NotificationRequest, NotificationStatus, RecipientDetails
from notifier.orchestrator import (
    NotificationService,
    RequestValidationError,
    build_request,
)
from notifier.persistence import NotificationRepository, close_database, get_session, init_database
from notifier.ratelimit import RateLimiter, RateLimitExceededError, RateLimitRule
from notifier.templates import FileTemplateRenderer
from tests.helpers import FakeRedis, FixedClock, RecordingPublisher


@pytest.fixture
def database(tmp_path):
    init_database(f"sqlite:///{tmp_path / 'orchestrator.db'}")
    yield
    close_database()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def rate_limiter(fake_redis):
    return RateLimiter(
        fake_redis,
        {
            Channel.SMS: RateLimitRule(max_requests=1, window_seconds=3600),
            Channel.EMAIL: RateLimitRule(max_requests=2, window_seconds=3600),
        },
    )


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def service(database, rate_limiter, publisher, clock):
    return NotificationService(
        rate_limiter=rate_limiter,
        renderer=FileTemplateRenderer(),
        publisher=publisher,
        clock=clock,
    )


@pytest.fixture
def otp_request():
    return {
        "user_id": 42,
        "channels": ["EMAIL", "SMS"],
        "template_code": "otp",
        "recipient": {"email": "user@example.com", "phone": "+15551234567"},
        "template_data": {"otp": "123456", "expiry_minutes": 5},
        "subject": "Your verification code",
        "priority": 8,
    }


def load(notification_id):
    with get_session() as session:
        return NotificationRepository(session).get_by_id(notification_id)


def all_rows(user_id=42):
    with get_session() as session:
        return NotificationRepository(session).find_by_user(user_id, size=100)


class TestBuildRequest:
    def test_from_mapping(self, otp_request):
        request = build_request(otp_request)
        assert isinstance(request, NotificationRequest)
        assert request.channels == [Channel.EMAIL, Channel.SMS]

    def test_passthrough(self, otp_request):
        request = NotificationRequest.model_validate(otp_request)
        assert build_request(request) is request

    def test_invalid_mapping(self):
        with pytest.raises(RequestValidationError) as exc_info:
            build_request({"user_id": 42, "channels": [], "template_code": "otp"})
        assert exc_info.value.errors


class TestSend:
    """Tests for fanning a request out to channels."""

    def test_one_notification_per_channel(self, service, publisher, otp_request, clock):
        ids = service.send(otp_request)

        assert len(ids) == 2
        email, sms = load(ids[0]), load(ids[1])

        assert email.channel == Channel.EMAIL
        assert email.status == NotificationStatus.PENDING
        assert email.recipient == "user@example.com"
        assert email.subject == "Your verification code"
        assert email.priority == 8
        assert "123456" in email.rendered_content
        assert email.created_at == clock.now
        assert json.loads(email.template_data) == {"otp": "123456", "expiry_minutes": 5}

        assert sms.channel == Channel.SMS
        assert sms.recipient == "+15551234567"
        assert sms.rendered_content.startswith("Your verification code is 123456")

        assert [m.notification_id for m in publisher.published] == ids
        assert publisher.published[0].retry_count == 0
        assert publisher.published[0].priority == 8

    def test_rate_limited_channel_skipped(self, service, publisher, otp_request):
        first = service.send(otp_request)
        second = service.send(otp_request)

        assert len(first) == 2
        assert len(second) == 1
        assert load(second[0]).channel == Channel.EMAIL
        # No row for the rejected SMS
        assert [n.channel for n in all_rows()].count(Channel.SMS) == 1
        assert len(publisher.published) == 3

    def test_attempt_recorded_after_persisting(self, service, rate_limiter, otp_request):
        service.send(otp_request)

        assert rate_limiter.remaining_quota(42, Channel.EMAIL) == 1
        assert rate_limiter.remaining_quota(42, Channel.SMS) == 0

    def test_skip_rate_limit(self, service, rate_limiter, otp_request):
        otp_request["skip_rate_limit"] = True
        for _ in range(3):
            assert len(service.send(otp_request)) == 2

        # Bypassed sends are not counted either
        assert rate_limiter.remaining_quota(42, Channel.SMS) == 1

    def test_rate_limiter_failure_skips_channel(self, service, fake_redis, publisher, otp_request):
        fake_redis.break_connection()

        assert service.send(otp_request) == []
        assert all_rows() == []
        assert publisher.published == []

    def test_missing_recipient_skips_channel(self, service, otp_request):
        otp_request["recipient"] = {"email": "user@example.com"}

        ids = service.send(otp_request)

        assert len(ids) == 1
        assert load(ids[0]).channel == Channel.EMAIL

    def test_whatsapp_uses_phone(self, service, otp_request):
        otp_request["channels"] = ["WHATSAPP"]

        ids = service.send(otp_request)

        assert load(ids[0]).recipient == "+15551234567"

    def test_missing_template_skips_channel(self, service, otp_request):
        otp_request["channels"] = ["EMAIL", "IN_APP"]

        ids = service.send(otp_request)

        assert len(ids) == 1
        assert [n.channel for n in all_rows()] == [Channel.EMAIL]

    def test_missing_template_variable_skips_channel(self, service, otp_request):
        otp_request["template_data"] = {}

        assert service.send(otp_request) == []

    def test_template_expression_error_skips_only_that_channel(
        self, database, rate_limiter, publisher, clock, otp_request, tmp_path
    ):
        (tmp_path / "sms").mkdir()
        (tmp_path / "sms" / "otp.txt").write_text("Code {{ otp + 1 }}")
        service = NotificationService(
            rate_limiter, FileTemplateRenderer(str(tmp_path)), publisher, clock=clock
        )

        ids = service.send(otp_request)

        assert len(ids) == 1
        assert [n.channel for n in all_rows()] == [Channel.EMAIL]
        assert [m.notification_id for m in publisher.published] == ids

    def test_publish_failure_leaves_pending_row(self, database, rate_limiter, clock, otp_request):
        service = NotificationService(
            rate_limiter, FileTemplateRenderer(), RecordingPublisher(fail=True), clock=clock
        )

        assert service.send(otp_request) == []

        rows = all_rows()
        assert len(rows) == 2
        assert all(row.status == NotificationStatus.PENDING for row in rows)

    def test_in_app_needs_no_recipient(self, service, publisher):
        ids = service.send(
            {
                "user_id": 42,
                "channels": ["IN_APP"],
                "template_code": "welcome",
                "template_data": {"name": "Sam"},
                "metadata": {"source": "signup"},
            }
        )

        notification = load(ids[0])
        assert notification.recipient is None
        assert "Welcome, Sam!" in notification.rendered_content
        assert json.loads(notification.metadata) == {"source": "signup"}

    def test_html_is_escaped(self, service, otp_request):
        otp_request["channels"] = ["EMAIL"]
        otp_request["template_data"] = {"otp": "<b>1</b>"}

        ids = service.send(otp_request)

        assert "&lt;b&gt;1&lt;/b&gt;" in load(ids[0]).rendered_content

    def test_invalid_request_raises(self, service):
        with pytest.raises(RequestValidationError):
            service.send({"user_id": 42, "channels": ["FAX"], "template_code": "otp"})


class TestSingleChannelHelpers:
    def test_send_email(self, service):
        notification_id = service.send_email(
            42, "user@example.com", "otp", {"otp": "111111"}, subject="Code"
        )

        notification = load(notification_id)
        assert notification.channel == Channel.EMAIL
        assert notification.subject == "Code"

    def test_send_email_without_address_skips(self, service, publisher):
        assert service.send_email(42, "  ", "otp", {"otp": "111111"}) is None
        assert all_rows() == []
        assert publisher.published == []

    def test_send_push_without_token_skips(self, service):
        assert service.send_push(42, "", "otp", {"otp": "1"}) is None
        assert all_rows() == []

    def test_send_sms_rate_limited_returns_none(self, service):
        assert service.send_sms(42, "+15551234567", "otp", {"otp": "1"}) is not None
        assert service.send_sms(42, "+15551234567", "otp", {"otp": "2"}) is None

    def test_send_whatsapp(self, service):
        notification_id = service.send_whatsapp(42, "+15550001111", "otp", {"otp": "9"})
        assert load(notification_id).recipient == "+15550001111"

    def test_send_push_uses_title_as_subject(self, service):
        notification_id = service.send_push(42, "fcm-token-1", "otp", {"otp": "42"}, title="Sign in")

        notification = load(notification_id)
        assert notification.subject == "Sign in"
        assert json.loads(notification.rendered_content)["body"] == "Your code is 42"

    def test_send_in_app(self, service):
        notification_id = service.send_in_app(42, "welcome", metadata={"link": "/home"})
        assert load(notification_id).channel == Channel.IN_APP

    def test_send_otp_email(self, service, publisher):
        notification_id = service.send_otp_email(42, "user@example.com", "654321")

        notification = load(notification_id)
        assert notification.template_code == "otp"
        assert notification.priority == 9
        assert "654321" in notification.rendered_content
        assert "5 minutes" in notification.rendered_content

    def test_send_otp_email_raises_when_exhausted(self, service):
        service.send_otp_email(42, "user@example.com", "1")
        service.send_otp_email(42, "user@example.com", "2")

        with pytest.raises(RateLimitExceededError) as exc_info:
            service.send_otp_email(42, "user@example.com", "3")
        assert exc_info.value.reset_in_seconds == 3600

    def test_send_magic_link_email(self, service):
        notification_id = service.send_magic_link_email(
            42, "user@example.com", "https://example.com/login?token=abc"
        )

        notification = load(notification_id)
        assert notification.template_code == "magic_link"
        assert "https://example.com/login?token=abc" in notification.rendered_content
        assert "15 minutes" in notification.rendered_content

    def test_send_welcome(self, service):
        ids = service.send_welcome(
            42, RecipientDetails(email="user@example.com", fcm_token="tok"), name="Sam"
        )

        assert [load(i).channel for i in ids] == [Channel.EMAIL, Channel.IN_APP, Channel.PUSH]

    def test_send_welcome_without_push_token(self, service):
        ids = service.send_welcome(42, RecipientDetails(email="user@example.com"))
        assert [load(i).channel for i in ids] == [Channel.EMAIL, Channel.IN_APP]


class TestReadSide:
    """Tests for inbox queries and read tracking."""

    @pytest.fixture
    def inbox(self, service, clock):
        ids = []
        for _ in range(3):
            ids.append(service.send_in_app(42, "welcome"))
            clock.advance(minutes=1)
        service.send_email(42, "user@example.com", "otp", {"otp": "1"})
        service.send_in_app(7, "welcome")
        return ids

    def test_unread_count(self, service, inbox):
        assert service.get_unread_count(42) == 3
        assert service.get_unread_count(7) == 1

    def test_unread_newest_first(self, service, inbox):
        unread = service.get_unread_notifications(42)
        assert [n.id for n in unread] == list(reversed(inbox))

    def test_mark_as_read(self, service, inbox, clock):
        assert service.mark_as_read(inbox[0], 42) is True
        assert service.mark_as_read(inbox[0], 42) is False

        assert service.get_unread_count(42) == 2
        assert load(inbox[0]).read_at == clock.now

    def test_mark_as_read_other_user(self, service, inbox):
        assert service.mark_as_read(inbox[0], 7) is False
        assert service.get_unread_count(42) == 3

    def test_mark_all_as_read(self, service, inbox):
        assert service.mark_all_as_read(42) == 3
        assert service.get_unread_count(42) == 0
        assert service.get_unread_count(7) == 1

    def test_get_notification_checks_owner(self, service, inbox):
        assert service.get_notification(inbox[0], 42).id == inbox[0]
        assert service.get_notification(inbox[0], 7) is None

    def test_user_notifications_paged_and_filtered(self, service, inbox):
        assert len(service.get_user_notifications(42)) == 4
        assert len(service.get_user_notifications(42, page=1, size=3)) == 1
        in_app = service.get_user_notifications(42, channel=Channel.IN_APP)
        assert {n.channel for n in in_app} == {Channel.IN_APP}
