"""Test helper utilities for notifier tests.

Provides in-memory stand-ins for the external systems the pipeline talks to:
a Redis subset with a controllable clock, a publisher that records instead of
publishing, a pinned clock, and factories for domain objects.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import redis

from notifier.domain.models import Channel, Notification, NotificationMessage
from notifier.messaging.exceptions import PublishError

START = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()


class FakeRedis:
    """The subset of redis.Redis used by the rate limiter.

    Values are stored as bytes like a real client without decode_responses.
    Expiry is evaluated against the supplied clock.
    """

    def __init__(self, clock: Optional[FixedClock] = None):
        self.clock = clock or FixedClock()
        self.values: Dict[str, int] = {}
        self.expiry: Dict[str, float] = {}
        self.fail_with: Optional[Exception] = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _evict(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and self.clock.timestamp() >= deadline:
            self.values.pop(key, None)
            self.expiry.pop(key, None)

    def get(self, key: str) -> Optional[bytes]:
        self._check()
        self._evict(key)
        if key not in self.values:
            return None
        return str(self.values[key]).encode()

    def set(self, key: str, value: Any) -> None:
        self._check()
        self.values[key] = value

    def incr(self, key: str) -> int:
        self._check()
        self._evict(key)
        self.values[key] = int(self.values.get(key, 0)) + 1
        return self.values[key]

    def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if key not in self.values:
            return False
        self.expiry[key] = self.clock.timestamp() + seconds
        return True

    def ttl(self, key: str) -> int:
        self._check()
        self._evict(key)
        if key not in self.values:
            return -2
        if key not in self.expiry:
            return -1
        return int(self.expiry[key] - self.clock.timestamp())

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)

    def break_connection(self) -> None:
        self.fail_with = redis.ConnectionError("Connection refused")


class FakePipeline:
    """Queues commands and runs them back to back on execute()."""

    def __init__(self, client: FakeRedis):
        self.client = client
        self.commands: List[Tuple[str, tuple]] = []

    def __enter__(self) -> "FakePipeline":
        return self

    def __exit__(self, *exc_info) -> None:
        self.commands = []

    def incr(self, key: str) -> "FakePipeline":
        self.commands.append(("incr", (key,)))
        return self

    def ttl(self, key: str) -> "FakePipeline":
        self.commands.append(("ttl", (key,)))
        return self

    def expire(self, key: str, seconds: int) -> "FakePipeline":
        self.commands.append(("expire", (key, seconds)))
        return self

    def execute(self) -> List[Any]:
        commands, self.commands = self.commands, []
        return [getattr(self.client, name)(*args) for name, args in commands]


class RecordingPublisher:
    """ChannelPublisher stand-in that records instead of publishing."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: List[NotificationMessage] = []
        self.delayed: List[Tuple[NotificationMessage, int]] = []

    def publish(self, message: NotificationMessage) -> None:
        if self.fail:
            raise PublishError("Broker unavailable", notification_id=message.notification_id)
        self.published.append(message)

    def publish_delayed(self, message: NotificationMessage, delay_ms: int) -> None:
        if self.fail:
            raise PublishError("Broker unavailable", notification_id=message.notification_id)
        if delay_ms <= 0:
            self.published.append(message)
            return
        self.delayed.append((message, delay_ms))


def make_notification(**overrides) -> Notification:
    """Build an unsaved notification with sensible defaults."""
    values = {
        "user_id": 42,
        "channel": Channel.EMAIL,
        "template_code": "otp",
        "recipient": "user@example.com",
        "subject": "Your verification code",
        "rendered_content": "<p>Your code is 123456</p>",
        "template_data": '{"otp": "123456"}',
        "priority": 5,
        "created_at": START,
        "updated_at": START,
    }
    values.update(overrides)
    return Notification(**values)


def make_message(notification: Notification, **overrides) -> NotificationMessage:
    """Queue message for a saved notification, optionally altered."""
    message = NotificationMessage.from_notification(notification)
    return message.model_copy(update=overrides) if overrides else message


__all__ = [
    "START",
    "FixedClock",
    "FakeRedis",
    "FakePipeline",
    "RecordingPublisher",
    "make_notification",
    "make_message",
]
