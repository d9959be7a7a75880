"""Fixed-window rate limiter keyed by (channel, user).

Each (channel, user) pair owns one Redis counter. The first recorded attempt
creates the key and starts its expiry window; the window ends when the key
expires, and the next attempt starts a fresh one.

The increment and the expiry check share one transaction; a key that ends up
without an expiry is repaired on the next record or denied check.

Checking and recording are separate calls. Two concurrent senders can both see
"allowed" before either records, so the limit is soft: it may be exceeded by
the number of concurrent callers.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import redis

from notifier.domain.models import Channel
from notifier.logging import get_logger

from .exceptions import RateLimiterError, RateLimitExceededError

logger = get_logger(__name__, component="rate_limiter")

KEY_PREFIX = "notification:rate_limit"


@dataclass(frozen=True)
class RateLimitRule:
    """Maximum attempts per window for one channel."""

    max_requests: int
    window_seconds: int


DEFAULT_RATE_LIMITS: Dict[Channel, RateLimitRule] = {
    Channel.EMAIL: RateLimitRule(max_requests=50, window_seconds=3600),
    Channel.SMS: RateLimitRule(max_requests=10, window_seconds=3600),
    Channel.WHATSAPP: RateLimitRule(max_requests=20, window_seconds=3600),
    Channel.PUSH: RateLimitRule(max_requests=100, window_seconds=3600),
    Channel.IN_APP: RateLimitRule(max_requests=200, window_seconds=3600),
}


class RateLimiter:
    """Redis-backed fixed-window limiter.

    Args:
        client: redis-py client (decode_responses may be on or off)
        rules: Per-channel overrides merged over DEFAULT_RATE_LIMITS
    """

    def __init__(
        self,
        client: "redis.Redis",
        rules: Optional[Mapping[Channel, RateLimitRule]] = None,
    ):
        self.client = client
        self.rules: Dict[Channel, RateLimitRule] = dict(DEFAULT_RATE_LIMITS)
        if rules:
            self.rules.update({Channel(channel): rule for channel, rule in rules.items()})

    @staticmethod
    def key_for(user_id: int, channel: Channel) -> str:
        """Redis key for a (channel, user) counter.

        Example:
            >>> RateLimiter.key_for(42, Channel.SMS)
            'notification:rate_limit:sms:42'
        """
        return f"{KEY_PREFIX}:{Channel(channel).value.lower()}:{user_id}"

    def rule_for(self, channel: Channel) -> RateLimitRule:
        return self.rules[Channel(channel)]

    def is_allowed(self, user_id: int, channel: Channel) -> bool:
        """Whether another attempt fits in the current window.

        Read-only, except that a full counter with no expiry gets its window
        attached so the user is not blocked forever.
        """
        count = self._current_count(user_id, channel)
        allowed = count < self.rule_for(channel).max_requests
        if not allowed:
            self._repair_window(user_id, channel)
            logger.info(
                f"Rate limit reached for user {user_id} on {Channel(channel).value}",
                extra={
                    "event": "rate_limit.exceeded",
                    "user_id": user_id,
                    "channel": Channel(channel).value,
                    "count": count,
                    "limit": self.rule_for(channel).max_requests,
                },
            )
        return allowed

    def check(self, user_id: int, channel: Channel) -> None:
        """Raise RateLimitExceededError if no attempt fits in the current window."""
        if not self.is_allowed(user_id, channel):
            raise RateLimitExceededError(
                user_id, Channel(channel).value, self.time_to_reset(user_id, channel)
            )

    def record_attempt(self, user_id: int, channel: Channel) -> int:
        """Count one attempt, starting the window on the first.

        The increment and the TTL read run in one MULTI/EXEC. A counter found
        without an expiry gets the window attached here, whether it is new or
        was left behind by an earlier failed EXPIRE.

        Returns:
            Counter value after the increment
        """
        key = self.key_for(user_id, channel)
        rule = self.rule_for(channel)
        try:
            with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.ttl(key)
                count, ttl = pipe.execute()
            count = int(count)
            if ttl is None or ttl < 0:
                self._start_window(key, rule)
        except redis.RedisError as e:
            raise RateLimiterError(f"Failed to record attempt for {key}: {e}") from e

        logger.debug(
            f"Recorded attempt {count}/{rule.max_requests} for {key}",
            extra={"event": "rate_limit.recorded", "count": count},
        )
        return count

    def _start_window(self, key: str, rule: RateLimitRule) -> None:
        self.client.expire(key, rule.window_seconds)

    def _repair_window(self, user_id: int, channel: Channel) -> None:
        key = self.key_for(user_id, channel)
        try:
            if self.client.ttl(key) == -1:
                logger.warning(
                    f"Counter {key} had no expiry; starting a new window",
                    extra={"event": "rate_limit.window_repaired"},
                )
                self._start_window(key, self.rule_for(channel))
        except redis.RedisError as e:
            raise RateLimiterError(f"Failed to repair window for {key}: {e}") from e

    def remaining_quota(self, user_id: int, channel: Channel) -> int:
        count = self._current_count(user_id, channel)
        return max(0, self.rule_for(channel).max_requests - count)

    def time_to_reset(self, user_id: int, channel: Channel) -> int:
        """Seconds until the current window ends, or -1 when there is no window."""
        key = self.key_for(user_id, channel)
        try:
            ttl = self.client.ttl(key)
        except redis.RedisError as e:
            raise RateLimiterError(f"Failed to read TTL for {key}: {e}") from e

        if ttl is None or ttl < 0:
            return -1
        return int(ttl)

    def _current_count(self, user_id: int, channel: Channel) -> int:
        key = self.key_for(user_id, channel)
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            raise RateLimiterError(f"Failed to read counter {key}: {e}") from e

        if raw is None:
            return 0
        try:
            return int(raw)
        except (TypeError, ValueError) as e:
            raise RateLimiterError(f"Corrupt counter value at {key}: {raw!r}") from e
