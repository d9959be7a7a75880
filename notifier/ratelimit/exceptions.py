"""Rate limiter exceptions."""


class RateLimiterError(Exception):
    """Raised when the counter store cannot be reached or returns garbage."""

    pass


class RateLimitExceededError(RateLimiterError):
    """Raised by callers that treat an exhausted quota as an error."""

    def __init__(self, user_id: int, channel: str, reset_in_seconds: int = -1):
        self.user_id = user_id
        self.channel = channel
        self.reset_in_seconds = reset_in_seconds
        super().__init__(
            f"Rate limit exceeded for user {user_id} on {channel} "
            f"(resets in {reset_in_seconds}s)"
        )
