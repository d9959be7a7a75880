"""Wiring of pipeline components from configuration.

Used by the worker process (notifier.main) and by in-process producers that
submit notifications through NotificationService.
"""

from typing import Optional

import redis
from kombu import Connection

from notifier.config.environment import EnvironmentConfig
from notifier.config.models import AppConfig
from notifier.delivery.reconciler import Reconciler
from notifier.delivery.retry import RetryHandler, RetryPolicy
from notifier.messaging.publisher import ChannelPublisher
from notifier.messaging.topology import QueueTopology
from notifier.orchestrator.service import NotificationService
from notifier.ratelimit.limiter import RateLimiter, RateLimitRule
from notifier.templates.renderer import FileTemplateRenderer


def build_topology(app_config: AppConfig) -> QueueTopology:
    queue = app_config.queue
    return QueueTopology(
        exchange_name=queue.exchange,
        dlx_exchange_name=queue.dlx_exchange,
        dlq_name=queue.dlq_queue,
        dlq_routing_key=queue.dlq_routing_key,
        delay_exchange_name=queue.delay_exchange,
        max_priority=queue.max_priority,
    )


def build_retry_policy(app_config: AppConfig) -> RetryPolicy:
    retry = app_config.retry
    return RetryPolicy(
        max_attempts=retry.max_attempts,
        initial_backoff_ms=retry.initial_backoff_ms,
        multiplier=retry.multiplier,
        max_backoff_ms=retry.max_backoff_ms,
    )


def build_rate_limiter(app_config: AppConfig, client: "redis.Redis") -> RateLimiter:
    rules = {
        channel: RateLimitRule(limit.max_requests, limit.window_seconds)
        for channel, limit in app_config.effective_rate_limits().items()
    }
    return RateLimiter(client, rules)


def build_reconciler(
    app_config: AppConfig, publisher: ChannelPublisher, retry_handler: RetryHandler
) -> Reconciler:
    settings = app_config.reconciliation
    return Reconciler(
        publisher,
        retry_handler,
        pending_threshold=settings.as_timedelta("pending_threshold"),
        pending_max_age=settings.as_timedelta("pending_max_age"),
        retry_grace=settings.as_timedelta("retry_grace"),
        batch_size=settings.batch_size,
    )


def build_notification_service(
    app_config: AppConfig,
    env_config: EnvironmentConfig,
    connection: Optional[Connection] = None,
    redis_client: Optional["redis.Redis"] = None,
) -> NotificationService:
    """NotificationService for a producer process.

    Expects init_database() to have been called. Connections are created
    from env_config when not supplied.
    """
    connection = connection or Connection(env_config.broker_url)
    redis_client = redis_client or redis.Redis.from_url(env_config.redis_url)
    return NotificationService(
        rate_limiter=build_rate_limiter(app_config, redis_client),
        renderer=FileTemplateRenderer(app_config.templates.directory),
        publisher=ChannelPublisher(connection, build_topology(app_config)),
    )
