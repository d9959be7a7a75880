"""Database schema definition and ORM models.

This module defines SQLAlchemy ORM models for the notifications and
dead-letter tables and provides conversion methods between ORM models and
domain models. Timestamps are stored as fixed-width ISO 8601 UTC strings so
that lexical comparison matches chronological order.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from notifier.domain.models import Channel, DeadLetterEntry, Notification, NotificationStatus

logger = logging.getLogger(__name__)

Base = declarative_base()


class NotificationModel(Base):
    """ORM model for notifications table.

    One row per channel send. The row is the source of truth for delivery
    state; queue messages are rebuilt from it when needed.
    """

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    channel = Column(String(16), nullable=False)

    # Content
    template_code = Column(String(100), nullable=False)
    recipient = Column(String(512), nullable=True)
    subject = Column(String(500), nullable=True)
    rendered_content = Column(Text, nullable=True)
    template_data = Column(Text, nullable=True)
    metadata_json = Column("metadata", Text, nullable=True)
    priority = Column(Integer, nullable=False, default=5)

    # Lifecycle (timestamps stored as ISO 8601 strings)
    status = Column(String(32), nullable=False)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(String(50), nullable=True)
    created_at = Column(String(50), nullable=False)
    updated_at = Column(String(50), nullable=False)
    sent_at = Column(String(50), nullable=True)
    delivered_at = Column(String(50), nullable=True)
    failed_at = Column(String(50), nullable=True)

    # Outcome
    external_id = Column(String(255), nullable=True)
    provider_response = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)

    # Read tracking (in-app only)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(String(50), nullable=True)

    __table_args__ = (
        Index("idx_notifications_user_created", "user_id", "created_at"),
        Index("idx_notifications_user_channel", "user_id", "channel"),
        Index("idx_notifications_user_read", "user_id", "is_read"),
        Index("idx_notifications_status_created", "status", "created_at"),
        Index("idx_notifications_status_next_retry", "status", "next_retry_at"),
    )

    def to_domain(self) -> Notification:
        """Convert ORM model to domain model."""
        return Notification(
            id=self.id,
            user_id=self.user_id,
            channel=Channel(self.channel),
            template_code=self.template_code,
            recipient=self.recipient,
            subject=self.subject,
            rendered_content=self.rendered_content,
            template_data=self.template_data,
            metadata=self.metadata_json,
            priority=self.priority,
            status=NotificationStatus(self.status),
            retry_count=self.retry_count,
            next_retry_at=_parse_datetime(self.next_retry_at),
            created_at=_parse_datetime(self.created_at),
            updated_at=_parse_datetime(self.updated_at),
            sent_at=_parse_datetime(self.sent_at),
            delivered_at=_parse_datetime(self.delivered_at),
            failed_at=_parse_datetime(self.failed_at),
            external_id=self.external_id,
            provider_response=self.provider_response,
            error_message=self.error_message,
            error_code=self.error_code,
            is_read=bool(self.is_read),
            read_at=_parse_datetime(self.read_at),
        )

    @classmethod
    def from_domain(cls, notification: Notification) -> "NotificationModel":
        """Create ORM model from domain model."""
        model = cls(id=notification.id)
        model.apply(notification)
        return model

    def apply(self, notification: Notification) -> None:
        """Copy every mutable field from the domain model onto this row."""
        for key, value in notification_values(notification).items():
            setattr(self, key, value)


class DeadLetterModel(Base):
    """ORM model for dead_letter_queue table.

    Insert-only. At most one row per notification.
    """

    __tablename__ = "dead_letter_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    notification_id = Column(
        Integer, ForeignKey("notifications.id"), nullable=False, unique=True
    )
    user_id = Column(Integer, nullable=False)
    channel = Column(String(16), nullable=False)
    template_code = Column(String(100), nullable=False)
    recipient = Column(String(512), nullable=True)
    template_data = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Text, nullable=False)
    last_error_code = Column(String(100), nullable=True)
    last_provider_response = Column(Text, nullable=True)
    original_created_at = Column(String(50), nullable=True)
    created_at = Column(String(50), nullable=False)

    __table_args__ = (
        Index("idx_dlq_user_id", "user_id"),
        Index("idx_dlq_channel", "channel"),
        Index("idx_dlq_created_at", "created_at"),
    )

    def to_domain(self) -> DeadLetterEntry:
        return DeadLetterEntry(
            id=self.id,
            notification_id=self.notification_id,
            user_id=self.user_id,
            channel=Channel(self.channel),
            template_code=self.template_code,
            recipient=self.recipient,
            template_data=self.template_data,
            retry_count=self.retry_count,
            failure_reason=self.failure_reason,
            last_error_code=self.last_error_code,
            last_provider_response=self.last_provider_response,
            original_created_at=_parse_datetime(self.original_created_at),
            created_at=_parse_datetime(self.created_at),
        )

    @classmethod
    def from_domain(cls, entry: DeadLetterEntry) -> "DeadLetterModel":
        return cls(
            notification_id=entry.notification_id,
            user_id=entry.user_id,
            channel=Channel(entry.channel).value,
            template_code=entry.template_code,
            recipient=entry.recipient,
            template_data=entry.template_data,
            retry_count=entry.retry_count,
            failure_reason=entry.failure_reason,
            last_error_code=entry.last_error_code,
            last_provider_response=entry.last_provider_response,
            original_created_at=_format_datetime(entry.original_created_at),
            created_at=_format_datetime(entry.created_at),
        )


def notification_values(notification: Notification) -> Dict[str, Any]:
    """Row values for a notification, keyed by NotificationModel attribute name."""
    return {
        "user_id": notification.user_id,
        "channel": Channel(notification.channel).value,
        "template_code": notification.template_code,
        "recipient": notification.recipient,
        "subject": notification.subject,
        "rendered_content": notification.rendered_content,
        "template_data": notification.template_data,
        "metadata_json": notification.metadata,
        "priority": notification.priority,
        "status": NotificationStatus(notification.status).value,
        "retry_count": notification.retry_count,
        "next_retry_at": _format_datetime(notification.next_retry_at),
        "created_at": _format_datetime(notification.created_at),
        "updated_at": _format_datetime(notification.updated_at),
        "sent_at": _format_datetime(notification.sent_at),
        "delivered_at": _format_datetime(notification.delivered_at),
        "failed_at": _format_datetime(notification.failed_at),
        "external_id": notification.external_id,
        "provider_response": notification.provider_response,
        "error_message": notification.error_message,
        "error_code": notification.error_code,
        "is_read": notification.is_read,
        "read_at": _format_datetime(notification.read_at),
    }


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime as ISO 8601 string for database storage.

    Args:
        dt: Datetime object (naive values are treated as UTC)

    Returns:
        ISO 8601 formatted string or None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)

    return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO 8601 string back to an aware UTC datetime."""
    if dt_str is None or dt_str == "":
        return None

    dt_str = dt_str.rstrip("Z")

    try:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S.%f")
    except ValueError:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S")

    return dt.replace(tzinfo=timezone.utc)


def create_schema(engine: Engine) -> None:
    """Create all tables and indexes if they don't exist (idempotent).

    Args:
        engine: SQLAlchemy engine instance
    """
    logger.info("Creating database schema if not exists")

    try:
        Base.metadata.create_all(engine, checkfirst=True)

        from sqlalchemy import inspect
        inspector = inspect(engine)
        tables = inspector.get_table_names()
        logger.info(f"Database schema ready. Tables: {', '.join(tables)}")

    except Exception as e:
        logger.error(f"Failed to create database schema: {e}", exc_info=True)
        raise
